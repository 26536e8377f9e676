from fastapi import APIRouter, Depends, HTTPException, status as http_status

from staffing_api.core.errors import DomainError, to_http_exception
from staffing_api.core.policy import get_policy
from staffing_api.core.security import get_human_principal, get_machine_principal
from staffing_api.schemas.referrals import BonusAwardOut, BonusAwardRequest, ReferralCreateRequest, ReferralOut
from staffing_api.services import referrals
from staffing_api.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


@router.post("", response_model=ReferralOut, status_code=http_status.HTTP_201_CREATED)
async def register_referral(
    payload: ReferralCreateRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    policy=Depends(get_policy),
) -> ReferralOut:
    try:
        row = await referrals.register_referral(
            repository, policy, principal, referred_user_sub=payload.referred_user_sub
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ReferralOut(**row)


@router.get("/{referred_user_sub}", response_model=ReferralOut)
async def get_referral(
    referred_user_sub: str,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    policy=Depends(get_policy),
) -> ReferralOut:
    try:
        row = await referrals.lookup_referral(repository, policy, principal, referred_user_sub=referred_user_sub)
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ReferralOut(**row)


@router.post("/{referrer_user_sub}/bonus", response_model=BonusAwardOut)
async def award_referral_bonus(
    referrer_user_sub: str,
    payload: BonusAwardRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    policy=Depends(get_policy),
) -> BonusAwardOut:
    try:
        award = await referrals.award_bonus(
            repository,
            policy,
            principal,
            referrer_user_sub=referrer_user_sub,
            amount=payload.amount,
            event_id=payload.event_id,
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return BonusAwardOut(referrer_user_sub=referrer_user_sub, applied=award.applied, referral_bonus=award.referral_bonus)
