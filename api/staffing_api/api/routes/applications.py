from fastapi import APIRouter, Depends, HTTPException, status as http_status

from staffing_api.core.errors import DomainError, to_http_exception
from staffing_api.core.policy import get_policy
from staffing_api.core.security import get_human_principal
from staffing_api.schemas.applications import ApplicationOut, ApplicationUpdateRequest
from staffing_api.schemas.negotiations import NegotiationOut, NegotiationResponseOut, NegotiationResponseRequest
from staffing_api.services import applications, negotiations
from staffing_api.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()

REVIEW_ACTIONS = {
    "accept": applications.accept_application,
    "reject": applications.reject_application,
    "complete": applications.complete_application,
}


@router.get("/{application_id}", response_model=ApplicationOut)
async def get_application(
    application_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    policy=Depends(get_policy),
) -> ApplicationOut:
    try:
        row = await applications.read_application(repository, policy, principal, application_id=application_id)
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ApplicationOut(**row)


@router.patch("/{application_id}", response_model=ApplicationOut)
async def update_application(
    application_id: str,
    payload: ApplicationUpdateRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    policy=Depends(get_policy),
) -> ApplicationOut:
    try:
        row = await applications.update_application_terms(
            repository,
            policy,
            principal,
            application_id=application_id,
            update=payload.model_dump(exclude_unset=True),
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ApplicationOut(**row)


@router.post("/{application_id}/withdraw", response_model=ApplicationOut)
async def withdraw_application(
    application_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    policy=Depends(get_policy),
) -> ApplicationOut:
    try:
        row = await applications.withdraw_application(repository, policy, principal, application_id=application_id)
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ApplicationOut(**row)


@router.post("/{application_id}/{review_action}", response_model=ApplicationOut)
async def review_application(
    application_id: str,
    review_action: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    policy=Depends(get_policy),
) -> ApplicationOut:
    handler = REVIEW_ACTIONS.get(review_action)
    if handler is None:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail="unknown review action")
    try:
        row = await handler(repository, policy, principal, application_id=application_id)
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ApplicationOut(**row)


@router.get("/{application_id}/negotiations", response_model=list[NegotiationOut])
async def list_application_negotiations(
    application_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    policy=Depends(get_policy),
) -> list[NegotiationOut]:
    try:
        rows = await applications.list_negotiations(repository, policy, principal, application_id=application_id)
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [NegotiationOut(**row) for row in rows]


@router.post(
    "/{application_id}/negotiations/{negotiation_id}/response",
    response_model=NegotiationResponseOut,
)
async def respond_to_negotiation(
    application_id: str,
    negotiation_id: str,
    payload: NegotiationResponseRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    policy=Depends(get_policy),
) -> NegotiationResponseOut:
    try:
        result = await negotiations.respond_to_negotiation(
            repository,
            policy,
            principal,
            application_id=application_id,
            negotiation_id=negotiation_id,
            payload=negotiations.NegotiationResponse(**payload.model_dump()),
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return NegotiationResponseOut(
        negotiation_id=result.negotiation_id,
        application_id=result.application_id,
        job_id=result.job_id,
        actor=result.actor,
        response=result.response,
        application_status=result.application_status,
        accepted_hourly_rate=result.accepted_hourly_rate,
        responded_at=result.responded_at,
        next_steps=result.next_steps,
    )
