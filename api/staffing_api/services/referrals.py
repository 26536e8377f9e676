from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from staffing_api.core.auth import Principal
from staffing_api.core.errors import ConflictError, NotFoundError, ValidationError
from staffing_api.core.policy import Action, AuthorizationPolicy
from staffing_api.services.repository import BonusAwardRecord, RepositoryConflictError

logger = logging.getLogger(__name__)


async def register_referral(
    repository,
    policy: AuthorizationPolicy,
    actor: Principal,
    *,
    referred_user_sub: str,
) -> dict[str, Any]:
    policy.require(actor, Action.REFERRAL_REGISTER)
    referred_user_sub = referred_user_sub.strip()
    if not referred_user_sub:
        raise ValidationError("referredUserSub is required")
    if referred_user_sub == actor.subject:
        raise ValidationError("users cannot refer themselves")

    try:
        referral = await repository.create_referral(
            {
                "referred_user_sub": referred_user_sub,
                "referral_id": str(uuid.uuid4()),
                "referrer_user_sub": actor.subject,
                "status": "registered",
                "created_at": datetime.now(timezone.utc),
            }
        )
    except RepositoryConflictError as exc:
        raise ConflictError("this user has already been referred", details={"referredUserSub": referred_user_sub}) from exc

    logger.info("referral registered referral_id=%s referrer=%s", referral["referral_id"], actor.subject)
    return referral


async def lookup_referral(
    repository,
    policy: AuthorizationPolicy,
    principal: Principal,
    *,
    referred_user_sub: str,
) -> dict[str, Any]:
    policy.require(principal, Action.REFERRAL_READ)
    referral = await repository.get_referral(referred_user_sub)
    if referral is None:
        raise NotFoundError("referral not found", details={"referredUserSub": referred_user_sub})
    return referral


async def award_bonus(
    repository,
    policy: AuthorizationPolicy,
    principal: Principal,
    *,
    referrer_user_sub: str,
    amount: float,
    event_id: str,
) -> BonusAwardRecord:
    """Increment the referrer's balance once per change-feed event id."""
    policy.require(principal, Action.REFERRAL_AWARD)
    if amount <= 0:
        raise ValidationError("bonus amount must be positive")
    if not event_id:
        raise ValidationError("eventId is required")

    award = await repository.award_referral_bonus(
        referrer_user_sub=referrer_user_sub,
        amount=amount,
        event_id=event_id,
    )
    if award.applied:
        logger.info(
            "referral bonus awarded referrer=%s amount=%s event_id=%s balance=%s",
            referrer_user_sub,
            amount,
            event_id,
            award.referral_bonus,
        )
    else:
        logger.info("referral bonus already awarded for event_id=%s; skipping", event_id)
    return award
