from datetime import datetime

from pydantic import Field

from staffing_api.schemas.common import CamelModel


class ReferralCreateRequest(CamelModel):
    referred_user_sub: str = Field(min_length=1)


class ReferralOut(CamelModel):
    referral_id: str
    referred_user_sub: str
    referrer_user_sub: str
    status: str
    created_at: datetime


class BonusAwardRequest(CamelModel):
    event_id: str = Field(min_length=1)
    amount: float = Field(gt=0)


class BonusAwardOut(CamelModel):
    referrer_user_sub: str
    applied: bool
    referral_bonus: float
