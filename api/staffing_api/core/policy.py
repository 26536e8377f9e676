"""Single authorization policy for every lifecycle operation.

Routes and services call ``authorize``/``require`` with the acting principal, the
action and a ``Resource`` describing who owns the entity being touched.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from functools import lru_cache

from staffing_api.core.auth import Principal, PrincipalType
from staffing_api.core.errors import ForbiddenError

CLINIC_MANAGER_GROUPS = {"root", "clinicadmin", "clinicmanager"}


class Action(str, Enum):
    POSTING_CREATE = "posting:create"
    POSTING_READ = "posting:read"
    POSTING_TRANSITION = "posting:transition"
    POSTING_DELETE = "posting:delete"
    APPLICATION_LIST = "application:list"
    APPLICATION_SUBMIT = "application:submit"
    APPLICATION_READ = "application:read"
    APPLICATION_UPDATE = "application:update"
    APPLICATION_WITHDRAW = "application:withdraw"
    APPLICATION_REVIEW = "application:review"
    NEGOTIATION_READ = "negotiation:read"
    NEGOTIATION_RESPOND = "negotiation:respond"
    REFERRAL_REGISTER = "referral:register"
    REFERRAL_READ = "referral:read"
    REFERRAL_AWARD = "referral:award"
    CHANGE_FEED_CONSUME = "change_feed:consume"


CLINIC_ACTIONS = {
    Action.POSTING_CREATE,
    Action.POSTING_READ,
    Action.POSTING_TRANSITION,
    Action.POSTING_DELETE,
    Action.APPLICATION_LIST,
    Action.APPLICATION_REVIEW,
}
PROFESSIONAL_ACTIONS = {
    Action.APPLICATION_UPDATE,
    Action.APPLICATION_WITHDRAW,
}
EITHER_PARTY_ACTIONS = {
    Action.APPLICATION_READ,
    Action.NEGOTIATION_READ,
    Action.NEGOTIATION_RESPOND,
}
OPEN_HUMAN_ACTIONS = {
    Action.APPLICATION_SUBMIT,
    Action.REFERRAL_REGISTER,
}
MACHINE_SCOPES: dict[Action, str] = {
    Action.REFERRAL_READ: "referrals:read",
    Action.REFERRAL_AWARD: "referrals:write",
    Action.CHANGE_FEED_CONSUME: "change_feed:consume",
}


@dataclass(slots=True, frozen=True)
class Resource:
    kind: str
    clinic_user_sub: str | None = None
    professional_user_sub: str | None = None


@dataclass(slots=True, frozen=True)
class Decision:
    allowed: bool
    reason: str

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(allowed=True, reason="allowed")


class AuthorizationPolicy:
    def authorize(self, actor: Principal, action: Action, resource: Resource | None = None) -> Decision:
        if action in MACHINE_SCOPES:
            return self._authorize_machine(actor, action)

        if actor.principal_type is not PrincipalType.HUMAN:
            return Decision(False, f"{action.value} requires a human principal")

        if action in CLINIC_ACTIONS:
            if not actor.in_any_group(CLINIC_MANAGER_GROUPS):
                return Decision(False, "requires one of groups: root, clinicadmin, clinicmanager")
            if resource is not None and resource.clinic_user_sub != actor.subject:
                return Decision(False, "actor does not own this posting")
            return ALLOW

        if action in PROFESSIONAL_ACTIONS:
            if resource is None or resource.professional_user_sub != actor.subject:
                return Decision(False, "actor is not the applicant")
            return ALLOW

        if action in EITHER_PARTY_ACTIONS:
            parties = {resource.clinic_user_sub, resource.professional_user_sub} if resource else set()
            if actor.subject not in parties:
                return Decision(False, "caller is neither clinic owner nor professional applicant")
            return ALLOW

        if action in OPEN_HUMAN_ACTIONS:
            return ALLOW

        return Decision(False, f"no rule for action {action.value}")

    def require(self, actor: Principal, action: Action, resource: Resource | None = None) -> None:
        decision = self.authorize(actor, action, resource)
        if not decision:
            raise ForbiddenError(decision.reason, details={"action": action.value})

    @staticmethod
    def _authorize_machine(actor: Principal, action: Action) -> Decision:
        if actor.principal_type is not PrincipalType.MACHINE:
            return Decision(False, f"{action.value} requires a machine principal")
        scope = MACHINE_SCOPES[action]
        if scope not in actor.scopes:
            return Decision(False, f"missing required scope: {scope}")
        return ALLOW


@lru_cache
def get_policy() -> AuthorizationPolicy:
    return AuthorizationPolicy()
