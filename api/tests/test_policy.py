from __future__ import annotations

import pytest

from staffing_api.core.auth import Principal, PrincipalType, parse_group_claim
from staffing_api.core.errors import ForbiddenError
from staffing_api.core.policy import Action, AuthorizationPolicy, Resource
from staffing_api.core.security import _resolve_groups


def _machine(*scopes: str) -> Principal:
    return Principal(principal_type=PrincipalType.MACHINE, subject="bonus-worker", scopes=set(scopes))


def _human(subject: str, *groups: str) -> Principal:
    return Principal(principal_type=PrincipalType.HUMAN, subject=subject, groups=set(groups))


def test_group_claim_accepts_comma_joined_and_list_forms() -> None:
    assert parse_group_claim("clinicadmin, professional ,") == {"clinicadmin", "professional"}
    assert parse_group_claim(["Root", " ", 7]) == {"Root"}
    assert parse_group_claim(None) == set()


def test_cognito_groups_win_over_plain_groups_claim() -> None:
    assert _resolve_groups({"cognito:groups": ["clinicmanager"], "groups": ["professional"]}) == {"clinicmanager"}
    assert _resolve_groups({"groups": "professional"}) == {"professional"}
    assert _resolve_groups({}) == set()


@pytest.mark.parametrize("group", ["root", "ClinicAdmin", "CLINICMANAGER"])
def test_clinic_actions_match_groups_case_insensitively(group: str) -> None:
    policy = AuthorizationPolicy()
    actor = _human("clinic-1", group)
    assert policy.authorize(actor, Action.POSTING_TRANSITION, Resource(kind="posting", clinic_user_sub="clinic-1"))


def test_clinic_action_denied_without_group_or_ownership() -> None:
    policy = AuthorizationPolicy()
    owned = Resource(kind="posting", clinic_user_sub="clinic-1")

    no_group = policy.authorize(_human("clinic-1", "professional"), Action.POSTING_DELETE, owned)
    assert not no_group
    assert "clinicadmin" in no_group.reason

    other_owner = policy.authorize(_human("clinic-2", "clinicadmin"), Action.POSTING_DELETE, owned)
    assert not other_owner
    assert other_owner.reason == "actor does not own this posting"


def test_either_party_actions_need_a_party_to_the_application() -> None:
    policy = AuthorizationPolicy()
    resource = Resource(kind="application", clinic_user_sub="clinic-1", professional_user_sub="pro-1")

    assert policy.authorize(_human("clinic-1"), Action.NEGOTIATION_RESPOND, resource)
    assert policy.authorize(_human("pro-1"), Action.NEGOTIATION_RESPOND, resource)
    assert not policy.authorize(_human("pro-2", "professional"), Action.NEGOTIATION_RESPOND, resource)
    assert not policy.authorize(_human("pro-1"), Action.NEGOTIATION_RESPOND)


def test_withdraw_is_reserved_for_the_applicant() -> None:
    policy = AuthorizationPolicy()
    resource = Resource(kind="application", clinic_user_sub="clinic-1", professional_user_sub="pro-1")

    assert policy.authorize(_human("pro-1"), Action.APPLICATION_WITHDRAW, resource)
    assert not policy.authorize(_human("clinic-1", "clinicadmin"), Action.APPLICATION_WITHDRAW, resource)


def test_machine_actions_require_scopes_and_machine_principals() -> None:
    policy = AuthorizationPolicy()

    assert policy.authorize(_machine("referrals:write"), Action.REFERRAL_AWARD)
    missing = policy.authorize(_machine("referrals:read"), Action.REFERRAL_AWARD)
    assert not missing
    assert missing.reason == "missing required scope: referrals:write"

    assert not policy.authorize(_human("clinic-1", "root"), Action.CHANGE_FEED_CONSUME)
    assert not policy.authorize(_machine("change_feed:consume"), Action.POSTING_READ)


def test_require_raises_forbidden_with_action_detail() -> None:
    policy = AuthorizationPolicy()
    with pytest.raises(ForbiddenError) as excinfo:
        policy.require(_human("stranger-1"), Action.POSTING_CREATE)
    assert excinfo.value.details == {"action": "posting:create"}
