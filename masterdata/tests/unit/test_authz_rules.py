from __future__ import annotations

from datetime import datetime, timezone

import pytest

from masterdata.core.errors import PolicyValidationError
from masterdata.services.authz.rbac import (
    EFFECT_DENY,
    REASON_EXPLICIT_DENY,
    REASON_GRANTED,
    REASON_NO_MATCH,
    SCOPE_OWN,
    SCOPE_RECORD,
    AccessContext,
    Actor,
    PermissionRule,
    descendant_roles,
    evaluate_rules,
    time_restriction_allows,
    validate_time_restriction,
    would_create_cycle,
)


ACTOR = Actor(actor_id="u1", tenant_id="t1")
# Wednesday 2026-03-04 10:30 UTC
NOW = datetime(2026, 3, 4, 10, 30, tzinfo=timezone.utc)


def _rule(permission_id: str, *, priority: int = 10, **fields) -> PermissionRule:
    values = {"resource_type": "customers", "action": "read"}
    values.update(fields)
    return PermissionRule(permission_id=permission_id, role_id=f"role-{priority}", role_priority=priority, **values)


def _evaluate(rules, *, resource_id: str | None = "c1", action: str = "read", context: AccessContext | None = None):
    return evaluate_rules(
        rules,
        actor=ACTOR,
        resource_type="customers",
        resource_id=resource_id,
        action=action,
        context=context or AccessContext(),
        now=NOW,
    )


def test_no_rules_means_deny() -> None:
    decision = _evaluate([])
    assert not decision.granted
    assert decision.reason == REASON_NO_MATCH


def test_matching_allow_grants() -> None:
    decision = _evaluate([_rule("p1"), _rule("p2", action="update")])
    assert decision.granted
    assert decision.matched_permissions == ("p1",)
    assert decision.reason == REASON_GRANTED


def test_wildcards_match_any_resource_and_action() -> None:
    decision = _evaluate([_rule("p1", resource_type="*", action="*")], action="delete")
    assert decision.granted


def test_higher_priority_role_wins() -> None:
    rules = [_rule("deny-low", priority=5, effect=EFFECT_DENY), _rule("allow-high", priority=50)]
    decision = _evaluate(rules)
    assert decision.granted
    assert decision.matched_permissions == ("allow-high",)

    rules = [_rule("deny-high", priority=50, effect=EFFECT_DENY), _rule("allow-low", priority=5)]
    decision = _evaluate(rules)
    assert not decision.granted
    assert decision.reason == REASON_EXPLICIT_DENY


def test_deny_wins_a_priority_tie() -> None:
    decision = _evaluate([_rule("allow"), _rule("deny", effect=EFFECT_DENY)])
    assert not decision.granted
    assert decision.matched_permissions == ("deny",)


def test_record_scope_matches_listed_ids_only() -> None:
    rule = _rule("p1", scope=SCOPE_RECORD, resource_ids=("c1", "c2"))
    assert _evaluate([rule], resource_id="c2").granted
    assert not _evaluate([rule], resource_id="c3").granted
    assert not _evaluate([rule], resource_id=None).granted


def test_own_scope_requires_actor_ownership() -> None:
    rule = _rule("p1", scope=SCOPE_OWN)
    assert _evaluate([rule], context=AccessContext(resource_owner_id="u1")).granted
    assert not _evaluate([rule], context=AccessContext(resource_owner_id="u2")).granted
    assert not _evaluate([rule]).granted


def test_field_restricted_grant_must_cover_every_field() -> None:
    rule = _rule("p1", allowed_fields=("legal_name", "website"))
    assert _evaluate([rule], context=AccessContext(requested_fields=("website",))).granted
    assert not _evaluate([rule], context=AccessContext(requested_fields=("website", "email"))).granted


def test_field_scoped_deny_applies_when_listed_field_requested() -> None:
    rules = [_rule("allow"), _rule("deny-pii", effect=EFFECT_DENY, allowed_fields=("tax_number",))]
    assert _evaluate(rules, context=AccessContext(requested_fields=("legal_name",))).granted
    decision = _evaluate(rules, context=AccessContext(requested_fields=("legal_name", "tax_number")))
    assert not decision.granted
    assert decision.reason == REASON_EXPLICIT_DENY


def test_time_restricted_rule_is_skipped_outside_window() -> None:
    office_hours = _rule("p1", time_restriction={"allowed_days": [1, 2, 3, 4, 5], "allowed_hours": [9, 17]})
    after_hours = _rule("p2", time_restriction={"allowed_hours": [18, 23]})
    assert _evaluate([office_hours]).granted
    assert not _evaluate([after_hours]).granted


def test_condition_is_evaluated_against_request() -> None:
    rule = _rule("p1", condition={"ip_in_network": [{"var": "request.ip"}, "10.0.0.0/8"]})
    assert _evaluate([rule], context=AccessContext(ip_address="10.1.2.3")).granted
    assert not _evaluate([rule], context=AccessContext(ip_address="192.168.1.1")).granted


def test_broken_condition_never_grants() -> None:
    rule = _rule("p1", condition={"teleport": [1, 2]})
    assert not _evaluate([rule]).granted


@pytest.mark.parametrize(
    ("restriction", "expected"),
    [
        ({"valid_from": "2026-03-05T00:00:00Z"}, False),
        ({"valid_until": "2026-03-01T00:00:00Z"}, False),
        ({"valid_from": "2026-01-01T00:00:00Z", "valid_until": "2026-12-31T00:00:00Z"}, True),
        ({"allowed_days": [0, 6]}, False),
        ({"allowed_days": [3]}, True),
        ({"allowed_hours": [10, 10]}, True),
        ({"allowed_hours": [11, 12]}, False),
        # 10:30 UTC is 19:30 in Tokyo.
        ({"allowed_hours": [9, 17], "timezone": "Asia/Tokyo"}, False),
        (None, True),
    ],
)
def test_time_restriction_windows(restriction, expected) -> None:
    assert time_restriction_allows(restriction, NOW) is expected


@pytest.mark.parametrize(
    "restriction",
    [
        {"allowed_days": [7]},
        {"allowed_hours": [9]},
        {"allowed_hours": [9, 24]},
        {"timezone": "Mars/Olympus_Mons"},
        {"valid_from": "not a date"},
        {"weekends": True},
    ],
)
def test_invalid_time_restrictions_are_rejected(restriction) -> None:
    with pytest.raises(PolicyValidationError):
        validate_time_restriction(restriction)


def test_descendant_roles_follow_parent_to_child() -> None:
    edges = [("admin", "manager"), ("manager", "viewer"), ("auditor", "viewer")]
    assert descendant_roles(["admin"], edges) == {"admin", "manager", "viewer"}
    assert descendant_roles(["viewer"], edges) == {"viewer"}


def test_cycle_detection() -> None:
    edges = [("admin", "manager"), ("manager", "viewer")]
    assert would_create_cycle(edges, parent_role_id="viewer", child_role_id="admin")
    assert would_create_cycle(edges, parent_role_id="admin", child_role_id="admin")
    assert not would_create_cycle(edges, parent_role_id="auditor", child_role_id="viewer")
