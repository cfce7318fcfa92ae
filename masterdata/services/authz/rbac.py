from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from masterdata.core.config import get_settings
from masterdata.core.errors import (
    AccessDeniedError,
    AuditBufferFullError,
    AuditSinkUnavailableError,
    PolicyValidationError,
    RoleAlreadyExistsError,
    RoleHierarchyConflictError,
    RoleHierarchyCycleError,
    RoleNotFoundError,
    StorageUnavailableError,
    TenantNotFoundError,
    TenantUnavailableError,
)
from masterdata.domain.models import Role, RolePermission
from masterdata.persistence.db import read_only_session
from masterdata.persistence.repos import authz as authz_repo
from masterdata.services.audit import (
    AUDIT_CATEGORY_ACCESS,
    AUDIT_CATEGORY_SECURITY,
    OUTCOME_DENIED,
    OUTCOME_GRANTED,
    OUTCOME_SUCCESS,
    AuditLogger,
)
from masterdata.services.authz.evaluator import (
    PolicyInvalidError,
    PolicyTooComplexError,
    evaluate_condition,
    validate_condition,
)
from masterdata.services.telemetry import increment_counter
from masterdata.services.tenants import TenantRegistry


logger = logging.getLogger(__name__)

SCOPE_TENANT = "tenant"
SCOPE_RECORD = "record"
SCOPE_OWN = "own"
SCOPES = {SCOPE_TENANT, SCOPE_RECORD, SCOPE_OWN}

EFFECT_ALLOW = "allow"
EFFECT_DENY = "deny"
EFFECTS = {EFFECT_ALLOW, EFFECT_DENY}

WILDCARD = "*"

REASON_GRANTED = "granted"
REASON_EXPLICIT_DENY = "explicit_deny"
REASON_NO_MATCH = "no_matching_permission"
REASON_TENANT_UNAVAILABLE = "tenant_unavailable"
REASON_STORAGE_UNAVAILABLE = "storage_unavailable"

_TIME_RESTRICTION_KEYS = {"valid_from", "valid_until", "allowed_days", "allowed_hours", "timezone"}


@dataclass(frozen=True)
class Actor:
    actor_id: str
    tenant_id: str
    actor_type: str = "user"


@dataclass(frozen=True)
class AccessContext:
    """Request facts passed through unmodified from the API layer."""

    now: datetime | None = None
    ip_address: str | None = None
    session_id: str | None = None
    request_id: str | None = None
    requested_fields: tuple[str, ...] = ()
    resource_owner_id: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Decision:
    granted: bool
    matched_permissions: tuple[str, ...]
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "granted": self.granted,
            "matched_permissions": list(self.matched_permissions),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class PermissionRule:
    """A permission flattened together with the priority of the role that carries it."""

    permission_id: str
    role_id: str
    role_priority: int
    resource_type: str
    action: str
    scope: str = SCOPE_TENANT
    effect: str = EFFECT_ALLOW
    resource_ids: tuple[str, ...] | None = None
    allowed_fields: tuple[str, ...] | None = None
    time_restriction: dict[str, Any] | None = None
    condition: dict[str, Any] | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _rule_from_row(permission: RolePermission, role: Role) -> PermissionRule:
    return PermissionRule(
        permission_id=permission.id,
        role_id=role.id,
        role_priority=role.priority,
        resource_type=permission.resource_type,
        action=permission.action,
        scope=permission.scope,
        effect=permission.effect,
        resource_ids=tuple(permission.resource_ids_json) if permission.resource_ids_json is not None else None,
        allowed_fields=tuple(permission.allowed_fields_json) if permission.allowed_fields_json is not None else None,
        time_restriction=permission.time_restriction_json,
        condition=permission.condition_json,
    )


def _parse_instant(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def validate_time_restriction(restriction: dict[str, Any] | None) -> None:
    # Reject malformed windows at write time so evaluation never has to guess.
    if restriction is None:
        return
    if not isinstance(restriction, dict):
        raise PolicyValidationError("time restriction must be an object")
    unknown = set(restriction) - _TIME_RESTRICTION_KEYS
    if unknown:
        raise PolicyValidationError(f"unknown time restriction keys: {sorted(unknown)}")
    try:
        for key in ("valid_from", "valid_until"):
            if restriction.get(key) is not None:
                _parse_instant(restriction[key])
        if restriction.get("timezone"):
            ZoneInfo(str(restriction["timezone"]))
    except (ValueError, ZoneInfoNotFoundError) as exc:
        raise PolicyValidationError(f"invalid time restriction: {exc}") from exc
    days = restriction.get("allowed_days")
    if days is not None and (not isinstance(days, list) or any(day not in range(7) for day in days)):
        raise PolicyValidationError("allowed_days must list weekdays 0 (Sunday) to 6 (Saturday)")
    hours = restriction.get("allowed_hours")
    if hours is not None:
        if not isinstance(hours, list) or len(hours) != 2 or any(hour not in range(24) for hour in hours):
            raise PolicyValidationError("allowed_hours must be [start, end] within 0-23")


def time_restriction_allows(restriction: dict[str, Any] | None, now: datetime) -> bool:
    """Check a time window: validity range, weekdays (0=Sunday) and inclusive hours."""
    if not restriction:
        return True
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    if restriction.get("valid_from") is not None and now < _parse_instant(restriction["valid_from"]):
        return False
    if restriction.get("valid_until") is not None and now > _parse_instant(restriction["valid_until"]):
        return False
    local = now.astimezone(ZoneInfo(str(restriction.get("timezone") or "UTC")))
    days = restriction.get("allowed_days")
    if days is not None and (local.weekday() + 1) % 7 not in days:
        return False
    hours = restriction.get("allowed_hours")
    if hours is not None:
        start, end = hours
        if local.hour < start or local.hour > end:
            return False
    return True


def _scope_allows(rule: PermissionRule, *, actor: Actor, resource_id: str | None, context: AccessContext) -> bool:
    if rule.scope == SCOPE_TENANT:
        return True
    if rule.scope == SCOPE_RECORD:
        return resource_id is not None and resource_id in (rule.resource_ids or ())
    if rule.scope == SCOPE_OWN:
        return context.resource_owner_id is not None and context.resource_owner_id == actor.actor_id
    return False


def _fields_allow(rule: PermissionRule, requested: Sequence[str]) -> bool:
    # Grants must cover every requested field; a field-scoped deny applies once any listed field is requested.
    if rule.allowed_fields is None:
        return True
    if rule.effect == EFFECT_DENY:
        return bool(set(requested) & set(rule.allowed_fields))
    return set(requested) <= set(rule.allowed_fields)


def condition_context(
    *,
    actor: Actor,
    resource_type: str,
    resource_id: str | None,
    action: str,
    context: AccessContext,
    now: datetime,
) -> dict[str, Any]:
    return {
        "actor": {"id": actor.actor_id, "tenant_id": actor.tenant_id, "type": actor.actor_type},
        "resource": {"type": resource_type, "id": resource_id, "owner_id": context.resource_owner_id},
        "request": {
            "action": action,
            "ip": context.ip_address,
            "session_id": context.session_id,
            "time": now.isoformat(),
            "fields": list(context.requested_fields),
        },
        "attributes": dict(context.attributes),
    }


def evaluate_rules(
    rules: Iterable[PermissionRule],
    *,
    actor: Actor,
    resource_type: str,
    resource_id: str | None,
    action: str,
    context: AccessContext,
    now: datetime,
) -> Decision:
    """Match rules against the request and resolve conflicts by role priority.

    Among the matching rules only those from the highest-priority role(s)
    count; a deny at that level wins a tie. No match means deny.
    """
    condition_ctx = condition_context(
        actor=actor,
        resource_type=resource_type,
        resource_id=resource_id,
        action=action,
        context=context,
        now=now,
    )
    matched: list[PermissionRule] = []
    for rule in rules:
        if rule.resource_type not in {resource_type, WILDCARD} or rule.action not in {action, WILDCARD}:
            continue
        if not _scope_allows(rule, actor=actor, resource_id=resource_id, context=context):
            continue
        if not _fields_allow(rule, context.requested_fields):
            continue
        try:
            if not time_restriction_allows(rule.time_restriction, now):
                continue
            if rule.condition and not evaluate_condition(rule.condition, condition_ctx):
                continue
        except (PolicyInvalidError, PolicyTooComplexError, ValueError, ZoneInfoNotFoundError):
            # Broken restrictions never grant; they are skipped like a non-match.
            logger.warning("authz_rule_invalid permission_id=%s role_id=%s", rule.permission_id, rule.role_id)
            continue
        matched.append(rule)
    if not matched:
        return Decision(granted=False, matched_permissions=(), reason=REASON_NO_MATCH)
    top = max(rule.role_priority for rule in matched)
    winners = [rule for rule in matched if rule.role_priority == top]
    denies = [rule for rule in winners if rule.effect == EFFECT_DENY]
    if denies:
        return Decision(
            granted=False,
            matched_permissions=tuple(rule.permission_id for rule in denies),
            reason=REASON_EXPLICIT_DENY,
        )
    return Decision(
        granted=True,
        matched_permissions=tuple(rule.permission_id for rule in winners),
        reason=REASON_GRANTED,
    )


def descendant_roles(assigned: Iterable[str], edges: Iterable[tuple[str, str]]) -> set[str]:
    # Parents inherit their children's grants, so walk parent -> child from every assigned role.
    children: dict[str, list[str]] = {}
    for parent, child in edges:
        children.setdefault(parent, []).append(child)
    seen: set[str] = set()
    queue = deque(assigned)
    while queue:
        role_id = queue.popleft()
        if role_id in seen:
            continue
        seen.add(role_id)
        queue.extend(children.get(role_id, ()))
    return seen


def would_create_cycle(edges: Iterable[tuple[str, str]], *, parent_role_id: str, child_role_id: str) -> bool:
    if parent_role_id == child_role_id:
        return True
    return parent_role_id in descendant_roles([child_role_id], edges)


class AccessControlEngine:
    """Role-based authorization with a mandatory audit entry per decision."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        tenants: TenantRegistry,
        audit: AuditLogger,
        fail_closed_on_grant: bool | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._tenants = tenants
        self._audit = audit
        self._fail_closed_on_grant = (
            settings.audit_fail_closed_on_grant if fail_closed_on_grant is None else fail_closed_on_grant
        )
        self._max_policy_depth = settings.authz_max_policy_depth
        self._max_policy_bytes = settings.authz_max_policy_bytes
        self._clock = clock

    async def authorize(
        self,
        actor: Actor,
        resource_type: str,
        resource_id: str | None,
        action: str,
        context: AccessContext | None = None,
    ) -> Decision:
        context = context or AccessContext()
        now = context.now or self._clock()
        try:
            await self._tenants.resolve(actor.tenant_id)
        except (TenantNotFoundError, TenantUnavailableError):
            decision = Decision(granted=False, matched_permissions=(), reason=REASON_TENANT_UNAVAILABLE)
            await self._audit_decision(actor, resource_type, resource_id, action, context, decision, now)
            raise
        try:
            rules = await self._load_rules(actor, resource_type, action, now)
        except SQLAlchemyError as exc:
            decision = Decision(granted=False, matched_permissions=(), reason=REASON_STORAGE_UNAVAILABLE)
            await self._audit_decision(actor, resource_type, resource_id, action, context, decision, now)
            raise StorageUnavailableError("role data could not be loaded") from exc
        decision = evaluate_rules(
            rules,
            actor=actor,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            context=context,
            now=now,
        )
        await self._audit_decision(actor, resource_type, resource_id, action, context, decision, now)
        increment_counter("authz_granted_total" if decision.granted else "authz_denied_total")
        logger.info(
            "authz_decision tenant_id=%s actor_id=%s resource=%s:%s action=%s granted=%s reason=%s",
            actor.tenant_id,
            actor.actor_id,
            resource_type,
            resource_id,
            action,
            decision.granted,
            decision.reason,
        )
        return decision

    async def require(
        self,
        actor: Actor,
        resource_type: str,
        resource_id: str | None,
        action: str,
        context: AccessContext | None = None,
    ) -> Decision:
        decision = await self.authorize(actor, resource_type, resource_id, action, context)
        if not decision.granted:
            raise AccessDeniedError(f"{action} on {resource_type} denied: {decision.reason}", decision=decision)
        return decision

    async def _load_rules(self, actor: Actor, resource_type: str, action: str, now: datetime) -> list[PermissionRule]:
        async with read_only_session(self._session_factory) as session:
            assigned = await authz_repo.list_assigned_role_ids(
                session,
                tenant_id=actor.tenant_id,
                actor_id=actor.actor_id,
                now=now,
            )
            if not assigned:
                return []
            edges = await authz_repo.list_edges(session, tenant_id=actor.tenant_id)
            roles = {
                role.id: role
                for role in await authz_repo.list_roles(
                    session,
                    tenant_id=actor.tenant_id,
                    role_ids=descendant_roles(assigned, edges),
                )
            }
            permissions = await authz_repo.list_permissions(
                session,
                role_ids=roles.keys(),
                resource_type=resource_type,
                action=action,
            )
        return [_rule_from_row(permission, roles[permission.role_id]) for permission in permissions]

    async def _audit_decision(
        self,
        actor: Actor,
        resource_type: str,
        resource_id: str | None,
        action: str,
        context: AccessContext,
        decision: Decision,
        now: datetime,
    ) -> None:
        try:
            await self._audit.record(
                category=AUDIT_CATEGORY_ACCESS,
                tenant_id=actor.tenant_id,
                actor_id=actor.actor_id,
                actor_type=actor.actor_type,
                resource_type=resource_type,
                resource_id=resource_id,
                action=action,
                outcome=OUTCOME_GRANTED if decision.granted else OUTCOME_DENIED,
                granted=decision.granted,
                policy_decision=decision.to_dict(),
                details={"requested_fields": list(context.requested_fields)},
                request_id=context.request_id,
                ip_address=context.ip_address,
                session_id=context.session_id,
                occurred_at=now,
            )
        except AuditBufferFullError as exc:
            # The denial still stands; it just could not be retained anywhere.
            logger.error(
                "authz_audit_dropped tenant_id=%s actor_id=%s action=%s granted=%s",
                actor.tenant_id,
                actor.actor_id,
                action,
                decision.granted,
                exc_info=exc,
            )
            if decision.granted and self._fail_closed_on_grant:
                raise
        except AuditSinkUnavailableError as exc:
            if decision.granted and self._fail_closed_on_grant:
                logger.error(
                    "authz_grant_unaudited tenant_id=%s actor_id=%s action=%s",
                    actor.tenant_id,
                    actor.actor_id,
                    action,
                    exc_info=exc,
                )
                raise
            logger.warning(
                "authz_audit_degraded tenant_id=%s actor_id=%s action=%s buffered=%s",
                actor.tenant_id,
                actor.actor_id,
                action,
                exc.buffered,
            )

    async def create_role(
        self,
        tenant_id: str | None,
        name: str,
        *,
        priority: int = 0,
        description: str | None = None,
        is_system: bool = False,
        actor_id: str | None = None,
        role_id: str | None = None,
    ) -> str:
        if not name or not name.strip():
            raise PolicyValidationError("role name must not be empty")
        role_id = role_id or str(uuid4())
        try:
            async with self._session_factory() as session:
                await authz_repo.insert_role(
                    session,
                    role_id=role_id,
                    tenant_id=tenant_id,
                    name=name.strip(),
                    description=description,
                    priority=priority,
                    is_system=is_system,
                )
                await session.commit()
        except IntegrityError as exc:
            raise RoleAlreadyExistsError(f"role {name} already exists") from exc
        except SQLAlchemyError as exc:
            raise StorageUnavailableError(f"role {name} could not be created") from exc
        logger.info("role_created tenant_id=%s role_id=%s priority=%s", tenant_id, role_id, priority)
        await self._audit_admin(
            tenant_id,
            actor_id=actor_id,
            action="role.created",
            resource_id=role_id,
            details={"name": name, "priority": priority},
        )
        return role_id

    async def add_permission(
        self,
        tenant_id: str,
        role_id: str,
        *,
        resource_type: str,
        action: str,
        scope: str = SCOPE_TENANT,
        effect: str = EFFECT_ALLOW,
        resource_ids: Sequence[str] | None = None,
        allowed_fields: Sequence[str] | None = None,
        time_restriction: dict[str, Any] | None = None,
        condition: dict[str, Any] | None = None,
        actor_id: str | None = None,
    ) -> str:
        if not resource_type or not action:
            raise PolicyValidationError("resource_type and action are required")
        if scope not in SCOPES:
            raise PolicyValidationError(f"unsupported scope {scope}")
        if effect not in EFFECTS:
            raise PolicyValidationError(f"unsupported effect {effect}")
        if scope == SCOPE_RECORD and not resource_ids:
            raise PolicyValidationError("record scope requires resource ids")
        validate_time_restriction(time_restriction)
        try:
            validate_condition(condition, max_depth=self._max_policy_depth, max_bytes=self._max_policy_bytes)
        except (PolicyInvalidError, PolicyTooComplexError) as exc:
            raise PolicyValidationError(exc.message) from exc
        permission_id = str(uuid4())
        try:
            async with self._session_factory() as session:
                await self._require_role(session, tenant_id, role_id)
                await authz_repo.insert_permission(
                    session,
                    id=permission_id,
                    role_id=role_id,
                    resource_type=resource_type,
                    action=action,
                    scope=scope,
                    effect=effect,
                    resource_ids_json=list(resource_ids) if resource_ids is not None else None,
                    allowed_fields_json=list(allowed_fields) if allowed_fields is not None else None,
                    time_restriction_json=time_restriction,
                    condition_json=condition,
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageUnavailableError(f"permission could not be added to role {role_id}") from exc
        await self._audit_admin(
            tenant_id,
            actor_id=actor_id,
            action="role.permission_added",
            resource_id=role_id,
            details={
                "permission_id": permission_id,
                "resource_type": resource_type,
                "action": action,
                "scope": scope,
                "effect": effect,
            },
        )
        return permission_id

    async def assign_role(
        self,
        tenant_id: str,
        actor_id: str,
        role_id: str,
        *,
        assigned_by: str | None = None,
        expires_at: datetime | None = None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                await self._require_role(session, tenant_id, role_id)
                await authz_repo.upsert_assignment(
                    session,
                    tenant_id=tenant_id,
                    actor_id=actor_id,
                    role_id=role_id,
                    assigned_by=assigned_by,
                    assigned_at=self._clock(),
                    expires_at=expires_at,
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageUnavailableError(f"role {role_id} could not be assigned") from exc
        logger.info("role_assigned tenant_id=%s actor_id=%s role_id=%s", tenant_id, actor_id, role_id)
        await self._audit_admin(
            tenant_id,
            actor_id=assigned_by,
            action="role.assigned",
            resource_id=role_id,
            details={"assignee": actor_id, "expires_at": expires_at.isoformat() if expires_at else None},
        )

    async def revoke_role(
        self,
        tenant_id: str,
        actor_id: str,
        role_id: str,
        *,
        revoked_by: str | None = None,
    ) -> bool:
        try:
            async with self._session_factory() as session:
                removed = await authz_repo.delete_assignment(
                    session,
                    tenant_id=tenant_id,
                    actor_id=actor_id,
                    role_id=role_id,
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageUnavailableError(f"role {role_id} could not be revoked") from exc
        if removed:
            logger.info("role_revoked tenant_id=%s actor_id=%s role_id=%s", tenant_id, actor_id, role_id)
            await self._audit_admin(
                tenant_id,
                actor_id=revoked_by,
                action="role.revoked",
                resource_id=role_id,
                details={"assignee": actor_id},
            )
        return removed

    async def add_role_edge(
        self,
        tenant_id: str,
        parent_role_id: str,
        child_role_id: str,
        *,
        actor_id: str | None = None,
    ) -> int:
        """Make ``parent_role_id`` inherit the grants of ``child_role_id``.

        The reachability check and the insert commit only if the tenant's
        hierarchy revision is unchanged; returns the new revision.
        """
        try:
            async with self._session_factory() as session:
                await self._require_role(session, tenant_id, parent_role_id)
                await self._require_role(session, tenant_id, child_role_id)
                revision = await authz_repo.get_revision(session, tenant_id=tenant_id)
                edges = await authz_repo.list_edges(session, tenant_id=tenant_id)
                if (parent_role_id, child_role_id) in edges:
                    return revision
                if would_create_cycle(edges, parent_role_id=parent_role_id, child_role_id=child_role_id):
                    increment_counter("authz_role_cycle_rejected_total")
                    raise RoleHierarchyCycleError(
                        f"edge {parent_role_id} -> {child_role_id} would create a cycle"
                    )
                await authz_repo.insert_edge(
                    session,
                    tenant_id=tenant_id,
                    parent_role_id=parent_role_id,
                    child_role_id=child_role_id,
                )
                if not await authz_repo.bump_revision(session, tenant_id=tenant_id, expected=revision):
                    await session.rollback()
                    raise RoleHierarchyConflictError(f"role hierarchy for {tenant_id} changed concurrently")
                await session.commit()
        except IntegrityError as exc:
            raise RoleHierarchyConflictError(f"role hierarchy for {tenant_id} changed concurrently") from exc
        except SQLAlchemyError as exc:
            raise StorageUnavailableError("role hierarchy update failed") from exc
        logger.info(
            "role_edge_added tenant_id=%s parent=%s child=%s revision=%s",
            tenant_id,
            parent_role_id,
            child_role_id,
            revision + 1,
        )
        await self._audit_admin(
            tenant_id,
            actor_id=actor_id,
            action="role.edge_added",
            resource_id=parent_role_id,
            details={"child_role_id": child_role_id, "revision": revision + 1},
        )
        return revision + 1

    async def remove_role_edge(
        self,
        tenant_id: str,
        parent_role_id: str,
        child_role_id: str,
        *,
        actor_id: str | None = None,
    ) -> bool:
        try:
            async with self._session_factory() as session:
                revision = await authz_repo.get_revision(session, tenant_id=tenant_id)
                removed = await authz_repo.delete_edge(
                    session,
                    tenant_id=tenant_id,
                    parent_role_id=parent_role_id,
                    child_role_id=child_role_id,
                )
                if not removed:
                    return False
                if not await authz_repo.bump_revision(session, tenant_id=tenant_id, expected=revision):
                    await session.rollback()
                    raise RoleHierarchyConflictError(f"role hierarchy for {tenant_id} changed concurrently")
                await session.commit()
        except IntegrityError as exc:
            raise RoleHierarchyConflictError(f"role hierarchy for {tenant_id} changed concurrently") from exc
        except SQLAlchemyError as exc:
            raise StorageUnavailableError("role hierarchy update failed") from exc
        await self._audit_admin(
            tenant_id,
            actor_id=actor_id,
            action="role.edge_removed",
            resource_id=parent_role_id,
            details={"child_role_id": child_role_id},
        )
        return True

    async def _require_role(self, session: AsyncSession, tenant_id: str, role_id: str) -> Role:
        role = await authz_repo.get_role(session, tenant_id=tenant_id, role_id=role_id)
        if role is None:
            raise RoleNotFoundError(f"role {role_id} not found for tenant {tenant_id}")
        return role

    async def _audit_admin(
        self,
        tenant_id: str | None,
        *,
        actor_id: str | None,
        action: str,
        resource_id: str,
        details: dict[str, Any],
    ) -> None:
        # Role changes are security relevant, so a degraded sink buffers them.
        try:
            await self._audit.record(
                category=AUDIT_CATEGORY_SECURITY,
                tenant_id=tenant_id,
                actor_id=actor_id,
                resource_type="role",
                resource_id=resource_id,
                action=action,
                outcome=OUTCOME_SUCCESS,
                details=details,
            )
        except AuditSinkUnavailableError as exc:
            logger.warning("role_audit_failed action=%s tenant_id=%s", action, tenant_id, exc_info=exc)
