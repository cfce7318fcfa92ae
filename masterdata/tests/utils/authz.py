from __future__ import annotations

from typing import Any

from masterdata.services.authz.rbac import AccessControlEngine


async def grant_role(
    access: AccessControlEngine,
    *,
    tenant_id: str,
    actor_id: str,
    name: str,
    permissions: list[dict[str, Any]],
    priority: int = 10,
) -> str:
    # Create a tenant role with the given permissions and assign it to one actor.
    role_id = await access.create_role(tenant_id, name, priority=priority, actor_id="admin")
    for permission in permissions:
        await access.add_permission(tenant_id, role_id, actor_id="admin", **permission)
    await access.assign_role(tenant_id, actor_id, role_id, assigned_by="admin")
    return role_id
