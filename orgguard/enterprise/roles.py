"""Role resolution for organization-scoped commands."""

from __future__ import annotations

from typing import Optional

from orgguard.enterprise.models import OrgRole
from orgguard.integrations.storage import Storage


class RoleResolver:
    """
    Maps (caller, organization) to the caller's effective role.

    Only a Confirmed membership grants a role. Invited, Accepted and
    Revoked memberships, unknown organizations and unknown users all
    resolve to None, which callers treat as "no access".
    """

    def __init__(self, storage: Storage):
        self.storage = storage

    async def resolve(self, user_id: str, org_id: str) -> Optional[OrgRole]:
        membership = await self.storage.get_membership(user_id, org_id)
        if membership is None or not membership.is_confirmed:
            return None
        return membership.role

    async def has_role(
        self, user_id: str, org_id: str, required: OrgRole,
    ) -> bool:
        role = await self.resolve(user_id, org_id)
        return role is not None and role.has_at_least(required)
