"""
Supabase-backed storage for orgguard.

Implements the Storage interface on top of Supabase tables:

    organizations, org_members, org_groups, org_collections, users

Any client failure is logged and re-raised as StorageUnavailable; the
command layer treats that as fatal to the request.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any, Optional

from supabase import Client, create_client

from orgguard.enterprise.models import (
    Collection,
    Group,
    Membership,
    MembershipStatus,
    Organization,
    User,
)
from orgguard.exceptions import StorageUnavailable
from orgguard.integrations.storage import InMemoryStorage, Storage

logger = logging.getLogger(__name__)


class SupabaseStorage(Storage):
    """
    Storage provider using the Supabase service role key.

    Org scoping is applied in application code on every query.
    """

    def __init__(self, client: Any):
        self.client = client

    @classmethod
    def from_env(cls) -> SupabaseStorage:
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_KEY")
        if not url or not key:
            raise EnvironmentError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"
            )
        client: Client = create_client(url, key)
        return cls(client)

    def _execute(self, operation: str, query: Any) -> list[dict]:
        try:
            return query.execute().data or []
        except Exception as e:
            logger.error(
                "storage_operation_failed",
                extra={"operation": operation, "error": str(e)[:200]},
            )
            raise StorageUnavailable(
                "Storage unavailable", operation=operation,
            ) from e

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    async def get_organization(self, org_id: str) -> Optional[Organization]:
        rows = self._execute(
            "get_organization",
            self.client.table("organizations")
            .select("*")
            .eq("id", org_id)
            .limit(1),
        )
        return Organization(**rows[0]) if rows else None

    async def save_organization(self, org: Organization) -> Organization:
        org.updated_at = datetime.now(timezone.utc)
        self._execute(
            "save_organization",
            self.client.table("organizations")
            .upsert(org.model_dump(mode="json"), on_conflict="id"),
        )
        return org

    async def delete_organization(self, org_id: str) -> None:
        for table in ("org_members", "org_groups", "org_collections"):
            self._execute(
                "delete_organization",
                self.client.table(table).delete().eq("org_id", org_id),
            )
        self._execute(
            "delete_organization",
            self.client.table("organizations").delete().eq("id", org_id),
        )

    async def find_organization_by_license_key(
        self, license_key: str,
    ) -> Optional[Organization]:
        rows = self._execute(
            "find_organization_by_license_key",
            self.client.table("organizations")
            .select("*")
            .eq("license_key", license_key)
            .eq("enabled", True)
            .limit(1),
        )
        return Organization(**rows[0]) if rows else None

    async def replace_api_key(
        self, org_id: str, expected: Optional[str], new: str,
    ) -> bool:
        query = (
            self.client.table("organizations")
            .update({
                "api_key": new,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            })
            .eq("id", org_id)
        )
        if expected is None:
            query = query.is_("api_key", "null")
        else:
            query = query.eq("api_key", expected)
        rows = self._execute("replace_api_key", query)
        return len(rows) == 1

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user(self, user_id: str) -> Optional[User]:
        rows = self._execute(
            "get_user",
            self.client.table("users").select("*").eq("id", user_id).limit(1),
        )
        return User(**rows[0]) if rows else None

    # ------------------------------------------------------------------
    # Memberships
    # ------------------------------------------------------------------

    async def get_membership(
        self, user_id: str, org_id: str,
    ) -> Optional[Membership]:
        rows = self._execute(
            "get_membership",
            self.client.table("org_members")
            .select("*")
            .eq("org_id", org_id)
            .eq("user_id", user_id)
            .limit(1),
        )
        return Membership(**rows[0]) if rows else None

    async def list_memberships(self, org_id: str) -> list[Membership]:
        rows = self._execute(
            "list_memberships",
            self.client.table("org_members")
            .select("*")
            .eq("org_id", org_id)
            .order("created_at"),
        )
        return [Membership(**r) for r in rows]

    async def list_confirmed_memberships_for_user(
        self, user_id: str,
    ) -> list[Membership]:
        rows = self._execute(
            "list_confirmed_memberships_for_user",
            self.client.table("org_members")
            .select("*")
            .eq("user_id", user_id)
            .eq("status", MembershipStatus.CONFIRMED.value),
        )
        return [Membership(**r) for r in rows]

    async def upsert_membership(self, membership: Membership) -> Membership:
        self._execute(
            "upsert_membership",
            self.client.table("org_members")
            .upsert(membership.model_dump(mode="json"), on_conflict="id"),
        )
        return membership

    async def soft_delete_membership(self, membership_id: str) -> None:
        self._execute(
            "soft_delete_membership",
            self.client.table("org_members")
            .update({"status": MembershipStatus.REVOKED.value})
            .eq("id", membership_id),
        )

    async def delete_membership(self, membership_id: str) -> None:
        self._execute(
            "delete_membership",
            self.client.table("org_members").delete().eq("id", membership_id),
        )

    async def count_occupied_seats(self, org_id: str) -> int:
        rows = self._execute(
            "count_occupied_seats",
            self.client.table("org_members")
            .select("id")
            .eq("org_id", org_id)
            .neq("status", MembershipStatus.REVOKED.value),
        )
        return len(rows)

    # ------------------------------------------------------------------
    # Groups & Collections
    # ------------------------------------------------------------------

    async def list_groups(self, org_id: str) -> list[Group]:
        rows = self._execute(
            "list_groups",
            self.client.table("org_groups").select("*").eq("org_id", org_id),
        )
        return [Group(**r) for r in rows]

    async def upsert_group(self, group: Group) -> Group:
        self._execute(
            "upsert_group",
            self.client.table("org_groups")
            .upsert(group.model_dump(mode="json"), on_conflict="id"),
        )
        return group

    async def create_collection(self, collection: Collection) -> Collection:
        self._execute(
            "create_collection",
            self.client.table("org_collections")
            .insert(collection.model_dump(mode="json")),
        )
        return collection


def create_storage(backend: str) -> Storage:
    """Build the storage provider named by settings.storage.backend."""
    if backend == "supabase":
        return SupabaseStorage.from_env()
    return InMemoryStorage()
