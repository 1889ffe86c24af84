"""
Storage collaborator for orgguard.

The command layer never touches a database directly: it reaches
persistence through the `Storage` interface below. Two providers ship
with the package:

- InMemoryStorage → dict-backed, for development and tests
- SupabaseStorage → Supabase tables (see supabase_store.py)

Every method may raise StorageUnavailable; the core propagates it.

Usage:
    storage = InMemoryStorage()
    await storage.save_organization(org)
    membership = await storage.get_membership(user_id, org.id)
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Optional

from orgguard.enterprise.models import (
    Collection,
    Group,
    Membership,
    MembershipStatus,
    Organization,
    User,
)


# ---------------------------------------------------------------------------
# Abstract Interface
# ---------------------------------------------------------------------------


class Storage(ABC):
    """Abstract persistence provider for organizations and memberships."""

    # ─── Organizations ──────────────────────────────────────────────

    @abstractmethod
    async def get_organization(self, org_id: str) -> Optional[Organization]:
        """Return the organization, or None if it does not exist."""
        ...

    @abstractmethod
    async def save_organization(self, org: Organization) -> Organization:
        """Insert or replace an organization."""
        ...

    @abstractmethod
    async def delete_organization(self, org_id: str) -> None:
        """Remove an organization and everything scoped to it."""
        ...

    @abstractmethod
    async def find_organization_by_license_key(
        self, license_key: str,
    ) -> Optional[Organization]:
        """Return the enabled organization using a license key, if any."""
        ...

    @abstractmethod
    async def replace_api_key(
        self, org_id: str, expected: Optional[str], new: str,
    ) -> bool:
        """
        Atomically swap the organization API key.

        Succeeds only if the stored key still equals `expected`.
        Returns False when another writer got there first.
        """
        ...

    # ─── Users ──────────────────────────────────────────────────────

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        ...

    # ─── Memberships ────────────────────────────────────────────────

    @abstractmethod
    async def get_membership(
        self, user_id: str, org_id: str,
    ) -> Optional[Membership]:
        ...

    @abstractmethod
    async def list_memberships(self, org_id: str) -> list[Membership]:
        ...

    @abstractmethod
    async def list_confirmed_memberships_for_user(
        self, user_id: str,
    ) -> list[Membership]:
        ...

    @abstractmethod
    async def upsert_membership(self, membership: Membership) -> Membership:
        ...

    @abstractmethod
    async def soft_delete_membership(self, membership_id: str) -> None:
        """Mark a membership REVOKED without removing it."""
        ...

    @abstractmethod
    async def delete_membership(self, membership_id: str) -> None:
        ...

    @abstractmethod
    async def count_occupied_seats(self, org_id: str) -> int:
        """Count memberships that are not revoked."""
        ...

    # ─── Groups & Collections ───────────────────────────────────────

    @abstractmethod
    async def list_groups(self, org_id: str) -> list[Group]:
        ...

    @abstractmethod
    async def upsert_group(self, group: Group) -> Group:
        ...

    @abstractmethod
    async def create_collection(self, collection: Collection) -> Collection:
        ...


# ---------------------------------------------------------------------------
# In-memory Provider (Development / Testing)
# ---------------------------------------------------------------------------


class InMemoryStorage(Storage):
    """
    Dict-backed storage.

    Records are copied on the way in and out, so callers only ever hold
    a snapshot for the duration of one request, as with a real database.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._orgs: dict[str, Organization] = {}
        self._users: dict[str, User] = {}
        self._memberships: dict[str, Membership] = {}
        self._groups: dict[str, Group] = {}
        self._collections: dict[str, Collection] = {}

    # ─── Seeding helpers ────────────────────────────────────────────

    def add_user(self, user: User) -> User:
        with self._lock:
            self._users[user.id] = user.model_copy(deep=True)
        return user

    def collections_for(self, org_id: str) -> list[Collection]:
        return [
            c.model_copy(deep=True)
            for c in self._collections.values()
            if c.org_id == org_id
        ]

    # ─── Organizations ──────────────────────────────────────────────

    async def get_organization(self, org_id: str) -> Optional[Organization]:
        org = self._orgs.get(org_id)
        return org.model_copy(deep=True) if org else None

    async def save_organization(self, org: Organization) -> Organization:
        with self._lock:
            self._orgs[org.id] = org.model_copy(deep=True)
        return org

    async def delete_organization(self, org_id: str) -> None:
        with self._lock:
            self._orgs.pop(org_id, None)
            for store in (self._memberships, self._groups, self._collections):
                for key in [k for k, v in store.items() if v.org_id == org_id]:
                    del store[key]

    async def find_organization_by_license_key(
        self, license_key: str,
    ) -> Optional[Organization]:
        for org in self._orgs.values():
            if org.enabled and org.license_key == license_key:
                return org.model_copy(deep=True)
        return None

    async def replace_api_key(
        self, org_id: str, expected: Optional[str], new: str,
    ) -> bool:
        with self._lock:
            org = self._orgs.get(org_id)
            if org is None or org.api_key != expected:
                return False
            self._orgs[org_id] = org.model_copy(update={"api_key": new})
        return True

    # ─── Users ──────────────────────────────────────────────────────

    async def get_user(self, user_id: str) -> Optional[User]:
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user else None

    # ─── Memberships ────────────────────────────────────────────────

    async def get_membership(
        self, user_id: str, org_id: str,
    ) -> Optional[Membership]:
        for m in self._memberships.values():
            if m.user_id == user_id and m.org_id == org_id:
                return m.model_copy(deep=True)
        return None

    async def list_memberships(self, org_id: str) -> list[Membership]:
        return [
            m.model_copy(deep=True)
            for m in self._memberships.values()
            if m.org_id == org_id
        ]

    async def list_confirmed_memberships_for_user(
        self, user_id: str,
    ) -> list[Membership]:
        return [
            m.model_copy(deep=True)
            for m in self._memberships.values()
            if m.user_id == user_id and m.is_confirmed
        ]

    async def upsert_membership(self, membership: Membership) -> Membership:
        with self._lock:
            self._memberships[membership.id] = membership.model_copy(deep=True)
        return membership

    async def soft_delete_membership(self, membership_id: str) -> None:
        with self._lock:
            m = self._memberships.get(membership_id)
            if m is not None:
                self._memberships[membership_id] = m.model_copy(
                    update={"status": MembershipStatus.REVOKED}
                )

    async def delete_membership(self, membership_id: str) -> None:
        with self._lock:
            self._memberships.pop(membership_id, None)
            for group in self._groups.values():
                if membership_id in group.member_ids:
                    group.member_ids.remove(membership_id)

    async def count_occupied_seats(self, org_id: str) -> int:
        return sum(
            1 for m in self._memberships.values()
            if m.org_id == org_id and m.occupies_seat
        )

    # ─── Groups & Collections ───────────────────────────────────────

    async def list_groups(self, org_id: str) -> list[Group]:
        return [
            g.model_copy(deep=True)
            for g in self._groups.values()
            if g.org_id == org_id
        ]

    async def upsert_group(self, group: Group) -> Group:
        with self._lock:
            self._groups[group.id] = group.model_copy(deep=True)
        return group

    async def create_collection(self, collection: Collection) -> Collection:
        with self._lock:
            self._collections[collection.id] = collection.model_copy(deep=True)
        return collection
