"""
Bulk directory import.

Merges groups and users from an external directory (keyed by external
id) into an organization's memberships. The merge is computed as a
plan first; invariants are checked against the plan and only then are
records written. Unchanged records are never written, so replaying a
batch is harmless.

No multi-record transaction is attempted: if storage fails partway the
applied subset stays, and the caller replays the batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from orgguard.config.schema import ImportConfig
from orgguard.enterprise.mode_gate import DeploymentModeGate
from orgguard.enterprise.models import (
    Group,
    ImportBatch,
    Membership,
    MembershipStatus,
    Organization,
    OrgRole,
)
from orgguard.exceptions import BillingError, InvalidInputError, InvariantViolation
from orgguard.integrations.storage import Storage

logger = logging.getLogger(__name__)


@dataclass
class ImportPlan:
    """Writes an import would perform."""

    new_members: list[Membership] = field(default_factory=list)
    updated_members: list[Membership] = field(default_factory=list)
    revoked_members: list[Membership] = field(default_factory=list)
    new_groups: list[Group] = field(default_factory=list)
    updated_groups: list[Group] = field(default_factory=list)
    revived: int = 0

    @property
    def is_empty(self) -> bool:
        return not (
            self.new_members or self.updated_members or self.revoked_members
            or self.new_groups or self.updated_groups
        )


@dataclass
class ImportResult:
    """Counts reported back to the caller."""

    users_added: int = 0
    users_updated: int = 0
    users_revoked: int = 0
    groups_added: int = 0
    groups_updated: int = 0


class BulkImportProcessor:
    """Plans and applies directory imports."""

    def __init__(
        self,
        storage: Storage,
        gate: DeploymentModeGate,
        config: ImportConfig,
    ):
        self.storage = storage
        self.gate = gate
        self.config = config

    def check_size(self, batch: ImportBatch) -> None:
        """Hosted deployments cap batch size unless the batch is flagged large."""
        if self.gate.self_hosted or batch.large_import:
            return
        limit = self.config.max_batch_size
        if len(batch.groups) > limit or len(batch.active_users) > limit:
            raise InvalidInputError(
                "You cannot import this much data at once.", field="users",
            )

    async def plan(self, org: Organization, batch: ImportBatch) -> ImportPlan:
        """Compute the writes for `batch` and check them. Performs no writes."""
        self.check_size(batch)
        if batch.groups and not org.use_groups:
            raise InvalidInputError("Organization cannot use groups.", field="groups")

        members = await self.storage.list_memberships(org.id)
        by_external = {m.external_id: m for m in members if m.external_id}
        by_email = {
            m.email.lower(): m
            for m in members
            if m.email and m.status != MembershipStatus.REVOKED
        }

        plan = ImportPlan()
        active_ids: set[str] = set()

        for user in batch.active_users:
            if user.external_id in active_ids:
                continue
            active_ids.add(user.external_id)

            existing = by_external.get(user.external_id)
            if existing is not None:
                if not batch.overwrite_existing:
                    continue
                changed = False
                if (
                    user.email
                    and existing.user_id is None
                    and existing.email.lower() != user.email.lower()
                    and user.email.lower() not in by_email
                ):
                    by_email.pop(existing.email.lower(), None)
                    existing.email = user.email.lower()
                    by_email[existing.email] = existing
                    changed = True
                if existing.status == MembershipStatus.REVOKED:
                    existing.status = MembershipStatus.INVITED
                    plan.revived += 1
                    changed = True
                if changed:
                    plan.updated_members.append(existing)
                continue

            email = user.email.strip().lower()
            linked = by_email.get(email) if email else None
            if linked is not None and linked.external_id:
                # Address already held under another directory id
                logger.warning(
                    "import_user_skipped",
                    extra={
                        "org_id": org.id,
                        "external_id": user.external_id,
                        "reason": "duplicate_email",
                    },
                )
                continue
            if linked is not None:
                linked.external_id = user.external_id
                by_external[user.external_id] = linked
                plan.updated_members.append(linked)
                continue

            if not email:
                raise InvalidInputError(
                    f"User {user.external_id} has no email address.", field="users",
                )
            membership = Membership(
                org_id=org.id,
                email=email,
                role=OrgRole.MEMBER,
                status=MembershipStatus.INVITED,
                external_id=user.external_id,
            )
            by_external[user.external_id] = membership
            by_email[email] = membership
            plan.new_members.append(membership)

        for external_id in batch.removed_external_ids:
            if external_id in active_ids:
                continue
            existing = by_external.get(external_id)
            if existing is not None and existing.status != MembershipStatus.REVOKED:
                plan.revoked_members.append(existing)

        self._check_owners(members, plan)
        self._check_seats(org, members, plan)
        await self._plan_groups(org, batch, by_external, plan)
        return plan

    @staticmethod
    def _check_owners(members: list[Membership], plan: ImportPlan) -> None:
        revoked = {m.id for m in plan.revoked_members}
        owners = [
            m for m in members
            if m.role == OrgRole.OWNER and m.status == MembershipStatus.CONFIRMED
        ]
        if owners and all(m.id in revoked for m in owners):
            raise InvariantViolation(
                "Organization must have at least one confirmed owner."
            )

    @staticmethod
    def _check_seats(
        org: Organization, members: list[Membership], plan: ImportPlan,
    ) -> None:
        if org.seats is None:
            return
        revoked_ids = {m.id for m in plan.revoked_members}
        # Counts memberships revived by the plan, which are no longer REVOKED.
        occupied = sum(
            1 for m in members if m.occupies_seat and m.id not in revoked_ids
        )
        needed = occupied + len(plan.new_members)
        if needed > org.seats and (plan.new_members or plan.revived):
            raise BillingError(
                f"You have reached the maximum number of users "
                f"({org.seats}) for this organization."
            )

    async def _plan_groups(
        self,
        org: Organization,
        batch: ImportBatch,
        by_external: dict[str, Membership],
        plan: ImportPlan,
    ) -> None:
        if not batch.groups:
            return
        revoked = {m.id for m in plan.revoked_members}
        existing_groups = {
            g.external_id: g
            for g in await self.storage.list_groups(org.id)
            if g.external_id
        }

        seen: set[str] = set()
        for imported in batch.groups:
            if imported.external_id in seen:
                continue
            seen.add(imported.external_id)

            member_ids: list[str] = []
            for ext in imported.member_external_ids:
                m = by_external.get(ext)
                if m is None or m.id in revoked or m.status == MembershipStatus.REVOKED:
                    continue
                if m.id not in member_ids:
                    member_ids.append(m.id)

            group = existing_groups.get(imported.external_id)
            if group is None:
                plan.new_groups.append(Group(
                    org_id=org.id,
                    name=imported.name,
                    external_id=imported.external_id,
                    member_ids=member_ids,
                ))
                continue
            if not batch.overwrite_existing:
                continue
            if group.name != imported.name or set(group.member_ids) != set(member_ids):
                group.name = imported.name
                group.member_ids = member_ids
                plan.updated_groups.append(group)

    async def import_batch(self, org: Organization, batch: ImportBatch) -> ImportResult:
        """Plan, check, then apply a directory import."""
        plan = await self.plan(org, batch)

        for membership in plan.new_members + plan.updated_members:
            await self.storage.upsert_membership(membership)
        for membership in plan.revoked_members:
            await self.storage.soft_delete_membership(membership.id)
        for group in plan.new_groups + plan.updated_groups:
            await self.storage.upsert_group(group)

        result = ImportResult(
            users_added=len(plan.new_members),
            users_updated=len(plan.updated_members),
            users_revoked=len(plan.revoked_members),
            groups_added=len(plan.new_groups),
            groups_updated=len(plan.updated_groups),
        )
        logger.info(
            "import_applied",
            extra={
                "org_id": org.id,
                "users_added": result.users_added,
                "users_revoked": result.users_revoked,
                "groups_added": result.groups_added,
            },
        )
        return result
