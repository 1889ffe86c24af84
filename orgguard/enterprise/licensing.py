"""
License issuance and consumption.

Hosted deployments issue signed licenses for export; self-hosted
installations consume them. A license is bound to one organization and
one installation, and a newer license supersedes the stored
entitlements rather than mutating the old document.

Usage (hosted):
    license = await licenses.generate(org, installation_id)

Usage (self-hosted):
    org = await licenses.apply(owner, license, sharing_key="...")
    await licenses.update(org, newer_license)
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from orgguard.config.schema import LicensingConfig
from orgguard.enterprise.mode_gate import Availability, DeploymentModeGate
from orgguard.enterprise.models import (
    Collection,
    License,
    Membership,
    MembershipStatus,
    Organization,
    OrgRole,
    User,
    get_plan,
)
from orgguard.exceptions import InvalidInputError, InvalidLicense, NotFoundError
from orgguard.integrations.license_signer import LicenseSigner
from orgguard.integrations.payment_gateway import PaymentGateway
from orgguard.integrations.storage import Storage

logger = logging.getLogger(__name__)

# Namespace for license keys derived from organization ids.
LICENSE_KEY_NAMESPACE = uuid.UUID("6f1c3a52-8d0e-4c5b-9a57-3e2d7b41c9a0")


def _parse_installation_id(value: str) -> str:
    try:
        return str(uuid.UUID(str(value)))
    except ValueError as e:
        raise InvalidInputError(
            "Invalid installation id.", field="installation_id",
        ) from e


class LicenseManager:
    """Generates, validates and applies signed organization licenses."""

    def __init__(
        self,
        storage: Storage,
        signer: LicenseSigner,
        gate: DeploymentModeGate,
        config: LicensingConfig,
        gateway: Optional[PaymentGateway] = None,
    ):
        self.storage = storage
        self.signer = signer
        self.gate = gate
        self.config = config
        self.gateway = gateway

    # ── Hosted: issue ────────────────────────────────────────

    async def generate(self, org: Organization, installation_id: str) -> License:
        """
        Issue a license for an installation.

        The claims depend only on the organization, its subscription
        period and the installation id, so generating twice for the same
        state yields the same document.
        """
        self.gate.require(Availability.HOSTED_ONLY, "read-license")
        installation_id = _parse_installation_id(installation_id)

        if not org.enabled or not org.has_subscription or self.gateway is None:
            raise NotFoundError()
        subscription = await self.gateway.get_subscription(org)
        if subscription is None or subscription.canceled:
            raise NotFoundError()

        expires = None
        if subscription.period_end is not None:
            expires = subscription.period_end + timedelta(days=self.config.grace_period_days)

        license = License(
            license_key=org.license_key or uuid.uuid5(LICENSE_KEY_NAMESPACE, org.id).hex,
            organization_id=org.id,
            installation_id=installation_id,
            name=org.name,
            billing_email=org.billing_email,
            business_name=org.business_name,
            plan_tier=org.plan_tier,
            seats=org.seats,
            max_storage_gb=org.max_storage_gb,
            max_collections=org.max_collections,
            use_groups=org.use_groups,
            use_api=org.use_api,
            enabled=org.enabled,
            issued=subscription.period_start or org.created_at,
            expires=expires,
        )
        signed = self.signer.sign(license)
        logger.info(
            "license_generated",
            extra={"org_id": org.id, "installation_id": installation_id},
        )
        return signed

    # ── Self-hosted: consume ─────────────────────────────────

    def _validate(self, license: License) -> None:
        if not self.signer.verify(license):
            raise InvalidLicense("Invalid license.")

        now = datetime.now(timezone.utc)
        if not license.enabled:
            raise InvalidLicense("License is disabled.")
        if license.issued > now:
            raise InvalidLicense("License is not yet valid.")
        if license.is_expired(now):
            raise InvalidLicense("License has expired.")

        if self.config.installation_id is None:
            raise InvalidLicense("This installation has no installation id configured.")
        if license.installation_id != self.config.installation_id:
            raise InvalidLicense("License is for a different installation.")

        plan = get_plan(license.plan_tier)
        if plan is None or plan.disabled:
            raise InvalidLicense("Plan not found.")

    async def _ensure_key_unused(self, license: License, org_id: Optional[str]) -> None:
        existing = await self.storage.find_organization_by_license_key(license.license_key)
        if existing is not None and existing.id != org_id:
            raise InvalidLicense("License is already in use by another organization.")

    @staticmethod
    def _apply_entitlements(org: Organization, license: License) -> None:
        org.name = license.name
        org.billing_email = license.billing_email
        org.business_name = license.business_name
        org.plan_tier = license.plan_tier
        org.seats = license.seats
        org.max_storage_gb = license.max_storage_gb
        org.max_collections = license.max_collections
        org.use_groups = license.use_groups
        org.use_api = license.use_api
        org.enabled = license.enabled
        org.license_key = license.license_key
        org.expiration_date = license.expires

    async def apply(
        self,
        owner: User,
        license: License,
        sharing_key: str,
        collection_name: Optional[str] = None,
        public_key: Optional[str] = None,
        encrypted_private_key: Optional[str] = None,
        org: Optional[Organization] = None,
    ) -> Organization:
        """
        Create the organization described by a license on this installation.

        Passing an existing `org` re-applies the license to it instead,
        with the same checks as `update`.
        """
        self.gate.require(Availability.SELF_HOSTED_ONLY, "create-organization-from-license")
        if org is not None:
            if org.id != license.organization_id:
                raise InvalidLicense("License is for a different organization.")
            return await self.update(org, license)

        if not sharing_key or not sharing_key.strip():
            raise InvalidInputError("Owner key is required.", field="key")

        self._validate(license)
        await self._ensure_key_unused(license, None)
        if await self.storage.get_organization(license.organization_id) is not None:
            raise InvalidLicense("License has already been applied.")

        org = Organization(
            id=license.organization_id,
            name=license.name,
            billing_email=license.billing_email,
            installation_id=license.installation_id,
            public_key=public_key,
            encrypted_private_key=encrypted_private_key,
        )
        self._apply_entitlements(org, license)
        await self.storage.save_organization(org)

        await self.storage.upsert_membership(Membership(
            org_id=org.id,
            user_id=owner.id,
            email=owner.email,
            role=OrgRole.OWNER,
            status=MembershipStatus.CONFIRMED,
            key=sharing_key,
        ))
        if collection_name:
            await self.storage.create_collection(
                Collection(org_id=org.id, name=collection_name)
            )

        logger.info(
            "license_applied",
            extra={"org_id": org.id, "user_id": owner.id},
        )
        return org

    async def update(self, org: Organization, license: License) -> Organization:
        """Supersede the organization's entitlements with a newer license."""
        self.gate.require(Availability.SELF_HOSTED_ONLY, "update-license")
        if license.organization_id != org.id:
            raise InvalidLicense("License is for a different organization.")
        if org.installation_id and license.installation_id != org.installation_id:
            raise InvalidLicense("License is bound to a different installation.")

        self._validate(license)
        await self._ensure_key_unused(license, org.id)

        occupied = await self.storage.count_occupied_seats(org.id)
        if license.seats is not None and occupied > license.seats:
            raise InvalidLicense(
                f"Your organization currently has {occupied} seats filled. "
                f"Your new license only has ({license.seats}) seats. Remove some users."
            )
        if not license.use_groups and await self.storage.list_groups(org.id):
            raise InvalidLicense(
                "Your new license does not allow the groups feature. Remove your groups."
            )

        self._apply_entitlements(org, license)
        org.installation_id = license.installation_id
        await self.storage.save_organization(org)

        logger.info("license_updated", extra={"org_id": org.id})
        return org
