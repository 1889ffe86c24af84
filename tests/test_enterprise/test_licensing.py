"""
Tests for license issuance (hosted) and consumption (self-hosted).

A hosted LicenseManager issues a license that a self-hosted manager,
with its own storage, then applies and updates.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from orgguard.config.schema import LicensingConfig
from orgguard.enterprise.licensing import LicenseManager
from orgguard.enterprise.models import (
    Group,
    License,
    OrgRole,
    PlanTier,
)
from orgguard.exceptions import (
    InvalidInputError,
    InvalidLicense,
    ModeNotSupported,
    NotFoundError,
)
from orgguard.integrations.license_signer import Ed25519LicenseSigner
from orgguard.integrations.storage import InMemoryStorage

from .conftest import INSTALLATION_ID, add_member, make_org

OTHER_INSTALLATION = "0a4f9c2e-7b13-4d8a-9e6f-5c1b2d3e4f50"


@pytest.fixture
def issuer(storage, signer, gateway, hosted_gate):
    return LicenseManager(
        storage, signer, hosted_gate, LicensingConfig(grace_period_days=60), gateway,
    )


@pytest.fixture
def installation_storage():
    return InMemoryStorage()


@pytest.fixture
def installation(installation_storage, signer, self_hosted_gate):
    verify_only = Ed25519LicenseSigner(signer._public_key)
    return LicenseManager(
        installation_storage,
        verify_only,
        self_hosted_gate,
        LicensingConfig(installation_id=INSTALLATION_ID),
    )


@pytest.fixture
async def enterprise_org(storage, gateway):
    org = await make_org(storage, plan_tier=PlanTier.ENTERPRISE, seats=20, use_groups=True)
    gateway.add_subscription(org)
    await storage.save_organization(org)
    return org


@pytest.fixture
async def license(issuer, enterprise_org):
    return await issuer.generate(enterprise_org, INSTALLATION_ID)


def _signed(signer, **claims) -> License:
    now = datetime.now(timezone.utc)
    fields = dict(
        license_key="lk-manual",
        organization_id="8c9b7a6d-5e4f-4a3b-8c2d-1e0f9a8b7c6d",
        installation_id=INSTALLATION_ID,
        name="Manual",
        billing_email="m@acme.test",
        plan_tier=PlanTier.ENTERPRISE,
        seats=5,
        issued=now - timedelta(days=1),
        expires=now + timedelta(days=30),
    )
    fields.update(claims)
    return signer.sign(License(**fields))


# ── Hosted: generate ─────────────────────────────────────────


class TestGenerate:
    @pytest.mark.asyncio
    async def test_license_claims(self, issuer, gateway, enterprise_org, license):
        sub = gateway.subscriptions[enterprise_org.gateway_subscription_id]
        assert license.organization_id == enterprise_org.id
        assert license.installation_id == INSTALLATION_ID
        assert license.seats == 20
        assert license.use_groups
        assert license.expires == sub.period_end + timedelta(days=60)
        assert issuer.signer.verify(license)

    @pytest.mark.asyncio
    async def test_deterministic(self, issuer, enterprise_org, license):
        again = await issuer.generate(enterprise_org, INSTALLATION_ID)
        assert again == license

    @pytest.mark.asyncio
    async def test_bad_installation_id(self, issuer, enterprise_org):
        with pytest.raises(InvalidInputError):
            await issuer.generate(enterprise_org, "nope")

    @pytest.mark.asyncio
    async def test_no_subscription(self, issuer, storage):
        org = await make_org(storage, plan_tier=PlanTier.FREE)
        with pytest.raises(NotFoundError):
            await issuer.generate(org, INSTALLATION_ID)

    @pytest.mark.asyncio
    async def test_canceled_subscription(self, issuer, gateway, enterprise_org):
        await gateway.cancel_subscription(enterprise_org, at_period_end=False)
        with pytest.raises(NotFoundError):
            await issuer.generate(enterprise_org, INSTALLATION_ID)

    @pytest.mark.asyncio
    async def test_not_available_self_hosted(self, installation, enterprise_org):
        with pytest.raises(ModeNotSupported):
            await installation.generate(enterprise_org, INSTALLATION_ID)


# ── Self-hosted: apply ───────────────────────────────────────


class TestApply:
    @pytest.mark.asyncio
    async def test_creates_org_and_owner(
        self, installation, installation_storage, owner, license,
    ):
        org = await installation.apply(owner, license, "sharing-key", collection_name="Default")

        assert org.id == license.organization_id
        assert org.plan_tier == PlanTier.ENTERPRISE
        assert org.seats == 20
        assert org.license_key == license.license_key
        assert org.expiration_date == license.expires

        membership = await installation_storage.get_membership(owner.id, org.id)
        assert membership.role == OrgRole.OWNER
        assert membership.is_confirmed
        assert membership.key == "sharing-key"
        assert [c.name for c in installation_storage.collections_for(org.id)] == ["Default"]

    @pytest.mark.asyncio
    async def test_tampered_license(self, installation, owner, license):
        tampered = license.model_copy(update={"seats": 9999})
        with pytest.raises(InvalidLicense, match="Invalid license"):
            await installation.apply(owner, tampered, "k")

    @pytest.mark.asyncio
    async def test_unsigned_license(self, installation, owner, license):
        with pytest.raises(InvalidLicense):
            await installation.apply(owner, license.model_copy(update={"signature": None}), "k")

    @pytest.mark.asyncio
    async def test_other_installation(self, issuer, installation, owner, enterprise_org):
        foreign = await issuer.generate(enterprise_org, OTHER_INSTALLATION)
        with pytest.raises(InvalidLicense, match="different installation"):
            await installation.apply(owner, foreign, "k")

    @pytest.mark.asyncio
    async def test_expired(self, installation, owner, signer):
        past = datetime.now(timezone.utc) - timedelta(days=10)
        expired = _signed(signer, issued=past - timedelta(days=30), expires=past)
        with pytest.raises(InvalidLicense, match="expired"):
            await installation.apply(owner, expired, "k")

    @pytest.mark.asyncio
    async def test_not_yet_valid(self, installation, owner, signer):
        future = _signed(signer, issued=datetime.now(timezone.utc) + timedelta(days=1))
        with pytest.raises(InvalidLicense, match="not yet valid"):
            await installation.apply(owner, future, "k")

    @pytest.mark.asyncio
    async def test_disabled(self, installation, owner, signer):
        with pytest.raises(InvalidLicense, match="disabled"):
            await installation.apply(owner, _signed(signer, enabled=False), "k")

    @pytest.mark.asyncio
    async def test_applied_once(self, installation, owner, license):
        await installation.apply(owner, license, "k")
        with pytest.raises(InvalidLicense):
            await installation.apply(owner, license, "k")

    @pytest.mark.asyncio
    async def test_requires_sharing_key(self, installation, owner, license):
        with pytest.raises(InvalidInputError):
            await installation.apply(owner, license, "  ")

    @pytest.mark.asyncio
    async def test_no_installation_id_configured(
        self, installation_storage, signer, self_hosted_gate, owner, license,
    ):
        manager = LicenseManager(
            installation_storage, signer, self_hosted_gate, LicensingConfig(),
        )
        with pytest.raises(InvalidLicense, match="no installation id"):
            await manager.apply(owner, license, "k")

    @pytest.mark.asyncio
    async def test_not_available_hosted(self, issuer, owner, license):
        with pytest.raises(ModeNotSupported):
            await issuer.apply(owner, license, "k")

    def test_verify_only_signer_cannot_issue(self, installation, license):
        assert not installation.signer.can_sign
        with pytest.raises(ValueError):
            installation.signer.sign(license)


# ── Self-hosted: update ──────────────────────────────────────


class TestUpdate:
    @pytest.mark.asyncio
    async def test_newer_license_supersedes(self, installation, owner, signer, license):
        org = await installation.apply(owner, license, "k")
        newer = signer.sign(license.model_copy(update={"seats": 50, "signature": None}))

        updated = await installation.update(org, newer)
        assert updated.seats == 50

    @pytest.mark.asyncio
    async def test_other_organization(self, installation, owner, signer, license):
        org = await installation.apply(owner, license, "k")
        with pytest.raises(InvalidLicense, match="different organization"):
            await installation.update(org, _signed(signer))

    @pytest.mark.asyncio
    async def test_license_bound_to_other_installation(
        self, installation, installation_storage, owner, signer, self_hosted_gate, license,
    ):
        org = await installation.apply(owner, license, "k")
        moved = LicenseManager(
            installation_storage,
            Ed25519LicenseSigner(signer._public_key),
            self_hosted_gate,
            LicensingConfig(installation_id=OTHER_INSTALLATION),
        )
        foreign = signer.sign(license.model_copy(
            update={"installation_id": OTHER_INSTALLATION, "seats": 50, "signature": None},
        ))

        with pytest.raises(InvalidLicense, match="bound to a different installation"):
            await moved.update(org, foreign)
        stored = await installation_storage.get_organization(org.id)
        assert stored.installation_id == INSTALLATION_ID
        assert stored.seats == 20

    @pytest.mark.asyncio
    async def test_fewer_seats_than_occupied(
        self, installation, installation_storage, owner, signer, license,
    ):
        org = await installation.apply(owner, license, "k")
        for i in range(3):
            await add_member(installation_storage, org, None, email=f"u{i}@acme.test")

        smaller = signer.sign(license.model_copy(update={"seats": 2, "signature": None}))
        with pytest.raises(InvalidLicense, match="currently has 4 seats filled"):
            await installation.update(org, smaller)
        assert (await installation_storage.get_organization(org.id)).seats == 20

    @pytest.mark.asyncio
    async def test_groups_must_be_allowed(
        self, installation, installation_storage, owner, signer, license,
    ):
        org = await installation.apply(owner, license, "k")
        await installation_storage.upsert_group(Group(org_id=org.id, name="eng"))

        no_groups = signer.sign(license.model_copy(update={"use_groups": False, "signature": None}))
        with pytest.raises(InvalidLicense, match="groups feature"):
            await installation.update(org, no_groups)

    @pytest.mark.asyncio
    async def test_apply_with_existing_org_updates(self, installation, owner, signer, license):
        org = await installation.apply(owner, license, "k")
        newer = signer.sign(license.model_copy(update={"seats": 30, "signature": None}))
        updated = await installation.apply(owner, newer, "k", org=org)
        assert updated.seats == 30
