"""
Shared fixtures for the organization command tests.

Everything runs against InMemoryStorage and MockPaymentGateway; the
credential verifier compares plain strings so tests don't pay for
bcrypt rounds.
"""

from __future__ import annotations

from typing import Optional

import pytest

from orgguard.config.schema import (
    DeploymentMode,
    GuardConfig,
    LicensingConfig,
    Settings,
)
from orgguard.enterprise.dispatcher import CommandDispatcher
from orgguard.enterprise.mode_gate import DeploymentModeGate
from orgguard.enterprise.models import (
    AuthContext,
    Membership,
    MembershipStatus,
    Organization,
    OrgRole,
    PlanTier,
    User,
)
from orgguard.integrations.credentials import CredentialVerifier
from orgguard.integrations.license_signer import Ed25519LicenseSigner
from orgguard.integrations.payment_gateway import MockPaymentGateway
from orgguard.integrations.storage import InMemoryStorage

INSTALLATION_ID = "3b0f4f6e-9c1d-4a7e-8f25-6d2c1b9e0a77"
PASSWORD = "correct-horse-battery-staple"


# ── Test doubles ─────────────────────────────────────────────


class PlainVerifier(CredentialVerifier):
    """Compares the supplied value to the stored one verbatim."""

    def __init__(self):
        self.checks = 0

    def check_password(self, user: User, supplied_hash: str) -> bool:
        self.checks += 1
        return bool(user.master_password_hash) and supplied_hash == user.master_password_hash


# ── Helpers ──────────────────────────────────────────────────


async def make_org(storage: InMemoryStorage, **fields) -> Organization:
    fields.setdefault("name", "Acme")
    fields.setdefault("billing_email", "billing@acme.test")
    fields.setdefault("plan_tier", PlanTier.TEAMS)
    fields.setdefault("seats", 10)
    fields.setdefault("max_storage_gb", 1)
    org = Organization(**fields)
    await storage.save_organization(org)
    return org


async def add_member(
    storage: InMemoryStorage,
    org: Organization,
    user: Optional[User] = None,
    role: OrgRole = OrgRole.MEMBER,
    status: MembershipStatus = MembershipStatus.CONFIRMED,
    **fields,
) -> Membership:
    membership = Membership(
        org_id=org.id,
        user_id=user.id if user else None,
        email=user.email if user else fields.pop("email", "invitee@acme.test"),
        role=role,
        status=status,
        **fields,
    )
    await storage.upsert_membership(membership)
    return membership


def auth_for(user: User) -> AuthContext:
    return AuthContext(user_id=user.id, email=user.email)


# ── Fixtures ─────────────────────────────────────────────────


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def gateway():
    return MockPaymentGateway()


@pytest.fixture(scope="session")
def signer():
    return Ed25519LicenseSigner.generate()


@pytest.fixture
def verifier():
    return PlainVerifier()


@pytest.fixture
def hosted_gate():
    return DeploymentModeGate(DeploymentMode.HOSTED)


@pytest.fixture
def self_hosted_gate():
    return DeploymentModeGate(DeploymentMode.SELF_HOSTED)


@pytest.fixture
def owner(storage):
    return storage.add_user(User(
        email="owner@acme.test", name="Owner", master_password_hash=PASSWORD,
    ))


@pytest.fixture
def admin(storage):
    return storage.add_user(User(
        email="admin@acme.test", name="Admin", master_password_hash="admin-secret",
    ))


@pytest.fixture
def member(storage):
    return storage.add_user(User(
        email="member@acme.test", name="Member", master_password_hash="member-secret",
    ))


@pytest.fixture
def outsider(storage):
    return storage.add_user(User(
        email="outsider@elsewhere.test", name="Outsider", master_password_hash="x",
    ))


@pytest.fixture
def make_dispatcher(storage, gateway, signer, verifier):
    def _make(mode: DeploymentMode = DeploymentMode.HOSTED) -> CommandDispatcher:
        settings = Settings(
            mode=mode,
            guard=GuardConfig(failure_delay_seconds=0.0),
            licensing=LicensingConfig(
                installation_id=INSTALLATION_ID
                if mode == DeploymentMode.SELF_HOSTED
                else None,
            ),
        )
        return CommandDispatcher.from_settings(
            settings,
            storage=storage,
            gateway=gateway,
            signer=signer,
            verifier=verifier,
        )
    return _make


@pytest.fixture
def hosted(make_dispatcher):
    return make_dispatcher(DeploymentMode.HOSTED)


@pytest.fixture
def self_hosted(make_dispatcher):
    return make_dispatcher(DeploymentMode.SELF_HOSTED)
