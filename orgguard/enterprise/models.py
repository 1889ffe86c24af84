"""
Enterprise Data Models.

Pydantic models for organizations, memberships, groups, plans,
licenses, billing read-models and import batches.

These models define the multi-tenancy data structures used across
the command layer and its collaborators.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────


class OrgRole(str, Enum):
    """Organization member roles (descending privilege)."""
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"

    @property
    def level(self) -> int:
        """Numeric privilege level (higher = more access)."""
        return {
            OrgRole.OWNER: 100,
            OrgRole.ADMIN: 80,
            OrgRole.MEMBER: 10,
        }[self]

    def has_at_least(self, required: OrgRole) -> bool:
        """Check if this role has at least the privilege of `required`."""
        return self.level >= required.level


class MembershipStatus(str, Enum):
    """Lifecycle of a membership. Only CONFIRMED grants access."""
    INVITED = "invited"
    ACCEPTED = "accepted"
    CONFIRMED = "confirmed"
    REVOKED = "revoked"


class PlanTier(str, Enum):
    """Subscription plans, including retired (legacy) ones."""
    FREE = "free"
    FAMILIES_2019 = "families_2019"
    FAMILIES = "families"
    TEAMS = "teams"
    ENTERPRISE = "enterprise"


class PaymentMethodType(str, Enum):
    CARD = "card"
    BANK_ACCOUNT = "bank_account"
    PAYPAL = "paypal"


# ── Plans ────────────────────────────────────────────────────


class PlanLimits(BaseModel):
    """Entitlements and purchase options of a plan."""

    rank: int = 0
    base_seats: int = 2
    max_additional_seats: Optional[int] = 0
    has_additional_seats_option: bool = False
    has_additional_storage_option: bool = False
    base_storage_gb: Optional[int] = None
    max_collections: Optional[int] = 2
    use_groups: bool = False
    use_api: bool = False
    legacy: bool = False
    disabled: bool = False

    @property
    def is_paid(self) -> bool:
        return self.rank > 0


PLAN_TIER_LIMITS: dict[PlanTier, PlanLimits] = {
    PlanTier.FREE: PlanLimits(
        rank=0,
        base_seats=2,
        max_additional_seats=0,
        max_collections=2,
    ),
    PlanTier.FAMILIES_2019: PlanLimits(
        rank=1,
        base_seats=5,
        max_additional_seats=0,
        has_additional_storage_option=True,
        base_storage_gb=1,
        max_collections=None,
        legacy=True,
    ),
    PlanTier.FAMILIES: PlanLimits(
        rank=1,
        base_seats=6,
        max_additional_seats=0,
        has_additional_storage_option=True,
        base_storage_gb=1,
        max_collections=None,
    ),
    PlanTier.TEAMS: PlanLimits(
        rank=2,
        base_seats=0,
        max_additional_seats=None,
        has_additional_seats_option=True,
        has_additional_storage_option=True,
        base_storage_gb=1,
        max_collections=None,
        use_groups=False,
        use_api=False,
    ),
    PlanTier.ENTERPRISE: PlanLimits(
        rank=3,
        base_seats=0,
        max_additional_seats=None,
        has_additional_seats_option=True,
        has_additional_storage_option=True,
        base_storage_gb=1,
        max_collections=None,
        use_groups=True,
        use_api=True,
    ),
}


def get_plan(tier: PlanTier | str) -> Optional[PlanLimits]:
    """Look up a plan, returning None for unknown tiers."""
    try:
        return PLAN_TIER_LIMITS.get(PlanTier(tier))
    except ValueError:
        return None


# ── Billing Value Objects ────────────────────────────────────


class TaxInfo(BaseModel):
    """Billing address and tax id attached to the payment customer."""

    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    tax_id: Optional[str] = None


class SubscriptionInfo(BaseModel):
    """Snapshot of the external subscription."""

    subscription_id: str
    status: str = "active"
    cancel_at_period_end: bool = False
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    seats: Optional[int] = None
    storage_gb: Optional[int] = None

    @property
    def canceled(self) -> bool:
        """True once the subscription has actually ended."""
        return self.status == "canceled"

    @property
    def pending_cancellation(self) -> bool:
        return self.cancel_at_period_end and not self.canceled


class BillingInfo(BaseModel):
    """Read-model of the customer's billing state."""

    balance_cents: int = 0
    payment_method_type: Optional[PaymentMethodType] = None
    payment_method_description: Optional[str] = None
    upcoming_invoice_cents: Optional[int] = None
    upcoming_invoice_date: Optional[datetime] = None


class PaymentResult(BaseModel):
    """
    Outcome of a billing mutation.

    `client_secret` is set when the processor requires additional
    client-side confirmation (e.g. 3-D Secure) before the charge settles.
    """

    success: bool = True
    client_secret: Optional[str] = None


# ── Organization ─────────────────────────────────────────────


class Organization(BaseModel):
    """An organization (tenant) in the platform."""

    id: str = Field(default_factory=_new_id)
    name: str
    business_name: Optional[str] = None
    billing_email: str
    plan_tier: PlanTier = PlanTier.FREE
    seats: Optional[int] = None
    max_storage_gb: Optional[int] = None
    storage_bytes_used: int = 0
    max_collections: Optional[int] = None
    gateway_customer_id: Optional[str] = None
    gateway_subscription_id: Optional[str] = None
    public_key: Optional[str] = None
    encrypted_private_key: Optional[str] = None
    api_key: Optional[str] = None
    license_key: Optional[str] = None
    installation_id: Optional[str] = None
    use_groups: bool = False
    use_api: bool = False
    enabled: bool = True
    expiration_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Name must be non-empty and reasonable length."""
        v = v.strip()
        if not v:
            raise ValueError("Organization name cannot be empty")
        if len(v) > 256:
            raise ValueError("Organization name must be 256 characters or fewer")
        return v

    @field_validator("billing_email")
    @classmethod
    def validate_billing_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v or len(v) > 256:
            raise ValueError("Billing email must be a valid email address")
        return v

    @property
    def plan(self) -> PlanLimits:
        return PLAN_TIER_LIMITS[self.plan_tier]

    @property
    def has_subscription(self) -> bool:
        return bool(self.gateway_subscription_id)

    @property
    def has_keys(self) -> bool:
        return bool(self.public_key and self.encrypted_private_key)


class OrganizationView(BaseModel):
    """Organization as returned to callers: never carries secrets."""

    id: str
    name: str
    business_name: Optional[str] = None
    billing_email: str
    plan_tier: PlanTier
    seats: Optional[int] = None
    max_storage_gb: Optional[int] = None
    max_collections: Optional[int] = None
    use_groups: bool = False
    use_api: bool = False
    enabled: bool = True
    expiration_date: Optional[datetime] = None

    @classmethod
    def from_org(cls, org: Organization) -> OrganizationView:
        return cls(**org.model_dump(include=set(cls.model_fields)))


class OrganizationKeys(BaseModel):
    """Asymmetric key pair used to share secrets with members."""

    public_key: Optional[str] = None
    encrypted_private_key: Optional[str] = None


class ApiKeyView(BaseModel):
    """The organization API key, returned only after re-verification."""

    api_key: str


class SubscriptionView(BaseModel):
    """Organization plus (hosted only) its live subscription."""

    organization: OrganizationView
    subscription: Optional[SubscriptionInfo] = None
    storage_gb_used: float = 0.0


# ── Users & Membership ───────────────────────────────────────


class User(BaseModel):
    """An authenticated account."""

    id: str = Field(default_factory=_new_id)
    email: str
    name: str = ""
    master_password_hash: str = ""


class Membership(BaseModel):
    """A user's (or pending invitee's) membership of an organization."""

    id: str = Field(default_factory=_new_id)
    org_id: str
    user_id: Optional[str] = None
    email: str = ""
    role: OrgRole = OrgRole.MEMBER
    status: MembershipStatus = MembershipStatus.INVITED
    external_id: Optional[str] = None
    key: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_confirmed(self) -> bool:
        return self.status == MembershipStatus.CONFIRMED

    @property
    def occupies_seat(self) -> bool:
        return self.status != MembershipStatus.REVOKED


class ProfileOrganization(BaseModel):
    """An organization as seen from one member's profile."""

    id: str
    name: str
    role: OrgRole
    status: MembershipStatus
    plan_tier: PlanTier
    enabled: bool
    key: Optional[str] = None


class Group(BaseModel):
    """A named set of memberships, usually mirrored from a directory."""

    id: str = Field(default_factory=_new_id)
    org_id: str
    name: str
    external_id: Optional[str] = None
    member_ids: list[str] = Field(default_factory=list)


class Collection(BaseModel):
    """A container for shared items inside an organization."""

    id: str = Field(default_factory=_new_id)
    org_id: str
    name: str


class AuthContext(BaseModel):
    """Resolved identity of the caller, produced by the authentication layer."""

    user_id: str
    email: str = ""


# ── License ──────────────────────────────────────────────────


class License(BaseModel):
    """
    A signed entitlement document for a self-hosted installation.

    Everything except `signature` is covered by the signature; see
    `canonical_bytes()`.
    """

    license_key: str
    organization_id: str
    installation_id: str
    name: str
    billing_email: str
    business_name: Optional[str] = None
    plan_tier: PlanTier
    seats: Optional[int] = None
    max_storage_gb: Optional[int] = None
    max_collections: Optional[int] = None
    use_groups: bool = False
    use_api: bool = False
    enabled: bool = True
    issued: datetime
    expires: Optional[datetime] = None
    version: int = 1
    signature: Optional[str] = None

    def claims(self) -> dict[str, Any]:
        """All signed fields as JSON-compatible values."""
        return self.model_dump(mode="json", exclude={"signature"})

    def canonical_bytes(self) -> bytes:
        """Deterministic serialization the signature is computed over."""
        return json.dumps(
            self.claims(), sort_keys=True, separators=(",", ":")
        ).encode("utf-8")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires is None:
            return False
        return (now or _utcnow()) > self.expires


# ── Import Batch ─────────────────────────────────────────────


class ImportedGroup(BaseModel):
    """A group record from an external directory."""

    external_id: str
    name: str
    member_external_ids: list[str] = Field(default_factory=list)

    @field_validator("external_id")
    @classmethod
    def validate_external_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Group external id cannot be empty")
        return v


class ImportedUser(BaseModel):
    """A user record from an external directory."""

    external_id: str
    email: str = ""
    deleted: bool = False

    @field_validator("external_id")
    @classmethod
    def validate_external_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("User external id cannot be empty")
        return v


class ImportBatch(BaseModel):
    """A directory sync payload to merge into an organization."""

    groups: list[ImportedGroup] = Field(default_factory=list)
    users: list[ImportedUser] = Field(default_factory=list)
    overwrite_existing: bool = False
    large_import: bool = False

    @property
    def active_users(self) -> list[ImportedUser]:
        """Users to add or update (not flagged deleted)."""
        return [u for u in self.users if not u.deleted]

    @property
    def removed_external_ids(self) -> list[str]:
        """External ids of users flagged deleted."""
        return [u.external_id for u in self.users if u.deleted]
