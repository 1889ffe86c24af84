"""
Organization lifecycle: signup, profile updates, deletion, leaving,
listing and sharing keys.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError

from orgguard.enterprise.mode_gate import DeploymentModeGate
from orgguard.enterprise.models import (
    Collection,
    Membership,
    MembershipStatus,
    Organization,
    OrganizationKeys,
    OrgRole,
    ProfileOrganization,
    TaxInfo,
    User,
    get_plan,
)
from orgguard.enterprise.requests import (
    OrganizationCreateRequest,
    OrganizationKeysRequest,
    OrganizationUpdateRequest,
)
from orgguard.exceptions import (
    BillingError,
    InvalidInputError,
    InvariantViolation,
    NotFoundError,
)
from orgguard.integrations.payment_gateway import PaymentGateway
from orgguard.integrations.storage import Storage

logger = logging.getLogger(__name__)


def _build_org(**fields) -> Organization:
    try:
        return Organization(**fields)
    except ValidationError as e:
        error = e.errors()[0]
        raise InvalidInputError(
            error["msg"], field=str(error["loc"][0]) if error["loc"] else None,
        ) from e


class OrganizationService:
    """Create, update, delete and leave organizations."""

    def __init__(
        self,
        storage: Storage,
        gateway: PaymentGateway,
        gate: DeploymentModeGate,
    ):
        self.storage = storage
        self.gateway = gateway
        self.gate = gate

    # ── Create ───────────────────────────────────────────────

    async def create(
        self, owner: User, request: OrganizationCreateRequest,
    ) -> Organization:
        """
        Hosted signup.

        Paid plans create the gateway customer and subscription before
        anything is stored, so a declined payment leaves nothing behind.
        """
        self.gate.require_hosted("create-organization")
        plan = get_plan(request.plan_tier)
        if plan is None or plan.legacy or plan.disabled:
            raise InvalidInputError("Invalid plan selected.", field="plan_tier")
        if not request.owner_key.strip():
            raise InvalidInputError("Owner key is required.", field="owner_key")

        if request.additional_seats and not plan.has_additional_seats_option:
            raise BillingError("Plan does not allow additional seats.")
        if (
            plan.max_additional_seats is not None
            and request.additional_seats > plan.max_additional_seats
        ):
            raise BillingError(
                f"Selected plan allows a maximum of "
                f"{plan.max_additional_seats} additional seats."
            )
        if request.additional_storage_gb and not plan.has_additional_storage_option:
            raise BillingError("Plan does not allow additional storage.")

        seats = plan.base_seats + request.additional_seats
        if seats <= 0:
            raise BillingError("You must have at least 1 seat.")

        org = _build_org(
            name=request.name,
            billing_email=request.billing_email,
            business_name=request.business_name,
            plan_tier=request.plan_tier,
            seats=seats,
            max_storage_gb=(
                plan.base_storage_gb + request.additional_storage_gb
                if plan.base_storage_gb is not None
                else None
            ),
            max_collections=plan.max_collections,
            use_groups=plan.use_groups,
            use_api=plan.use_api,
            public_key=request.public_key,
            encrypted_private_key=request.encrypted_private_key,
        )

        if plan.is_paid:
            if not request.payment_token or request.payment_method_type is None:
                raise InvalidInputError(
                    "Payment is required for paid plans.", field="payment_token",
                )
            customer_id, subscription_id = await self.gateway.create_customer(
                org,
                request.plan_tier,
                request.additional_seats,
                request.additional_storage_gb,
                request.payment_token,
                request.payment_method_type,
                request.tax_info or TaxInfo(),
            )
            org.gateway_customer_id = customer_id
            org.gateway_subscription_id = subscription_id

        await self.storage.save_organization(org)
        await self.storage.upsert_membership(Membership(
            org_id=org.id,
            user_id=owner.id,
            email=owner.email,
            role=OrgRole.OWNER,
            status=MembershipStatus.CONFIRMED,
            key=request.owner_key,
        ))
        if request.collection_name:
            await self.storage.create_collection(
                Collection(org_id=org.id, name=request.collection_name)
            )

        logger.info(
            "organization_created",
            extra={
                "org_id": org.id,
                "user_id": owner.id,
                "plan_tier": org.plan_tier.value,
            },
        )
        return org

    # ── Update / delete ──────────────────────────────────────

    async def update(
        self, org: Organization, request: OrganizationUpdateRequest,
    ) -> Organization:
        updated = _build_org(**{
            **org.model_dump(),
            "name": request.name,
            "business_name": request.business_name,
            "billing_email": request.billing_email,
        })

        billing_changed = (
            updated.business_name != org.business_name
            or updated.billing_email != org.billing_email
        )
        if self.gate.hosted and billing_changed and updated.gateway_customer_id:
            await self.gateway.update_customer(updated)

        await self.storage.save_organization(updated)
        logger.info("organization_updated", extra={"org_id": org.id})
        return updated

    async def delete(self, org: Organization) -> None:
        """Cancel any live subscription immediately, then remove the organization."""
        if self.gate.hosted and org.has_subscription:
            subscription = await self.gateway.get_subscription(org)
            if subscription is not None and not subscription.canceled:
                await self.gateway.cancel_subscription(org, at_period_end=False)

        await self.storage.delete_organization(org.id)
        logger.info("organization_deleted", extra={"org_id": org.id})

    # ── Membership ───────────────────────────────────────────

    async def leave(self, org: Organization, user_id: str) -> None:
        membership = await self.storage.get_membership(user_id, org.id)
        if membership is None:
            raise NotFoundError()

        if membership.role == OrgRole.OWNER and membership.is_confirmed:
            owners = [
                m for m in await self.storage.list_memberships(org.id)
                if m.role == OrgRole.OWNER and m.is_confirmed
            ]
            if len(owners) <= 1:
                raise InvariantViolation(
                    "Organization must have at least one confirmed owner."
                )

        await self.storage.delete_membership(membership.id)
        logger.info("organization_left", extra={"org_id": org.id, "user_id": user_id})

    async def list_for_user(self, user_id: str) -> list[ProfileOrganization]:
        profiles: list[ProfileOrganization] = []
        for membership in await self.storage.list_confirmed_memberships_for_user(user_id):
            org = await self.storage.get_organization(membership.org_id)
            if org is None:
                continue
            profiles.append(ProfileOrganization(
                id=org.id,
                name=org.name,
                role=membership.role,
                status=membership.status,
                plan_tier=org.plan_tier,
                enabled=org.enabled,
                key=membership.key,
            ))
        return profiles

    # ── Keys ─────────────────────────────────────────────────

    async def get_keys(self, org: Organization) -> OrganizationKeys:
        return OrganizationKeys(
            public_key=org.public_key,
            encrypted_private_key=org.encrypted_private_key,
        )

    async def set_keys(
        self, org: Organization, request: OrganizationKeysRequest,
    ) -> OrganizationKeys:
        if org.has_keys:
            raise InvalidInputError("Organization Keys already exist.", field="public_key")

        org.public_key = request.public_key
        org.encrypted_private_key = request.encrypted_private_key
        await self.storage.save_organization(org)
        logger.info("organization_keys_set", extra={"org_id": org.id})
        return await self.get_keys(org)
