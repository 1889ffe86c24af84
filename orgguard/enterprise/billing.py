"""
Billing orchestration for hosted organizations.

Every mutation is all-or-nothing from the organization's point of view:
business rules are checked first, then the payment gateway is called,
and only after the gateway confirms is local state saved. A gateway
failure leaves the stored organization untouched.

Usage:
    billing = BillingOrchestrator(storage, gateway, gate)
    result = await billing.adjust_seats(org, 5)
    if result.client_secret:
        # the client must confirm the charge (e.g. 3-D Secure)
        ...
"""

from __future__ import annotations

import logging
from typing import Optional

from orgguard.enterprise.mode_gate import DeploymentModeGate
from orgguard.enterprise.models import (
    BillingInfo,
    Organization,
    OrganizationView,
    PaymentMethodType,
    PaymentResult,
    SubscriptionInfo,
    SubscriptionView,
    TaxInfo,
    get_plan,
)
from orgguard.enterprise.requests import UpgradeRequest
from orgguard.exceptions import (
    BillingError,
    InvalidInputError,
    NotFoundError,
    SubscriptionEnded,
)
from orgguard.integrations.payment_gateway import PaymentGateway
from orgguard.integrations.storage import Storage

logger = logging.getLogger(__name__)

MAX_STORAGE_GB = 100
BYTES_PER_GB = 1024 ** 3


class BillingOrchestrator:
    """Owner-level billing operations against the payment gateway."""

    def __init__(
        self,
        storage: Storage,
        gateway: PaymentGateway,
        gate: DeploymentModeGate,
    ):
        self.storage = storage
        self.gateway = gateway
        self.gate = gate

    # ── Reads ────────────────────────────────────────────────

    async def get_billing(self, org: Organization) -> BillingInfo:
        self.gate.require_hosted("read-billing")
        return await self.gateway.get_billing(org)

    async def get_subscription(self, org: Organization) -> SubscriptionView:
        """
        Organization plan data plus, in hosted mode, the live subscription.

        Self-hosted installations and organizations that never
        subscribed get the organization data only.
        """
        view = SubscriptionView(
            organization=OrganizationView.from_org(org),
            storage_gb_used=round(org.storage_bytes_used / BYTES_PER_GB, 2),
        )
        if self.gate.self_hosted or not org.has_subscription:
            return view

        subscription = await self.gateway.get_subscription(org)
        if subscription is None:
            raise NotFoundError()
        view.subscription = subscription
        return view

    async def get_tax_info(self, org: Organization) -> TaxInfo:
        self.gate.require_hosted("get-tax-info")
        if not org.gateway_customer_id:
            return TaxInfo()
        return await self.gateway.get_tax_info(org)

    async def save_tax_info(self, org: Organization, tax_info: TaxInfo) -> None:
        self.gate.require_hosted("save-tax-info")
        if not org.gateway_customer_id:
            raise BillingError("No payment method found.")
        await self.gateway.save_tax_info(org, tax_info)
        logger.info("tax_info_saved", extra={"org_id": org.id})

    # ── Payment method ───────────────────────────────────────

    async def replace_payment_method(
        self,
        org: Organization,
        payment_token: str,
        payment_method_type: PaymentMethodType,
        tax_info: Optional[TaxInfo] = None,
    ) -> None:
        self.gate.require_hosted("replace-payment")
        if not payment_token or not payment_token.strip():
            raise InvalidInputError("Payment token is required.", field="payment_token")

        customer_id = await self.gateway.replace_payment_method(
            org, payment_token, payment_method_type, tax_info or TaxInfo(),
        )
        if org.gateway_customer_id != customer_id:
            org.gateway_customer_id = customer_id
            await self.storage.save_organization(org)

        logger.info(
            "payment_method_replaced",
            extra={"org_id": org.id, "method": payment_method_type.value},
        )

    async def verify_bank_account(
        self, org: Organization, amount1: int, amount2: int,
    ) -> None:
        self.gate.require_hosted("verify-bank")
        for name, amount in (("amount1", amount1), ("amount2", amount2)):
            if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
                raise InvalidInputError(
                    "Amounts must be positive whole numbers of cents.", field=name,
                )
        if not org.gateway_customer_id:
            raise BillingError("No payment method found.")

        await self.gateway.verify_bank_account(org, amount1, amount2)
        logger.info("bank_account_verified", extra={"org_id": org.id})

    # ── Plan ─────────────────────────────────────────────────

    async def upgrade_plan(
        self, org: Organization, upgrade: UpgradeRequest,
    ) -> PaymentResult:
        self.gate.require_hosted("upgrade-plan")
        current = org.plan
        new_plan = get_plan(upgrade.plan_tier)
        if new_plan is None or new_plan.legacy or new_plan.disabled:
            raise BillingError("Plan not found.")
        if new_plan.rank <= current.rank:
            raise BillingError("You can only upgrade to a higher plan.")

        if upgrade.additional_seats and not new_plan.has_additional_seats_option:
            raise BillingError("Plan does not allow additional seats.")
        if (
            new_plan.max_additional_seats is not None
            and upgrade.additional_seats > new_plan.max_additional_seats
        ):
            raise BillingError(
                f"Selected plan allows a maximum of "
                f"{new_plan.max_additional_seats} additional seats."
            )
        if upgrade.additional_storage_gb and not new_plan.has_additional_storage_option:
            raise BillingError("Plan does not allow additional storage.")

        new_seats = new_plan.base_seats + upgrade.additional_seats
        if new_seats <= 0:
            raise BillingError("You must have at least 1 seat.")
        occupied = await self.storage.count_occupied_seats(org.id)
        if occupied > new_seats:
            raise BillingError(
                f"Your organization currently has {occupied} seats filled. "
                f"Your new plan only has ({new_seats}) seats. Remove some users."
            )
        if not new_plan.use_groups and await self.storage.list_groups(org.id):
            raise BillingError(
                "Your new plan does not allow the groups feature. Remove your groups."
            )

        if not org.has_subscription and not org.gateway_customer_id:
            raise BillingError("No payment method found.")

        secret = await self.gateway.upgrade_plan(
            org,
            upgrade.plan_tier,
            upgrade.additional_seats,
            upgrade.additional_storage_gb,
        )

        org.plan_tier = upgrade.plan_tier
        org.seats = new_seats
        org.max_collections = new_plan.max_collections
        org.use_groups = new_plan.use_groups
        org.use_api = new_plan.use_api
        if new_plan.base_storage_gb is not None:
            org.max_storage_gb = new_plan.base_storage_gb + upgrade.additional_storage_gb
        if upgrade.business_name:
            org.business_name = upgrade.business_name
        await self.storage.save_organization(org)

        logger.info(
            "plan_upgraded",
            extra={"org_id": org.id, "plan_tier": upgrade.plan_tier.value},
        )
        return PaymentResult(success=True, client_secret=secret)

    # ── Seats & storage ──────────────────────────────────────

    async def adjust_seats(self, org: Organization, delta: int) -> PaymentResult:
        """
        Add (positive) or remove (negative) seats.

        Rules, in order: non-zero delta, active subscription, plan sells
        seats, new total not below the plan base, at least one seat,
        within the plan's additional-seat cap, and never below the seats
        currently occupied.
        """
        self.gate.require_hosted("adjust-seats")
        if delta == 0:
            raise InvalidInputError(
                "Seat adjustment cannot be zero.", field="seat_adjustment",
            )
        if not org.has_subscription:
            raise BillingError("No subscription found.")

        plan = org.plan
        if not plan.has_additional_seats_option:
            raise BillingError("Plan does not allow additional seats.")

        new_total = (org.seats or 0) + delta
        if new_total < plan.base_seats:
            raise BillingError(f"Plan has a minimum of {plan.base_seats} seats.")
        if new_total <= 0:
            raise BillingError("You must have at least 1 seat.")

        additional = new_total - plan.base_seats
        if plan.max_additional_seats is not None and additional > plan.max_additional_seats:
            raise BillingError(
                f"Organization plan allows a maximum of "
                f"{plan.max_additional_seats} additional seats."
            )

        if delta < 0:
            occupied = await self.storage.count_occupied_seats(org.id)
            if occupied > new_total:
                raise BillingError(
                    f"Your organization currently has {occupied} seats filled. "
                    f"Your new plan only has ({new_total}) seats. Remove some users."
                )

        secret = await self.gateway.adjust_seats(org, additional)
        org.seats = new_total
        await self.storage.save_organization(org)

        logger.info(
            "seats_adjusted",
            extra={"org_id": org.id, "seats": new_total, "delta": delta},
        )
        return PaymentResult(success=True, client_secret=secret)

    async def adjust_storage(self, org: Organization, delta_gb: int) -> PaymentResult:
        self.gate.require_hosted("adjust-storage")
        if delta_gb == 0:
            raise InvalidInputError(
                "Storage adjustment cannot be zero.", field="storage_gb_adjustment",
            )
        if not org.has_subscription:
            raise BillingError("No subscription found.")

        plan = org.plan
        if not plan.has_additional_storage_option:
            raise BillingError("Plan does not allow additional storage.")

        new_total = (org.max_storage_gb or 0) + delta_gb
        if new_total < 1:
            raise BillingError("You must have at least 1 GB of storage.")
        if new_total > MAX_STORAGE_GB:
            raise BillingError(f"Maximum storage is {MAX_STORAGE_GB} GB.")

        used_gb = org.storage_bytes_used / BYTES_PER_GB
        if used_gb > new_total:
            raise BillingError(
                f"You are currently using {used_gb:.2f} GB of storage. "
                f"Delete some stored data first."
            )

        additional = max(0, new_total - (plan.base_storage_gb or 0))
        secret = await self.gateway.adjust_storage(org, additional)
        org.max_storage_gb = new_total
        await self.storage.save_organization(org)

        logger.info(
            "storage_adjusted",
            extra={"org_id": org.id, "storage_gb": new_total, "delta": delta_gb},
        )
        return PaymentResult(success=True, client_secret=secret)

    # ── Subscription lifecycle ───────────────────────────────

    async def _require_subscription(self, org: Organization) -> SubscriptionInfo:
        if not org.has_subscription:
            raise BillingError("No subscription found.")
        subscription = await self.gateway.get_subscription(org)
        if subscription is None:
            raise BillingError("No subscription found.")
        return subscription

    async def cancel_subscription(self, org: Organization) -> None:
        """Cancel at the end of the current billing period."""
        self.gate.require_hosted("cancel-subscription")
        subscription = await self._require_subscription(org)
        if subscription.canceled or subscription.pending_cancellation:
            raise BillingError("Subscription is already canceled.")

        await self.gateway.cancel_subscription(org, at_period_end=True)
        logger.info("subscription_cancel_scheduled", extra={"org_id": org.id})

    async def reinstate_subscription(self, org: Organization) -> None:
        self.gate.require_hosted("reinstate-subscription")
        subscription = await self._require_subscription(org)
        if subscription.canceled:
            raise SubscriptionEnded("Subscription has already ended.")
        if not subscription.pending_cancellation:
            raise BillingError("Subscription is not pending cancellation.")

        await self.gateway.reinstate_subscription(org)
        logger.info("subscription_reinstated", extra={"org_id": org.id})
