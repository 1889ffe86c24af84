"""
Payment gateway collaborator for orgguard.

Provider-agnostic billing interface used by the BillingOrchestrator and
OrganizationService. Two providers ship with the package:

- StripePaymentGateway → live Stripe API (stripe-python)
- MockPaymentGateway → in-memory, Stripe-shaped state for development/testing

The active provider is selected by settings.billing.provider; the
Stripe secret key is read from the environment variable named by
settings.billing.api_key_env.

Every provider reports processor failures as GatewayError carrying the
processor's error code. Nothing here retries.

Usage:
    gateway = create_payment_gateway(settings)
    sub = await gateway.get_subscription(org)
    secret = await gateway.adjust_seats(org, additional_seats=12)
"""

from __future__ import annotations

import logging
import os
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import stripe

from orgguard.config.schema import BillingProvider, Settings
from orgguard.enterprise.models import (
    BillingInfo,
    Organization,
    PaymentMethodType,
    PlanTier,
    SubscriptionInfo,
    TaxInfo,
)
from orgguard.exceptions import GatewayError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Abstract Interface
# ---------------------------------------------------------------------------


class PaymentGateway(ABC):
    """Abstract payment processor (Stripe, Braintree, ...)."""

    @abstractmethod
    async def create_customer(
        self,
        org: Organization,
        plan_tier: PlanTier,
        additional_seats: int,
        additional_storage_gb: int,
        payment_token: str,
        payment_method_type: PaymentMethodType,
        tax_info: TaxInfo,
    ) -> tuple[str, str]:
        """Create customer + subscription. Returns (customer_id, subscription_id)."""
        ...

    @abstractmethod
    async def update_customer(self, org: Organization) -> None:
        """Push business name / billing email to the processor."""
        ...

    @abstractmethod
    async def get_billing(self, org: Organization) -> BillingInfo:
        ...

    @abstractmethod
    async def get_subscription(
        self, org: Organization,
    ) -> Optional[SubscriptionInfo]:
        ...

    @abstractmethod
    async def upgrade_plan(
        self,
        org: Organization,
        plan_tier: PlanTier,
        additional_seats: int,
        additional_storage_gb: int,
    ) -> Optional[str]:
        """
        Move the subscription to a new plan, creating one for an existing
        customer if needed (the new id is set on `org`). Returns a client
        secret if confirmation is needed.
        """
        ...

    @abstractmethod
    async def adjust_seats(
        self, org: Organization, additional_seats: int,
    ) -> Optional[str]:
        """Set the purchased additional-seat quantity."""
        ...

    @abstractmethod
    async def adjust_storage(
        self, org: Organization, additional_storage_gb: int,
    ) -> Optional[str]:
        """Set the purchased additional-storage quantity (GB)."""
        ...

    @abstractmethod
    async def replace_payment_method(
        self,
        org: Organization,
        payment_token: str,
        payment_method_type: PaymentMethodType,
        tax_info: TaxInfo,
    ) -> str:
        """Swap the default payment method and tax profile. Returns the customer id."""
        ...

    @abstractmethod
    async def verify_bank_account(
        self, org: Organization, amount1: int, amount2: int,
    ) -> None:
        ...

    @abstractmethod
    async def cancel_subscription(
        self, org: Organization, at_period_end: bool = True,
    ) -> None:
        ...

    @abstractmethod
    async def reinstate_subscription(self, org: Organization) -> None:
        ...

    @abstractmethod
    async def get_tax_info(self, org: Organization) -> TaxInfo:
        ...

    @abstractmethod
    async def save_tax_info(self, org: Organization, tax_info: TaxInfo) -> None:
        ...


# ---------------------------------------------------------------------------
# Mock Provider (Development / Testing)
# ---------------------------------------------------------------------------

# Tokens with these prefixes drive the mock's failure paths.
MOCK_DECLINE_PREFIX = "tok_decline"
MOCK_REQUIRES_ACTION_PREFIX = "tok_3ds"
MOCK_BANK_AMOUNTS = (32, 45)
MOCK_PERIOD_DAYS = 30


class MockPaymentGateway(PaymentGateway):
    """
    Mock payment processor for development and testing.

    Keeps Stripe-shaped customer and subscription state in memory.
    """

    def __init__(self) -> None:
        self.customers: dict[str, dict[str, Any]] = {}
        self.subscriptions: dict[str, SubscriptionInfo] = {}
        self.calls: list[str] = []

    # ─── Helpers ────────────────────────────────────────────────────

    def _customer(self, org: Organization) -> dict[str, Any]:
        customer = self.customers.get(org.gateway_customer_id or "")
        if customer is None:
            raise GatewayError(
                "No such customer.", code="resource_missing", service="mock",
            )
        return customer

    def _subscription(self, org: Organization) -> SubscriptionInfo:
        sub = self.subscriptions.get(org.gateway_subscription_id or "")
        if sub is None:
            raise GatewayError(
                "No such subscription.", code="resource_missing", service="mock",
            )
        return sub

    def _client_secret(self, org: Organization) -> Optional[str]:
        customer = self.customers.get(org.gateway_customer_id or "", {})
        if customer.get("requires_action"):
            return f"pi_mock_{uuid.uuid4().hex[:12]}_secret"
        return None

    @staticmethod
    def _check_token(payment_token: str) -> None:
        if payment_token.startswith(MOCK_DECLINE_PREFIX):
            raise GatewayError(
                "Your card was declined.", code="card_declined", service="mock",
            )

    def add_subscription(
        self,
        org: Organization,
        status: str = "active",
        period_start: Optional[datetime] = None,
    ) -> SubscriptionInfo:
        """Seed a customer + subscription for `org` and link them on the model."""
        start = period_start or datetime.now(timezone.utc)
        customer_id = org.gateway_customer_id or f"cus_mock_{uuid.uuid4().hex[:12]}"
        sub_id = org.gateway_subscription_id or f"sub_mock_{uuid.uuid4().hex[:12]}"
        self.customers.setdefault(customer_id, {
            "email": org.billing_email,
            "description": org.business_name,
            "tax_info": TaxInfo(),
            "payment_method_type": PaymentMethodType.CARD,
            "requires_action": False,
            "pending_bank_amounts": None,
        })
        sub = SubscriptionInfo(
            subscription_id=sub_id,
            status=status,
            period_start=start,
            period_end=start + timedelta(days=MOCK_PERIOD_DAYS),
            seats=org.seats,
            storage_gb=org.max_storage_gb,
        )
        self.subscriptions[sub_id] = sub
        org.gateway_customer_id = customer_id
        org.gateway_subscription_id = sub_id
        return sub

    def end_period(self, subscription_id: str) -> None:
        """Simulate the billing period elapsing for a pending cancellation."""
        sub = self.subscriptions[subscription_id]
        if sub.cancel_at_period_end:
            self.subscriptions[subscription_id] = sub.model_copy(update={
                "status": "canceled",
                "canceled_at": datetime.now(timezone.utc),
            })

    # ─── PaymentGateway ─────────────────────────────────────────────

    async def create_customer(
        self,
        org: Organization,
        plan_tier: PlanTier,
        additional_seats: int,
        additional_storage_gb: int,
        payment_token: str,
        payment_method_type: PaymentMethodType,
        tax_info: TaxInfo,
    ) -> tuple[str, str]:
        self.calls.append("create_customer")
        self._check_token(payment_token)
        customer_id = f"cus_mock_{uuid.uuid4().hex[:12]}"
        self.customers[customer_id] = {
            "email": org.billing_email,
            "description": org.business_name,
            "tax_info": tax_info,
            "payment_method_type": payment_method_type,
            "requires_action": payment_token.startswith(MOCK_REQUIRES_ACTION_PREFIX),
            "pending_bank_amounts": (
                MOCK_BANK_AMOUNTS
                if payment_method_type == PaymentMethodType.BANK_ACCOUNT
                else None
            ),
        }
        now = datetime.now(timezone.utc)
        sub_id = f"sub_mock_{uuid.uuid4().hex[:12]}"
        self.subscriptions[sub_id] = SubscriptionInfo(
            subscription_id=sub_id,
            period_start=now,
            period_end=now + timedelta(days=MOCK_PERIOD_DAYS),
            seats=additional_seats,
            storage_gb=additional_storage_gb,
        )
        logger.info(
            "mock_customer_created",
            extra={"customer_id": customer_id, "plan_tier": plan_tier.value},
        )
        return customer_id, sub_id

    async def update_customer(self, org: Organization) -> None:
        self.calls.append("update_customer")
        customer = self._customer(org)
        customer["email"] = org.billing_email
        customer["description"] = org.business_name

    async def get_billing(self, org: Organization) -> BillingInfo:
        customer = self.customers.get(org.gateway_customer_id or "")
        if customer is None:
            return BillingInfo()
        return BillingInfo(
            payment_method_type=customer["payment_method_type"],
            payment_method_description="mock",
        )

    async def get_subscription(
        self, org: Organization,
    ) -> Optional[SubscriptionInfo]:
        sub = self.subscriptions.get(org.gateway_subscription_id or "")
        return sub.model_copy() if sub else None

    async def upgrade_plan(
        self,
        org: Organization,
        plan_tier: PlanTier,
        additional_seats: int,
        additional_storage_gb: int,
    ) -> Optional[str]:
        self.calls.append("upgrade_plan")
        sub = self.subscriptions.get(org.gateway_subscription_id or "")
        if sub is None:
            self._customer(org)
            sub = self.add_subscription(org)
        self.subscriptions[sub.subscription_id] = sub.model_copy(update={
            "seats": additional_seats,
            "storage_gb": additional_storage_gb,
        })
        return self._client_secret(org)

    async def adjust_seats(
        self, org: Organization, additional_seats: int,
    ) -> Optional[str]:
        self.calls.append("adjust_seats")
        sub = self._subscription(org)
        self.subscriptions[sub.subscription_id] = sub.model_copy(
            update={"seats": additional_seats}
        )
        return self._client_secret(org)

    async def adjust_storage(
        self, org: Organization, additional_storage_gb: int,
    ) -> Optional[str]:
        self.calls.append("adjust_storage")
        sub = self._subscription(org)
        self.subscriptions[sub.subscription_id] = sub.model_copy(
            update={"storage_gb": additional_storage_gb}
        )
        return self._client_secret(org)

    async def replace_payment_method(
        self,
        org: Organization,
        payment_token: str,
        payment_method_type: PaymentMethodType,
        tax_info: TaxInfo,
    ) -> str:
        self.calls.append("replace_payment_method")
        self._check_token(payment_token)
        customer_id = org.gateway_customer_id
        if customer_id not in self.customers:
            customer_id = f"cus_mock_{uuid.uuid4().hex[:12]}"
            self.customers[customer_id] = {
                "email": org.billing_email,
                "description": org.business_name,
            }
        customer = self.customers[customer_id]
        customer.update({
            "tax_info": tax_info,
            "payment_method_type": payment_method_type,
            "requires_action": payment_token.startswith(MOCK_REQUIRES_ACTION_PREFIX),
            "pending_bank_amounts": (
                MOCK_BANK_AMOUNTS
                if payment_method_type == PaymentMethodType.BANK_ACCOUNT
                else None
            ),
        })
        return customer_id

    async def verify_bank_account(
        self, org: Organization, amount1: int, amount2: int,
    ) -> None:
        self.calls.append("verify_bank_account")
        customer = self._customer(org)
        expected = customer.get("pending_bank_amounts")
        if expected is None:
            raise GatewayError(
                "No bank account pending verification.",
                code="bank_account_unverifiable",
                service="mock",
            )
        if (amount1, amount2) != expected:
            raise GatewayError(
                "The amounts provided do not match the amounts that were sent to the bank account.",
                code="bank_account_verification_failed",
                service="mock",
            )
        customer["pending_bank_amounts"] = None

    async def cancel_subscription(
        self, org: Organization, at_period_end: bool = True,
    ) -> None:
        self.calls.append("cancel_subscription")
        sub = self._subscription(org)
        if at_period_end:
            update: dict[str, Any] = {"cancel_at_period_end": True}
        else:
            update = {"status": "canceled", "canceled_at": datetime.now(timezone.utc)}
        self.subscriptions[sub.subscription_id] = sub.model_copy(update=update)

    async def reinstate_subscription(self, org: Organization) -> None:
        self.calls.append("reinstate_subscription")
        sub = self._subscription(org)
        self.subscriptions[sub.subscription_id] = sub.model_copy(
            update={"cancel_at_period_end": False}
        )

    async def get_tax_info(self, org: Organization) -> TaxInfo:
        return self._customer(org).get("tax_info") or TaxInfo()

    async def save_tax_info(self, org: Organization, tax_info: TaxInfo) -> None:
        self.calls.append("save_tax_info")
        self._customer(org)["tax_info"] = tax_info


# ---------------------------------------------------------------------------
# Stripe Provider
# ---------------------------------------------------------------------------

# Stripe price ids per plan component. Plans without a seat price bill a
# flat base price only.
STRIPE_PRICE_IDS: dict[PlanTier, dict[str, str]] = {
    PlanTier.FAMILIES: {"base": "families-org-annually"},
    PlanTier.TEAMS: {"seat": "teams-org-seat-monthly"},
    PlanTier.ENTERPRISE: {"seat": "enterprise-org-seat-monthly"},
}
STRIPE_STORAGE_PRICE_ID = "storage-gb-monthly"


def _ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class StripePaymentGateway(PaymentGateway):
    """
    Stripe payment processor.

    Requires:
        A Stripe secret key (sk_...), passed in or read from
        STRIPE_SECRET_KEY.
    """

    def __init__(self, api_key: str):
        if not api_key:
            raise ValueError("Stripe secret key is required")
        self._client = stripe
        self._client.api_key = api_key
        logger.info("stripe_gateway_live_mode")

    @classmethod
    def from_env(cls, env_var: str = "STRIPE_SECRET_KEY") -> StripePaymentGateway:
        return cls(api_key=os.environ.get(env_var, ""))

    # ─── Helpers ────────────────────────────────────────────────────

    @staticmethod
    def _wrap(e: stripe.StripeError) -> GatewayError:
        return GatewayError(
            e.user_message or str(e),
            code=getattr(e, "code", None),
            service="stripe",
        )

    @staticmethod
    def _address(tax_info: TaxInfo) -> dict[str, Optional[str]]:
        return {
            "line1": tax_info.line1,
            "line2": tax_info.line2,
            "city": tax_info.city,
            "state": tax_info.state,
            "postal_code": tax_info.postal_code,
            "country": tax_info.country,
        }

    def _require_customer(self, org: Organization) -> str:
        if not org.gateway_customer_id:
            raise GatewayError("Not a gateway customer.", service="stripe")
        return org.gateway_customer_id

    def _discard_customer(self, org: Organization, customer_id: str) -> None:
        """Delete a customer created by a call that then failed."""
        try:
            self._client.Customer.delete(customer_id)
        except stripe.StripeError:
            logger.warning(
                "stripe_customer_orphaned",
                extra={"org_id": org.id, "customer_id": customer_id},
                exc_info=True,
            )

    def _require_subscription(self, org: Organization) -> str:
        if not org.gateway_subscription_id:
            raise GatewayError("No subscription.", service="stripe")
        return org.gateway_subscription_id

    def _items(
        self, plan_tier: PlanTier, additional_seats: int, additional_storage_gb: int,
    ) -> list[dict[str, Any]]:
        prices = STRIPE_PRICE_IDS.get(plan_tier, {})
        items: list[dict[str, Any]] = []
        if "base" in prices:
            items.append({"price": prices["base"], "quantity": 1})
        if "seat" in prices and additional_seats > 0:
            items.append({"price": prices["seat"], "quantity": additional_seats})
        if additional_storage_gb > 0:
            items.append({"price": STRIPE_STORAGE_PRICE_ID, "quantity": additional_storage_gb})
        return items

    @staticmethod
    def _pending_client_secret(subscription: Any) -> Optional[str]:
        invoice = subscription.get("latest_invoice")
        if not invoice or isinstance(invoice, str):
            return None
        intent = invoice.get("payment_intent")
        if intent and not isinstance(intent, str) and intent.get("status") == "requires_action":
            return intent.get("client_secret")
        return None

    def _set_item_quantity(
        self, subscription_id: str, price_id: str, quantity: int,
    ) -> Optional[str]:
        sub = self._client.Subscription.retrieve(subscription_id)
        item = next(
            (i for i in sub["items"]["data"] if i["price"]["id"] == price_id),
            None,
        )
        if item is None and quantity > 0:
            items = [{"price": price_id, "quantity": quantity}]
        elif item is not None and quantity > 0:
            items = [{"id": item["id"], "quantity": quantity}]
        elif item is not None:
            items = [{"id": item["id"], "deleted": True}]
        else:
            return None

        updated = self._client.Subscription.modify(
            subscription_id,
            items=items,
            proration_behavior="always_invoice",
            payment_behavior="pending_if_incomplete",
            expand=["latest_invoice.payment_intent"],
        )
        return self._pending_client_secret(updated)

    # ─── PaymentGateway ─────────────────────────────────────────────

    async def create_customer(
        self,
        org: Organization,
        plan_tier: PlanTier,
        additional_seats: int,
        additional_storage_gb: int,
        payment_token: str,
        payment_method_type: PaymentMethodType,
        tax_info: TaxInfo,
    ) -> tuple[str, str]:
        try:
            params: dict[str, Any] = {
                "email": org.billing_email,
                "description": org.business_name,
                "address": self._address(tax_info),
                "metadata": {"org_id": org.id, "tax_id": tax_info.tax_id or ""},
            }
            if payment_method_type == PaymentMethodType.CARD:
                params["payment_method"] = payment_token
                params["invoice_settings"] = {"default_payment_method": payment_token}
            else:
                params["source"] = payment_token
            customer = self._client.Customer.create(**params)
        except stripe.StripeError as e:
            raise self._wrap(e) from e

        try:
            subscription = self._client.Subscription.create(
                customer=customer["id"],
                items=self._items(plan_tier, additional_seats, additional_storage_gb),
                metadata={"org_id": org.id},
            )
        except stripe.StripeError as e:
            self._discard_customer(org, customer["id"])
            raise self._wrap(e) from e

        logger.info(
            "stripe_customer_created",
            extra={"org_id": org.id, "plan_tier": plan_tier.value},
        )
        return customer["id"], subscription["id"]

    async def update_customer(self, org: Organization) -> None:
        customer_id = self._require_customer(org)
        try:
            self._client.Customer.modify(
                customer_id,
                email=org.billing_email,
                description=org.business_name,
            )
        except stripe.StripeError as e:
            raise self._wrap(e) from e

    async def get_billing(self, org: Organization) -> BillingInfo:
        if not org.gateway_customer_id:
            return BillingInfo()
        try:
            customer = self._client.Customer.retrieve(
                org.gateway_customer_id,
                expand=["invoice_settings.default_payment_method"],
            )
        except stripe.StripeError as e:
            raise self._wrap(e) from e

        info = BillingInfo(balance_cents=customer.get("balance", 0))
        method = (customer.get("invoice_settings") or {}).get("default_payment_method")
        if method:
            if method.get("type") == "card":
                card = method.get("card") or {}
                info.payment_method_type = PaymentMethodType.CARD
                info.payment_method_description = (
                    f"{card.get('brand', '').upper()}, *{card.get('last4', '')}"
                )
            elif method.get("type") == "us_bank_account":
                bank = method.get("us_bank_account") or {}
                info.payment_method_type = PaymentMethodType.BANK_ACCOUNT
                info.payment_method_description = (
                    f"{bank.get('bank_name', '')}, *{bank.get('last4', '')}"
                )

        if org.gateway_subscription_id:
            try:
                preview = self._client.Invoice.create_preview(
                    customer=org.gateway_customer_id,
                    subscription=org.gateway_subscription_id,
                )
            except stripe.InvalidRequestError:
                # Canceled subscriptions have no upcoming invoice.
                preview = None
            except stripe.StripeError as e:
                raise self._wrap(e) from e
            if preview:
                info.upcoming_invoice_cents = preview.get("amount_due")
                info.upcoming_invoice_date = _ts(preview.get("next_payment_attempt"))
        return info

    async def get_subscription(
        self, org: Organization,
    ) -> Optional[SubscriptionInfo]:
        if not org.gateway_subscription_id:
            return None
        try:
            sub = self._client.Subscription.retrieve(org.gateway_subscription_id)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                return None
            raise self._wrap(e) from e
        except stripe.StripeError as e:
            raise self._wrap(e) from e

        items = sub["items"]["data"]
        first_item = items[0] if items else {}
        return SubscriptionInfo(
            subscription_id=sub["id"],
            status=sub["status"],
            cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
            period_start=_ts(sub.get("current_period_start") or first_item.get("current_period_start")),
            period_end=_ts(sub.get("current_period_end") or first_item.get("current_period_end")),
            canceled_at=_ts(sub.get("canceled_at")),
        )

    async def upgrade_plan(
        self,
        org: Organization,
        plan_tier: PlanTier,
        additional_seats: int,
        additional_storage_gb: int,
    ) -> Optional[str]:
        if not org.gateway_subscription_id:
            customer_id = self._require_customer(org)
            try:
                created = self._client.Subscription.create(
                    customer=customer_id,
                    items=self._items(plan_tier, additional_seats, additional_storage_gb),
                    metadata={"org_id": org.id},
                    payment_behavior="allow_incomplete",
                    expand=["latest_invoice.payment_intent"],
                )
            except stripe.StripeError as e:
                raise self._wrap(e) from e
            org.gateway_subscription_id = created["id"]
            return self._pending_client_secret(created)

        subscription_id = org.gateway_subscription_id
        try:
            current = self._client.Subscription.retrieve(subscription_id)
            items: list[dict[str, Any]] = [
                {"id": i["id"], "deleted": True} for i in current["items"]["data"]
            ]
            items.extend(self._items(plan_tier, additional_seats, additional_storage_gb))
            updated = self._client.Subscription.modify(
                subscription_id,
                items=items,
                proration_behavior="always_invoice",
                payment_behavior="pending_if_incomplete",
                expand=["latest_invoice.payment_intent"],
            )
        except stripe.StripeError as e:
            raise self._wrap(e) from e
        return self._pending_client_secret(updated)

    async def adjust_seats(
        self, org: Organization, additional_seats: int,
    ) -> Optional[str]:
        subscription_id = self._require_subscription(org)
        price_id = STRIPE_PRICE_IDS.get(org.plan_tier, {}).get("seat")
        if price_id is None:
            raise GatewayError("Plan has no seat price.", service="stripe")
        try:
            return self._set_item_quantity(subscription_id, price_id, additional_seats)
        except stripe.StripeError as e:
            raise self._wrap(e) from e

    async def adjust_storage(
        self, org: Organization, additional_storage_gb: int,
    ) -> Optional[str]:
        subscription_id = self._require_subscription(org)
        try:
            return self._set_item_quantity(
                subscription_id, STRIPE_STORAGE_PRICE_ID, additional_storage_gb,
            )
        except stripe.StripeError as e:
            raise self._wrap(e) from e

    async def replace_payment_method(
        self,
        org: Organization,
        payment_token: str,
        payment_method_type: PaymentMethodType,
        tax_info: TaxInfo,
    ) -> str:
        created: Optional[str] = None
        try:
            if org.gateway_customer_id:
                customer_id = org.gateway_customer_id
            else:
                customer_id = created = self._client.Customer.create(
                    email=org.billing_email,
                    description=org.business_name,
                    metadata={"org_id": org.id},
                )["id"]

            if payment_method_type == PaymentMethodType.CARD:
                self._client.PaymentMethod.attach(payment_token, customer=customer_id)
                self._client.Customer.modify(
                    customer_id,
                    invoice_settings={"default_payment_method": payment_token},
                    address=self._address(tax_info),
                    metadata={"tax_id": tax_info.tax_id or ""},
                )
            else:
                source = self._client.Customer.create_source(customer_id, source=payment_token)
                self._client.Customer.modify(
                    customer_id,
                    default_source=source["id"],
                    address=self._address(tax_info),
                    metadata={"tax_id": tax_info.tax_id or ""},
                )
        except stripe.StripeError as e:
            if created:
                self._discard_customer(org, created)
            raise self._wrap(e) from e
        return customer_id

    async def verify_bank_account(
        self, org: Organization, amount1: int, amount2: int,
    ) -> None:
        customer_id = self._require_customer(org)
        try:
            intents = self._client.SetupIntent.list(customer=customer_id, limit=1)
            pending = [
                i for i in intents["data"] if i.get("status") == "requires_action"
            ]
            if not pending:
                raise GatewayError(
                    "No bank account pending verification.",
                    code="bank_account_unverifiable",
                    service="stripe",
                )
            self._client.SetupIntent.verify_microdeposits(
                pending[0]["id"], amounts=[amount1, amount2],
            )
        except stripe.StripeError as e:
            raise self._wrap(e) from e

    async def cancel_subscription(
        self, org: Organization, at_period_end: bool = True,
    ) -> None:
        subscription_id = self._require_subscription(org)
        try:
            if at_period_end:
                self._client.Subscription.modify(subscription_id, cancel_at_period_end=True)
            else:
                self._client.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            raise self._wrap(e) from e

    async def reinstate_subscription(self, org: Organization) -> None:
        subscription_id = self._require_subscription(org)
        try:
            self._client.Subscription.modify(subscription_id, cancel_at_period_end=False)
        except stripe.StripeError as e:
            raise self._wrap(e) from e

    async def get_tax_info(self, org: Organization) -> TaxInfo:
        customer_id = self._require_customer(org)
        try:
            customer = self._client.Customer.retrieve(customer_id)
        except stripe.StripeError as e:
            raise self._wrap(e) from e
        address = customer.get("address") or {}
        metadata = customer.get("metadata") or {}
        return TaxInfo(
            line1=address.get("line1"),
            line2=address.get("line2"),
            city=address.get("city"),
            state=address.get("state"),
            postal_code=address.get("postal_code"),
            country=address.get("country"),
            tax_id=metadata.get("tax_id") or None,
        )

    async def save_tax_info(self, org: Organization, tax_info: TaxInfo) -> None:
        customer_id = self._require_customer(org)
        try:
            self._client.Customer.modify(
                customer_id,
                address=self._address(tax_info),
                metadata={"tax_id": tax_info.tax_id or ""},
            )
        except stripe.StripeError as e:
            raise self._wrap(e) from e


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_payment_gateway(settings: Settings) -> PaymentGateway:
    """Build the payment gateway selected by the settings."""
    if settings.billing.provider == BillingProvider.STRIPE:
        return StripePaymentGateway.from_env(settings.billing.api_key_env)
    if not settings.self_hosted:
        logger.warning("payment_gateway_mock_mode", extra={"mode": settings.mode.value})
    return MockPaymentGateway()
