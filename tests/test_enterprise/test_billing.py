"""
Tests for the billing orchestrator.

Tests seat and storage arithmetic, plan upgrades, subscription
lifecycle, bank verification, and that a rejected or failed operation
leaves the stored organization untouched.
"""

from __future__ import annotations

import pytest

from orgguard.enterprise.billing import BYTES_PER_GB, BillingOrchestrator
from orgguard.enterprise.models import (
    Group,
    MembershipStatus,
    OrgRole,
    PaymentMethodType,
    PlanTier,
    TaxInfo,
)
from orgguard.enterprise.requests import UpgradeRequest
from orgguard.exceptions import (
    BillingError,
    GatewayError,
    InvalidInputError,
    ModeNotSupported,
    NotFoundError,
    SubscriptionEnded,
)
from orgguard.integrations.payment_gateway import MOCK_BANK_AMOUNTS

from .conftest import add_member, make_org


@pytest.fixture
def billing(storage, gateway, hosted_gate):
    return BillingOrchestrator(storage, gateway, hosted_gate)


@pytest.fixture
async def subscribed(storage, gateway):
    """Teams organization with 10 seats and a live subscription."""
    org = await make_org(storage, plan_tier=PlanTier.TEAMS, seats=10, max_storage_gb=1)
    gateway.add_subscription(org)
    await storage.save_organization(org)
    return org


async def _fill_seats(storage, org, count: int, status=MembershipStatus.CONFIRMED):
    for i in range(count):
        await add_member(storage, org, None, OrgRole.MEMBER, status, email=f"u{i}@acme.test")


# ── Seats ────────────────────────────────────────────────────


class TestAdjustSeats:
    @pytest.mark.asyncio
    async def test_add_seats(self, billing, storage, gateway, subscribed):
        result = await billing.adjust_seats(subscribed, 5)

        assert result.success
        assert result.client_secret is None
        assert (await storage.get_organization(subscribed.id)).seats == 15
        assert gateway.subscriptions[subscribed.gateway_subscription_id].seats == 15

    @pytest.mark.asyncio
    async def test_zero_rejected_before_gateway(self, billing, gateway, subscribed):
        with pytest.raises(InvalidInputError) as exc:
            await billing.adjust_seats(subscribed, 0)
        assert exc.value.field == "seat_adjustment"
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_requires_subscription(self, billing, storage):
        org = await make_org(storage)
        with pytest.raises(BillingError, match="No subscription"):
            await billing.adjust_seats(org, 1)

    @pytest.mark.asyncio
    async def test_plan_without_seat_option(self, billing, storage, gateway):
        org = await make_org(storage, plan_tier=PlanTier.FAMILIES, seats=6)
        gateway.add_subscription(org)
        with pytest.raises(BillingError, match="does not allow additional seats"):
            await billing.adjust_seats(org, 1)

    @pytest.mark.asyncio
    async def test_cannot_drop_to_zero(self, billing, storage, gateway):
        org = await make_org(storage, seats=1)
        gateway.add_subscription(org)
        with pytest.raises(BillingError, match="at least 1 seat"):
            await billing.adjust_seats(org, -1)

    @pytest.mark.asyncio
    async def test_cannot_shrink_below_occupied(self, billing, storage, gateway, subscribed):
        subscribed.seats = 3
        await storage.save_organization(subscribed)
        await _fill_seats(storage, subscribed, 3)

        with pytest.raises(BillingError) as exc:
            await billing.adjust_seats(subscribed, -1)

        assert "currently has 3 seats filled" in exc.value.message
        assert "(2) seats" in exc.value.message
        assert (await storage.get_organization(subscribed.id)).seats == 3
        assert "adjust_seats" not in gateway.calls

    @pytest.mark.asyncio
    async def test_revoked_members_free_their_seat(self, billing, storage, subscribed):
        subscribed.seats = 3
        await _fill_seats(storage, subscribed, 2)
        await _fill_seats(storage, subscribed, 1, MembershipStatus.REVOKED)

        await billing.adjust_seats(subscribed, -1)
        assert (await storage.get_organization(subscribed.id)).seats == 2

    @pytest.mark.asyncio
    async def test_gateway_failure_leaves_state(self, billing, storage, gateway, subscribed):
        del gateway.subscriptions[subscribed.gateway_subscription_id]
        with pytest.raises(GatewayError):
            await billing.adjust_seats(subscribed, 5)
        assert (await storage.get_organization(subscribed.id)).seats == 10

    @pytest.mark.asyncio
    async def test_confirmation_secret_returned(self, billing, gateway, subscribed):
        gateway.customers[subscribed.gateway_customer_id]["requires_action"] = True
        result = await billing.adjust_seats(subscribed, 1)
        assert result.client_secret

    @pytest.mark.asyncio
    async def test_self_hosted_rejected(self, storage, gateway, self_hosted_gate, subscribed):
        billing = BillingOrchestrator(storage, gateway, self_hosted_gate)
        with pytest.raises(ModeNotSupported):
            await billing.adjust_seats(subscribed, 1)


# ── Storage ──────────────────────────────────────────────────


class TestAdjustStorage:
    @pytest.mark.asyncio
    async def test_add_storage(self, billing, storage, gateway, subscribed):
        await billing.adjust_storage(subscribed, 4)
        assert (await storage.get_organization(subscribed.id)).max_storage_gb == 5
        # base 1 GB is included in the plan
        assert gateway.subscriptions[subscribed.gateway_subscription_id].storage_gb == 4

    @pytest.mark.asyncio
    async def test_zero_rejected(self, billing, subscribed):
        with pytest.raises(InvalidInputError):
            await billing.adjust_storage(subscribed, 0)

    @pytest.mark.asyncio
    async def test_maximum(self, billing, subscribed):
        with pytest.raises(BillingError, match="Maximum storage is 100 GB"):
            await billing.adjust_storage(subscribed, 100)

    @pytest.mark.asyncio
    async def test_minimum(self, billing, subscribed):
        with pytest.raises(BillingError, match="at least 1 GB"):
            await billing.adjust_storage(subscribed, -1)

    @pytest.mark.asyncio
    async def test_cannot_shrink_below_usage(self, billing, storage, subscribed):
        subscribed.max_storage_gb = 5
        subscribed.storage_bytes_used = 3 * BYTES_PER_GB
        with pytest.raises(BillingError, match="currently using 3.00 GB"):
            await billing.adjust_storage(subscribed, -3)


# ── Plan upgrades ────────────────────────────────────────────


class TestUpgradePlan:
    @pytest.fixture
    async def free_with_card(self, billing, storage):
        org = await make_org(storage, plan_tier=PlanTier.FREE, seats=2, max_storage_gb=None)
        await billing.replace_payment_method(org, "tok_visa", PaymentMethodType.CARD)
        return org

    @pytest.mark.asyncio
    async def test_upgrade_free_to_teams(self, billing, storage, gateway, free_with_card):
        result = await billing.upgrade_plan(
            free_with_card, UpgradeRequest(plan_tier=PlanTier.TEAMS, additional_seats=5),
        )
        assert result.success

        stored = await storage.get_organization(free_with_card.id)
        assert stored.plan_tier == PlanTier.TEAMS
        assert stored.seats == 5
        assert stored.max_storage_gb == 1
        assert stored.has_subscription
        assert stored.gateway_subscription_id in gateway.subscriptions

    @pytest.mark.asyncio
    async def test_enterprise_enables_groups_and_api(self, billing, storage, free_with_card):
        await billing.upgrade_plan(
            free_with_card, UpgradeRequest(plan_tier=PlanTier.ENTERPRISE, additional_seats=3),
        )
        stored = await storage.get_organization(free_with_card.id)
        assert stored.use_groups and stored.use_api

    @pytest.mark.asyncio
    async def test_must_be_higher(self, billing, subscribed):
        with pytest.raises(BillingError, match="higher plan"):
            await billing.upgrade_plan(subscribed, UpgradeRequest(plan_tier=PlanTier.FAMILIES))

    @pytest.mark.asyncio
    async def test_legacy_plan_not_offered(self, billing, free_with_card):
        with pytest.raises(BillingError, match="Plan not found"):
            await billing.upgrade_plan(
                free_with_card, UpgradeRequest(plan_tier=PlanTier.FAMILIES_2019),
            )

    @pytest.mark.asyncio
    async def test_seat_option_required(self, billing, free_with_card):
        with pytest.raises(BillingError, match="does not allow additional seats"):
            await billing.upgrade_plan(
                free_with_card,
                UpgradeRequest(plan_tier=PlanTier.FAMILIES, additional_seats=1),
            )

    @pytest.mark.asyncio
    async def test_occupied_seats_must_fit(self, billing, storage, free_with_card):
        await _fill_seats(storage, free_with_card, 3)
        with pytest.raises(BillingError, match="currently has 3 seats filled"):
            await billing.upgrade_plan(
                free_with_card, UpgradeRequest(plan_tier=PlanTier.TEAMS, additional_seats=2),
            )

    @pytest.mark.asyncio
    async def test_groups_must_be_allowed(self, billing, storage, free_with_card):
        await storage.upsert_group(Group(org_id=free_with_card.id, name="eng"))
        with pytest.raises(BillingError, match="groups feature"):
            await billing.upgrade_plan(
                free_with_card, UpgradeRequest(plan_tier=PlanTier.TEAMS, additional_seats=5),
            )

    @pytest.mark.asyncio
    async def test_requires_payment_method(self, billing, storage, gateway):
        org = await make_org(storage, plan_tier=PlanTier.FREE, seats=2)
        with pytest.raises(BillingError, match="No payment method"):
            await billing.upgrade_plan(
                org, UpgradeRequest(plan_tier=PlanTier.TEAMS, additional_seats=2),
            )
        assert gateway.calls == []


# ── Subscription lifecycle ───────────────────────────────────


class TestSubscriptionLifecycle:
    @pytest.mark.asyncio
    async def test_cancel_then_reinstate(self, billing, gateway, subscribed):
        sub_id = subscribed.gateway_subscription_id

        await billing.cancel_subscription(subscribed)
        assert gateway.subscriptions[sub_id].pending_cancellation

        await billing.reinstate_subscription(subscribed)
        assert not gateway.subscriptions[sub_id].cancel_at_period_end

    @pytest.mark.asyncio
    async def test_double_cancel(self, billing, subscribed):
        await billing.cancel_subscription(subscribed)
        with pytest.raises(BillingError, match="already canceled"):
            await billing.cancel_subscription(subscribed)

    @pytest.mark.asyncio
    async def test_reinstate_after_period_end(self, billing, gateway, subscribed):
        await billing.cancel_subscription(subscribed)
        gateway.end_period(subscribed.gateway_subscription_id)
        with pytest.raises(SubscriptionEnded):
            await billing.reinstate_subscription(subscribed)

    @pytest.mark.asyncio
    async def test_reinstate_active(self, billing, subscribed):
        with pytest.raises(BillingError, match="not pending cancellation"):
            await billing.reinstate_subscription(subscribed)

    @pytest.mark.asyncio
    async def test_get_subscription(self, billing, subscribed):
        view = await billing.get_subscription(subscribed)
        assert view.subscription.subscription_id == subscribed.gateway_subscription_id
        assert view.organization.id == subscribed.id

    @pytest.mark.asyncio
    async def test_get_subscription_without_one(self, billing, storage):
        org = await make_org(storage)
        view = await billing.get_subscription(org)
        assert view.subscription is None

    @pytest.mark.asyncio
    async def test_dangling_subscription_is_not_found(self, billing, gateway, subscribed):
        gateway.subscriptions.clear()
        with pytest.raises(NotFoundError):
            await billing.get_subscription(subscribed)


# ── Payment method, bank, tax ────────────────────────────────


class TestPaymentMethod:
    @pytest.mark.asyncio
    async def test_empty_token(self, billing, subscribed):
        with pytest.raises(InvalidInputError):
            await billing.replace_payment_method(subscribed, "  ", PaymentMethodType.CARD)

    @pytest.mark.asyncio
    async def test_decline_saves_nothing(self, billing, storage):
        org = await make_org(storage, plan_tier=PlanTier.FREE)
        with pytest.raises(GatewayError) as exc:
            await billing.replace_payment_method(org, "tok_decline", PaymentMethodType.CARD)
        assert exc.value.code == "card_declined"
        assert (await storage.get_organization(org.id)).gateway_customer_id is None

    @pytest.mark.asyncio
    async def test_new_customer_saved(self, billing, storage):
        org = await make_org(storage, plan_tier=PlanTier.FREE)
        await billing.replace_payment_method(org, "tok_visa", PaymentMethodType.CARD)
        assert (await storage.get_organization(org.id)).gateway_customer_id


class TestBankVerification:
    @pytest.fixture
    async def with_bank(self, billing, storage):
        org = await make_org(storage, plan_tier=PlanTier.FREE)
        await billing.replace_payment_method(org, "btok_1", PaymentMethodType.BANK_ACCOUNT)
        return org

    @pytest.mark.asyncio
    async def test_correct_amounts(self, billing, gateway, with_bank):
        await billing.verify_bank_account(with_bank, *MOCK_BANK_AMOUNTS)
        assert gateway.customers[with_bank.gateway_customer_id]["pending_bank_amounts"] is None

    @pytest.mark.asyncio
    async def test_wrong_amounts(self, billing, with_bank):
        with pytest.raises(GatewayError) as exc:
            await billing.verify_bank_account(with_bank, 1, 2)
        assert exc.value.code == "bank_account_verification_failed"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount1,amount2", [(0, 45), (32, -1), (True, 45)])
    async def test_invalid_amounts(self, billing, gateway, with_bank, amount1, amount2):
        calls = list(gateway.calls)
        with pytest.raises(InvalidInputError):
            await billing.verify_bank_account(with_bank, amount1, amount2)
        assert gateway.calls == calls

    @pytest.mark.asyncio
    async def test_no_customer(self, billing, storage):
        org = await make_org(storage, plan_tier=PlanTier.FREE)
        with pytest.raises(BillingError):
            await billing.verify_bank_account(org, 32, 45)


class TestTaxInfo:
    @pytest.mark.asyncio
    async def test_empty_without_customer(self, billing, storage):
        org = await make_org(storage, plan_tier=PlanTier.FREE)
        assert await billing.get_tax_info(org) == TaxInfo()

    @pytest.mark.asyncio
    async def test_save_requires_customer(self, billing, storage):
        org = await make_org(storage, plan_tier=PlanTier.FREE)
        with pytest.raises(BillingError):
            await billing.save_tax_info(org, TaxInfo(country="US"))

    @pytest.mark.asyncio
    async def test_save_and_read(self, billing, subscribed):
        await billing.save_tax_info(subscribed, TaxInfo(country="DE", tax_id="DE123"))
        info = await billing.get_tax_info(subscribed)
        assert info.country == "DE"
        assert info.tax_id == "DE123"
