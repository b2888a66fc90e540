"""
Lease Lifecycle Monitor Tests
Provider polling, owner actions and exactly-once cancellation refunds
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from config import Config
from database import SessionLocal
from models import (
    BalanceTransaction, FulfillmentKind, LeasedResource, LeaseKind, LeaseStatus, TransactionKind, utc_now,
)
from services.balance_ledger_service import BalanceLedgerService
from services.fulfillment_adapters import AcquireRequest
from services.lease_lifecycle_monitor import LeaseLifecycleMonitor
from services.profi_like_service import BoostStatus
from services.px6_service import ProxyGrant
from services.tiger_sms_service import (
    ActivationStatus, ActivationStatusCode, NumberActivation, RemoteActivationState,
)
from utils.exception_handler import (
    InsufficientFundsError, LeaseNotFoundError, LeaseStateError, OutOfStockError, PriceMismatchError,
    TigerSmsAPIError, ValidationError,
)
from utils.request_context import RequestContext


@pytest.fixture
def monitor(tiger_sms, profi_like, notifier, adapters):
    return LeaseLifecycleMonitor(tiger_sms=tiger_sms, profi_like=profi_like, notifier=notifier, adapters=adapters)


def _lease(lease_id):
    session = SessionLocal()
    try:
        row = session.get(LeasedResource, lease_id)
        return {
            "status": row.status,
            "payload": dict(row.payload or {}),
            "poll_count": row.poll_count,
            "refunded_at": row.refunded_at,
            "completed_at": row.completed_at,
        }
    finally:
        session.close()


def _refund_rows(user_id):
    session = SessionLocal()
    try:
        return session.query(BalanceTransaction).filter(
            BalanceTransaction.user_id == user_id,
            BalanceTransaction.kind == TransactionKind.REFUND.value,
        ).count()
    finally:
        session.close()


async def _buy_number(monitor, tiger_sms, user_id, price="60", activation_id="1001", phone="79001234567"):
    tiger_sms.quote_price.return_value = Decimal(price)
    tiger_sms.get_number.return_value = NumberActivation(activation_id=activation_id, phone_number=phone)
    return await monitor.purchase_number(user_id, "tg", 0, price, service_name="Telegram", country_name="Russia")


def _boost_service(rate, name="Subscribers", category="Telegram"):
    return {"service": 7, "name": name, "category": category, "rate": rate, "min": 10, "max": 100000}


class TestSmsPurchaseAndCancel:

    @pytest.mark.asyncio
    async def test_purchase_then_cancel_restores_balance(self, monitor, tiger_sms, make_user, notifier):
        user_id = make_user(balance="100")

        bought = await _buy_number(monitor, tiger_sms, user_id)

        assert bought["new_balance"] == Decimal("40.00")
        assert bought["phone_number"] == "79001234567"
        assert _lease(bought["lease_id"])["status"] == "waiting"
        assert "+79001234567" in notifier.notify.await_args.args[1]

        tiger_sms.set_status.return_value = "ACCESS_CANCEL"
        cancelled = await monitor.cancel(bought["lease_id"], RequestContext(user_id=user_id))

        assert cancelled["refunded"] == Decimal("60.00")
        assert cancelled["new_balance"] == Decimal("100.00")
        tiger_sms.set_status.assert_awaited_once_with("1001", ActivationStatusCode.CANCEL)
        assert _lease(bought["lease_id"])["status"] == "cancelled"
        assert BalanceLedgerService.verify_ledger_integrity(user_id)

    @pytest.mark.asyncio
    async def test_purchase_without_funds_keeps_no_lease(self, monitor, tiger_sms, make_user):
        user_id = make_user(balance="10")
        tiger_sms.quote_price.return_value = Decimal("60")
        tiger_sms.get_number.return_value = NumberActivation(activation_id="1", phone_number="7900")

        with pytest.raises(InsufficientFundsError):
            await monitor.purchase_number(user_id, "tg", 0, "60")

        tiger_sms.get_number.assert_not_awaited()
        assert monitor.list_leased_resources(user_id) == []

    @pytest.mark.asyncio
    async def test_user_and_provider_cancel_refund_once(self, monitor, tiger_sms, make_user):
        user_id = make_user(balance="100")
        bought = await _buy_number(monitor, tiger_sms, user_id)
        stale_snapshot = monitor._load(bought["lease_id"])

        tiger_sms.set_status.return_value = "ACCESS_CANCEL"
        await monitor.cancel(bought["lease_id"], RequestContext(user_id=user_id))

        # Provider reports the same cancellation on a poll that saw the lease as waiting
        tiger_sms.get_status.return_value = ActivationStatus(RemoteActivationState.CANCELLED, raw="STATUS_CANCEL")
        status = await monitor.poll_sms_lease(stale_snapshot)

        assert status == LeaseStatus.CANCELLED
        assert _refund_rows(user_id) == 1
        assert BalanceLedgerService.get_balance(user_id) == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_second_cancel_is_rejected(self, monitor, tiger_sms, make_user):
        user_id = make_user(balance="100")
        bought = await _buy_number(monitor, tiger_sms, user_id)
        tiger_sms.set_status.return_value = "ACCESS_CANCEL"
        await monitor.cancel(bought["lease_id"], RequestContext(user_id=user_id))

        with pytest.raises(LeaseStateError):
            await monitor.cancel(bought["lease_id"], RequestContext(user_id=user_id))
        assert _refund_rows(user_id) == 1

    @pytest.mark.asyncio
    async def test_provider_rejecting_cancel_leaves_balance_untouched(self, monitor, tiger_sms, make_user):
        user_id = make_user(balance="100")
        bought = await _buy_number(monitor, tiger_sms, user_id)
        tiger_sms.set_status.side_effect = TigerSmsAPIError("Invalid activation status", "BAD_STATUS")

        with pytest.raises(TigerSmsAPIError):
            await monitor.cancel(bought["lease_id"], RequestContext(user_id=user_id))

        assert _lease(bought["lease_id"])["status"] == "waiting"
        assert BalanceLedgerService.get_balance(user_id) == Decimal("40.00")

    @pytest.mark.asyncio
    async def test_other_user_cannot_see_or_cancel(self, monitor, tiger_sms, make_user):
        owner = make_user(balance="100")
        stranger = make_user()
        bought = await _buy_number(monitor, tiger_sms, owner)

        with pytest.raises(LeaseNotFoundError):
            await monitor.cancel(bought["lease_id"], RequestContext(user_id=stranger))
        tiger_sms.set_status.assert_not_awaited()


class TestSmsPolling:

    @pytest.mark.asyncio
    async def test_code_received_is_stored_and_pushed(self, monitor, tiger_sms, make_user, notifier):
        user_id = make_user(balance="100")
        bought = await _buy_number(monitor, tiger_sms, user_id)
        notifier.notify.reset_mock()
        tiger_sms.get_status.return_value = ActivationStatus(
            RemoteActivationState.CODE_RECEIVED, code="12345", raw="STATUS_OK:12345"
        )

        polled = await monitor.poll_sms_leases()

        assert polled == 1
        lease = _lease(bought["lease_id"])
        assert lease["status"] == "code_received"
        assert lease["payload"]["sms_code"] == "12345"
        assert lease["payload"]["codes"] == ["12345"]
        assert lease["poll_count"] == 1
        notifier.notify.assert_awaited_once()
        assert "12345" in notifier.notify.await_args.args[1]

    @pytest.mark.asyncio
    async def test_waiting_poll_changes_nothing(self, monitor, tiger_sms, make_user, notifier):
        user_id = make_user(balance="100")
        bought = await _buy_number(monitor, tiger_sms, user_id)
        notifier.notify.reset_mock()
        tiger_sms.get_status.return_value = ActivationStatus(RemoteActivationState.WAITING, raw="STATUS_WAIT_CODE")

        await monitor.poll_sms_leases()

        assert _lease(bought["lease_id"])["status"] == "waiting"
        notifier.notify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_wait_resend_moves_to_retry(self, monitor, tiger_sms, make_user):
        user_id = make_user(balance="100")
        bought = await _buy_number(monitor, tiger_sms, user_id)
        tiger_sms.get_status.return_value = ActivationStatus(RemoteActivationState.WAIT_RESEND, raw="STATUS_WAIT_RESEND")

        status = await monitor.poll_lease(bought["lease_id"])

        assert status == LeaseStatus.RETRY
        assert _lease(bought["lease_id"])["status"] == "retry"

    @pytest.mark.asyncio
    async def test_provider_failure_only_counts_the_poll(self, monitor, tiger_sms, make_user):
        user_id = make_user(balance="100")
        bought = await _buy_number(monitor, tiger_sms, user_id)
        tiger_sms.get_status.side_effect = TigerSmsAPIError("getStatus timed out")

        await monitor.poll_sms_leases()

        lease = _lease(bought["lease_id"])
        assert lease["status"] == "waiting"
        assert lease["poll_count"] == 1

    @pytest.mark.asyncio
    async def test_code_received_completes_after_activation_ttl(self, monitor, tiger_sms, make_user):
        user_id = make_user(balance="100")
        bought = await _buy_number(monitor, tiger_sms, user_id)
        session = SessionLocal()
        try:
            row = session.get(LeasedResource, bought["lease_id"])
            row.status = LeaseStatus.CODE_RECEIVED.value
            row.issued_at = utc_now() - timedelta(seconds=Config.SMS_ACTIVATION_TTL_SECONDS + 5)
            session.commit()
        finally:
            session.close()

        await monitor.poll_sms_leases()

        lease = _lease(bought["lease_id"])
        assert lease["status"] == "completed"
        assert lease["completed_at"] is not None
        tiger_sms.get_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_owner_actions_follow_state_machine(self, monitor, tiger_sms, make_user):
        user_id = make_user(balance="100")
        bought = await _buy_number(monitor, tiger_sms, user_id)
        ctx = RequestContext(user_id=user_id)
        tiger_sms.set_status.return_value = "ACCESS_READY"

        assert await monitor.mark_ready(bought["lease_id"], ctx) == LeaseStatus.READY
        with pytest.raises(LeaseStateError):
            await monitor.complete(bought["lease_id"], ctx)
        assert tiger_sms.set_status.await_count == 1


class TestBoostPolling:

    @pytest.mark.asyncio
    async def test_batch_poll_completes_and_refunds(self, monitor, profi_like, make_user, notifier):
        user_id = make_user(balance="100")
        profi_like.get_service.return_value = _boost_service("20")
        profi_like.add_order.side_effect = ["501", "502"]
        first = await monitor.place_boost_order(user_id, 7, "https://t.me/channel", 1000, "20", "Subscribers", "Telegram")
        second = await monitor.place_boost_order(user_id, 7, "https://t.me/other", 500, "20", "Subscribers", "Telegram")

        assert first["price"] == Decimal("20.00")
        assert second["new_balance"] == Decimal("70.00")

        profi_like.get_statuses.return_value = {
            "501": BoostStatus("501", LeaseStatus.COMPLETED, raw_status="Completed", start_count=10, remains=0),
            "502": BoostStatus("502", LeaseStatus.CANCELLED, raw_status="Canceled"),
        }
        polled = await monitor.poll_boost_orders()

        assert polled == 2
        profi_like.get_statuses.assert_awaited_once_with(["501", "502"])
        assert _lease(first["lease_id"])["status"] == "completed"
        assert _lease(second["lease_id"])["status"] == "cancelled"
        assert BalanceLedgerService.get_balance(user_id) == Decimal("80.00")

        # Nothing active remains, so the next tick makes no provider call
        assert await monitor.poll_boost_orders() == 0
        assert profi_like.get_statuses.await_count == 1

    @pytest.mark.asyncio
    async def test_partial_is_terminal_without_refund(self, monitor, profi_like, make_user):
        user_id = make_user(balance="100")
        profi_like.get_service.return_value = _boost_service("10")
        profi_like.add_order.return_value = "600"
        placed = await monitor.place_boost_order(user_id, 3, "https://t.me/x", 1000, "10")
        profi_like.get_statuses.return_value = {
            "600": BoostStatus("600", LeaseStatus.PARTIAL, raw_status="Partial", start_count=5, remains=120),
        }

        await monitor.poll_boost_orders()

        lease = _lease(placed["lease_id"])
        assert lease["status"] == "partial"
        assert lease["payload"]["remains"] == 120
        assert BalanceLedgerService.get_balance(user_id) == Decimal("90.00")

    @pytest.mark.asyncio
    async def test_boost_cannot_be_cancelled_by_owner(self, monitor, profi_like, make_user):
        user_id = make_user(balance="100")
        profi_like.get_service.return_value = _boost_service("10")
        profi_like.add_order.return_value = "700"
        placed = await monitor.place_boost_order(user_id, 3, "https://t.me/x", 100, "10")

        with pytest.raises(LeaseStateError):
            await monitor.cancel(placed["lease_id"], RequestContext(user_id=user_id))


class TestProxyExpiry:

    @pytest.mark.asyncio
    async def test_expired_grants_are_swept(self, monitor, make_user, adapters, px6):
        user_id = make_user()
        past = (utc_now() - timedelta(days=1)).strftime("%Y-%m-%d %H:%M:%S")
        future = (utc_now() + timedelta(days=30)).strftime("%Y-%m-%d %H:%M:%S")
        px6.buy.return_value = [
            ProxyGrant(id="p1", host="1.1.1.1", port="8000", user="u", password="p", type="http",
                       country="ru", date=None, date_end=past),
            ProxyGrant(id="p2", host="2.2.2.2", port="8000", user="u", password="p", type="http",
                       country="ru", date=None, date_end=future),
        ]
        await adapters[FulfillmentKind.PROXY].acquire(AcquireRequest(
            user_id=user_id, product_name="Proxy", unit_price=Decimal("50"), quantity=2,
            options={"country": "ru"},
        ))

        assert monitor.expire_proxy_grants() == 1

        leases = monitor.list_leased_resources(user_id, LeaseKind.PROXY)
        statuses = sorted(lease["status"] for lease in leases)
        assert statuses == ["active", "expired"]
        assert monitor.expire_proxy_grants() == 0


class TestListing:

    @pytest.mark.asyncio
    async def test_cancel_hint_only_for_cancellable_numbers(self, monitor, tiger_sms, profi_like, make_user):
        user_id = make_user(balance="100")
        await _buy_number(monitor, tiger_sms, user_id)
        profi_like.get_service.return_value = _boost_service("10")
        profi_like.add_order.return_value = "900"
        await monitor.place_boost_order(user_id, 1, "https://t.me/x", 100, "10")

        leases = monitor.list_leased_resources(user_id)
        numbers = [lease for lease in leases if lease["kind"] == "sms_number"]
        boosts = [lease for lease in leases if lease["kind"] == "social_boost"]

        assert numbers[0]["can_cancel"] is True
        assert numbers[0]["cancel_hint_until"] is not None
        assert boosts[0]["can_cancel"] is False
        assert boosts[0]["cancel_hint_until"] is None
        assert len(monitor.list_leased_resources(user_id, LeaseKind.SMS_NUMBER)) == 1


class TestProviderQuotes:
    """Direct purchases charge the provider's price; a client figure is only compared"""

    @pytest.mark.asyncio
    async def test_number_is_charged_at_the_quote(self, monitor, tiger_sms, make_user):
        user_id = make_user(balance="100")
        tiger_sms.quote_price.return_value = Decimal("60")
        tiger_sms.get_number.return_value = NumberActivation(activation_id="2001", phone_number="7900")

        bought = await monitor.purchase_number(user_id, "tg", 0)

        tiger_sms.quote_price.assert_awaited_once_with("tg", 0)
        assert bought["new_balance"] == Decimal("40.00")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("client_price", ["0", "0.01", "58"])
    async def test_number_below_the_quote_is_refused(self, monitor, tiger_sms, make_user, client_price):
        user_id = make_user(balance="100")
        tiger_sms.quote_price.return_value = Decimal("60")

        with pytest.raises(PriceMismatchError):
            await monitor.purchase_number(user_id, "tg", 0, client_price)

        tiger_sms.get_number.assert_not_awaited()
        assert BalanceLedgerService.get_balance(user_id) == Decimal("100.00")
        assert monitor.list_leased_resources(user_id) == []

    @pytest.mark.asyncio
    async def test_no_numbers_at_the_provider(self, monitor, tiger_sms, make_user):
        user_id = make_user(balance="100")
        tiger_sms.quote_price.side_effect = OutOfStockError("tg numbers (0)")

        with pytest.raises(OutOfStockError):
            await monitor.purchase_number(user_id, "tg", 0, "60")

        tiger_sms.get_number.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_boost_is_charged_at_the_catalog_rate(self, monitor, profi_like, make_user):
        user_id = make_user(balance="100")
        profi_like.get_service.return_value = _boost_service("20", name="Views", category="Telegram")
        profi_like.add_order.return_value = "800"

        placed = await monitor.place_boost_order(user_id, 7, "https://t.me/x", 1000, service_name="Free stuff")

        profi_like.get_service.assert_awaited_once_with(7)
        assert placed["price"] == Decimal("20.00")
        assert BalanceLedgerService.get_balance(user_id) == Decimal("80.00")

    @pytest.mark.asyncio
    async def test_boost_with_a_lowered_rate_is_refused(self, monitor, profi_like, make_user):
        user_id = make_user(balance="100")
        profi_like.get_service.return_value = _boost_service("20")

        with pytest.raises(PriceMismatchError):
            await monitor.place_boost_order(user_id, 7, "https://t.me/x", 1000, "0.01")

        profi_like.add_order.assert_not_awaited()
        assert BalanceLedgerService.get_balance(user_id) == Decimal("100.00")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [5, 200000])
    async def test_boost_quantity_outside_catalog_bounds(self, monitor, profi_like, make_user, quantity):
        user_id = make_user(balance="100")
        profi_like.get_service.return_value = _boost_service("10")

        with pytest.raises(ValidationError):
            await monitor.place_boost_order(user_id, 7, "https://t.me/x", quantity)

        profi_like.add_order.assert_not_awaited()
        assert BalanceLedgerService.get_balance(user_id) == Decimal("100.00")
