"""
Resource Lifecycle Monitor
==========================

Sole writer of lease status after issuance. Drives every provider-issued resource
to a terminal state:

- SMS numbers: one getStatus call per active lease per tick
- Boost orders: one batched status call per tick
- Proxy grants: local expiry sweep, no remote call

Polls carry a short timeout and no retry; a failed poll simply waits for the next
tick. Cancellation (by the owner or reported by the provider) goes through
settle_cancellation so the refund happens exactly once. When a lease attached to
an order resolves, the order is completed as soon as nothing else is owed.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional
from sqlalchemy import update
from config import Config
from models import FulfillmentKind, LeasedResource, LeaseKind, LeaseStatus, utc_now
from services.balance_ledger_service import BalanceLedgerService
from services.delivery_notifier import delivery_notifier, shop_buttons, NotifyButton
from services.fulfillment_adapters import AcquireRequest, FulfillmentAdapter, build_adapter_registry
from services.fulfillment_dispatcher import complete_order_if_settled
from services.lease_settlement import settle_cancellation
from services.profi_like_service import BoostStatus, ProfiLikeService, boost_price
from services.tiger_sms_service import ActivationStatusCode, RemoteActivationState, TigerSmsService
from utils.atomic_transactions import atomic_transaction
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    LeaseNotFoundError, LeaseStateError, PriceMismatchError, ProviderUnavailableError, ValidationError,
)
from utils.lease_state_validator import LeaseStateValidator
from utils.request_context import RequestContext

logger = logging.getLogger(__name__)

leased_resources = LeasedResource.__table__


@dataclass
class LeaseSnapshot:
    """Detached copy of a lease row, safe to use after the session is closed"""
    id: int
    kind: LeaseKind
    status: LeaseStatus
    provider_ref: str
    user_id: int
    order_id: Optional[int]
    price: Decimal
    issued_at: Any
    expires_at: Any
    payload: Dict[str, Any]

    @classmethod
    def from_row(cls, lease: LeasedResource) -> "LeaseSnapshot":
        return cls(
            id=lease.id,
            kind=LeaseKind(lease.kind),
            status=LeaseStatus(lease.status),
            provider_ref=lease.provider_ref,
            user_id=lease.user_id,
            order_id=lease.order_id,
            price=lease.price,
            issued_at=lease.issued_at,
            expires_at=lease.expires_at,
            payload=dict(lease.payload or {}),
        )


def _user_owns(ctx: Optional[RequestContext], lease: LeaseSnapshot) -> bool:
    if ctx is None or ctx.is_admin:
        return True
    return ctx.user_id == lease.user_id


class LeaseLifecycleMonitor:
    """Polls providers and applies lease transitions"""

    def __init__(
        self,
        tiger_sms: Optional[TigerSmsService] = None,
        profi_like: Optional[ProfiLikeService] = None,
        notifier=None,
        adapters: Optional[Dict[FulfillmentKind, FulfillmentAdapter]] = None,
    ):
        self.tiger_sms = tiger_sms or TigerSmsService()
        self.profi_like = profi_like or ProfiLikeService()
        self.notifier = notifier if notifier is not None else delivery_notifier
        self.adapters = adapters if adapters is not None else build_adapter_registry(
            tiger_sms=self.tiger_sms, profi_like=self.profi_like
        )

    # ------------------------------------------------------------------
    # Storage helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _load(lease_id: int) -> LeaseSnapshot:
        with atomic_transaction() as tx:
            lease = tx.get(LeasedResource, lease_id)
            if not lease:
                raise LeaseNotFoundError(f"Leased resource {lease_id} not found")
            return LeaseSnapshot.from_row(lease)

    @staticmethod
    def _load_active(kind: LeaseKind) -> List[LeaseSnapshot]:
        with atomic_transaction() as tx:
            rows = (
                tx.query(LeasedResource)
                .filter(
                    LeasedResource.kind == kind.value,
                    LeasedResource.status.in_(LeaseStateValidator.active_values(kind)),
                )
                .order_by(LeasedResource.id)
                .all()
            )
            return [LeaseSnapshot.from_row(row) for row in rows]

    @staticmethod
    def _touch(lease_ids: List[int]):
        if not lease_ids:
            return
        with atomic_transaction() as tx:
            tx.execute(
                update(leased_resources)
                .where(leased_resources.c.id.in_(lease_ids))
                .values(poll_count=leased_resources.c.poll_count + 1, last_polled_at=utc_now())
            )

    @staticmethod
    def _transition(
        lease: LeaseSnapshot,
        to_status: LeaseStatus,
        payload_updates: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Apply a validated transition if the row is still in the state we observed.
        Returns False when another writer moved the lease first.
        """
        LeaseStateValidator.assert_transition(lease.kind, lease.status, to_status, lease.id)
        with atomic_transaction() as tx:
            row = tx.get(LeasedResource, lease.id, with_for_update=True)
            if row is None or row.status != lease.status.value:
                logger.info(
                    f"↔️ LEASE_TRANSITION_SKIPPED: lease {lease.id} is {row.status if row else 'gone'}, "
                    f"expected {lease.status.value}"
                )
                return False
            row.status = to_status.value
            if payload_updates:
                row.payload = {**(row.payload or {}), **payload_updates}
            if to_status == LeaseStatus.COMPLETED:
                row.completed_at = utc_now()
        logger.info(f"🔁 LEASE_TRANSITION: lease {lease.id} {lease.status.value} -> {to_status.value}")
        return True

    @staticmethod
    def _update_payload(lease_id: int, payload_updates: Dict[str, Any]):
        with atomic_transaction() as tx:
            row = tx.get(LeasedResource, lease_id, with_for_update=True)
            if row is not None:
                row.payload = {**(row.payload or {}), **payload_updates}

    async def _notify(self, user_id: int, text: str, buttons=()):
        try:
            await self.notifier.notify(user_id, text, buttons=buttons)
        except Exception as e:
            logger.error(f"❌ NOTIFY_FAILED: user {user_id}: {e}")

    async def _settle_order(self, order_id: Optional[int]):
        """Complete the owning order once no lease of it is still active"""
        if order_id is None:
            return
        completed = complete_order_if_settled(order_id)
        if completed:
            await self._notify(
                completed["user_id"],
                f"✅ Order #{order_id} is complete\n\n{completed['delivered_content']}".rstrip(),
                buttons=shop_buttons(review_ref=f"order_{order_id}"),
            )

    # ------------------------------------------------------------------
    # SMS numbers
    # ------------------------------------------------------------------

    async def poll_sms_lease(self, lease: LeaseSnapshot) -> LeaseStatus:
        """One getStatus round-trip; returns the lease status after the poll"""
        if lease.status == LeaseStatus.CODE_RECEIVED:
            # Code already delivered; the activation closes by itself once its TTL elapses
            deadline = lease.issued_at + timedelta(seconds=Config.SMS_ACTIVATION_TTL_SECONDS)
            if utc_now() >= deadline and self._transition(lease, LeaseStatus.COMPLETED):
                logger.info(f"⌛ SMS_AUTO_COMPLETED: lease {lease.id} past activation TTL")
                await self._settle_order(lease.order_id)
                return LeaseStatus.COMPLETED
            return lease.status

        try:
            remote = await self.tiger_sms.get_status(lease.provider_ref)
        except ProviderUnavailableError as e:
            logger.warning(f"⚠️ SMS_POLL_FAILED: lease {lease.id}: {e.message}")
            self._touch([lease.id])
            return lease.status
        self._touch([lease.id])

        phone = lease.payload.get("phone_number", "")

        if remote.state == RemoteActivationState.CODE_RECEIVED:
            codes = list(lease.payload.get("codes") or [])
            codes.append(remote.code)
            moved = self._transition(
                lease, LeaseStatus.CODE_RECEIVED,
                {"sms_code": remote.code, "sms_full": remote.raw, "codes": codes},
            )
            if moved:
                logger.info(f"📩 SMS_CODE_RECEIVED: lease {lease.id}")
                await self._notify(
                    lease.user_id,
                    f"📩 SMS code for +{phone}: {remote.code}\n"
                    f"Service: {lease.payload.get('service_name', '')}",
                )
                return LeaseStatus.CODE_RECEIVED
            return lease.status

        if remote.state == RemoteActivationState.WAIT_RESEND:
            if lease.status in (LeaseStatus.WAITING, LeaseStatus.READY) and self._transition(lease, LeaseStatus.RETRY):
                return LeaseStatus.RETRY
            return lease.status

        if remote.state == RemoteActivationState.CANCELLED:
            refunded = settle_cancellation(
                lease.id,
                LeaseStateValidator.cancellable_values(LeaseKind.SMS_NUMBER),
                "Refund for virtual number (cancelled by provider)",
            )
            if refunded > 0:
                await self._notify(
                    lease.user_id,
                    f"❌ Number +{phone} was cancelled by the provider.\n"
                    f"💰 {MonetaryDecimal.format_amount(refunded)} returned to your balance.",
                )
            await self._settle_order(lease.order_id)
            return LeaseStatus.CANCELLED

        return lease.status

    async def poll_sms_leases(self) -> int:
        """Poll every active SMS lease; returns how many were polled"""
        leases = self._load_active(LeaseKind.SMS_NUMBER)
        for lease in leases:
            try:
                await self.poll_sms_lease(lease)
            except LeaseStateError as e:
                logger.warning(f"🚫 SMS_POLL_REJECTED: lease {lease.id}: {e.message}")
        if leases:
            logger.debug(f"📱 SMS_POLL_TICK: {len(leases)} active numbers")
        return len(leases)

    # ------------------------------------------------------------------
    # Boost orders
    # ------------------------------------------------------------------

    async def _apply_boost_status(self, lease: LeaseSnapshot, remote: BoostStatus):
        if remote.error:
            logger.warning(f"⚠️ BOOST_STATUS_ERROR: lease {lease.id} order {lease.provider_ref}: {remote.error}")
            return
        if remote.status is None:
            return

        counters = {"start_count": remote.start_count, "remains": remote.remains, "raw_status": remote.raw_status}
        ref = lease.provider_ref

        if remote.status == LeaseStatus.CANCELLED:
            refunded = settle_cancellation(
                lease.id,
                LeaseStateValidator.cancellable_values(LeaseKind.SOCIAL_BOOST),
                f"Refund for boost order #{ref} (cancelled by provider)",
            )
            self._update_payload(lease.id, counters)
            if refunded > 0:
                await self._notify(
                    lease.user_id,
                    f"❌ Boost order #{ref} was cancelled.\n"
                    f"💰 {MonetaryDecimal.format_amount(refunded)} returned to your balance.",
                )
            await self._settle_order(lease.order_id)
            return

        if remote.status == lease.status:
            if counters["remains"] != lease.payload.get("remains") or counters["start_count"] != lease.payload.get("start_count"):
                self._update_payload(lease.id, counters)
            return

        if not self._transition(lease, remote.status, counters):
            return

        if remote.status == LeaseStatus.COMPLETED:
            await self._notify(
                lease.user_id,
                f"✅ Boost order #{ref} completed\n{lease.payload.get('service_name', '')}\n"
                f"Link: {lease.payload.get('link', '')}",
            )
        elif remote.status == LeaseStatus.PARTIAL:
            await self._notify(
                lease.user_id,
                f"⚠️ Boost order #{ref} partially completed (remains: {remote.remains or 0})",
            )
        if LeaseStateValidator.is_terminal(LeaseKind.SOCIAL_BOOST, remote.status):
            await self._settle_order(lease.order_id)

    async def poll_boost_orders(self) -> int:
        """One batched status call for every active boost order"""
        leases = self._load_active(LeaseKind.SOCIAL_BOOST)
        if not leases:
            return 0

        try:
            statuses = await self.profi_like.get_statuses([lease.provider_ref for lease in leases])
        except ProviderUnavailableError as e:
            logger.warning(f"⚠️ BOOST_POLL_FAILED: {len(leases)} orders: {e.message}")
            return 0
        self._touch([lease.id for lease in leases])

        for lease in leases:
            remote = statuses.get(str(lease.provider_ref))
            if remote is None:
                continue
            try:
                await self._apply_boost_status(lease, remote)
            except LeaseStateError as e:
                logger.warning(f"🚫 BOOST_POLL_REJECTED: lease {lease.id}: {e.message}")
        logger.debug(f"🚀 BOOST_POLL_TICK: {len(leases)} active orders")
        return len(leases)

    # ------------------------------------------------------------------
    # Proxy grants
    # ------------------------------------------------------------------

    @staticmethod
    def expire_proxy_grants() -> int:
        """Local sweep: active grants past expires_at become expired"""
        with atomic_transaction() as tx:
            rows = tx.execute(
                update(leased_resources)
                .where(
                    leased_resources.c.kind == LeaseKind.PROXY.value,
                    leased_resources.c.status == LeaseStatus.ACTIVE.value,
                    leased_resources.c.expires_at.isnot(None),
                    leased_resources.c.expires_at <= utc_now(),
                )
                .values(status=LeaseStatus.EXPIRED.value, completed_at=utc_now())
                .returning(leased_resources.c.id)
            ).fetchall()
        if rows:
            logger.info(f"⌛ PROXY_EXPIRED: {len(rows)} grants")
        return len(rows)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def poll_lease(self, lease_id: int) -> LeaseStatus:
        lease = self._load(lease_id)
        if LeaseStateValidator.is_terminal(lease.kind, lease.status):
            return lease.status

        if lease.kind == LeaseKind.SMS_NUMBER:
            return await self.poll_sms_lease(lease)

        if lease.kind == LeaseKind.SOCIAL_BOOST:
            try:
                remote = await self.profi_like.get_status(lease.provider_ref)
            except ProviderUnavailableError as e:
                logger.warning(f"⚠️ BOOST_POLL_FAILED: lease {lease.id}: {e.message}")
                return lease.status
            self._touch([lease.id])
            await self._apply_boost_status(lease, remote)
            return self._load(lease_id).status

        if lease.expires_at and lease.expires_at <= utc_now():
            self._transition(lease, LeaseStatus.EXPIRED)
            return LeaseStatus.EXPIRED
        return lease.status

    async def poll_active_leases(self) -> Dict[str, int]:
        """Full sweep over every lease kind"""
        return {
            "sms": await self.poll_sms_leases(),
            "boost": await self.poll_boost_orders(),
            "proxy_expired": self.expire_proxy_grants(),
        }

    def _owned(self, lease_id: int, ctx: Optional[RequestContext]) -> LeaseSnapshot:
        lease = self._load(lease_id)
        if not _user_owns(ctx, lease):
            # Same answer as a missing lease so ids of other users are not revealed
            raise LeaseNotFoundError(f"Leased resource {lease_id} not found")
        return lease

    async def cancel(self, lease_id: int, ctx: Optional[RequestContext] = None) -> Dict[str, Any]:
        """Owner-initiated cancel; refunds exactly once and reports the new balance"""
        lease = self._owned(lease_id, ctx)
        adapter = self.adapters[FulfillmentKind(lease.kind.value)]
        refunded = await adapter.cancel(lease_id)
        await self._settle_order(lease.order_id)
        logger.info(f"🛑 LEASE_CANCELLED: lease {lease_id} by user {ctx.user_id if ctx else None}, refunded {refunded}")
        return {
            "lease_id": lease_id,
            "refunded": refunded,
            "new_balance": BalanceLedgerService.get_balance(lease.user_id),
        }

    async def _remote_sms_action(
        self,
        lease_id: int,
        ctx: Optional[RequestContext],
        code: ActivationStatusCode,
        to_status: LeaseStatus,
    ) -> LeaseStatus:
        lease = self._owned(lease_id, ctx)
        if lease.kind != LeaseKind.SMS_NUMBER:
            raise LeaseStateError(f"Lease {lease_id} is not a phone number")
        # Reject locally before telling the provider anything
        LeaseStateValidator.assert_transition(lease.kind, lease.status, to_status, lease.id)
        await self.tiger_sms.set_status(lease.provider_ref, code)
        if not self._transition(lease, to_status):
            return self._load(lease_id).status
        return to_status

    async def mark_ready(self, lease_id: int, ctx: Optional[RequestContext] = None) -> LeaseStatus:
        return await self._remote_sms_action(lease_id, ctx, ActivationStatusCode.READY, LeaseStatus.READY)

    async def request_retry(self, lease_id: int, ctx: Optional[RequestContext] = None) -> LeaseStatus:
        return await self._remote_sms_action(lease_id, ctx, ActivationStatusCode.RETRY, LeaseStatus.RETRY)

    async def complete(self, lease_id: int, ctx: Optional[RequestContext] = None) -> LeaseStatus:
        status = await self._remote_sms_action(lease_id, ctx, ActivationStatusCode.COMPLETE, LeaseStatus.COMPLETED)
        if status == LeaseStatus.COMPLETED:
            await self._settle_order(self._load(lease_id).order_id)
        return status

    @staticmethod
    def list_leased_resources(user_id: int, kind: Optional[LeaseKind] = None) -> List[Dict[str, Any]]:
        """Read-only view of a user's leases, newest first"""
        with atomic_transaction() as tx:
            query = tx.query(LeasedResource).filter(LeasedResource.user_id == user_id)
            if kind is not None:
                query = query.filter(LeasedResource.kind == kind.value)
            rows = query.order_by(LeasedResource.issued_at.desc(), LeasedResource.id.desc()).all()

            result = []
            for row in rows:
                lease_kind = LeaseKind(row.kind)
                can_cancel = (
                    lease_kind == LeaseKind.SMS_NUMBER
                    and row.status in LeaseStateValidator.cancellable_values(lease_kind)
                )
                cancel_hint_until = None
                if can_cancel:
                    cancel_hint_until = row.issued_at + timedelta(seconds=Config.LEASE_CANCEL_WINDOW_SECONDS)
                result.append({
                    "id": row.id,
                    "kind": row.kind,
                    "provider": row.provider,
                    "provider_ref": row.provider_ref,
                    "status": row.status,
                    "price": str(MonetaryDecimal.quantize(row.price)),
                    "order_id": row.order_id,
                    "issued_at": row.issued_at.isoformat(),
                    "expires_at": row.expires_at.isoformat() if row.expires_at else None,
                    "completed_at": row.completed_at.isoformat() if row.completed_at else None,
                    "cancel_hint_until": cancel_hint_until.isoformat() if cancel_hint_until else None,
                    "can_cancel": can_cancel,
                    "payload": dict(row.payload or {}),
                })
            return result

    # ------------------------------------------------------------------
    # Direct purchases (no order; balance is charged at acquisition)
    # ------------------------------------------------------------------

    async def purchase_number(
        self,
        user_id: int,
        service: str,
        country: Any,
        expected_price: Any = None,
        service_name: Optional[str] = None,
        country_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Rent a number and charge the provider quote. A price shown to the buyer is only
        checked against the quote, never charged.
        """
        amount = await self.tiger_sms.quote_price(service, country)
        self._check_quote(expected_price, amount, f"number {service}/{country}")

        adapter = self.adapters[FulfillmentKind.SMS_NUMBER]
        result = await adapter.acquire(AcquireRequest(
            user_id=user_id,
            product_name="Virtual number",
            unit_price=amount,
            quantity=1,
            options={
                "service": service,
                "country": str(country),
                "service_name": service_name or service,
                "country_name": country_name or str(country),
            },
            charge_balance=True,
        ))
        lease_id = result.leased_resource_ids[0]
        lease = self._load(lease_id)
        phone = lease.payload.get("phone_number")

        await self._notify(
            user_id,
            f"📱 Virtual number received!\n\n"
            f"📋 Service: {service_name or service}\n"
            f"📞 Number: +{phone}\n"
            f"💰 Price: {MonetaryDecimal.format_amount(amount)}\n\n"
            f"Open the app to receive the SMS code.",
            buttons=self._number_buttons(lease.provider_ref),
        )
        return {
            "lease_id": lease_id,
            "activation_id": lease.provider_ref,
            "phone_number": phone,
            "new_balance": BalanceLedgerService.get_balance(user_id),
        }

    @staticmethod
    def _check_quote(expected: Any, quoted: Decimal, what: str):
        if expected in (None, ""):
            return
        submitted = MonetaryDecimal.quantize(expected)
        if abs(submitted - quoted) > Config.PRICE_TOLERANCE:
            logger.error(f"💱 PRICE_MISMATCH: {what}: client sent {submitted}, provider quote {quoted}")
            raise PriceMismatchError(submitted, quoted)

    @staticmethod
    def _number_buttons(activation_id: str) -> List[NotifyButton]:
        buttons = []
        if Config.WEBAPP_URL:
            buttons.append(NotifyButton("📱 My numbers", url=f"{Config.WEBAPP_URL}?startapp=numbers"))
        buttons.append(NotifyButton("⭐ Leave a review", callback_data=f"review_start:{activation_id}"))
        return buttons

    async def place_boost_order(
        self,
        user_id: int,
        service_id: Any,
        link: str,
        quantity: int,
        expected_rate: Any = None,
        service_name: Optional[str] = None,
        category: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Place a boost priced from the panel catalog rate; a client rate is only checked"""
        if quantity <= 0:
            raise ValidationError("Quantity must be positive")
        if not link:
            raise ValidationError("Link is required")

        service = await self.profi_like.get_service(service_id)
        minimum, maximum = service.get("min"), service.get("max")
        if minimum not in (None, "") and quantity < int(minimum):
            raise ValidationError(f"Quantity must be at least {minimum}")
        if maximum not in (None, "") and quantity > int(maximum):
            raise ValidationError(f"Quantity must be at most {maximum}")

        price = boost_price(service.get("rate"), quantity)
        if price <= 0:
            raise ValidationError(f"Boost service {service_id} has no price")
        if expected_rate not in (None, ""):
            self._check_quote(boost_price(expected_rate, quantity), price, f"boost service {service_id}")
        service_name = service.get("name") or service_name
        category = service.get("category") or category
        adapter = self.adapters[FulfillmentKind.SOCIAL_BOOST]
        result = await adapter.acquire(AcquireRequest(
            user_id=user_id,
            product_name=service_name or f"Service #{service_id}",
            unit_price=price,
            quantity=1,
            options={
                "service_id": service_id,
                "link": link,
                "boost_quantity": quantity,
                "service_name": service_name,
                "category": category,
            },
            charge_balance=True,
        ))
        lease_id = result.leased_resource_ids[0]
        lease = self._load(lease_id)

        await self._notify(
            user_id,
            f"🚀 Boost order #{lease.provider_ref} placed\n\n"
            f"📋 {lease.payload.get('category')} - {lease.payload.get('service_name')}\n"
            f"🔗 {link}\n"
            f"📊 Quantity: {quantity}\n"
            f"💰 Price: {MonetaryDecimal.format_amount(price)}",
        )
        return {
            "lease_id": lease_id,
            "order_ref": lease.provider_ref,
            "price": price,
            "new_balance": BalanceLedgerService.get_balance(user_id),
        }
