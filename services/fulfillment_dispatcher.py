"""
Fulfillment Dispatcher
======================

Turns a paid order into delivered goods in exactly one pass:

    paid --(dispatch once)--> completed
                          +-> paid, with async or manual lines still owed

Ownership of the pass is taken with a conditional update on dispatch_started_at, so
concurrent or repeated invocations never reach a provider twice. Each line is an
independent failure domain: a failing provider degrades its own line to an inline
error and the rest of the order is still delivered. The notifier runs only after
the resulting state is committed.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional
from sqlalchemy import update
from sqlalchemy.orm import Session
from config import Config
from models import (
    Order, OrderLine, Product, LeasedResource, OrderStatus, FulfillmentKind, LeaseKind, utc_now,
)
from services.delivery_notifier import Attachment, delivery_notifier, shop_buttons
from services.fulfillment_adapters import (
    AcquireRequest, AcquireResult, FulfillmentAdapter, build_adapter_registry,
)
from utils.atomic_transactions import atomic_transaction
from utils.exception_handler import FulfillmentError, OrderNotFoundError, OrderNotPaidError
from utils.lease_state_validator import LeaseStateValidator

logger = logging.getLogger(__name__)

orders = Order.__table__

# Lease states that still owe the buyer something
PENDING_LEASE_STATUSES = (
    LeaseStateValidator.active_values(LeaseKind.SMS_NUMBER)
    | LeaseStateValidator.active_values(LeaseKind.SOCIAL_BOOST)
)


@dataclass
class DispatchResult:
    order_id: int
    items_delivered: int
    delivered_content: str
    async_pending: bool
    status: str
    already_processed: bool = False
    failed_lines: int = 0


@dataclass
class _LineSnapshot:
    line_id: int
    product_id: int
    product_name: str
    unit_price: Decimal
    quantity: int
    kind: FulfillmentKind
    options: Dict[str, Any] = field(default_factory=dict)


def has_pending_work(tx: Session, order_id: int) -> bool:
    """True while an order still has an unresolved lease or a manual-credit line"""
    active_lease = (
        tx.query(LeasedResource.id)
        .filter(
            LeasedResource.order_id == order_id,
            LeasedResource.status.in_(PENDING_LEASE_STATUSES),
        )
        .first()
    )
    if active_lease:
        return True
    manual_line = (
        tx.query(OrderLine.id)
        .join(Product, Product.id == OrderLine.product_id)
        .filter(
            OrderLine.order_id == order_id,
            Product.fulfillment_kind == FulfillmentKind.MANUAL_CREDIT.value,
        )
        .first()
    )
    return manual_line is not None


def complete_order_if_settled(order_id: int, session: Optional[Session] = None) -> Optional[Dict[str, Any]]:
    """
    Complete a dispatched order once nothing is owed any more.
    Returns {user_id, delivered_content} only for the caller that made the transition.
    """
    with atomic_transaction(session) as tx:
        if has_pending_work(tx, order_id):
            return None
        row = tx.execute(
            update(orders)
            .where(
                orders.c.id == order_id,
                orders.c.status == OrderStatus.PAID.value,
                orders.c.dispatched_at.isnot(None),
            )
            .values(status=OrderStatus.COMPLETED.value, completed_at=utc_now(), updated_at=utc_now())
            .returning(orders.c.user_id, orders.c.delivered_content)
        ).first()
    if row is None:
        return None
    logger.info(f"✅ ORDER_COMPLETED: order {order_id} (all async lines resolved)")
    return {"user_id": row.user_id, "delivered_content": row.delivered_content or ""}


class FulfillmentDispatcher:
    """Routes each order line to the adapter for its product's fulfillment kind"""

    def __init__(self, adapters: Optional[Dict[FulfillmentKind, FulfillmentAdapter]] = None, notifier=None):
        self.adapters = adapters if adapters is not None else build_adapter_registry()
        self.notifier = notifier if notifier is not None else delivery_notifier

    @staticmethod
    def _stored_result(order: Order) -> DispatchResult:
        return DispatchResult(
            order_id=order.id,
            items_delivered=order.items_delivered or 0,
            delivered_content=order.delivered_content or "",
            async_pending=order.status == OrderStatus.PAID.value,
            status=order.status,
            already_processed=True,
        )

    def _begin_dispatch(self, order_id: int):
        """Entry guard + ownership. Returns (stored_result, None) or (None, (user_id, lines))."""
        with atomic_transaction() as tx:
            order = tx.get(Order, order_id)
            if not order:
                raise OrderNotFoundError(f"Order {order_id} not found")

            if order.status == OrderStatus.COMPLETED.value:
                logger.info(f"♻️ DISPATCH_SKIPPED: order {order_id} already completed")
                return self._stored_result(order), None
            if order.status != OrderStatus.PAID.value:
                raise OrderNotPaidError(f"Order {order_id} is {order.status}, not paid")

            claimed = tx.execute(
                update(orders)
                .where(
                    orders.c.id == order_id,
                    orders.c.status == OrderStatus.PAID.value,
                    orders.c.dispatch_started_at.is_(None),
                )
                .values(dispatch_started_at=utc_now())
            ).rowcount
            if not claimed:
                logger.info(f"♻️ DISPATCH_SKIPPED: order {order_id} already dispatched")
                tx.refresh(order)
                return self._stored_result(order), None

            lines = []
            for line in order.lines:
                product = tx.get(Product, line.product_id)
                lines.append(_LineSnapshot(
                    line_id=line.id,
                    product_id=line.product_id,
                    product_name=line.product_name,
                    unit_price=line.unit_price,
                    quantity=line.quantity,
                    kind=FulfillmentKind(product.fulfillment_kind),
                    options={**(product.provider_options or {}), **(line.options or {})},
                ))
            return None, (order.user_id, lines)

    async def _acquire_line(self, order_id: int, user_id: int, line: _LineSnapshot) -> AcquireResult:
        adapter = self.adapters[line.kind]
        request = AcquireRequest(
            user_id=user_id,
            product_name=line.product_name,
            unit_price=line.unit_price,
            quantity=line.quantity,
            options=line.options,
            order_id=order_id,
            order_line_id=line.line_id,
            product_id=line.product_id,
            charge_balance=False,
        )
        return await adapter.acquire(request)

    async def process_order(self, order_id: int) -> DispatchResult:
        """Idempotent: a second call returns the stored outcome without touching any provider"""
        stored, work = self._begin_dispatch(order_id)
        if stored is not None:
            return stored

        user_id, lines = work
        logger.info(f"🚚 DISPATCH_START: order {order_id} with {len(lines)} lines")

        payloads: List[str] = []
        attachments: List[Attachment] = []
        items_delivered = 0
        failed_lines = 0
        pending = False

        for line in lines:
            try:
                result = await self._acquire_line(order_id, user_id, line)
            except FulfillmentError as e:
                failed_lines += 1
                logger.error(f"❌ LINE_FAILED: order {order_id} line {line.line_id} ({line.kind.value}): {e}")
                payloads.append(f"⚠️ {line.product_name}: {getattr(e, 'detail', e.message)}")
                continue
            except Exception as e:
                failed_lines += 1
                logger.exception(f"❌ LINE_CRASHED: order {order_id} line {line.line_id} ({line.kind.value}): {e}")
                payloads.append(f"⚠️ {line.product_name}: delivery failed, support has been notified")
                continue

            payloads.extend(result.payloads)
            attachments.extend(result.attachments)
            items_delivered += result.delivered_units
            pending = pending or result.pending

        content = Config.DELIVERY_SEPARATOR.join(payloads)
        status = self._finalize(order_id, content, items_delivered, pending)

        logger.info(
            f"🏁 DISPATCH_DONE: order {order_id} status={status} items={items_delivered} "
            f"failed_lines={failed_lines}"
        )

        if content or attachments:
            await self._notify(user_id, order_id, content, attachments)

        return DispatchResult(
            order_id=order_id,
            items_delivered=items_delivered,
            delivered_content=content,
            async_pending=status == OrderStatus.PAID.value,
            status=status,
            failed_lines=failed_lines,
        )

    @staticmethod
    def _finalize(order_id: int, content: str, items_delivered: int, pending: bool) -> str:
        with atomic_transaction() as tx:
            # Leases may have resolved while other lines were still being acquired
            still_pending = pending and has_pending_work(tx, order_id)
            now = utc_now()
            values = {
                "delivered_content": content,
                "items_delivered": items_delivered,
                "dispatched_at": now,
                "updated_at": now,
            }
            if not still_pending:
                values.update(status=OrderStatus.COMPLETED.value, completed_at=now)
            tx.execute(
                update(orders)
                .where(orders.c.id == order_id, orders.c.status == OrderStatus.PAID.value)
                .values(**values)
            )
        return OrderStatus.PAID.value if still_pending else OrderStatus.COMPLETED.value

    async def _notify(self, user_id: int, order_id: int, content: str, attachments: List[Attachment]):
        try:
            await self.notifier.notify(
                user_id,
                f"✅ Order #{order_id}\n\n{content}" if content else f"✅ Order #{order_id}",
                attachments=attachments,
                buttons=shop_buttons(review_ref=f"order_{order_id}"),
            )
        except Exception as e:
            logger.error(f"❌ NOTIFY_FAILED: order {order_id}: {e}")
