"""
Admin Fulfillment Service
Administrative overrides: balance adjustment, manual delivery, stock management and
completion of manual-credit orders. Every call takes an explicit RequestContext.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Sequence
from sqlalchemy import update
from config import Config
from models import (
    FulfillmentKind, LeasedResource, Order, OrderLine, OrderStatus, PaymentMethod, Product, utc_now,
)
from services.balance_ledger_service import BalanceLedgerService
from services.delivery_notifier import Attachment, delivery_notifier
from services.fulfillment_dispatcher import PENDING_LEASE_STATUSES
from services.inventory_claim_service import InventoryClaimService
from utils.atomic_transactions import atomic_transaction, locked_order_operation
from utils.exception_handler import (
    ForbiddenError, OrderNotPaidError, OutOfStockError, ProductNotFoundError,
    UnauthorizedError, ValidationError,
)
from utils.request_context import RequestContext

logger = logging.getLogger(__name__)

orders = Order.__table__


def require_admin(ctx: Optional[RequestContext]) -> RequestContext:
    if ctx is None or (ctx.user_id is None and not ctx.via_admin_token):
        raise UnauthorizedError("Authentication required")
    if not ctx.is_admin:
        raise ForbiddenError("Administrator role required")
    return ctx


class AdminFulfillmentService:
    """Administrative operations on balances, stock and orders"""

    def __init__(self, notifier=None):
        self.notifier = notifier if notifier is not None else delivery_notifier

    async def _notify(self, user_id: int, text: str, attachments=()):
        try:
            await self.notifier.notify(user_id, text, attachments=attachments)
        except Exception as e:
            logger.error(f"❌ NOTIFY_FAILED: admin notice to user {user_id}: {e}")

    def adjust_balance(self, ctx: RequestContext, user_id: int, mode: str, amount: Any) -> Dict[str, Any]:
        """mode 'set' replaces the balance, 'add' applies a signed delta"""
        require_admin(ctx)
        description = f"Balance {'set' if mode == 'set' else 'adjusted'} by administrator"
        if mode == "set":
            entry = BalanceLedgerService.set_absolute(user_id, amount, description)
        elif mode == "add":
            entry = BalanceLedgerService.adjust(user_id, amount, description)
        else:
            raise ValidationError(f"Unknown balance mode: {mode}")

        logger.info(f"🛠️ ADMIN_BALANCE: {ctx.user_id} {mode} {amount} for user {user_id} -> {entry.balance_after}")
        return {"user_id": user_id, "balance": entry.balance_after, "change": entry.amount}

    async def deliver_product(
        self, ctx: RequestContext, user_id: int, product_id: int, quantity: int = 1
    ) -> Dict[str, Any]:
        """
        Give stock to a user for free. Goes through the claim service like any sale
        and is recorded as a zero-total admin_delivery order.
        """
        require_admin(ctx)
        if quantity <= 0:
            raise ValidationError("Quantity must be positive")

        with atomic_transaction() as tx:
            product = tx.get(Product, product_id)
            if not product:
                raise ProductNotFoundError(f"Product {product_id} not found")
            if product.fulfillment_kind != FulfillmentKind.LOCAL_ITEM.value:
                raise ValidationError(f"{product.name} has no local stock to deliver")
            product_name = product.name

            now = utc_now()
            order = Order(
                user_id=user_id,
                total=Decimal("0"),
                status=OrderStatus.COMPLETED.value,
                payment_method=PaymentMethod.ADMIN_DELIVERY.value,
                paid_at=now,
                dispatch_started_at=now,
                dispatched_at=now,
                completed_at=now,
            )
            tx.add(order)
            tx.flush()
            order_id = order.id
            tx.add(OrderLine(
                order_id=order_id,
                product_id=product_id,
                product_name=product_name,
                unit_price=Decimal("0"),
                quantity=quantity,
                options={},
            ))

            claimed = InventoryClaimService.claim_many(product_id, user_id, order_id, quantity, session=tx)
            if not claimed:
                raise OutOfStockError(product_name, quantity, 0)

            content = Config.ADMIN_DELIVERY_SEPARATOR.join(item.content for item in claimed)
            order.delivered_content = content
            order.items_delivered = len(claimed)
            attachments = [
                Attachment(url=item.file_url, caption=product_name) for item in claimed if item.file_url
            ]

        logger.info(
            f"🎁 ADMIN_DELIVERY: {len(claimed)}x product {product_id} to user {user_id} "
            f"(order {order_id}, by {ctx.user_id})"
        )
        await self._notify(user_id, f"🎁 You received: {product_name}\n\n{content}", attachments)
        return {"order_id": order_id, "items_delivered": len(claimed), "content": content}

    async def complete_manual_order(self, ctx: RequestContext, order_id: int, note: Optional[str] = None) -> Dict[str, Any]:
        """Close a dispatched order whose manual-credit lines were fulfilled outside the engine"""
        require_admin(ctx)
        with atomic_transaction() as tx:
            with locked_order_operation(order_id, tx) as order:
                if order.status != OrderStatus.PAID.value or order.dispatched_at is None:
                    raise OrderNotPaidError(f"Order {order_id} is {order.status}, not awaiting completion")
                active_lease = tx.query(LeasedResource.id).filter(
                    LeasedResource.order_id == order_id,
                    LeasedResource.status.in_(PENDING_LEASE_STATUSES),
                ).first()
                if active_lease:
                    raise ValidationError(f"Order {order_id} still has active provider resources")

                content = order.delivered_content or ""
                if note:
                    content = Config.DELIVERY_SEPARATOR.join(filter(None, [content, f"✅ {note}"]))
                now = utc_now()
                tx.execute(
                    update(orders)
                    .where(orders.c.id == order_id, orders.c.status == OrderStatus.PAID.value)
                    .values(
                        status=OrderStatus.COMPLETED.value,
                        delivered_content=content,
                        completed_at=now,
                        updated_at=now,
                    )
                )
                user_id = order.user_id

        logger.info(f"✅ MANUAL_ORDER_COMPLETED: order {order_id} by {ctx.user_id}")
        await self._notify(user_id, f"✅ Order #{order_id} has been credited\n\n{content}".rstrip())
        return {"order_id": order_id, "status": OrderStatus.COMPLETED.value}

    def add_stock(
        self,
        ctx: RequestContext,
        product_id: int,
        contents: Sequence[str],
        file_urls: Optional[Sequence[Optional[str]]] = None,
    ) -> int:
        require_admin(ctx)
        return InventoryClaimService.add_stock(product_id, contents, file_urls)

    def delete_inventory_item(self, ctx: RequestContext, item_id: int) -> bool:
        require_admin(ctx)
        return InventoryClaimService.delete_unsold_item(item_id)
