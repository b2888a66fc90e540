"""
Order Payment Service
=====================

Entry points that turn money into a paid order and hand it to the dispatcher:

- pay_with_balance: validate everything, then create order + lines, reserve local
  stock and debit the balance in one transaction, then dispatch.
- create_pending_order / create_deposit_order: order created before an external
  invoice is paid; cancel_pending_order returns the balance part of an abandoned one.
- handle_payment_confirmed: external processor callback, idempotent on payment_id.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from config import Config
from models import (
    BalanceTransaction, Order, OrderLine, Product, OrderStatus, PaymentMethod, FulfillmentKind, utc_now,
)
from services.balance_ledger_service import BalanceLedgerService
from services.delivery_notifier import delivery_notifier
from services.fulfillment_dispatcher import DispatchResult, FulfillmentDispatcher
from services.inventory_claim_service import InventoryClaimService
from services.promo_code_service import PromoCodeService
from utils.atomic_transactions import atomic_transaction
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    InsufficientFundsError, OrderNotFoundError, OutOfStockError, PriceMismatchError,
    ProductNotFoundError, PurchaseLimitError, ValidationError,
)
from utils.financial_audit_logger import financial_audit_logger, FinancialEventType, FinancialContext

logger = logging.getLogger(__name__)

orders = Order.__table__


@dataclass
class CartLine:
    product_id: int
    quantity: int = 1
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CartLine":
        try:
            product_id = int(data.get("product_id") or data.get("productId"))
            quantity = int(data.get("quantity") or 1)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid cart line: {data!r}")
        return cls(product_id=product_id, quantity=quantity, options=dict(data.get("options") or {}))


@dataclass
class PaymentResult:
    order_id: int
    new_balance: Decimal
    dispatch: Optional[DispatchResult] = None


@dataclass
class PaymentEventResult:
    status: str  # deposited | paid | duplicate | unmatched
    order_id: Optional[int] = None
    new_balance: Optional[Decimal] = None
    dispatch: Optional[DispatchResult] = None


@dataclass
class _PricedLine:
    product: Dict[str, Any]
    quantity: int
    options: Dict[str, Any]
    kind: FulfillmentKind = FulfillmentKind.LOCAL_ITEM
    line_id: Optional[int] = None


class OrderPaymentService:
    """Balance payments and external payment confirmations"""

    def __init__(self, dispatcher: Optional[FulfillmentDispatcher] = None, notifier=None):
        self.dispatcher = dispatcher or FulfillmentDispatcher()
        self.notifier = notifier if notifier is not None else delivery_notifier

    # ------------------------------------------------------------------
    # Validation (read-only, before any write)
    # ------------------------------------------------------------------

    @staticmethod
    def _price_lines(tx: Session, user_id: int, lines: Sequence[CartLine]) -> List[_PricedLine]:
        if not lines:
            raise ValidationError("Cart is empty")

        priced = []
        for line in lines:
            if line.quantity <= 0:
                raise ValidationError(f"Quantity must be positive for product {line.product_id}")
            product = tx.get(Product, line.product_id)
            if not product or not product.is_active:
                raise ProductNotFoundError(f"Product {line.product_id} not found")

            kind = FulfillmentKind(product.fulfillment_kind)
            if kind == FulfillmentKind.LOCAL_ITEM:
                available = InventoryClaimService.available_stock(product.id, session=tx)
                if available < line.quantity:
                    raise OutOfStockError(product.name, line.quantity, available)

            if product.max_per_user > 0:
                bought = (
                    tx.query(func.count(OrderLine.id))
                    .join(Order, Order.id == OrderLine.order_id)
                    .filter(
                        OrderLine.product_id == product.id,
                        Order.user_id == user_id,
                        Order.status.in_([OrderStatus.PAID.value, OrderStatus.COMPLETED.value]),
                    )
                    .scalar()
                )
                if bought >= product.max_per_user:
                    raise PurchaseLimitError(product.name, product.max_per_user)

            priced.append(_PricedLine(
                product={"id": product.id, "name": product.name, "price": MonetaryDecimal.quantize(product.price)},
                quantity=line.quantity,
                options=line.options,
                kind=kind,
            ))
        return priced

    @staticmethod
    def _check_total(priced: List[_PricedLine], submitted: Any, discount_percent: int) -> Decimal:
        subtotal = sum((p.product["price"] * p.quantity for p in priced), Decimal("0"))
        calculated = PromoCodeService.apply_discount(subtotal, discount_percent)
        submitted_total = MonetaryDecimal.quantize(submitted)
        if abs(submitted_total - calculated) > Config.PRICE_TOLERANCE:
            logger.error(f"💱 PRICE_MISMATCH: client sent {submitted_total}, server calculated {calculated}")
            raise PriceMismatchError(submitted_total, calculated)
        return calculated

    @staticmethod
    def _insert_order(
        tx: Session,
        user_id: int,
        priced: List[_PricedLine],
        total: Decimal,
        status: OrderStatus,
        payment_method: PaymentMethod,
        payment_id: Optional[str] = None,
        promo_ref: Optional[str] = None,
        balance_used: Decimal = Decimal("0"),
    ) -> int:
        now = utc_now()
        order = Order(
            user_id=user_id,
            total=total,
            status=status.value,
            payment_method=payment_method.value,
            payment_id=payment_id,
            promo_code=promo_ref,
            balance_used=balance_used,
            paid_at=now if status == OrderStatus.PAID else None,
        )
        tx.add(order)
        tx.flush()
        for p in priced:
            line = OrderLine(
                order_id=order.id,
                product_id=p.product["id"],
                product_name=p.product["name"],
                unit_price=p.product["price"],
                quantity=p.quantity,
                options=p.options or {},
            )
            tx.add(line)
            tx.flush()
            p.line_id = line.id
        return order.id

    @staticmethod
    def _reserve_stock(tx: Session, user_id: int, order_id: int, priced: List[_PricedLine]):
        """Claim local units together with the payment; a short claim rolls the whole checkout back"""
        for p in priced:
            if p.kind != FulfillmentKind.LOCAL_ITEM:
                continue
            claimed = InventoryClaimService.claim_many(
                p.product["id"], user_id, order_id, p.quantity, session=tx, order_line_id=p.line_id
            )
            if len(claimed) < p.quantity:
                logger.warning(
                    f"📭 CHECKOUT_OUT_OF_STOCK: product {p.product['id']} reserved {len(claimed)}/{p.quantity}"
                )
                raise OutOfStockError(p.product["name"], p.quantity, len(claimed))

    # ------------------------------------------------------------------
    # Balance payment
    # ------------------------------------------------------------------

    async def pay_with_balance(
        self,
        user_id: int,
        lines: Sequence[CartLine],
        total: Any,
        promo_code: Optional[str] = None,
    ) -> PaymentResult:
        """
        Validate products, price, promo, stock, per-user caps and balance; then create the
        order, reserve local stock and debit the balance atomically; then dispatch. Any
        typed failure leaves no order, no sold unit and no ledger row behind.
        """
        with atomic_transaction() as tx:
            priced = self._price_lines(tx, user_id, lines)
            promo = PromoCodeService.require_valid(promo_code, user_id, session=tx) if promo_code else None
            charge = self._check_total(priced, total, promo.discount_percent if promo else 0)

            balance = BalanceLedgerService.get_balance(user_id, session=tx)
            if balance < charge:
                raise InsufficientFundsError(user_id, charge, balance)

            order_id = self._insert_order(
                tx, user_id, priced, charge, OrderStatus.PAID, PaymentMethod.BALANCE,
                promo_ref=promo.promo_ref if promo else None,
                balance_used=charge,
            )
            self._reserve_stock(tx, user_id, order_id, priced)
            if promo:
                PromoCodeService.record_use(promo.promo_ref, user_id, order_id, session=tx)
            if charge > 0:
                entry = BalanceLedgerService.withdraw(
                    user_id, charge, description=f"Payment for order #{order_id}",
                    order_id=order_id, session=tx,
                )
                new_balance = entry.balance_after
            else:
                new_balance = balance

        logger.info(f"🛒 PAID_WITH_BALANCE: order {order_id} user {user_id} total {charge} -> balance {new_balance}")
        dispatch = await self.dispatcher.process_order(order_id)
        return PaymentResult(order_id=order_id, new_balance=new_balance, dispatch=dispatch)

    # ------------------------------------------------------------------
    # External payments
    # ------------------------------------------------------------------

    def create_pending_order(
        self,
        user_id: int,
        lines: Sequence[CartLine],
        total: Any,
        payment_id: Optional[str] = None,
        balance_to_use: Any = 0,
        promo_code: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Order awaiting an external invoice; returns the amount the invoice must cover.
        The balance part is debited now and returned if the order is cancelled.
        """
        use_balance = MonetaryDecimal.quantize(balance_to_use or 0)
        with atomic_transaction() as tx:
            priced = self._price_lines(tx, user_id, lines)
            promo = PromoCodeService.require_valid(promo_code, user_id, session=tx) if promo_code else None
            charge = self._check_total(priced, total, promo.discount_percent if promo else 0)
            if use_balance < 0 or use_balance > charge:
                raise ValidationError(f"balance_to_use must be between 0 and {charge}")

            order_id = self._insert_order(
                tx, user_id, priced, charge, OrderStatus.PENDING, PaymentMethod.CRYPTO,
                payment_id=payment_id, promo_ref=promo.promo_ref if promo else None,
                balance_used=use_balance,
            )
            if promo:
                PromoCodeService.record_use(promo.promo_ref, user_id, order_id, session=tx)
            if use_balance > 0:
                new_balance = BalanceLedgerService.withdraw(
                    user_id, use_balance,
                    description=f"Payment for order #{order_id} (balance part)",
                    order_id=order_id, session=tx,
                ).balance_after
            else:
                new_balance = BalanceLedgerService.get_balance(user_id, session=tx)

        logger.info(f"🧾 ORDER_PENDING: order {order_id} user {user_id} total {charge} balance part {use_balance}")
        return {
            "order_id": order_id,
            "total": charge,
            "amount_due": charge - use_balance,
            "new_balance": new_balance,
        }

    def cancel_pending_order(self, order_id: int, user_id: Optional[int] = None) -> Dict[str, Any]:
        """Abandon an unpaid order and return its balance part; only one caller can cancel"""
        with atomic_transaction() as tx:
            conditions = [orders.c.id == order_id, orders.c.status == OrderStatus.PENDING.value]
            if user_id is not None:
                conditions.append(orders.c.user_id == user_id)
            row = tx.execute(
                update(orders)
                .where(*conditions)
                .values(status=OrderStatus.CANCELLED.value, updated_at=utc_now())
                .returning(orders.c.user_id, orders.c.balance_used)
            ).first()
            if row is None:
                order = tx.get(Order, order_id)
                if order is None or (user_id is not None and order.user_id != user_id):
                    raise OrderNotFoundError(f"Order {order_id} not found")
                raise ValidationError(f"Order {order_id} is {order.status} and cannot be cancelled")

            refunded = MonetaryDecimal.quantize(row.balance_used or 0)
            if refunded > 0:
                BalanceLedgerService.refund(
                    row.user_id, refunded,
                    description=f"Order #{order_id} cancelled (balance part returned)",
                    order_id=order_id, session=tx,
                )

        logger.info(f"🚫 ORDER_CANCELLED: order {order_id} refunded {refunded}")
        return {"order_id": order_id, "status": OrderStatus.CANCELLED.value, "refunded": refunded}

    def create_deposit_order(self, user_id: int, amount: Any, payment_id: Optional[str] = None) -> int:
        """Pending top-up order without lines"""
        value = MonetaryDecimal.clamp(amount)
        if value <= 0:
            raise ValidationError("Deposit amount must be positive")
        with atomic_transaction() as tx:
            order_id = self._insert_order(
                tx, user_id, [], value, OrderStatus.PENDING, PaymentMethod.CRYPTO, payment_id=payment_id,
            )
        return order_id

    def attach_payment_id(self, order_id: int, payment_id: str):
        with atomic_transaction() as tx:
            updated = tx.execute(
                update(orders)
                .where(orders.c.id == order_id, orders.c.status == OrderStatus.PENDING.value)
                .values(payment_id=payment_id, updated_at=utc_now())
            ).rowcount
        if not updated:
            raise OrderNotFoundError(f"Pending order {order_id} not found")

    async def handle_payment_confirmed(
        self,
        payment_id: str,
        user_id: int,
        amount: Any,
        order_id: Optional[int] = None,
        is_deposit: Optional[bool] = None,
    ) -> PaymentEventResult:
        """
        'Payment confirmed, amount X' from the external processor. A payment_id is
        processed at most once; a repeated or concurrent delivery reports duplicate.
        A payment that arrives after its order was cancelled is kept as balance.
        """
        payment_id = str(payment_id)
        value = MonetaryDecimal.clamp(amount)
        new_balance = None

        try:
            with atomic_transaction() as tx:
                query = tx.query(Order).filter(Order.payment_id == payment_id)
                if order_id is not None:
                    query = query.filter(Order.id == order_id)
                order = query.with_for_update().first()

                if order is not None and order.user_id != user_id:
                    raise ValidationError(f"Payment {payment_id} does not belong to user {user_id}")

                if order is not None and order.status == OrderStatus.CANCELLED.value:
                    credited = (
                        tx.query(BalanceTransaction.id)
                        .filter(BalanceTransaction.payment_id == payment_id)
                        .first()
                    )
                    if credited:
                        return self._duplicate(payment_id, order.id)
                    order_id = order.id
                    logger.warning(f"⚠️ PAYMENT_AFTER_CANCEL: payment {payment_id} for cancelled order {order_id}")
                    new_balance = BalanceLedgerService.deposit(
                        user_id, value,
                        description=f"Payment for cancelled order #{order_id} kept as balance",
                        payment_id=payment_id, order_id=order_id, session=tx,
                    ).balance_after
                    deposit = True
                else:
                    if order is not None and order.status != OrderStatus.PENDING.value:
                        return self._duplicate(payment_id, order.id)

                    deposit = is_deposit if is_deposit is not None else (order is None or not order.lines)

                    if order is None and (order_id is not None or not deposit):
                        logger.warning(f"⚠️ PAYMENT_UNMATCHED: payment {payment_id} has no pending order")
                        return PaymentEventResult(status="unmatched")

                    if order is None:
                        order_id = self._insert_order(
                            tx, user_id, [], value, OrderStatus.PENDING, PaymentMethod.CRYPTO,
                            payment_id=payment_id,
                        )
                    else:
                        order_id = order.id

                    # Conditional transition: only one confirmation can move the order out of pending
                    target = OrderStatus.COMPLETED if deposit else OrderStatus.PAID
                    now = utc_now()
                    values = {"status": target.value, "paid_at": now, "updated_at": now}
                    if deposit:
                        values.update(
                            completed_at=now,
                            dispatched_at=now,
                            delivered_content=f"Balance top-up of {MonetaryDecimal.format_amount(value)}",
                        )
                    moved = tx.execute(
                        update(orders)
                        .where(orders.c.id == order_id, orders.c.status == OrderStatus.PENDING.value)
                        .values(**values)
                    ).rowcount
                    if not moved:
                        return self._duplicate(payment_id, order_id)

                    if deposit:
                        new_balance = BalanceLedgerService.deposit(
                            user_id, value,
                            description=f"Balance top-up: {MonetaryDecimal.format_amount(value)}",
                            payment_id=payment_id, order_id=order_id, session=tx,
                        ).balance_after
                    else:
                        # The balance part was already debited when the order was created
                        new_balance = BalanceLedgerService.get_balance(user_id, session=tx)
        except IntegrityError:
            # Concurrent delivery of the same payment_id lost the unique-constraint race
            return self._duplicate(payment_id, order_id)

        financial_audit_logger.log_financial_event(
            FinancialEventType.PAYMENT_CONFIRMED,
            user_id,
            FinancialContext(amount=value, order_id=order_id, payment_id=payment_id),
            "deposit" if deposit else "purchase",
        )

        if deposit:
            logger.info(f"💳 DEPOSIT_CONFIRMED: payment {payment_id} user {user_id} +{value}")
            await self._notify_deposit(user_id, value)
            return PaymentEventResult(status="deposited", order_id=order_id, new_balance=new_balance)

        logger.info(f"💳 PAYMENT_CONFIRMED: payment {payment_id} order {order_id}")
        dispatch = await self.dispatcher.process_order(order_id)
        return PaymentEventResult(status="paid", order_id=order_id, new_balance=new_balance, dispatch=dispatch)

    @staticmethod
    def _duplicate(payment_id: str, order_id: Optional[int]) -> PaymentEventResult:
        financial_audit_logger.log_financial_event(
            FinancialEventType.PAYMENT_DUPLICATE, None, FinancialContext(payment_id=payment_id, order_id=order_id)
        )
        logger.info(f"♻️ PAYMENT_DUPLICATE: payment {payment_id} already processed")
        return PaymentEventResult(status="duplicate", order_id=order_id)

    async def _notify_deposit(self, user_id: int, amount: Decimal):
        try:
            await self.notifier.notify(user_id, f"💰 Balance topped up by {MonetaryDecimal.format_amount(amount)}")
        except Exception as e:
            logger.error(f"❌ NOTIFY_FAILED: deposit for user {user_id}: {e}")
