"""
Balance Ledger Service
Per-user balance mutations, each paired with exactly one append-only ledger row.

Every mutation is a single conditional UPDATE ... RETURNING on the user row followed
by the ledger insert in the same database transaction, so balance_after always comes
from the statement that changed the balance and concurrent writers cannot lose updates.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union
from sqlalchemy import select, update, func
from sqlalchemy.orm import Session
from models import User, BalanceTransaction, TransactionKind, utc_now
from utils.atomic_transactions import atomic_transaction
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import InsufficientFundsError, UserNotFoundError, ValidationError
from utils.financial_audit_logger import (
    financial_audit_logger,
    FinancialEventType,
    FinancialContext,
)

logger = logging.getLogger(__name__)

users = User.__table__

Amount = Union[Decimal, int, str]

_CREDIT_EVENTS = {
    TransactionKind.DEPOSIT: FinancialEventType.BALANCE_DEPOSIT,
    TransactionKind.REFUND: FinancialEventType.BALANCE_REFUND,
    TransactionKind.BONUS: FinancialEventType.BALANCE_BONUS,
}


@dataclass(frozen=True)
class LedgerEntry:
    """Result of one balance mutation"""
    user_id: int
    amount: Decimal
    balance_after: Decimal
    kind: TransactionKind
    transaction_id: Optional[int] = None


class BalanceLedgerService:
    """Deposit / withdraw / refund / administrative overrides on user balances"""

    @staticmethod
    def _positive_amount(amount: Amount) -> Decimal:
        value = MonetaryDecimal.clamp(amount)
        if value <= 0:
            raise ValidationError(f"Amount must be positive, got {amount}")
        return value

    @staticmethod
    def _append(
        tx: Session,
        user_id: int,
        amount: Decimal,
        balance_after: Decimal,
        kind: TransactionKind,
        description: Optional[str],
        order_id: Optional[int],
        leased_resource_id: Optional[int],
        payment_id: Optional[str],
    ) -> int:
        row = BalanceTransaction(
            user_id=user_id,
            amount=amount,
            balance_after=balance_after,
            kind=kind.value,
            description=description,
            order_id=order_id,
            leased_resource_id=leased_resource_id,
            payment_id=payment_id,
        )
        tx.add(row)
        tx.flush()
        return row.id

    @classmethod
    def withdraw(
        cls,
        user_id: int,
        amount: Amount,
        description: Optional[str] = None,
        order_id: Optional[int] = None,
        leased_resource_id: Optional[int] = None,
        session: Optional[Session] = None,
    ) -> LedgerEntry:
        """
        Debit a purchase. Raises InsufficientFundsError iff amount > current balance;
        nothing is written in that case.
        """
        value = cls._positive_amount(amount)

        with atomic_transaction(session) as tx:
            row = tx.execute(
                update(users)
                .where(users.c.id == user_id, users.c.balance >= value)
                .values(balance=users.c.balance - value, updated_at=utc_now())
                .returning(users.c.balance)
            ).first()

            if row is None:
                current = tx.execute(
                    select(users.c.balance).where(users.c.id == user_id)
                ).scalar_one_or_none()
                if current is None:
                    raise UserNotFoundError(f"User {user_id} not found")
                financial_audit_logger.log_financial_event(
                    FinancialEventType.WITHDRAW_REJECTED,
                    user_id,
                    FinancialContext(amount=value, balance_after=current, order_id=order_id),
                    description or "",
                )
                logger.warning(f"💸 WITHDRAW_REJECTED: user {user_id} requested {value}, balance {current}")
                raise InsufficientFundsError(user_id, value, MonetaryDecimal.quantize(current))

            balance_after = MonetaryDecimal.quantize(row.balance)
            transaction_id = cls._append(
                tx, user_id, -value, balance_after, TransactionKind.PURCHASE,
                description, order_id, leased_resource_id, None,
            )

        financial_audit_logger.log_financial_event(
            FinancialEventType.BALANCE_WITHDRAW,
            user_id,
            FinancialContext(
                amount=-value, balance_after=balance_after,
                order_id=order_id, leased_resource_id=leased_resource_id,
            ),
            description or "",
        )
        logger.info(f"💸 WITHDRAW: user {user_id} -{value} -> {balance_after}")
        return LedgerEntry(user_id, -value, balance_after, TransactionKind.PURCHASE, transaction_id)

    @classmethod
    def _credit(
        cls,
        kind: TransactionKind,
        user_id: int,
        amount: Amount,
        description: Optional[str],
        order_id: Optional[int],
        leased_resource_id: Optional[int],
        payment_id: Optional[str],
        session: Optional[Session],
    ) -> LedgerEntry:
        value = cls._positive_amount(amount)

        with atomic_transaction(session) as tx:
            row = tx.execute(
                update(users)
                .where(users.c.id == user_id)
                .values(balance=users.c.balance + value, updated_at=utc_now())
                .returning(users.c.balance)
            ).first()
            if row is None:
                raise UserNotFoundError(f"User {user_id} not found")

            balance_after = MonetaryDecimal.quantize(row.balance)
            transaction_id = cls._append(
                tx, user_id, value, balance_after, kind,
                description, order_id, leased_resource_id, payment_id,
            )

        financial_audit_logger.log_financial_event(
            _CREDIT_EVENTS[kind],
            user_id,
            FinancialContext(
                amount=value, balance_after=balance_after, order_id=order_id,
                leased_resource_id=leased_resource_id, payment_id=payment_id,
            ),
            description or "",
        )
        logger.info(f"💰 {kind.value.upper()}: user {user_id} +{value} -> {balance_after}")
        return LedgerEntry(user_id, value, balance_after, kind, transaction_id)

    @classmethod
    def deposit(
        cls,
        user_id: int,
        amount: Amount,
        description: Optional[str] = None,
        payment_id: Optional[str] = None,
        order_id: Optional[int] = None,
        session: Optional[Session] = None,
    ) -> LedgerEntry:
        return cls._credit(
            TransactionKind.DEPOSIT, user_id, amount, description, order_id, None, payment_id, session
        )

    @classmethod
    def refund(
        cls,
        user_id: int,
        amount: Amount,
        description: Optional[str] = None,
        order_id: Optional[int] = None,
        leased_resource_id: Optional[int] = None,
        session: Optional[Session] = None,
    ) -> LedgerEntry:
        return cls._credit(
            TransactionKind.REFUND, user_id, amount, description, order_id, leased_resource_id, None, session
        )

    @classmethod
    def set_absolute(
        cls,
        user_id: int,
        new_amount: Amount,
        description: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> LedgerEntry:
        """
        Administrative override. The target is rounded to 2 places and clamped to
        +/- MAX_BALANCE. The ledger row records the difference: bonus when the
        balance grows, purchase when it shrinks.
        """
        target = MonetaryDecimal.clamp(new_amount)
        return cls._override(user_id, lambda current: target, description, session)

    @classmethod
    def adjust(
        cls,
        user_id: int,
        delta: Amount,
        description: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> LedgerEntry:
        """Administrative relative change; the resulting balance is clamped like set_absolute"""
        change = MonetaryDecimal.quantize(delta)
        return cls._override(user_id, lambda current: MonetaryDecimal.clamp(current + change), description, session)

    @classmethod
    def _override(cls, user_id: int, compute_target, description: Optional[str], session: Optional[Session]) -> LedgerEntry:
        with atomic_transaction(session) as tx:
            # Row lock serializes this read with concurrent conditional updates
            current = tx.execute(
                select(users.c.balance).where(users.c.id == user_id).with_for_update()
            ).scalar_one_or_none()
            if current is None:
                raise UserNotFoundError(f"User {user_id} not found")

            current = MonetaryDecimal.quantize(current)
            target = compute_target(current)
            change = target - current
            kind = TransactionKind.BONUS if change >= 0 else TransactionKind.PURCHASE

            if change == 0:
                logger.info(f"⚖️ BALANCE_OVERRIDE_NOOP: user {user_id} already at {current}")
                return LedgerEntry(user_id, Decimal("0.00"), current, kind, None)

            balance_after = MonetaryDecimal.quantize(
                tx.execute(
                    update(users)
                    .where(users.c.id == user_id)
                    .values(balance=users.c.balance + change, updated_at=utc_now())
                    .returning(users.c.balance)
                ).scalar_one()
            )
            transaction_id = cls._append(
                tx, user_id, change, balance_after, kind,
                description or "Balance adjusted by administrator", None, None, None,
            )

        financial_audit_logger.log_financial_event(
            FinancialEventType.BALANCE_ADJUSTMENT,
            user_id,
            FinancialContext(amount=change, balance_after=balance_after),
            description or "",
        )
        logger.info(f"⚖️ BALANCE_OVERRIDE: user {user_id} {current} -> {balance_after}")
        return LedgerEntry(user_id, change, balance_after, kind, transaction_id)

    @staticmethod
    def get_balance(user_id: int, session: Optional[Session] = None) -> Decimal:
        with atomic_transaction(session) as tx:
            current = tx.execute(select(users.c.balance).where(users.c.id == user_id)).scalar_one_or_none()
        if current is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return MonetaryDecimal.quantize(current)

    @staticmethod
    def ledger_sum(user_id: int, session: Optional[Session] = None) -> Decimal:
        """Running sum of every ledger row of the user"""
        with atomic_transaction(session) as tx:
            total = tx.execute(
                select(func.coalesce(func.sum(BalanceTransaction.amount), 0)).where(
                    BalanceTransaction.user_id == user_id
                )
            ).scalar_one()
        return MonetaryDecimal.quantize(total)

    @classmethod
    def verify_ledger_integrity(cls, user_id: int, session: Optional[Session] = None) -> bool:
        """True when the cached balance equals the ledger sum"""
        with atomic_transaction(session) as tx:
            balance = cls.get_balance(user_id, session=tx)
            total = cls.ledger_sum(user_id, session=tx)
        if balance != total:
            logger.error(f"🚨 LEDGER_MISMATCH: user {user_id} balance {balance} != ledger sum {total}")
            return False
        return True
