"""Exactly-once cancellation refunds for leased resources"""

import logging
from decimal import Decimal
from typing import Iterable, Optional
from sqlalchemy import update
from sqlalchemy.orm import Session
from models import LeasedResource, LeaseStatus, utc_now
from services.balance_ledger_service import BalanceLedgerService
from utils.atomic_transactions import atomic_transaction
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

leased_resources = LeasedResource.__table__


def settle_cancellation(
    lease_id: int,
    from_statuses: Iterable[str],
    description: str,
    session: Optional[Session] = None,
) -> Decimal:
    """
    Move a lease to CANCELLED and refund its price, both in one transaction.

    The status change is a conditional UPDATE guarded on the current status and on
    refunded_at being unset, so whichever cancellation signal arrives first (user
    cancel or provider report) refunds and every later one returns 0.
    """
    now = utc_now()
    with atomic_transaction(session) as tx:
        row = tx.execute(
            update(leased_resources)
            .where(
                leased_resources.c.id == lease_id,
                leased_resources.c.status.in_(list(from_statuses)),
                leased_resources.c.refunded_at.is_(None),
            )
            .values(status=LeaseStatus.CANCELLED.value, cancelled_at=now, refunded_at=now)
            .returning(leased_resources.c.user_id, leased_resources.c.price, leased_resources.c.order_id)
        ).first()

        if row is None:
            logger.info(f"↩️ LEASE_REFUND_SKIPPED: lease {lease_id} already settled or not cancellable")
            return Decimal("0.00")

        price = MonetaryDecimal.quantize(row.price)
        if price > 0:
            BalanceLedgerService.refund(
                row.user_id,
                price,
                description=description,
                order_id=row.order_id,
                leased_resource_id=lease_id,
                session=tx,
            )

    logger.info(f"↩️ LEASE_REFUNDED: lease {lease_id} refunded {price} to user {row.user_id}")
    return price
