"""Atomic transaction utilities for ledger, claim and lease operations"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional
from sqlalchemy.orm import Session
from database import SessionLocal
from models import Order
from utils.exception_handler import OrderNotFoundError

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session: Optional[Session] = None) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    Without a session a new one is created, committed on success, rolled back on
    error and closed. With a provided session, nesting depth is tracked and only
    the outermost block commits, so services can compose inside one transaction.
    """
    if session is None:
        session = SessionLocal()
        # Services called with this session nest inside it instead of committing
        setattr(session, '_atomic_transaction_depth', 1)
        try:
            yield session
            session.commit()
            logger.debug("Sync atomic transaction committed successfully")
        except Exception as e:
            session.rollback()
            logger.error(f"Sync transaction rolled back due to error: {type(e).__name__}: {e}")
            raise
        finally:
            session.close()
        return

    transaction_depth = getattr(session, '_atomic_transaction_depth', 0)
    setattr(session, '_atomic_transaction_depth', transaction_depth + 1)
    try:
        if transaction_depth > 0:
            logger.debug(f"Nested transaction detected (depth: {transaction_depth + 1})")

        yield session

        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost transaction committed successfully")
    except Exception as e:
        # Only the outermost block rolls back; inner blocks propagate
        if transaction_depth == 0:
            session.rollback()
            logger.error(f"Transaction rolled back due to error: {type(e).__name__}: {e}")
        raise
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))


@contextmanager
def locked_order_operation(order_id: int, session: Optional[Session] = None) -> Generator[Order, None, None]:
    """Load an order under a row lock inside an atomic transaction"""
    with atomic_transaction(session) as tx:
        order = tx.query(Order).filter(Order.id == order_id).with_for_update().first()
        if not order:
            raise OrderNotFoundError(f"Order {order_id} not found")
        yield order
