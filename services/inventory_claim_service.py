"""
Inventory Claim Service
Atomic claim-and-mark-sold of local inventory units
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence
from sqlalchemy import select, update, delete, func
from sqlalchemy.orm import Session
from config import Config
from models import InventoryItem, Product, FulfillmentKind, utc_now
from utils.atomic_transactions import atomic_transaction
from utils.exception_handler import ProductNotFoundError, InventoryItemSoldError, ValidationError

logger = logging.getLogger(__name__)

inventory_items = InventoryItem.__table__


@dataclass(frozen=True)
class ClaimedItem:
    """A unit now owned by an order"""
    id: int
    product_id: int
    content: str
    file_url: Optional[str] = None


class InventoryClaimService:
    """Claims exactly one unsold unit per call; never read-then-write from application code"""

    @staticmethod
    def _claim_statement(product_id: int, user_id: int, order_id: Optional[int], order_line_id: Optional[int]):
        # Oldest unsold unit; SKIP LOCKED lets concurrent claimers pick different rows on PostgreSQL
        next_unit = (
            select(inventory_items.c.id)
            .where(
                inventory_items.c.product_id == product_id,
                inventory_items.c.is_sold.is_(False),
            )
            .order_by(inventory_items.c.id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        return (
            update(inventory_items)
            .where(
                inventory_items.c.id == next_unit,
                inventory_items.c.is_sold.is_(False),
            )
            .values(
                is_sold=True, sold_to=user_id, order_id=order_id, order_line_id=order_line_id, sold_at=utc_now(),
            )
            .returning(inventory_items.c.id, inventory_items.c.content, inventory_items.c.file_url)
        )

    @classmethod
    def claim(
        cls,
        product_id: int,
        user_id: int,
        order_id: Optional[int] = None,
        session: Optional[Session] = None,
        order_line_id: Optional[int] = None,
    ) -> Optional[ClaimedItem]:
        """
        Claim one unsold unit of a product for a user under an order.

        Returns None when no unit is available. A statement that loses a race
        while stock remains is re-issued, bounded by CLAIM_MAX_ATTEMPTS.
        """
        for attempt in range(1, Config.CLAIM_MAX_ATTEMPTS + 1):
            with atomic_transaction(session) as tx:
                row = tx.execute(cls._claim_statement(product_id, user_id, order_id, order_line_id)).first()
                if row is not None:
                    logger.info(
                        f"📦 CLAIMED: item {row.id} of product {product_id} -> user {user_id} order {order_id}"
                    )
                    return ClaimedItem(
                        id=row.id, product_id=product_id, content=row.content, file_url=row.file_url
                    )
                remaining = cls.available_stock(product_id, session=tx)

            if remaining == 0:
                logger.info(f"📭 CLAIM_EXHAUSTED: product {product_id} has no unsold units")
                return None
            logger.warning(
                f"🔁 CLAIM_RACE_LOST: product {product_id} attempt {attempt}/{Config.CLAIM_MAX_ATTEMPTS}, "
                f"{remaining} units still unsold"
            )

        logger.warning(f"📭 CLAIM_GAVE_UP: product {product_id} after {Config.CLAIM_MAX_ATTEMPTS} attempts")
        return None

    @classmethod
    def claim_many(
        cls,
        product_id: int,
        user_id: int,
        order_id: Optional[int],
        quantity: int,
        session: Optional[Session] = None,
        order_line_id: Optional[int] = None,
    ) -> List[ClaimedItem]:
        """Claim up to quantity units, stopping at the first empty claim"""
        claimed: List[ClaimedItem] = []
        for _ in range(quantity):
            item = cls.claim(product_id, user_id, order_id, session=session, order_line_id=order_line_id)
            if item is None:
                break
            claimed.append(item)
        return claimed

    @staticmethod
    def claimed_for_line(order_line_id: int, session: Optional[Session] = None) -> List[ClaimedItem]:
        """Units already reserved for an order line at payment time"""
        with atomic_transaction(session) as tx:
            rows = tx.execute(
                select(
                    inventory_items.c.id,
                    inventory_items.c.product_id,
                    inventory_items.c.content,
                    inventory_items.c.file_url,
                )
                .where(inventory_items.c.order_line_id == order_line_id)
                .order_by(inventory_items.c.id)
            ).all()
        return [
            ClaimedItem(id=row.id, product_id=row.product_id, content=row.content, file_url=row.file_url)
            for row in rows
        ]

    @staticmethod
    def available_stock(product_id: int, session: Optional[Session] = None) -> int:
        """Number of unsold units for a product"""
        with atomic_transaction(session) as tx:
            return tx.execute(
                select(func.count(inventory_items.c.id)).where(
                    inventory_items.c.product_id == product_id,
                    inventory_items.c.is_sold.is_(False),
                )
            ).scalar_one()

    @staticmethod
    def add_stock(
        product_id: int,
        contents: Sequence[str],
        file_urls: Optional[Sequence[Optional[str]]] = None,
        session: Optional[Session] = None,
    ) -> int:
        """Stock upload: one unsold unit per non-empty content entry"""
        if file_urls is not None and len(file_urls) != len(contents):
            raise ValidationError("file_urls must match contents one to one")

        with atomic_transaction(session) as tx:
            product = tx.get(Product, product_id)
            if not product:
                raise ProductNotFoundError(f"Product {product_id} not found")
            if product.fulfillment_kind != FulfillmentKind.LOCAL_ITEM.value:
                raise ValidationError(f"Product {product_id} is not a local-item product")

            added = 0
            for index, content in enumerate(contents):
                content = (content or "").strip()
                if not content:
                    continue
                file_url = file_urls[index] if file_urls is not None else None
                tx.add(InventoryItem(product_id=product_id, content=content, file_url=file_url))
                added += 1

        logger.info(f"📥 STOCK_ADDED: {added} units for product {product_id}")
        return added

    @staticmethod
    def delete_unsold_item(item_id: int, session: Optional[Session] = None) -> bool:
        """
        Delete an unsold unit. Returns False if the row no longer exists.
        Sold rows are audit trail and raise InventoryItemSoldError.
        """
        with atomic_transaction(session) as tx:
            result = tx.execute(
                delete(inventory_items).where(
                    inventory_items.c.id == item_id,
                    inventory_items.c.is_sold.is_(False),
                )
            )
            if result.rowcount:
                logger.info(f"🗑️ STOCK_DELETED: item {item_id}")
                return True

            sold = tx.execute(
                select(inventory_items.c.is_sold).where(inventory_items.c.id == item_id)
            ).scalar_one_or_none()

        if sold:
            raise InventoryItemSoldError(f"Inventory item {item_id} is sold and cannot be deleted")
        logger.info(f"🗑️ STOCK_DELETE_NOOP: item {item_id} already gone")
        return False
