"""Promo code validation and redemption"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from config import Config
from models import Order, OrderStatus, PromoCode, PromoUse, utc_now
from utils.atomic_transactions import atomic_transaction
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import PromoCodeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromoValidation:
    valid: bool
    discount_percent: int = 0
    promo_ref: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        if not self.valid:
            return {"valid": False, "error": self.error}
        return {"valid": True, "discount_percent": self.discount_percent, "promo_id": self.promo_ref}


def _system_promos() -> Dict[str, Dict]:
    return {
        Config.WELCOME_PROMO_CODE.upper(): {
            "discount_percent": Config.WELCOME_PROMO_DISCOUNT_PERCENT,
            "first_order_only": True,
        },
    }


class PromoCodeService:
    """Code -> discount percent. Validation never writes; redemption happens with the order."""

    @staticmethod
    def apply_discount(amount: Decimal, discount_percent: int) -> Decimal:
        if not discount_percent:
            return MonetaryDecimal.quantize(amount)
        return MonetaryDecimal.quantize(amount * (100 - discount_percent) / 100)

    @classmethod
    def validate(cls, code: Optional[str], user_id: Optional[int] = None,
                 session: Optional[Session] = None) -> PromoValidation:
        if not code or not code.strip():
            return PromoValidation(False, error="No code")

        upper_code = code.strip().upper()
        with atomic_transaction(session) as tx:
            system_promo = _system_promos().get(upper_code)
            if system_promo:
                promo_ref = f"system:{upper_code}"
                if system_promo["first_order_only"] and user_id:
                    used = tx.query(PromoUse.id).filter(
                        PromoUse.user_id == user_id, PromoUse.promo_code == promo_ref
                    ).first()
                    if used:
                        return PromoValidation(False, error="You have already used this promo code")
                    previous_orders = tx.query(Order.id).filter(
                        Order.user_id == user_id,
                        Order.status.in_([OrderStatus.PAID.value, OrderStatus.COMPLETED.value]),
                        Order.total > 0,
                    ).count()
                    if previous_orders:
                        return PromoValidation(False, error="This promo code is for the first order only")
                return PromoValidation(True, system_promo["discount_percent"], promo_ref)

            promo = tx.query(PromoCode).filter(
                PromoCode.code == upper_code, PromoCode.is_active.is_(True)
            ).first()
            if not promo:
                return PromoValidation(False, error="Promo code not found")
            if promo.max_uses is not None and promo.used_count >= promo.max_uses:
                return PromoValidation(False, error="Promo code has been used up")
            if promo.expires_at and promo.expires_at < utc_now():
                return PromoValidation(False, error="Promo code has expired")
            if user_id:
                used = tx.query(PromoUse.id).filter(
                    PromoUse.user_id == user_id, PromoUse.promo_code == promo.code
                ).first()
                if used:
                    return PromoValidation(False, error="You have already used this promo code")
            return PromoValidation(True, promo.discount_percent, promo.code)

    @classmethod
    def require_valid(cls, code: str, user_id: int, session: Optional[Session] = None) -> PromoValidation:
        result = cls.validate(code, user_id, session=session)
        if not result.valid:
            raise PromoCodeError(result.error)
        return result

    @staticmethod
    def record_use(promo_ref: str, user_id: int, order_id: Optional[int], session: Optional[Session] = None):
        """Redeem inside the order transaction; a code redeemed twice by one user fails the order"""
        with atomic_transaction(session) as tx:
            if not promo_ref.startswith("system:"):
                promo_codes = PromoCode.__table__
                redeemed = tx.execute(
                    update(promo_codes)
                    .where(
                        promo_codes.c.code == promo_ref,
                        promo_codes.c.is_active.is_(True),
                        (promo_codes.c.max_uses.is_(None)) | (promo_codes.c.used_count < promo_codes.c.max_uses),
                    )
                    .values(used_count=promo_codes.c.used_count + 1)
                ).rowcount
                if not redeemed:
                    raise PromoCodeError("Promo code has been used up")
            try:
                with tx.begin_nested():
                    tx.add(PromoUse(user_id=user_id, promo_code=promo_ref, order_id=order_id))
            except IntegrityError:
                raise PromoCodeError("You have already used this promo code")
        logger.info(f"🎟️ PROMO_REDEEMED: {promo_ref} by user {user_id} on order {order_id}")
