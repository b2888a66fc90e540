"""
Promo Code Tests
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from database import SessionLocal
from models import PromoCode, utc_now
from services.promo_code_service import PromoCodeService
from utils.exception_handler import PromoCodeError


def _add_code(code, discount=15, max_uses=None, expires_at=None, is_active=True):
    session = SessionLocal()
    try:
        session.add(PromoCode(
            code=code, discount_percent=discount, max_uses=max_uses, expires_at=expires_at, is_active=is_active,
        ))
        session.commit()
    finally:
        session.close()


class TestValidate:

    def test_welcome_code_for_new_user(self, make_user):
        result = PromoCodeService.validate(" welcome10 ", make_user())

        assert result.valid
        assert result.discount_percent == 10
        assert result.to_dict() == {"valid": True, "discount_percent": 10, "promo_id": "system:WELCOME10"}

    def test_unknown_and_blank_codes(self, make_user):
        user_id = make_user()

        assert PromoCodeService.validate("NOPE", user_id).to_dict() == {"valid": False, "error": "Promo code not found"}
        assert not PromoCodeService.validate("", user_id).valid

    def test_expired_and_inactive(self, make_user):
        _add_code("OLD", expires_at=utc_now() - timedelta(days=1))
        _add_code("OFF", is_active=False)

        assert PromoCodeService.validate("OLD", make_user()).error == "Promo code has expired"
        assert not PromoCodeService.validate("OFF", make_user()).valid

    def test_used_up(self, make_user):
        _add_code("ONCE", max_uses=1)
        first = make_user()
        PromoCodeService.record_use("ONCE", first, None)

        assert PromoCodeService.validate("ONCE", make_user()).error == "Promo code has been used up"

    def test_same_user_cannot_redeem_twice(self, make_user):
        _add_code("MANY", max_uses=10)
        user_id = make_user()
        PromoCodeService.record_use("MANY", user_id, None)

        with pytest.raises(PromoCodeError):
            PromoCodeService.record_use("MANY", user_id, None)
        assert PromoCodeService.validate("MANY", user_id).error == "You have already used this promo code"


class TestApplyDiscount:

    def test_rounding(self):
        assert PromoCodeService.apply_discount(Decimal("99.99"), 10) == Decimal("89.99")
        assert PromoCodeService.apply_discount(Decimal("50"), 0) == Decimal("50.00")
