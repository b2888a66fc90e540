"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary operations
"""

import logging
import math
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

from config import Config

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with ledger precision"""

    LEDGER_PRECISION = Decimal("0.01")  # 2 decimal places

    @classmethod
    def to_decimal(cls, value: Union[str, int, float, Decimal], context: str = "monetary") -> Decimal:
        """Convert a numeric value to Decimal; raises ValueError on garbage"""
        if value is None:
            return Decimal("0")

        if isinstance(value, Decimal):
            result = value
        else:
            try:
                # Convert to string first to avoid float precision issues
                result = Decimal(str(value).strip())
            except (InvalidOperation, ValueError) as e:
                logger.error(f"Failed to convert {value!r} to Decimal in context {context}: {e}")
                raise ValueError(f"Invalid monetary amount: {value!r}") from e

        # NaN and Infinity parse but poison every later comparison
        if not result.is_finite():
            logger.error(f"Non-finite amount {value!r} rejected in context {context}")
            raise ValueError(f"Invalid monetary amount: {value!r}")
        return result

    @classmethod
    def quantize(cls, amount: Union[str, int, float, Decimal]) -> Decimal:
        """Quantize amount to ledger precision (2 decimal places)"""
        try:
            return cls.to_decimal(amount).quantize(cls.LEDGER_PRECISION, rounding=ROUND_HALF_UP)
        except InvalidOperation as e:
            raise ValueError(f"Monetary amount out of range: {amount!r}") from e

    @classmethod
    def clamp(cls, amount: Union[str, int, float, Decimal]) -> Decimal:
        """Quantize and clamp to the configured ledger magnitude"""
        value = cls.quantize(amount)
        limit = Config.MAX_BALANCE
        if value > limit:
            logger.warning(f"💰 AMOUNT_CLAMPED: {value} -> {limit}")
            return limit
        if value < -limit:
            logger.warning(f"💰 AMOUNT_CLAMPED: {value} -> {-limit}")
            return -limit
        return value

    @classmethod
    def ceil_cents(cls, amount: Union[str, int, float, Decimal]) -> Decimal:
        """Round up to the next cent (provider per-thousand pricing)"""
        value = cls.to_decimal(amount)
        cents = math.ceil(value * 100)
        return (Decimal(cents) / 100).quantize(cls.LEDGER_PRECISION)

    @classmethod
    def ceil_whole(cls, amount: Union[str, int, float, Decimal]) -> Decimal:
        """Round up to a whole currency unit (retail price of a provider cost)"""
        return cls.quantize(cls.to_decimal(amount).to_integral_value(rounding=ROUND_CEILING))

    @classmethod
    def format_amount(cls, amount: Union[str, int, float, Decimal]) -> str:
        """Human-readable amount with the storefront currency symbol"""
        value = cls.quantize(amount)
        if value == value.to_integral_value():
            return f"{int(value)}{Config.CURRENCY_SYMBOL}"
        return f"{value}{Config.CURRENCY_SYMBOL}"
