#!/usr/bin/env python3
"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28

Numeric = Union[str, int, float, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    AMOUNT_PRECISION = Decimal("0.01")  # 2 decimal places for wallet currency
    HOURS_PRECISION = Decimal("0.01")  # booked hours are billed to 2 decimals

    @classmethod
    def to_decimal(cls, value: Numeric, context: str = "monetary") -> Decimal:
        """Convert a numeric value to Decimal, rejecting garbage instead of zeroing it"""
        if value is None:
            return Decimal("0")

        try:
            # Convert to string first to avoid float precision issues
            decimal_value = value if isinstance(value, Decimal) else Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            logger.error(f"Failed to convert {value!r} to Decimal in context {context}: {e}")
            raise ValueError(f"Invalid monetary value for {context}: {value!r}") from e

        if not decimal_value.is_finite():
            logger.error(f"Non-finite monetary value {value!r} in context {context}")
            raise ValueError(f"Invalid monetary value for {context}: {value!r}")

        if abs(decimal_value) > Decimal("999999999999"):
            logger.warning(f"Unusually large monetary value: {decimal_value} in context: {context}")

        return decimal_value

    @classmethod
    def quantize_amount(cls, amount: Numeric) -> Decimal:
        """Quantize amount to wallet precision (2 decimal places)"""
        return cls.to_decimal(amount, "amount").quantize(cls.AMOUNT_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def minutes_to_hours(cls, minutes: int) -> Decimal:
        """90 -> 1.50, 50 -> 0.83 (half-up)"""
        return (Decimal(minutes) / Decimal(60)).quantize(cls.HOURS_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def booking_total(cls, price_per_hour: Numeric, duration_minutes: int) -> Decimal:
        """Rate times billed hours, hours rounded half-up to 2 decimals first"""
        rate = cls.to_decimal(price_per_hour, "price_per_hour")
        return cls.quantize_amount(rate * cls.minutes_to_hours(duration_minutes))

    @classmethod
    def percentage_of(cls, amount: Numeric, percentage: Numeric) -> Decimal:
        """Fee style percentage of an amount, quantized"""
        base = cls.to_decimal(amount, "amount")
        pct = cls.to_decimal(percentage, "percentage")
        return cls.quantize_amount(base * pct / Decimal(100))
