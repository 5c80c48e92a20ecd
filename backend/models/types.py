"""Column type for money, prices and quantities."""

from __future__ import annotations

import math
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Any

from sqlalchemy.types import Numeric, TypeDecorator

EXCHANGE_DECIMALS = 8
_QUANTUM = Decimal(1).scaleb(-EXCHANGE_DECIMALS)


class ExchangeAmount(TypeDecorator):
    """EUR values, prices and quantities held at the exchange's 8-decimal precision.

    Services read and write plain floats. Binding rounds half-even to the
    precision the gateway sends, so a stored amount never carries binary
    float noise such as ``24.999999999999996``.
    """

    impl = Numeric(28, EXCHANGE_DECIMALS, asdecimal=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        if isinstance(value, bool):
            raise ValueError(f"Boolean is not an amount: {value!r}")
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError(f"Non-finite amount: {value!r}")
        try:
            amount = value if isinstance(value, Decimal) else Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid amount: {value!r}") from exc
        return amount.quantize(_QUANTUM, rounding=ROUND_HALF_EVEN)

    def process_result_value(self, value: Any, dialect):
        if value is None:
            return None
        return float(value)
