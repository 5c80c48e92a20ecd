"""Exchange gateway interface.

Read and trade paths live on one interface, but a gateway bound to a
read-only credential refuses every trading call before any I/O.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from services.trading_errors import AuthDenied

OPEN_ORDER_STATUSES = {"new", "open", "awaitingtrigger", "partiallyfilled"}
FILLED_ORDER_STATUSES = {"filled", "closed"}
DEAD_ORDER_STATUSES = {"canceled", "cancelled", "expired", "rejected"}


@dataclass
class ExchangeCredential:
    api_key: str
    api_secret: str
    read_only: bool = True

    def __repr__(self) -> str:
        masked = f"{self.api_key[:4]}..." if self.api_key else ""
        return f"ExchangeCredential(api_key={masked!r}, read_only={self.read_only})"


@dataclass
class ExchangeOrder:
    order_id: str
    market: str
    side: str
    order_type: str
    status: str
    client_order_id: Optional[str] = None
    amount: Optional[float] = None
    amount_quote: Optional[float] = None
    price: Optional[float] = None
    filled_amount: float = 0.0
    filled_amount_quote: float = 0.0
    fee_paid: float = 0.0
    fee_currency: Optional[str] = None
    created_at: Optional[datetime] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_filled(self) -> bool:
        return self.status.lower() in FILLED_ORDER_STATUSES

    @property
    def is_open(self) -> bool:
        return self.status.lower() in OPEN_ORDER_STATUSES

    @property
    def is_dead(self) -> bool:
        return self.status.lower() in DEAD_ORDER_STATUSES

    @property
    def average_price(self) -> Optional[float]:
        if self.filled_amount > 0 and self.filled_amount_quote > 0:
            return self.filled_amount_quote / self.filled_amount
        return self.price

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("raw", None)
        payload["average_price"] = self.average_price
        if self.created_at is not None:
            payload["created_at"] = self.created_at.isoformat() + "Z"
        return payload


class ExchangeGateway(ABC):
    """One gateway per venue."""

    read_only: bool = True

    def ensure_can_trade(self) -> None:
        if self.read_only:
            raise AuthDenied(
                "Gateway is bound to a read-only credential",
                code="READ_ONLY_CREDENTIAL",
            )

    # Read path

    @abstractmethod
    async def fetch_accounts(self) -> dict[str, Any]: ...

    @abstractmethod
    async def fetch_balances(self) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def fetch_positions(self) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def fetch_orders(self, market: Optional[str] = None, *, limit: int = 100) -> list[ExchangeOrder]: ...

    @abstractmethod
    async def fetch_transactions(self, *, limit: int = 100) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def fetch_candles(self, market: str, *, interval: str = "1h", limit: int = 25) -> list[dict[str, float]]: ...

    @abstractmethod
    async def fetch_ticker(self, market: str) -> Optional[float]: ...

    @abstractmethod
    async def get_order(self, market: str, order_id: str) -> Optional[ExchangeOrder]: ...

    @abstractmethod
    async def find_by_client_order_id(self, client_order_id: str, *, market: Optional[str] = None) -> Optional[ExchangeOrder]:
        """Reconciliation lookup. Returns None only when the venue confirms absence."""

    # Trading path

    @abstractmethod
    async def place_order(
        self,
        *,
        client_order_id: str,
        market: str,
        side: str,
        order_type: str,
        amount: Optional[float] = None,
        amount_quote: Optional[float] = None,
        price: Optional[float] = None,
    ) -> ExchangeOrder: ...

    @abstractmethod
    async def cancel_order(self, market: str, order_id: str) -> Optional[ExchangeOrder]: ...

    async def close(self) -> None:
        return None
