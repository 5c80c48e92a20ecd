"""Cheap market pulse from the exchange read path.

One snapshot per scan tick: per-asset 24h volatility, 1h/4h moves and a
volume z-score over hourly candles, plus the aggregate the gate evaluates.
Never calls the signal generator.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import numpy as np

from config import settings
from services.exchange.base import ExchangeGateway
from services.trading_errors import AuthDenied
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("market_pulse")

CANDLE_INTERVAL = "1h"
CANDLE_LIMIT = 25
VOLATILITY_CAP_PCT = 100.0


def _pct_change(latest: float, earlier: float) -> float:
    if earlier <= 0:
        return 0.0
    return (latest / earlier - 1.0) * 100.0


def compute_asset_metrics(candles: list[dict[str, float]]) -> Optional[dict[str, float]]:
    """Metrics for one market from hourly candles ordered oldest first."""
    if len(candles) < 2:
        return None
    closes = np.array([float(candle.get("close") or 0.0) for candle in candles], dtype=float)
    volumes = np.array([float(candle.get("volume") or 0.0) for candle in candles], dtype=float)

    window = closes[-24:]
    mean_close = float(np.mean(window))
    volatility = 0.0
    if mean_close > 0:
        volatility = min(VOLATILITY_CAP_PCT, float(np.std(window)) / mean_close * 100.0)

    move_1h = _pct_change(closes[-1], closes[-2])
    move_4h = _pct_change(closes[-1], closes[-5]) if len(closes) >= 5 else move_1h

    volume_z = 0.0
    prior = volumes[-25:-1]
    if len(prior) >= 2:
        std = float(np.std(prior))
        if std > 0:
            volume_z = (float(volumes[-1]) - float(np.mean(prior))) / std

    return {
        "volatility_24h": round(volatility, 4),
        "move_1h": round(move_1h, 4),
        "move_4h": round(move_4h, 4),
        "volume_z": round(volume_z, 4),
        "last_price": float(closes[-1]),
    }


def aggregate_metrics(per_asset: dict[str, dict[str, float]]) -> dict[str, float]:
    if not per_asset:
        return {"volatility_24h": 0.0, "move_1h": 0.0, "move_4h": 0.0, "volume_z": 0.0}
    rows = list(per_asset.values())
    return {
        "volatility_24h": max(row["volatility_24h"] for row in rows),
        "move_1h": max((row["move_1h"] for row in rows), key=abs),
        "move_4h": max((row["move_4h"] for row in rows), key=abs),
        "volume_z": max(row["volume_z"] for row in rows),
    }


class MarketPulseGenerator:
    def __init__(self, gateway: ExchangeGateway, *, quote_currency: Optional[str] = None):
        self.gateway = gateway
        self.quote_currency = (quote_currency or settings.EXCHANGE_QUOTE_CURRENCY).upper()

    async def _portfolio_value(self, per_asset: dict[str, dict[str, float]]) -> Optional[float]:
        try:
            balances = await self.gateway.fetch_balances()
        except AuthDenied:
            return None
        except Exception as exc:
            logger.warning("Balance fetch failed, portfolio value unknown", error=str(exc))
            return None

        total = 0.0
        for balance in balances:
            symbol = balance["symbol"]
            amount = float(balance.get("total") or 0.0)
            if amount <= 0:
                continue
            if symbol == self.quote_currency:
                total += amount
                continue
            market = f"{symbol}-{self.quote_currency}"
            price = (per_asset.get(market) or {}).get("last_price")
            if price is None:
                try:
                    price = await self.gateway.fetch_ticker(market)
                except Exception as exc:
                    logger.warning("Ticker fetch failed", market=market, error=str(exc))
                    price = None
            if price:
                total += amount * float(price)
        return round(total, 2)

    async def generate(
        self,
        *,
        user_id: str,
        policy_config: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        now = now or utcnow()
        assets = (policy_config.get("assets") or {}).get("allowlist") or []

        per_asset: dict[str, dict[str, float]] = {}
        for market in assets:
            try:
                candles = await self.gateway.fetch_candles(market, interval=CANDLE_INTERVAL, limit=CANDLE_LIMIT)
            except Exception as exc:
                logger.warning("Candle fetch failed", user_id=user_id, market=market, error=str(exc))
                continue
            metrics = compute_asset_metrics(candles)
            if metrics is not None:
                per_asset[market] = metrics

        snapshot = aggregate_metrics(per_asset)
        snapshot["portfolio_value_eur"] = await self._portfolio_value(per_asset)
        snapshot["assets"] = per_asset
        snapshot["observed_at"] = now
        return snapshot
