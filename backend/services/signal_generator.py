"""Client for the external (untrusted) signal generator.

The generator receives ``{policy, snapshot}`` and answers with zero or more
trade candidates. Every candidate is validated here and again through the
proposal store; malformed ones are dropped, never turned into proposals.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

import httpx

from config import settings
from services.proposal_store import validate_proposal_payload
from services.trading_errors import ValidationError
from utils.logger import get_logger

logger = get_logger("signal_generator")

_CANDIDATE_ALIASES = {
    "orderType": "order_type",
    "orderValueEur": "order_value_eur",
    "limitPrice": "limit_price",
    "market": "asset",
}


def _json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat() + "Z"
    if isinstance(value, dict):
        return {key: _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return value


def validate_candidates(raw: Any) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Split raw generator output into (valid candidates, dropped entries with reasons)."""
    if isinstance(raw, dict):
        raw = raw.get("candidates") or raw.get("proposals") or []
    if not isinstance(raw, list):
        return [], [{"candidate": raw, "reasons": ["INVALID_RESPONSE_SHAPE"]}]

    valid: list[dict[str, Any]] = []
    dropped: list[dict[str, Any]] = []
    for item in raw:
        if not isinstance(item, dict):
            dropped.append({"candidate": item, "reasons": ["INVALID_CANDIDATE"]})
            continue
        candidate = {_CANDIDATE_ALIASES.get(key, key): value for key, value in item.items()}
        try:
            valid.append(validate_proposal_payload(candidate))
        except ValidationError as exc:
            dropped.append({"candidate": item, "reasons": exc.reasons})
    return valid, dropped


class SignalGenerator(ABC):
    @abstractmethod
    async def generate(
        self,
        *,
        user_id: str,
        policy: dict[str, Any],
        snapshot: dict[str, Any],
    ) -> Any:
        """Return raw candidates; callers validate them."""


class HttpSignalGenerator(SignalGenerator):
    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout or settings.SIGNAL_GENERATOR_TIMEOUT_SECONDS

    def _build_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def generate(
        self,
        *,
        user_id: str,
        policy: dict[str, Any],
        snapshot: dict[str, Any],
    ) -> Any:
        payload = {
            "user_id": user_id,
            "policy": _json_safe(policy),
            "snapshot": _json_safe(snapshot),
        }
        # Single attempt: every call is billed against the user's budget.
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/candidates",
                headers=self._build_headers(),
                json=payload,
            )
        if response.status_code != 200:
            raise RuntimeError(f"Signal generator error ({response.status_code}): {response.text[:200]}")
        return response.json()


def get_signal_generator() -> Optional[SignalGenerator]:
    if not settings.SIGNAL_GENERATOR_URL:
        return None
    return HttpSignalGenerator(
        settings.SIGNAL_GENERATOR_URL,
        api_key=settings.SIGNAL_GENERATOR_API_KEY,
    )
