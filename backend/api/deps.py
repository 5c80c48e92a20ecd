"""Request-scoped dependencies shared by the trading agent routes."""

from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Header, HTTPException

from config import settings


def get_current_user(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id


def require_scheduler_secret(
    x_scheduler_secret: Optional[str] = Header(default=None, alias="X-Scheduler-Secret"),
) -> None:
    expected = settings.SCHEDULER_TICK_SECRET
    if not expected:
        raise HTTPException(status_code=401, detail="Scheduler tick is not configured")
    if not x_scheduler_secret or not hmac.compare_digest(
        x_scheduler_secret.encode("utf-8"), expected.encode("utf-8")
    ):
        raise HTTPException(status_code=401, detail="Invalid scheduler secret")
