from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

DEFAULT_VOLATILITY_THRESHOLD_PCT = 50.0
DEFAULT_MOVE_1H_THRESHOLD_PCT = 2.0
DEFAULT_MOVE_4H_THRESHOLD_PCT = 3.0
DEFAULT_VOLUME_Z_THRESHOLD = 1.5


@dataclass
class GateResult:
    fired: bool
    triggers: list[str] = field(default_factory=list)
    enabled: bool = True


def _threshold(gate: dict[str, Any], key: str, default: float) -> float:
    value = gate.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _metric(snapshot: dict[str, Any], key: str) -> float:
    try:
        return float(snapshot.get(key) or 0.0)
    except (TypeError, ValueError):
        return 0.0


def evaluate_gate(gate: dict[str, Any] | None, snapshot: dict[str, Any]) -> GateResult:
    """Decide whether this snapshot is worth a signal-generator call.

    Any single threshold being met fires the gate; every met threshold is
    reported. A disabled gate never fires.
    """
    gate = gate or {}
    if not bool(gate.get("enabled", True)):
        return GateResult(fired=False, triggers=[], enabled=False)

    volatility = _metric(snapshot, "volatility_24h")
    move_1h = _metric(snapshot, "move_1h")
    move_4h = _metric(snapshot, "move_4h")
    volume_z = _metric(snapshot, "volume_z")

    triggers: list[str] = []
    if volatility >= _threshold(gate, "volatility_threshold_pct", DEFAULT_VOLATILITY_THRESHOLD_PCT):
        triggers.append(f"volatility_{volatility:.2f}%")
    if abs(move_1h) >= _threshold(gate, "move_1h_threshold_pct", DEFAULT_MOVE_1H_THRESHOLD_PCT):
        triggers.append(f"move1h_{move_1h:.2f}%")
    if abs(move_4h) >= _threshold(gate, "move_4h_threshold_pct", DEFAULT_MOVE_4H_THRESHOLD_PCT):
        triggers.append(f"move4h_{move_4h:.2f}%")
    if volume_z >= _threshold(gate, "volume_z_threshold", DEFAULT_VOLUME_Z_THRESHOLD):
        triggers.append(f"volumeZ_{volume_z:.2f}")

    return GateResult(fired=bool(triggers), triggers=triggers, enabled=True)
