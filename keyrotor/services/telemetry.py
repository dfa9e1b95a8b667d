from __future__ import annotations

from collections import defaultdict


_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for controller dashboards and the ops endpoint.
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    # Gauges hold the latest observed value only.
    _gauges[name] = float(value)


def counters_snapshot() -> dict[str, int]:
    return dict(sorted(_counters.items()))


def gauges_snapshot() -> dict[str, float]:
    return dict(sorted(_gauges.items()))


def reset_telemetry() -> None:
    # Tests start from a clean slate.
    _counters.clear()
    _gauges.clear()
