from __future__ import annotations

from datetime import datetime


def getNowIso() -> str:
    """Текущее время в ISO 8601 с timezone."""
    return datetime.now().astimezone().isoformat()


def getDurationMs(startMonotonic: float, endMonotonic: float) -> int:
    return int(round((endMonotonic - startMonotonic) * 1000))
