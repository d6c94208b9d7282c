from __future__ import annotations

from core.settings import OutboxSettings


def backoff_delay_ms(attempt: int, base_delay_ms: int, max_delay_ms: int) -> int:
    """Capped exponential delay before the next try of ``attempt``."""

    delay = base_delay_ms * (2 ** max(attempt, 0))
    return int(min(delay, max_delay_ms))


def delay_for(attempt: int, settings: OutboxSettings) -> float:
    """Same as :func:`backoff_delay_ms`, in seconds for ``loop.call_later``."""

    return backoff_delay_ms(attempt, settings.base_delay_ms, settings.max_delay_ms) / 1000.0


__all__ = ["backoff_delay_ms", "delay_for"]
