"""Failure taxonomy of the outbox."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


CONFLICT_STATUS = {409, 412}
RETRYABLE_CLIENT_STATUS = {408, 429}


class FailureKind(str, Enum):
    CONFLICT = "conflict"
    TRANSIENT = "transient"
    FATAL = "fatal"


class OutboxError(Exception):
    """Base class for outbox errors."""


class ConfigError(OutboxError):
    pass


class StoreUnavailableError(OutboxError):
    """The durable store could not be read or written."""


class StoreClosedError(StoreUnavailableError):
    pass


class TransportError(OutboxError):
    """Raised by transports to say how a delivery failed."""

    kind = FailureKind.TRANSIENT

    def __init__(self, message: str = "", kind: Optional[FailureKind] = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = FailureKind(kind)


class ConflictError(TransportError):
    kind = FailureKind.CONFLICT

    def __init__(self, message: str = "conflict", server_state: Any = None) -> None:
        super().__init__(message)
        self.server_state = server_state


class TransientError(TransportError):
    kind = FailureKind.TRANSIENT


class FatalError(TransportError):
    kind = FailureKind.FATAL


def _status_code(exc: BaseException) -> Optional[int]:
    for candidate in (
        getattr(exc, "status_code", None),
        getattr(exc, "status", None),
        getattr(getattr(exc, "resp", None), "status", None),
        getattr(getattr(exc, "response", None), "status_code", None),
    ):
        try:
            if candidate is not None:
                return int(candidate)
        except (TypeError, ValueError):
            continue
    return None


def classify_failure(exc: BaseException) -> FailureKind:
    """Map a transport exception to a failure kind without reading its text."""

    if isinstance(exc, TransportError):
        return exc.kind
    status = _status_code(exc)
    if status is None:
        return FailureKind.TRANSIENT
    if status in CONFLICT_STATUS:
        return FailureKind.CONFLICT
    if 400 <= status < 500 and status not in RETRYABLE_CLIENT_STATUS:
        return FailureKind.FATAL
    return FailureKind.TRANSIENT


def describe(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or exc.__class__.__name__


__all__ = [
    "ConfigError",
    "ConflictError",
    "FailureKind",
    "FatalError",
    "OutboxError",
    "StoreClosedError",
    "StoreUnavailableError",
    "TransientError",
    "TransportError",
    "classify_failure",
    "describe",
]
