from types import SimpleNamespace

import pytest

from core.settings import OutboxSettings
from services.backoff import backoff_delay_ms, delay_for
from services.errors import (
    ConflictError,
    FailureKind,
    FatalError,
    TransientError,
    TransportError,
    classify_failure,
    describe,
)


class StatusError(Exception):
    pass


def _with(**attrs):
    exc = StatusError("request failed")
    for key, value in attrs.items():
        setattr(exc, key, value)
    return exc


def test_typed_errors_carry_their_kind():
    assert classify_failure(ConflictError()) is FailureKind.CONFLICT
    assert classify_failure(TransientError("timeout")) is FailureKind.TRANSIENT
    assert classify_failure(FatalError("bad payload")) is FailureKind.FATAL
    assert classify_failure(TransportError("x", kind="conflict")) is FailureKind.CONFLICT
    assert ConflictError(server_state={"etag": "2"}).server_state == {"etag": "2"}


@pytest.mark.parametrize(
    "exc, expected",
    [
        (_with(status_code=412), FailureKind.CONFLICT),
        (_with(status=409), FailureKind.CONFLICT),
        (_with(resp=SimpleNamespace(status="412")), FailureKind.CONFLICT),
        (_with(response=SimpleNamespace(status_code=404)), FailureKind.FATAL),
        (_with(status_code=400), FailureKind.FATAL),
        (_with(status_code=429), FailureKind.TRANSIENT),
        (_with(status_code=408), FailureKind.TRANSIENT),
        (_with(status_code=503), FailureKind.TRANSIENT),
        (_with(status_code="n/a"), FailureKind.TRANSIENT),
    ],
)
def test_status_codes_are_classified(exc, expected):
    assert classify_failure(exc) is expected


def test_message_text_is_not_parsed():
    assert classify_failure(RuntimeError("412 conflict")) is FailureKind.TRANSIENT


def test_describe_falls_back_to_class_name():
    assert describe(RuntimeError("  boom ")) == "boom"
    assert describe(TimeoutError()) == "TimeoutError"


def test_backoff_doubles_and_caps():
    delays = [backoff_delay_ms(attempt, 1000, 8000) for attempt in range(1, 6)]
    assert delays == [2000, 4000, 8000, 8000, 8000]
    assert backoff_delay_ms(0, 1000, 8000) == 1000
    assert backoff_delay_ms(-3, 1000, 8000) == 1000


def test_default_backoff_reaches_one_minute_cap():
    settings = OutboxSettings()
    assert delay_for(1, settings) == 2.0
    assert delay_for(5, settings) == 32.0
    assert delay_for(6, settings) == 60.0
