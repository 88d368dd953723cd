from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from stt_orchestrator.common.errors import NotStreamingError, ProviderError
from stt_orchestrator.common.events import EventChannel
from stt_orchestrator.domain.enums import ErrorSeverity, ErrorType
from stt_orchestrator.services.error_tracker import ErrorTracker, classify


@pytest.mark.parametrize(
    ("exc", "operation", "expected"),
    [
        (
            ProviderError("unavailable", "no model", fatal=True),
            "initialize",
            (ErrorType.initialization_error, ErrorSeverity.critical),
        ),
        (
            ProviderError("unavailable", "bad key", {"status": 401}, fatal=True),
            "transcribe",
            (ErrorType.authentication_error, ErrorSeverity.critical),
        ),
        (
            ProviderError("unavailable", "slow down", {"status": 429}),
            "transcribe",
            (ErrorType.rate_limit_error, ErrorSeverity.medium),
        ),
        (
            ProviderError("network", "refused", {"stage": "connect"}),
            "transcribe",
            (ErrorType.connection_error, ErrorSeverity.medium),
        ),
        (
            ProviderError("network", "reset"),
            "transcribe",
            (ErrorType.network_error, ErrorSeverity.medium),
        ),
        (
            ProviderError("timeout", "slow"),
            "transcribe",
            (ErrorType.timeout_error, ErrorSeverity.medium),
        ),
        (
            ProviderError("decode_failure", "garbage"),
            "transcribe",
            (ErrorType.provider_error, ErrorSeverity.high),
        ),
        (NotStreamingError(), "transcribe", (ErrorType.invalid_request_error, ErrorSeverity.low)),
        (RuntimeError("boom"), None, (ErrorType.unknown_error, ErrorSeverity.high)),
    ],
)
def test_classify(exc, operation, expected) -> None:
    assert classify(exc, operation) == expected


def test_ledger_evicts_oldest_but_stats_stay_cumulative() -> None:
    t = ErrorTracker(capacity=2, threshold=0)
    first = t.record("a", ErrorType.network_error, provider="p1")
    t.record("b", ErrorType.timeout_error, provider="p1")
    t.record("c", ErrorType.timeout_error, provider="p2")

    assert len(t) == 2
    assert t.get(first.id) is None
    assert [r.message for r in t.recent(10)] == ["b", "c"]

    st = t.stats()
    assert st.total_errors == 3
    assert st.errors_by_type == {"network_error": 1, "timeout_error": 2}
    assert st.errors_by_provider == {"p1": 2, "p2": 1}
    assert st.last_error.message == "c"


def test_capture_same_exception_once() -> None:
    t = ErrorTracker(threshold=0)
    err = ProviderError("timeout", "slow", provider="whisper_local")

    r1 = t.capture(err, operation="transcribe")
    r2 = t.capture(err, operation="stream")

    assert r1 is r2
    assert len(t) == 1
    assert r1.provider == "whisper_local"
    assert r1.code == "stt_provider_error"


def test_resolve_keeps_record() -> None:
    t = ErrorTracker(threshold=0)
    rec = t.record("x")

    assert t.resolve(rec.id) is True
    assert t.get(rec.id).resolved is True
    assert len(t) == 1
    assert t.resolve("err_missing") is False


def test_recovery_time_measured_to_next_success(monkeypatch) -> None:
    base = datetime(2026, 1, 1, tzinfo=UTC)
    ticks = iter([base, base + timedelta(milliseconds=200), base + timedelta(milliseconds=500)])
    monkeypatch.setattr(
        "stt_orchestrator.services.error_tracker.utc_now", lambda: next(ticks)
    )

    t = ErrorTracker(threshold=0)
    t.record("a", provider="p1")
    t.record("b", provider="p1")

    assert t.record_success("p1") == 2
    # (500 + 300) / 2
    assert t.stats().average_recovery_time == pytest.approx(400.0)
    assert t.record_success("p1") == 0


def test_average_recovery_survives_eviction_and_resets_on_clear(monkeypatch) -> None:
    base = datetime(2026, 1, 1, tzinfo=UTC)
    ticks = iter(base + timedelta(milliseconds=ms) for ms in (0, 100, 200, 500, 600, 1100))
    monkeypatch.setattr(
        "stt_orchestrator.services.error_tracker.utc_now", lambda: next(ticks)
    )

    t = ErrorTracker(capacity=1, threshold=0)
    for _ in range(3):
        t.record("сбой", provider="p1")
        t.record_success("p1")

    # (100 + 300 + 500) / 3, хотя в журнале осталась одна запись
    assert len(t.recent(10)) == 1
    assert t.stats().average_recovery_time == pytest.approx(300.0)

    t.clear()
    assert t.stats().average_recovery_time == 0.0


def test_threshold_event_fires_once_per_window() -> None:
    events = EventChannel()
    bursts, errors = [], []
    events.subscribe(bursts.append, "errorThresholdExceeded")
    events.subscribe(errors.append, "sttError")

    t = ErrorTracker(threshold=3, threshold_window_sec=60, events=events)
    for i in range(5):
        t.record(f"e{i}", ErrorType.network_error)

    assert len(errors) == 5
    assert len(bursts) == 1
    assert bursts[0].count == 3
    assert len(bursts[0].error_ids) == 3


def test_filters_and_clear() -> None:
    t = ErrorTracker(threshold=0)
    t.record("a", ErrorType.network_error, ErrorSeverity.medium, provider="p1")
    t.record("b", ErrorType.provider_error, ErrorSeverity.critical, provider="p2")

    assert [r.message for r in t.by_type(ErrorType.provider_error)] == ["b"]
    assert [r.message for r in t.by_provider("p1")] == ["a"]
    assert [r.message for r in t.by_severity(ErrorSeverity.critical)] == ["b"]

    t.clear()
    assert len(t) == 0
    assert t.stats().total_errors == 0
    assert t.stats().last_error is None
