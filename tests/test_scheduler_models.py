"""Tests for scheduler data models and the error taxonomy."""

from datetime import UTC, datetime, timedelta, timezone

from src.scheduler.errors import RETRYABLE, TERMINAL, DeliveryError, ErrorCode, classify
from src.scheduler.models import (
    ExecutionOutcome,
    ExecutionRecord,
    Job,
    Schedule,
    from_iso,
    make_schedule_id,
    to_iso,
)

# -- Timestamps ----------------------------------------------------------------


def test_to_iso_normalizes_to_utc() -> None:
    rome_winter = timezone(timedelta(hours=1))
    assert to_iso(datetime(2024, 3, 10, 9, 0, tzinfo=rome_winter)) == "2024-03-10T08:00:00+00:00"


def test_to_iso_treats_naive_as_utc() -> None:
    assert to_iso(datetime(2024, 3, 10, 8, 0, 42, 123)) == "2024-03-10T08:00:42+00:00"


def test_iso_none_passthrough() -> None:
    assert to_iso(None) is None
    assert from_iso(None) is None
    assert from_iso("") is None


def test_from_iso_returns_aware_utc() -> None:
    parsed = from_iso("2024-03-10T09:00:00+01:00")
    assert parsed == datetime(2024, 3, 10, 8, 0, tzinfo=UTC)
    assert parsed.utcoffset() == timedelta(0)


# -- Schedule ------------------------------------------------------------------


def test_schedule_defaults() -> None:
    s = Schedule(id="s1", name="Morning", cron_expression="0 9 * * *", timezone="Europe/Rome")
    assert s.is_active is True
    assert s.next_run_at is None
    assert s.run_count == 0
    assert s.type == "custom"
    assert s.created_at is not None


def test_schedule_row_roundtrip() -> None:
    s = Schedule(
        id="s1",
        name="Morning",
        cron_expression="0 9 * * *",
        timezone="Europe/Rome",
        content="Buongiorno {{date}}",
        target="-100123",
        channel="telegram",
        is_active=False,
        next_run_at=datetime(2024, 3, 10, 8, 0, tzinfo=UTC),
        created_at=datetime(2024, 1, 1, tzinfo=UTC),
        run_count=4,
        fail_count=1,
    )
    restored = Schedule.from_row(s.to_row())
    assert restored == s


def test_schedule_to_dict() -> None:
    s = Schedule(
        id="s1",
        name="Morning",
        cron_expression="0 9 * * *",
        timezone="Europe/Rome",
        next_run_at=datetime(2024, 3, 10, 8, 0, tzinfo=UTC),
    )
    d = s.to_dict()
    assert d["id"] == "s1"
    assert d["next_run_at"] == "2024-03-10T08:00:00+00:00"
    assert d["is_active"] is True


def test_make_schedule_id_unique() -> None:
    assert make_schedule_id() != make_schedule_id()


# -- Job -----------------------------------------------------------------------


def test_job_occurrence_defaults_to_scheduled_for() -> None:
    when = datetime(2024, 3, 10, 8, 0, tzinfo=UTC)
    assert Job(schedule_id="s1", scheduled_for=when).occurrence == when


def test_job_exhausted_after_max_attempts_retries() -> None:
    job = Job(schedule_id="s1", scheduled_for=datetime.now(UTC), max_attempts=3)
    assert not job.exhausted
    job.attempt = 2
    assert not job.exhausted
    job.attempt = 3
    assert job.exhausted


# -- ExecutionOutcome / ExecutionRecord ----------------------------------------


def test_outcome_constructors() -> None:
    ok = ExecutionOutcome.ok(message_id="42")
    assert ok.success is True
    assert ok.message_id == "42"
    assert ok.error_code is None

    failed = ExecutionOutcome.failed(ErrorCode.RATE_LIMITED, "slow down")
    assert failed.success is False
    assert failed.error_code is ErrorCode.RATE_LIMITED
    assert failed.message == "slow down"


def test_record_from_failed_outcome() -> None:
    job = Job(schedule_id="s1", scheduled_for=datetime.now(UTC), attempt=2)
    record = ExecutionRecord.from_outcome(
        job, ExecutionOutcome.failed(ErrorCode.CHANNEL_NOT_FOUND, "gone")
    )
    assert record.status == "FAILED"
    assert record.attempt == 2
    assert record.error_code == "CHANNEL_NOT_FOUND"
    assert record.error == "gone"


def test_record_from_successful_outcome() -> None:
    job = Job(schedule_id="s1", scheduled_for=datetime.now(UTC))
    record = ExecutionRecord.from_outcome(job, ExecutionOutcome.ok(message_id="7"))
    assert record.status == "SUCCESS"
    assert record.message_id == "7"
    assert record.error_code is None


def test_record_row_roundtrip() -> None:
    record = ExecutionRecord(
        schedule_id="s1",
        attempt=1,
        status="FAILED",
        executed_at=datetime(2024, 3, 10, 8, 0, tzinfo=UTC),
        error_code="RATE_LIMITED",
        error="429",
    )
    assert ExecutionRecord.from_row(record.to_row()) == record


# -- Error taxonomy ------------------------------------------------------------


def test_terminal_codes() -> None:
    for code in (
        ErrorCode.CHANNEL_NOT_FOUND,
        ErrorCode.CHANNEL_DISCONNECTED,
        ErrorCode.INVALID_SETTINGS,
        ErrorCode.CONFLICT_WITH_DEAL,
    ):
        assert classify(code) == TERMINAL
        assert not code.is_retryable


def test_retryable_codes() -> None:
    for code in (
        ErrorCode.TELEGRAM_API_ERROR,
        ErrorCode.RATE_LIMITED,
        ErrorCode.CONTENT_GENERATION_FAILED,
    ):
        assert classify(code) == RETRYABLE


def test_unknown_code_is_retryable() -> None:
    assert classify("SOMETHING_NEW") == RETRYABLE
    assert classify(None) == RETRYABLE
    assert classify("CHANNEL_NOT_FOUND") == TERMINAL


def test_delivery_error_default_code() -> None:
    assert DeliveryError("boom").code is ErrorCode.TELEGRAM_API_ERROR
    assert DeliveryError("x", ErrorCode.RATE_LIMITED).code is ErrorCode.RATE_LIMITED
