"""Unit tests for relay job models: intake validation and the job state machine."""

from __future__ import annotations

import pytest

from scanrelay.relay.models import (
    FailureReason,
    ImportOutcome,
    IntakeJob,
    InvalidJob,
    JobRecord,
    JobState,
)

VALID = {
    "scan_type": "Gitleaks Scan",
    "engagement": "42",
    "file_url": "https://store.test/reports/01RUN/gitleaks.json?X-Amz-Signature=abc",
}


def _record() -> JobRecord:
    return JobRecord(job_id="01JOB", job=IntakeJob.from_payload(VALID))


class TestIntakeJob:
    def test_valid_payload(self) -> None:
        job = IntakeJob.from_payload(VALID)
        assert job.scan_type == "Gitleaks Scan"
        assert job.engagement == "42"

    def test_values_are_stripped(self) -> None:
        job = IntakeJob.from_payload({**VALID, "engagement": "  42  "})
        assert job.engagement == "42"

    @pytest.mark.parametrize("payload", [None, [], "string", 42])
    def test_non_object_rejected(self, payload) -> None:
        with pytest.raises(InvalidJob, match="JSON object"):
            IntakeJob.from_payload(payload)

    @pytest.mark.parametrize("field", ["scan_type", "engagement", "file_url"])
    def test_missing_field_rejected(self, field: str) -> None:
        payload = {k: v for k, v in VALID.items() if k != field}
        with pytest.raises(InvalidJob, match=field):
            IntakeJob.from_payload(payload)

    @pytest.mark.parametrize("value", ["", "   ", 42, None])
    def test_empty_or_non_string_rejected(self, value) -> None:
        with pytest.raises(InvalidJob):
            IntakeJob.from_payload({**VALID, "engagement": value})

    @pytest.mark.parametrize(
        "url", ["not a url", "/relative/path.json", "ftp://store.test/a.json", "file:///etc/passwd"]
    )
    def test_file_url_must_be_absolute_http(self, url: str) -> None:
        with pytest.raises(InvalidJob, match="file_url"):
            IntakeJob.from_payload({**VALID, "file_url": url})

    def test_invalid_job_is_value_error(self) -> None:
        assert issubclass(InvalidJob, ValueError)


class TestStateMachine:
    def test_happy_path(self) -> None:
        record = _record()
        for state in (JobState.FETCHING, JobState.FETCHED, JobState.IMPORTING, JobState.IMPORTED):
            record.transition(state)
        assert record.terminal
        assert record.outcome is ImportOutcome.IMPORTED
        assert [s for s, _ in record.history] == [
            "RECEIVED", "FETCHING", "FETCHED", "IMPORTING", "IMPORTED",
        ]

    def test_import_retry_loop(self) -> None:
        record = _record()
        for state in (
            JobState.FETCHING,
            JobState.FETCHED,
            JobState.IMPORTING,
            JobState.IMPORT_FAILED,
            JobState.IMPORTING,
        ):
            record.transition(state)
        record.import_attempts = 2
        assert record.outcome is ImportOutcome.RETRYING

    def test_fetch_failure_path(self) -> None:
        record = _record()
        record.transition(JobState.FETCHING)
        record.transition(JobState.FETCH_FAILED)
        record.fail(FailureReason.FETCH_FAILED, "HTTP 404")
        assert record.state is JobState.FAILED
        assert record.reason is FailureReason.FETCH_FAILED
        assert record.outcome is ImportOutcome.FAILED

    @pytest.mark.parametrize(
        "path",
        [
            [],
            [JobState.FETCHING],
            [JobState.FETCHING, JobState.FETCHED],
            [JobState.FETCHING, JobState.FETCHED, JobState.IMPORTING],
            [JobState.FETCHING, JobState.FETCHED, JobState.IMPORTING, JobState.IMPORT_FAILED],
        ],
    )
    def test_watchdog_can_fail_any_non_terminal_state(self, path: list[JobState]) -> None:
        record = _record()
        for state in path:
            record.transition(state)
        record.fail(FailureReason.WATCHDOG_TIMEOUT, "deadline exceeded")
        assert record.state is JobState.FAILED

    @pytest.mark.parametrize(
        "path, illegal",
        [
            ([], JobState.IMPORTING),
            ([JobState.FETCHING], JobState.FETCHING),
            ([JobState.FETCHING, JobState.FETCH_FAILED], JobState.FETCHING),
            ([JobState.FETCHING, JobState.FETCHED], JobState.IMPORTED),
        ],
    )
    def test_illegal_transitions_rejected(self, path: list[JobState], illegal: JobState) -> None:
        record = _record()
        for state in path:
            record.transition(state)
        with pytest.raises(ValueError, match="illegal job transition"):
            record.transition(illegal)

    @pytest.mark.parametrize("terminal", [JobState.IMPORTED, JobState.FAILED])
    def test_terminal_states_are_final(self, terminal: JobState) -> None:
        record = _record()
        if terminal is JobState.IMPORTED:
            for state in (JobState.FETCHING, JobState.FETCHED, JobState.IMPORTING, JobState.IMPORTED):
                record.transition(state)
        else:
            record.fail(FailureReason.INTERNAL_ERROR)
        for state in JobState:
            with pytest.raises(ValueError):
                record.transition(state)


class TestOutcome:
    def test_new_record_is_pending(self) -> None:
        assert _record().outcome is ImportOutcome.PENDING

    def test_first_import_attempt_is_pending(self) -> None:
        record = _record()
        for state in (JobState.FETCHING, JobState.FETCHED, JobState.IMPORTING):
            record.transition(state)
        record.import_attempts = 1
        assert record.outcome is ImportOutcome.PENDING


class TestToDict:
    def test_file_url_is_redacted(self) -> None:
        data = _record().to_dict()
        assert data["file_url"] == "https://store.test/reports/01RUN/gitleaks.json"
        assert "Signature" not in str(data)

    def test_fields(self) -> None:
        record = _record()
        record.fail(FailureReason.WATCHDOG_TIMEOUT, "deadline exceeded")
        data = record.to_dict()
        assert data["job_id"] == "01JOB"
        assert data["state"] == "FAILED"
        assert data["outcome"] == "FAILED"
        assert data["reason"] == "WATCHDOG_TIMEOUT"
        assert [h["state"] for h in data["history"]] == ["RECEIVED", "FAILED"]
