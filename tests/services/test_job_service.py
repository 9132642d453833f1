"""Tests for JobService state machine and progress tracking."""

from decimal import Decimal

import pytest

from shiprate.db.models import JobStatus
from shiprate.services.job_service import (
    InvalidStateTransition,
    JobService,
    VALID_TRANSITIONS,
)


@pytest.fixture
def service(db):
    return JobService(db)


@pytest.fixture
def job(service):
    return service.create_job("alice", total_count=3, carrier_account_ids=["acct-1"])


class TestCreateAndList:
    def test_create_job(self, job):
        assert job.status == JobStatus.pending.value
        assert job.processed_count == 0
        assert job.total_count == 3
        assert job.carrier_account_ids == ["acct-1"]
        assert job.started_at is None

    def test_list_filters_by_owner_and_status(self, service, job):
        service.create_job("bob", 1, ["acct-2"])

        assert [j.id for j in service.list_jobs(owner="alice")] == [job.id]
        assert len(service.list_jobs()) == 2
        assert service.list_jobs(owner="alice", status=JobStatus.completed) == []

    def test_get_missing_job(self, service):
        assert service.get_job("missing") is None
        with pytest.raises(ValueError):
            service.get_status("missing")


class TestStateMachine:
    """Status moves pending -> in_progress -> completed|failed only."""

    @pytest.mark.parametrize("current", list(JobStatus))
    @pytest.mark.parametrize("target", list(JobStatus))
    def test_can_transition_matches_table(self, service, current, target):
        assert service.can_transition(current, target) == (target in VALID_TRANSITIONS[current])

    def test_start_sets_started_at(self, service, job):
        updated = service.update_status(job.id, JobStatus.in_progress)
        assert updated.status == "in_progress"
        assert updated.started_at is not None
        assert updated.completed_at is None

    def test_cannot_skip_to_completed(self, service, job):
        with pytest.raises(InvalidStateTransition) as exc_info:
            service.update_status(job.id, JobStatus.completed)
        assert exc_info.value.current_state == JobStatus.pending
        assert "in_progress" in str(exc_info.value)

    def test_terminal_states_are_final(self, service, job):
        service.update_status(job.id, JobStatus.failed)
        with pytest.raises(InvalidStateTransition, match="terminal"):
            service.update_status(job.id, JobStatus.in_progress)

    def test_mark_failed_records_error(self, service, job):
        failed = service.mark_failed(job.id, "E-4002", "accounts could not be loaded")

        assert failed.status == "failed"
        assert failed.completed_at is not None
        assert service.get_status(job.id)["error"] == "E-4002: accounts could not be loaded"

    def test_mark_failed_leaves_terminal_job(self, service, job):
        service.update_status(job.id, JobStatus.in_progress)
        service.complete_job(job.id, 0, Decimal("1"), Decimal("1"), Decimal("0"), Decimal("0"))

        result = service.mark_failed(job.id, "E-4001", "late failure")

        assert result.status == "completed"
        assert result.error_code is None

    def test_mark_failed_missing_job(self, service):
        assert service.mark_failed("missing", "E-4001", "x") is None


class TestProgress:
    def test_progress_is_monotonic(self, service, job):
        service.update_progress(job.id, 2, orphaned=1)
        service.update_progress(job.id, 1, orphaned=0)

        status = service.get_status(job.id)
        assert status["processed_count"] == 2
        assert status["orphaned_count"] == 1

    def test_progress_capped_at_total(self, service, job):
        assert service.update_progress(job.id, 10).processed_count == 3

    def test_complete_job_sets_summary(self, service, job):
        service.update_status(job.id, JobStatus.in_progress)
        service.update_progress(job.id, 1)

        done = service.complete_job(
            job.id,
            orphaned=1,
            total_current_cost=Decimal("22.00"),
            total_best_cost=Decimal("21.00"),
            total_savings=Decimal("1.00"),
            savings_percentage=Decimal("4.55"),
        )

        assert done.status == "completed"
        assert done.processed_count == done.total_count == 3
        assert done.orphaned_count == 1
        assert done.total_savings == Decimal("1.00")


class TestRecovery:
    def test_fail_interrupted_jobs(self, service, job):
        running = service.create_job("alice", 1, ["acct-1"])
        service.update_status(running.id, JobStatus.in_progress)
        finished = service.create_job("alice", 1, ["acct-1"])
        service.update_status(finished.id, JobStatus.failed)

        assert service.fail_interrupted_jobs("restarted") == 2

        assert service.get_job(job.id).error_code == "E-4003"
        assert service.get_job(running.id).status == "failed"
        assert service.get_job(finished.id).error_code is None
