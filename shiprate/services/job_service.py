"""Job service implementing analysis job lifecycle with state machine validation.

All job record mutations go through this class so the lifecycle rules
hold everywhere: status only moves forward, terminal states are final,
and processed_count never decreases.
"""

from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from shiprate.db.models import AnalysisJob, JobStatus, generate_uuid, utc_now_iso


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job state transition.

    Attributes:
        current_state: The current state of the job.
        attempted_state: The state that was attempted.
        allowed_transitions: List of valid transition targets from current state.
    """

    def __init__(
        self,
        current_state: JobStatus,
        attempted_state: JobStatus,
        allowed_transitions: list[JobStatus],
    ) -> None:
        self.current_state = current_state
        self.attempted_state = attempted_state
        self.allowed_transitions = allowed_transitions
        allowed_str = ", ".join(s.value for s in allowed_transitions) or "none (terminal)"
        super().__init__(
            f"Cannot transition from '{current_state.value}' to '{attempted_state.value}'. "
            f"Allowed transitions: {allowed_str}"
        )


# Valid state transitions for job lifecycle
VALID_TRANSITIONS: dict[JobStatus, list[JobStatus]] = {
    JobStatus.pending: [JobStatus.in_progress, JobStatus.failed],
    JobStatus.in_progress: [JobStatus.completed, JobStatus.failed],
    JobStatus.completed: [],  # terminal
    JobStatus.failed: [],  # terminal (re-running creates a new job)
}

TERMINAL_STATUSES = frozenset({JobStatus.completed, JobStatus.failed})


class JobService:
    """Service for analysis job lifecycle management.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        """Initialize the job service with a database session.

        Args:
            db: SQLAlchemy session for database operations.
        """
        self.db = db

    # =========================================================================
    # Job CRUD Operations
    # =========================================================================

    def create_job(
        self,
        owner: str,
        total_count: int,
        carrier_account_ids: list[str],
    ) -> AnalysisJob:
        """Create a pending job.

        Args:
            owner: Identity of the submitting caller.
            total_count: Number of shipments submitted.
            carrier_account_ids: Accounts to rate against.

        Returns:
            The created AnalysisJob with generated ID and timestamps.
        """
        now = utc_now_iso()
        job = AnalysisJob(
            id=generate_uuid(),
            owner=owner,
            status=JobStatus.pending.value,
            total_count=total_count,
            processed_count=0,
            orphaned_count=0,
            carrier_account_ids=list(carrier_account_ids),
            created_at=now,
            updated_at=now,
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        return job

    def get_job(self, job_id: str) -> AnalysisJob | None:
        """Get a job by its ID.

        Args:
            job_id: The UUID of the job to retrieve.

        Returns:
            The AnalysisJob if found, None otherwise.
        """
        return self.db.query(AnalysisJob).filter(AnalysisJob.id == job_id).first()

    def _require_job(self, job_id: str) -> AnalysisJob:
        job = self.get_job(job_id)
        if job is None:
            raise ValueError(f"Job not found: {job_id}")
        return job

    def list_jobs(
        self,
        owner: str | None = None,
        status: JobStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AnalysisJob]:
        """List jobs newest first with optional filtering and pagination.

        Args:
            owner: Filter by owner (optional).
            status: Filter by job status (optional).
            limit: Maximum number of jobs to return.
            offset: Number of jobs to skip.

        Returns:
            List of AnalysisJob objects.
        """
        query = self.db.query(AnalysisJob)
        if owner is not None:
            query = query.filter(AnalysisJob.owner == owner)
        if status is not None:
            query = query.filter(AnalysisJob.status == status.value)
        return (
            query.order_by(AnalysisJob.created_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    # =========================================================================
    # State Machine Operations
    # =========================================================================

    def can_transition(self, current: JobStatus, target: JobStatus) -> bool:
        """Check if a state transition is valid.

        Args:
            current: The current job status.
            target: The target job status.

        Returns:
            True if the transition is valid, False otherwise.
        """
        return target in VALID_TRANSITIONS.get(current, [])

    def update_status(self, job_id: str, new_status: JobStatus) -> AnalysisJob:
        """Update a job's status with state machine validation.

        Args:
            job_id: The UUID of the job to update.
            new_status: The new status to transition to.

        Returns:
            The updated AnalysisJob.

        Raises:
            ValueError: If job not found.
            InvalidStateTransition: If the transition is not allowed.
        """
        job = self._require_job(job_id)

        current_status = JobStatus(job.status)
        if not self.can_transition(current_status, new_status):
            raise InvalidStateTransition(
                current_state=current_status,
                attempted_state=new_status,
                allowed_transitions=VALID_TRANSITIONS.get(current_status, []),
            )

        now = utc_now_iso()
        job.status = new_status.value
        job.updated_at = now

        if new_status == JobStatus.in_progress and job.started_at is None:
            job.started_at = now
        if new_status in TERMINAL_STATUSES:
            job.completed_at = now

        self.db.commit()
        self.db.refresh(job)
        return job

    def mark_failed(self, job_id: str, error_code: str, error_message: str) -> AnalysisJob | None:
        """Move a non-terminal job to failed with a diagnostic.

        A job that is already terminal is left untouched.

        Returns:
            The job, or None if it does not exist.
        """
        job = self.get_job(job_id)
        if job is None:
            return None
        if JobStatus(job.status) in TERMINAL_STATUSES:
            return job
        job.error_code = error_code
        job.error_message = error_message
        return self.update_status(job_id, JobStatus.failed)

    # =========================================================================
    # Job Metrics Operations
    # =========================================================================

    def update_progress(
        self,
        job_id: str,
        processed: int,
        orphaned: int | None = None,
    ) -> AnalysisJob:
        """Record progress; lower values than those stored are ignored.

        Args:
            job_id: The UUID of the job to update.
            processed: Shipments processed so far.
            orphaned: Orphaned shipments so far (optional).

        Returns:
            The updated AnalysisJob.

        Raises:
            ValueError: If job not found.
        """
        job = self._require_job(job_id)

        changed = False
        if processed > job.processed_count:
            job.processed_count = min(processed, job.total_count)
            changed = True
        if orphaned is not None and orphaned > job.orphaned_count:
            job.orphaned_count = orphaned
            changed = True

        if changed:
            job.updated_at = utc_now_iso()
            self.db.commit()
            self.db.refresh(job)
        return job

    def complete_job(
        self,
        job_id: str,
        orphaned: int,
        total_current_cost: Decimal,
        total_best_cost: Decimal,
        total_savings: Decimal,
        savings_percentage: Decimal,
    ) -> AnalysisJob:
        """Record the final summary and move the job to completed.

        processed_count is set to total_count in the same commit.

        Raises:
            ValueError: If job not found.
            InvalidStateTransition: If the job is not in progress.
        """
        job = self._require_job(job_id)
        job.processed_count = job.total_count
        job.orphaned_count = max(job.orphaned_count, orphaned)
        job.total_current_cost = total_current_cost
        job.total_best_cost = total_best_cost
        job.total_savings = total_savings
        job.savings_percentage = savings_percentage
        return self.update_status(job_id, JobStatus.completed)

    def fail_interrupted_jobs(self, reason: str) -> int:
        """Fail jobs left pending or in progress by a previous process.

        Returns:
            Number of jobs marked failed.
        """
        stale = (
            self.db.query(AnalysisJob)
            .filter(
                AnalysisJob.status.in_(
                    [JobStatus.pending.value, JobStatus.in_progress.value]
                )
            )
            .all()
        )
        for job in stale:
            self.mark_failed(job.id, "E-4003", reason)
        return len(stale)

    def get_status(self, job_id: str) -> dict[str, Any]:
        """Get the pollable status of a job.

        Args:
            job_id: The UUID of the job.

        Returns:
            Dictionary with status, processed_count, total_count, and
            error (short diagnostic) when the job failed.

        Raises:
            ValueError: If job not found.
        """
        job = self._require_job(job_id)
        status: dict[str, Any] = {
            "job_id": job.id,
            "status": job.status,
            "processed_count": job.processed_count,
            "total_count": job.total_count,
            "orphaned_count": job.orphaned_count,
            "error": None,
        }
        if job.status == JobStatus.failed.value:
            status["error"] = (
                f"{job.error_code}: {job.error_message}" if job.error_code else job.error_message
            )
        return status
