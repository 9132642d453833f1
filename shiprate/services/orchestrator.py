"""Job orchestration for bulk rate shopping.

submit() validates a submission, creates a pending job and schedules the
pipeline as a detached asyncio task; it never waits for processing. The
pipeline loads carrier accounts and rate tables into a per-job
AnalysisContext, prices each shipment through the rate-card path and the
remote carrier path, picks the cheapest candidate, and hands the result
to the job's ProgressivePersister.

Per-shipment problems always become a result (priced or orphaned). Only
failures that stop forward progress (carrier accounts cannot be loaded,
storage keeps failing) fail the job.

Database work runs in worker threads via asyncio.to_thread, each call on
its own session, so the event loop never blocks on SQLite.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shiprate.config import CarrierConfig, ShipRateConfig
from shiprate.db.models import CarrierAccount, JobStatus
from shiprate.errors import NotFoundError, ValidationError
from shiprate.services.best_rate import build_result
from shiprate.services.carrier_adapters import get_adapter
from shiprate.services.carrier_client import RemoteRateClient
from shiprate.services.concurrency import ConcurrencyController, Outcome
from shiprate.services.errors import AuthError, CarrierConfigError, ServiceError
from shiprate.services.job_service import JobService
from shiprate.services.models import (
    CarrierAccountConfig,
    RateCandidate,
    ShipmentInput,
    ShipmentResult,
)
from shiprate.services.persister import ProgressivePersister
from shiprate.services.rate_card import RateCardResolver
from shiprate.services.rate_table import RateTableStore
from shiprate.services.result_store import ResultStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

NO_RATE_REASON = "No rate card coverage or carrier quote available"
ACCOUNTS_DISABLED_REASON = "No rate card coverage and every carrier API account was disabled"
INTERRUPTED_REASON = "Service restarted while the analysis was running"
SHUTDOWN_REASON = "Service shut down while the analysis was running"


def validate_submission(
    shipments: Sequence[ShipmentInput], carrier_account_ids: Sequence[str]
) -> None:
    """Reject a malformed submission before any job exists.

    Args:
        shipments: Shipments to analyse.
        carrier_account_ids: Accounts to rate against.

    Raises:
        ValidationError: Describing the first problem found.
    """
    if not shipments:
        raise ValidationError("At least one shipment is required")
    if not carrier_account_ids:
        raise ValidationError("At least one carrier account id is required")
    if len(set(carrier_account_ids)) != len(carrier_account_ids):
        raise ValidationError(
            "Carrier account ids must be unique",
            details={"carrier_account_ids": list(carrier_account_ids)},
        )

    seen: set[str] = set()
    for shipment in shipments:
        if shipment.shipment_id in seen:
            raise ValidationError(
                f"Shipment id '{shipment.shipment_id}' appears more than once",
                code="E-2003",
                details={"shipment_id": shipment.shipment_id},
            )
        seen.add(shipment.shipment_id)
        if shipment.weight <= 0:
            raise ValidationError(
                f"Shipment '{shipment.shipment_id}' must have a positive weight",
                details={"shipment_id": shipment.shipment_id},
            )
        if shipment.currently_paid < 0:
            raise ValidationError(
                f"Shipment '{shipment.shipment_id}' has a negative currently paid amount",
                details={"shipment_id": shipment.shipment_id},
            )


def service_codes_for(shipment: ShipmentInput, account: CarrierAccountConfig) -> list[str]:
    """Service codes to request from a carrier API for one shipment.

    The shipment's own codes win, then the account's enabled services,
    then the carrier's default list. enabled_services always filters.
    """
    codes = list(shipment.service_codes) or list(account.enabled_services)
    if not codes:
        codes = list(get_adapter(account.carrier_type).default_service_codes)
    if account.enabled_services:
        codes = [c for c in codes if c in account.enabled_services]
    return codes


@dataclass
class AnalysisContext:
    """Everything one job's pipeline needs, discarded when the job ends.

    Accounts and the rate table are read-only once loaded and shared by
    all workers. Counters are only touched from the event loop thread.
    """

    job_id: str
    accounts: list[CarrierAccountConfig]
    rate_table: RateTableStore
    resolver: RateCardResolver
    persister: ProgressivePersister
    client: RemoteRateClient | None = None
    disabled_accounts: set[str] = field(default_factory=set)
    processed_count: int = 0
    orphaned_count: int = 0
    started_at: float = field(default_factory=time.monotonic)

    @property
    def rate_card_accounts(self) -> list[CarrierAccountConfig]:
        return [a for a in self.accounts if a.is_rate_card]

    def remote_eligible(self, account: CarrierAccountConfig) -> bool:
        """True if the account can still be quoted through its carrier API."""
        if self.client is None or account.id in self.disabled_accounts:
            return False
        return not account.is_rate_card or bool(account.credentials_ref)

    def record(self, result: ShipmentResult) -> None:
        """Count a finished shipment and hand it to the persister."""
        self.persister.add(result)
        self.processed_count += 1
        if result.orphaned:
            self.orphaned_count += 1

    async def close(self) -> None:
        await self.persister.abort()
        if self.client is not None:
            await self.client.aclose()


class JobOrchestrator:
    """Owns analysis jobs from submission to a terminal status.

    One instance lives for the life of the process (app.state in the API).
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: ShipRateConfig | None = None,
        client_factory: Callable[[CarrierConfig], RemoteRateClient] | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            session_factory: Callable returning a new SQLAlchemy session.
            config: Engine and carrier settings. Defaults apply when None.
            client_factory: Builds the per-job RemoteRateClient from the
                carrier settings. Defaults to RemoteRateClient(config).
        """
        self._session_factory = session_factory
        self.config = config or ShipRateConfig()
        self._client_factory = client_factory or RemoteRateClient
        self.result_store = ResultStore(session_factory)
        self._tasks: dict[str, asyncio.Task] = {}
        self._contexts: dict[str, AnalysisContext] = {}

    @property
    def active_job_count(self) -> int:
        return len(self._tasks)

    # =========================================================================
    # Database helpers
    # =========================================================================

    def _with_jobs(self, op: Callable[[JobService], T]) -> T:
        db = self._session_factory()
        try:
            return op(JobService(db))
        finally:
            db.close()

    async def _jobs(self, op: Callable[[JobService], T]) -> T:
        return await asyncio.to_thread(self._with_jobs, op)

    def _check_accounts(self, owner: str, carrier_account_ids: Sequence[str]) -> None:
        db = self._session_factory()
        try:
            found = {
                row[0]
                for row in db.query(CarrierAccount.id)
                .filter(CarrierAccount.id.in_(list(carrier_account_ids)))
                .filter(CarrierAccount.owner == owner)
                .filter(CarrierAccount.is_active.is_(True))
                .all()
            }
        finally:
            db.close()

        missing = [a for a in carrier_account_ids if a not in found]
        if missing:
            raise ValidationError(
                f"Carrier account(s) not found or inactive: {', '.join(missing)}",
                code="E-2002",
                details={"account_ids": missing},
            )

    def _load_accounts(self, carrier_account_ids: Sequence[str]) -> list[CarrierAccountConfig]:
        db = self._session_factory()
        try:
            records = (
                db.query(CarrierAccount)
                .filter(CarrierAccount.id.in_(list(carrier_account_ids)))
                .all()
            )
            accounts = [CarrierAccountConfig.from_record(r) for r in records]
        except SQLAlchemyError as e:
            raise CarrierConfigError.from_code("E-4002", reason=str(e)[:200]) from e
        finally:
            db.close()

        loaded = {a.id for a in accounts}
        missing = [a for a in carrier_account_ids if a not in loaded]
        if missing:
            raise CarrierConfigError.from_code(
                "E-4002", reason=f"accounts no longer exist: {', '.join(missing)}"
            )
        for account in accounts:
            if account.is_rate_card and not account.credentials_ref:
                continue
            try:
                get_adapter(account.carrier_type)
            except KeyError as e:
                raise CarrierConfigError.from_code(
                    "E-4002",
                    reason=f"account {account.id} has unsupported carrier '{account.carrier_type}'",
                ) from e
        return accounts

    def _load_rate_table(self, accounts: list[CarrierAccountConfig]) -> RateTableStore:
        store = RateTableStore(self._session_factory)
        try:
            store.load([a.id for a in accounts if a.is_rate_card])
        except SQLAlchemyError as e:
            raise CarrierConfigError.from_code(
                "E-4002", reason=f"rate tables: {str(e)[:200]}"
            ) from e
        return store

    # =========================================================================
    # Public API
    # =========================================================================

    async def submit(
        self,
        owner: str,
        shipments: Sequence[ShipmentInput],
        carrier_account_ids: Sequence[str],
    ) -> str:
        """Create a job and start its pipeline in the background.

        Returns as soon as the job record exists.

        Args:
            owner: Identity of the caller; accounts must belong to them.
            shipments: Shipments to analyse, each with a unique id.
            carrier_account_ids: Active accounts of the owner to rate against.

        Returns:
            The new job id.

        Raises:
            ValidationError: If the submission is malformed or references
                unknown, inactive or foreign accounts.
        """
        validate_submission(shipments, carrier_account_ids)
        await asyncio.to_thread(self._check_accounts, owner, carrier_account_ids)

        job = await self._jobs(
            lambda jobs: jobs.create_job(owner, len(shipments), list(carrier_account_ids))
        )
        job_id = job.id
        logger.info(
            "Analysis job %s submitted: %d shipment(s), %d carrier account(s)",
            job_id, len(shipments), len(carrier_account_ids),
        )

        task = asyncio.create_task(
            self._run_job(job_id, list(shipments), list(carrier_account_ids)),
            name=f"analysis-{job_id}",
        )
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(job_id, None))
        return job_id

    def get_status(self, job_id: str, owner: str | None = None) -> dict[str, Any]:
        """Pollable status of a job.

        processed_count reflects the running pipeline's live counter, which
        can be ahead of the value last written to the database.

        Args:
            job_id: Job to look up.
            owner: When given, the job must belong to this owner.

        Returns:
            Dict with status, processed_count, total_count, orphaned_count
            and error.

        Raises:
            NotFoundError: If the job does not exist (or is not the owner's).
        """
        db = self._session_factory()
        try:
            jobs = JobService(db)
            job = jobs.get_job(job_id)
            if job is None or (owner is not None and job.owner != owner):
                raise NotFoundError("Job", job_id)
            status = jobs.get_status(job_id)
        finally:
            db.close()

        context = self._contexts.get(job_id)
        if context is not None:
            status["processed_count"] = min(
                max(status["processed_count"], context.processed_count),
                status["total_count"],
            )
            status["orphaned_count"] = max(status["orphaned_count"], context.orphaned_count)
        return status

    async def wait(self, job_id: str) -> None:
        """Wait for a job's pipeline to finish, if it is running."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel running pipelines; their jobs are marked failed."""
        tasks = list(self._tasks.values())
        if not tasks:
            return
        logger.info("Cancelling %d running analysis job(s)", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def recover_interrupted_jobs(self) -> int:
        """Fail jobs a previous process left pending or in progress."""
        count = self._with_jobs(lambda jobs: jobs.fail_interrupted_jobs(INTERRUPTED_REASON))
        if count:
            logger.warning("Marked %d interrupted analysis job(s) as failed", count)
        return count

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def _build_context(
        self, job_id: str, carrier_account_ids: list[str]
    ) -> AnalysisContext:
        accounts = await asyncio.to_thread(self._load_accounts, carrier_account_ids)
        store = await asyncio.to_thread(self._load_rate_table, accounts)
        for account in accounts:
            if account.is_rate_card and not store.has_account(account.id):
                logger.warning(
                    "Rate-card account %s has no rate table entries for job %s",
                    account.id, job_id,
                )

        engine = self.config.engine
        persister = ProgressivePersister(
            job_id,
            self.result_store,
            batch_size=engine.persist_batch_size,
            batch_timeout=engine.persist_batch_timeout_seconds,
            max_flush_failures=engine.max_flush_failures,
        )
        context = AnalysisContext(
            job_id=job_id,
            accounts=accounts,
            rate_table=store,
            resolver=RateCardResolver(store),
            persister=persister,
        )
        if any(not a.is_rate_card or a.credentials_ref for a in accounts):
            context.client = self._client_factory(self.config.carriers)
        return context

    async def _run_job(
        self, job_id: str, shipments: list[ShipmentInput], carrier_account_ids: list[str]
    ) -> None:
        context: AnalysisContext | None = None
        try:
            await self._jobs(lambda jobs: jobs.update_status(job_id, JobStatus.in_progress))
            context = await self._build_context(job_id, carrier_account_ids)
            self._contexts[job_id] = context

            controller = ConcurrencyController(self.config.engine.concurrency)

            async def _process(shipment: ShipmentInput) -> ShipmentResult:
                return await self._process_shipment(context, shipment)

            async def _on_chunk_done(outcomes: list[Outcome]) -> None:
                # Workers absorb shipment errors, so anything here is infrastructure
                for outcome in outcomes:
                    if not outcome.ok:
                        raise outcome.error
                processed, orphaned = context.processed_count, context.orphaned_count
                await self._jobs(lambda jobs: jobs.update_progress(job_id, processed, orphaned))

            await controller.run(shipments, _process, on_chunk_done=_on_chunk_done)
            await context.persister.close()

            summary = await asyncio.to_thread(self.result_store.summarize, job_id)
            await self._jobs(
                lambda jobs: jobs.complete_job(
                    job_id,
                    orphaned=summary.orphaned_count,
                    total_current_cost=summary.total_current_cost,
                    total_best_cost=summary.total_best_cost,
                    total_savings=summary.total_savings,
                    savings_percentage=summary.savings_percentage,
                )
            )
            elapsed = time.monotonic() - context.started_at
            logger.info(
                "Analysis timing: job_id=%s shipments=%d orphaned=%d flushes=%d elapsed=%.2fs",
                job_id, len(shipments), summary.orphaned_count,
                context.persister.flush_count, elapsed,
            )
        except asyncio.CancelledError:
            logger.warning("Analysis job %s cancelled", job_id)
            await self._fail(job_id, "E-4003", SHUTDOWN_REASON)
            raise
        except ServiceError as e:
            logger.error("Analysis job %s failed: %s", job_id, e)
            await self._fail(job_id, e.code, e.message)
        except Exception as e:
            logger.exception("Analysis job %s failed unexpectedly: %s", job_id, e)
            await self._fail(job_id, "E-4004", f"{e.__class__.__name__}: {e}"[:500])
        finally:
            self._contexts.pop(job_id, None)
            if context is not None:
                await context.close()

    async def _fail(self, job_id: str, error_code: str, error_message: str) -> None:
        try:
            await self._jobs(lambda jobs: jobs.mark_failed(job_id, error_code, error_message))
        except SQLAlchemyError as e:
            logger.error("Could not record failure of job %s: %s", job_id, e)

    async def _process_shipment(
        self, context: AnalysisContext, shipment: ShipmentInput
    ) -> ShipmentResult:
        """Price one shipment. Never raises for shipment-level problems."""
        try:
            candidates = await self._gather_candidates(context, shipment)
            result = build_result(shipment, candidates, self._orphan_reason(context))
        except Exception as e:
            logger.warning(
                "Shipment %s in job %s orphaned by unexpected error: %s",
                shipment.shipment_id, context.job_id, e,
            )
            result = ShipmentResult.orphan(shipment, f"Processing error: {e}"[:500])
        context.record(result)
        return result

    async def _gather_candidates(
        self, context: AnalysisContext, shipment: ShipmentInput
    ) -> list[RateCandidate]:
        candidates: list[RateCandidate] = []
        remote: list[CarrierAccountConfig] = []
        for account in context.accounts:
            if account.is_rate_card:
                found = context.resolver.resolve_all(shipment, account)
                if found:
                    candidates.extend(found)
                    continue
            if context.remote_eligible(account):
                remote.append(account)

        if remote:
            quoted = await asyncio.gather(
                *(self._quote(context, shipment, account) for account in remote),
                return_exceptions=True,
            )
            # One account's failure must not discard the other accounts' candidates
            for account, result in zip(remote, quoted):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, BaseException):
                    logger.warning(
                        "Skipping %s account %s for shipment %s: %s",
                        account.carrier_type, account.id, shipment.shipment_id, result,
                    )
                    continue
                candidates.extend(result)
        return candidates

    async def _quote(
        self, context: AnalysisContext, shipment: ShipmentInput, account: CarrierAccountConfig
    ) -> list[RateCandidate]:
        codes = service_codes_for(shipment, account)
        if not codes:
            return []
        try:
            return await context.client.quote(shipment, account, codes)
        except AuthError:
            # RemoteRateClient already logged the rejection once for this job
            context.disabled_accounts.add(account.id)
            return []

    def _orphan_reason(self, context: AnalysisContext) -> str:
        api_accounts = [a for a in context.accounts if not a.is_rate_card]
        if (
            api_accounts
            and not context.rate_card_accounts
            and all(a.id in context.disabled_accounts for a in api_accounts)
        ):
            return ACCOUNTS_DISABLED_REASON
        return NO_RATE_REASON

