"""Durable, append-only storage of per-shipment results.

Results go to the shipment_results table, one row per (job_id,
shipment_id), instead of a single mutable array on the job record. An
append of a shipment id already stored for the job is skipped, so a
batch re-sent after a failed commit cannot duplicate rows.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shiprate.db.models import ShipmentRate, ShipmentResultRecord
from shiprate.services.errors import StorageError
from shiprate.services.models import ShipmentResult, to_money

logger = logging.getLogger(__name__)


@dataclass
class JobSummary:
    """Aggregate savings over a job's stored results."""

    priced_count: int
    orphaned_count: int
    total_current_cost: Decimal
    total_best_cost: Decimal
    total_savings: Decimal
    savings_percentage: Decimal


def _to_record(job_id: str, sequence: int, result: ShipmentResult) -> ShipmentResultRecord:
    best = result.best
    return ShipmentResultRecord(
        job_id=job_id,
        shipment_id=result.shipment_id,
        sequence=sequence,
        orphaned=best is None,
        orphan_reason=result.orphan_reason,
        carrier_account_id=best.carrier_account_id if best else None,
        carrier_type=best.carrier_type if best else None,
        service_code=best.service_code if best else None,
        service_name=best.service_name if best else None,
        source=best.source.value if best else None,
        is_negotiated=best.is_negotiated if best else None,
        currency=best.currency if best else None,
        best_amount=best.amount if best else None,
        published_amount=best.published_amount if best else None,
        transit_days=best.transit_days if best else None,
        currently_paid=result.currently_paid,
        savings=result.savings,
        candidate_count=len(result.candidates),
        declared_service=result.declared_service,
        passthrough=result.passthrough,
    )


def _rate_rows(job_id: str, result: ShipmentResult) -> list[ShipmentRate]:
    return [
        ShipmentRate(
            job_id=job_id,
            shipment_id=result.shipment_id,
            carrier_account_id=c.carrier_account_id,
            service_code=c.service_code,
            service_name=c.service_name,
            source=c.source.value,
            amount=c.amount,
            published_amount=c.published_amount,
            currency=c.currency,
            transit_days=c.transit_days,
            is_negotiated=c.is_negotiated,
        )
        for c in result.candidates
    ]


class ResultStore:
    """Append and read shipment results for analysis jobs."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        """Initialize the store.

        Args:
            session_factory: Callable returning a new SQLAlchemy session.
                Each operation uses and closes its own session.
        """
        self._session_factory = session_factory

    async def append(self, job_id: str, batch: list[tuple[int, ShipmentResult]]) -> int:
        """Append a batch off the event loop. See append_sync."""
        return await asyncio.to_thread(self.append_sync, job_id, batch)

    def append_sync(self, job_id: str, batch: list[tuple[int, ShipmentResult]]) -> int:
        """Insert a batch of results and their candidates in one transaction.

        Args:
            job_id: Owning job.
            batch: (sequence, result) pairs in completion order.

        Returns:
            Number of results inserted (already-stored ids are skipped).

        Raises:
            StorageError: If the transaction fails; nothing is written.
        """
        if not batch:
            return 0

        db = self._session_factory()
        try:
            shipment_ids = [result.shipment_id for _, result in batch]
            existing = {
                row[0]
                for row in db.query(ShipmentResultRecord.shipment_id)
                .filter(ShipmentResultRecord.job_id == job_id)
                .filter(ShipmentResultRecord.shipment_id.in_(shipment_ids))
                .all()
            }

            inserted = 0
            for sequence, result in batch:
                if result.shipment_id in existing:
                    continue
                db.add(_to_record(job_id, sequence, result))
                db.add_all(_rate_rows(job_id, result))
                existing.add(result.shipment_id)
                inserted += 1

            db.commit()
            return inserted
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError.from_code(
                "E-4001",
                reason=f"{e.__class__.__name__}: {str(e)[:200]}",
                details={"job_id": job_id},
            ) from e
        finally:
            db.close()

    def count(self, job_id: str) -> int:
        """Number of results stored for a job."""
        db = self._session_factory()
        try:
            return (
                db.query(func.count(ShipmentResultRecord.id))
                .filter(ShipmentResultRecord.job_id == job_id)
                .scalar()
                or 0
            )
        finally:
            db.close()

    def summarize(self, job_id: str) -> JobSummary:
        """Aggregate cost and savings over a job's stored results.

        Only priced (non-orphaned) results contribute to the cost totals.
        """
        db = self._session_factory()
        try:
            current, best, priced = (
                db.query(
                    func.coalesce(func.sum(ShipmentResultRecord.currently_paid), 0),
                    func.coalesce(func.sum(ShipmentResultRecord.best_amount), 0),
                    func.count(ShipmentResultRecord.id),
                )
                .filter(ShipmentResultRecord.job_id == job_id)
                .filter(ShipmentResultRecord.orphaned.is_(False))
                .one()
            )
            orphaned = (
                db.query(func.count(ShipmentResultRecord.id))
                .filter(ShipmentResultRecord.job_id == job_id)
                .filter(ShipmentResultRecord.orphaned.is_(True))
                .scalar()
                or 0
            )
        finally:
            db.close()

        total_current = to_money(current)
        total_best = to_money(best)
        savings = total_current - total_best
        percentage = (
            to_money(savings / total_current * 100) if total_current else Decimal("0.00")
        )
        return JobSummary(
            priced_count=int(priced),
            orphaned_count=int(orphaned),
            total_current_cost=total_current,
            total_best_cost=total_best,
            total_savings=savings,
            savings_percentage=percentage,
        )

    def list_results(
        self,
        job_id: str,
        orphaned: bool | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ShipmentResultRecord]:
        """Stored results for a job in completion order.

        Args:
            job_id: Owning job.
            orphaned: Filter to orphaned (True) or priced (False) results.
            limit: Maximum rows to return.
            offset: Rows to skip.

        Returns:
            Detached ShipmentResultRecord rows.
        """
        db = self._session_factory()
        try:
            query = db.query(ShipmentResultRecord).filter(
                ShipmentResultRecord.job_id == job_id
            )
            if orphaned is not None:
                query = query.filter(ShipmentResultRecord.orphaned.is_(orphaned))
            rows = (
                query.order_by(ShipmentResultRecord.sequence)
                .offset(offset)
                .limit(limit)
                .all()
            )
            db.expunge_all()
            return rows
        finally:
            db.close()

    def list_rates(self, job_id: str, shipment_id: str) -> list[ShipmentRate]:
        """Every candidate recorded for one shipment, cheapest first."""
        db = self._session_factory()
        try:
            rows = (
                db.query(ShipmentRate)
                .filter(ShipmentRate.job_id == job_id)
                .filter(ShipmentRate.shipment_id == shipment_id)
                .order_by(ShipmentRate.amount)
                .all()
            )
            db.expunge_all()
            return rows
        finally:
            db.close()
