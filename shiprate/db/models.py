"""SQLAlchemy ORM models for the shiprate state database.

Defines analysis jobs, carrier accounts with their cached rate tables,
and the append-only shipment result tables written by the progressive
persister. Uses SQLAlchemy 2.0 style with Mapped and mapped_column.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


# Enums matching the database schema constraints


class JobStatus(str, Enum):
    """Status values for analysis jobs.

    Lifecycle: pending -> in_progress -> completed/failed
               pending -> failed (startup or config failure)
    """

    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"


class CarrierType(str, Enum):
    """Carriers with a rating adapter."""

    ups = "ups"
    fedex = "fedex"


class RateSource(str, Enum):
    """Where a rate candidate came from."""

    rate_card = "rate_card"
    carrier_api = "carrier_api"


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Models


class AnalysisJob(Base):
    """Bulk rate-shopping analysis run.

    Attributes:
        id: UUID primary key
        owner: Identity of the submitting caller
        status: Current job status (pending, in_progress, completed, failed)
        total_count: Number of shipments submitted
        processed_count: Shipments processed so far (never decreases)
        orphaned_count: Shipments with no usable rate
        carrier_account_ids: Accounts the job rates against
        total_current_cost: Sum of currently-paid cost over priced shipments
        total_best_cost: Sum of best rates over priced shipments
        total_savings: total_current_cost - total_best_cost
        savings_percentage: total_savings as a percentage of current cost
        error_code: Error code if job failed (E-XXXX format)
        error_message: Short diagnostic if job failed
    """

    __tablename__ = "analysis_jobs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    owner: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.pending.value
    )

    # Progress counters
    total_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    orphaned_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    carrier_account_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Summary (filled at completion)
    total_current_cost: Mapped[Decimal | None] = mapped_column(
        Numeric(14, 2), nullable=True
    )
    total_best_cost: Mapped[Decimal | None] = mapped_column(
        Numeric(14, 2), nullable=True
    )
    total_savings: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    savings_percentage: Mapped[Decimal | None] = mapped_column(
        Numeric(7, 2), nullable=True
    )

    # Timestamps (ISO8601 strings for SQLite compatibility)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    started_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    completed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    # Error info (if failed)
    error_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    results: Mapped[list["ShipmentResultRecord"]] = relationship(
        "ShipmentResultRecord", back_populates="job", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_analysis_jobs_owner", "owner"),
        Index("idx_analysis_jobs_status", "status"),
        Index("idx_analysis_jobs_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AnalysisJob(id={self.id!r}, status={self.status!r}, "
            f"processed={self.processed_count}/{self.total_count})>"
        )


class CarrierAccount(Base):
    """A configured carrier identity.

    Credentials are not stored here; credentials_ref names the environment
    prefix they are read from. Rate-card accounts are priced from their
    rate_table_entries, API accounts through the carrier rating endpoint.
    """

    __tablename__ = "carrier_accounts"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    owner: Mapped[str] = mapped_column(String(255), nullable=False)
    carrier_type: Mapped[str] = mapped_column(String(20), nullable=False)
    account_name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    credentials_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_sandbox: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_rate_card: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    enabled_services: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    dimensional_divisor: Mapped[Decimal] = mapped_column(
        Numeric(8, 2), nullable=False, default=Decimal("166")
    )
    fuel_surcharge_percent: Mapped[Decimal] = mapped_column(
        Numeric(6, 2), nullable=False, default=Decimal("0")
    )

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    rate_entries: Mapped[list["RateTableEntry"]] = relationship(
        "RateTableEntry", back_populates="account", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("idx_carrier_accounts_owner", "owner"),)

    def __repr__(self) -> str:
        return (
            f"<CarrierAccount(id={self.id!r}, carrier={self.carrier_type!r}, "
            f"rate_card={self.is_rate_card})>"
        )


class RateTableEntry(Base):
    """One tier of a carrier account's locally cached rate table.

    weight_break is the upper weight (lbs) the tier covers.
    """

    __tablename__ = "rate_table_entries"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    carrier_account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("carrier_accounts.id", ondelete="CASCADE"), nullable=False
    )
    service_code: Mapped[str] = mapped_column(String(50), nullable=False)
    service_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    zone: Mapped[str] = mapped_column(String(10), nullable=False)
    weight_break: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    rate_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    account: Mapped["CarrierAccount"] = relationship(
        "CarrierAccount", back_populates="rate_entries"
    )

    __table_args__ = (
        Index(
            "idx_rate_table_lookup",
            "carrier_account_id",
            "service_code",
            "zone",
        ),
    )


class ShipmentResultRecord(Base):
    """Chosen outcome for one shipment within a job.

    Append-only: rows are inserted by the progressive persister and never
    updated. sequence records completion order, which need not match the
    submission order.
    """

    __tablename__ = "shipment_results"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("analysis_jobs.id", ondelete="CASCADE"), nullable=False
    )
    shipment_id: Mapped[str] = mapped_column(String(100), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    orphaned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    orphan_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Best candidate (null when orphaned)
    carrier_account_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    carrier_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    service_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    service_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source: Mapped[str | None] = mapped_column(String(20), nullable=True)
    is_negotiated: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    best_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    published_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    transit_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    currently_paid: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    # May be negative: the shipment would cost more at the best rate
    savings: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    candidate_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Service the shipper used, kept beside the chosen one for comparison
    declared_service: Mapped[str | None] = mapped_column(String(255), nullable=True)
    passthrough: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    job: Mapped["AnalysisJob"] = relationship("AnalysisJob", back_populates="results")

    __table_args__ = (
        UniqueConstraint("job_id", "shipment_id", name="uq_shipment_results_job_shipment"),
        Index("idx_shipment_results_job_orphaned", "job_id", "orphaned"),
    )

    def __repr__(self) -> str:
        return (
            f"<ShipmentResultRecord(job_id={self.job_id!r}, "
            f"shipment_id={self.shipment_id!r}, orphaned={self.orphaned})>"
        )


class ShipmentRate(Base):
    """Every candidate considered for a shipment, for auditing the selection."""

    __tablename__ = "shipment_rates"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("analysis_jobs.id", ondelete="CASCADE"), nullable=False
    )
    shipment_id: Mapped[str] = mapped_column(String(100), nullable=False)
    carrier_account_id: Mapped[str] = mapped_column(String(36), nullable=False)
    service_code: Mapped[str] = mapped_column(String(50), nullable=False)
    service_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    published_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    transit_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_negotiated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (Index("idx_shipment_rates_job_shipment", "job_id", "shipment_id"),)
