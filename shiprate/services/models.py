"""Data models for the rating pipeline.

Plain dataclasses passed between pipeline stages. Money is Decimal
quantized to cents; ORM rows are converted to these at the job boundary
so workers never touch a database session.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from shiprate.db.models import RateSource

CENTS = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Convert a number or numeric string to a Decimal rounded to cents.

    Args:
        value: int, float, str or Decimal amount.

    Returns:
        Decimal quantized to two places with ROUND_HALF_UP.
    """
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Dimensions:
    """Package dimensions in inches."""

    length: Decimal
    width: Decimal
    height: Decimal

    @property
    def cubic_inches(self) -> Decimal:
        return self.length * self.width * self.height


@dataclass(frozen=True)
class ShipmentInput:
    """One unit of work submitted by the caller.

    Read-only to the pipeline; passthrough is copied into the result
    untouched.
    """

    shipment_id: str
    """Caller-provided id, or the 1-based input position."""

    origin_zip: str
    """Origin postal code."""

    destination_zip: str
    """Destination postal code."""

    weight: Decimal
    """Actual weight in pounds."""

    currently_paid: Decimal
    """What the shipment costs today."""

    currency: str = "USD"
    """ISO currency of currently_paid. Only rates in this currency compete."""

    dimensions: Dimensions | None = None
    """Package dimensions, if known."""

    zone: str | None = None
    """Carrier zone, if known. Estimated from ZIPs when missing."""

    service_codes: tuple[str, ...] = ()
    """Restrict rating to these service codes (empty = all offered)."""

    declared_service: str | None = None
    """Service the shipment currently ships with."""

    origin_country: str = "US"
    destination_country: str = "US"
    origin_state: str | None = None
    destination_state: str | None = None
    residential: bool = False

    passthrough: dict[str, Any] = field(default_factory=dict)
    """Arbitrary caller fields carried to the result."""


@dataclass(frozen=True)
class CarrierAccountConfig:
    """Snapshot of a CarrierAccount row, immutable for the life of a job."""

    id: str
    carrier_type: str
    account_name: str
    account_number: str | None = None
    credentials_ref: str | None = None
    is_sandbox: bool = True
    is_rate_card: bool = False
    enabled_services: tuple[str, ...] = ()
    dimensional_divisor: Decimal = Decimal("166")
    fuel_surcharge_percent: Decimal = Decimal("0")

    @classmethod
    def from_record(cls, record: Any) -> "CarrierAccountConfig":
        """Build a snapshot from a CarrierAccount ORM row.

        Args:
            record: CarrierAccount instance.

        Returns:
            Detached, frozen account config.
        """
        return cls(
            id=record.id,
            carrier_type=record.carrier_type,
            account_name=record.account_name,
            account_number=record.account_number,
            credentials_ref=record.credentials_ref,
            is_sandbox=bool(record.is_sandbox),
            is_rate_card=bool(record.is_rate_card),
            enabled_services=tuple(record.enabled_services or ()),
            dimensional_divisor=Decimal(record.dimensional_divisor or 166),
            fuel_surcharge_percent=Decimal(record.fuel_surcharge_percent or 0),
        )


@dataclass(frozen=True)
class RateEntry:
    """One rate table tier, detached from the ORM."""

    carrier_account_id: str
    service_code: str
    service_name: str
    zone: str
    weight_break: Decimal
    rate_amount: Decimal
    currency: str = "USD"


@dataclass(frozen=True)
class RateCandidate:
    """One priced option for a shipment from one carrier service.

    Exists only while the shipment is being processed.
    """

    carrier_account_id: str
    carrier_type: str
    service_code: str
    service_name: str
    amount: Decimal
    source: RateSource
    currency: str = "USD"
    is_negotiated: bool = False
    published_amount: Decimal | None = None
    transit_days: int | None = None

    @property
    def savings_vs_published(self) -> Decimal | None:
        """How much the account rate saves over the list rate, if both are known."""
        if self.published_amount is None:
            return None
        return self.published_amount - self.amount


@dataclass
class ShipmentResult:
    """Chosen outcome for one shipment.

    best is None when the shipment is orphaned; orphan_reason then says why.
    """

    shipment_id: str
    currently_paid: Decimal
    best: RateCandidate | None = None
    savings: Decimal | None = None
    orphan_reason: str | None = None
    candidates: list[RateCandidate] = field(default_factory=list)
    declared_service: str | None = None
    passthrough: dict[str, Any] = field(default_factory=dict)

    @property
    def orphaned(self) -> bool:
        return self.best is None

    @classmethod
    def orphan(cls, shipment: ShipmentInput, reason: str) -> "ShipmentResult":
        """Build an orphaned result for a shipment."""
        return cls(
            shipment_id=shipment.shipment_id,
            currently_paid=shipment.currently_paid,
            orphan_reason=reason,
            declared_service=shipment.declared_service,
            passthrough=dict(shipment.passthrough),
        )
