"""Pydantic schemas for API request/response validation.

Request bodies accept camelCase or snake_case keys. Responses are
serialized with camelCase aliases.
"""

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from shiprate.db.models import CarrierType
from shiprate.services.models import Dimensions, ShipmentInput


class CamelModel(BaseModel):
    """Base model with camelCase aliases that also accepts field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Submission schemas


class DimensionsIn(CamelModel):
    """Package dimensions in inches."""

    length: Decimal = Field(..., gt=0)
    width: Decimal = Field(..., gt=0)
    height: Decimal = Field(..., gt=0)


class ShipmentIn(CamelModel):
    """One shipment in an analysis request.

    Unknown keys are kept and carried to the result as passthrough.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    shipment_id: str | None = Field(None, min_length=1, max_length=100)
    origin_zip: str = Field(..., min_length=1, max_length=20)
    destination_zip: str = Field(..., min_length=1, max_length=20)
    weight: Decimal = Field(..., gt=0)
    currently_paid: Decimal = Field(..., ge=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    dimensions: DimensionsIn | None = None
    zone: str | None = Field(None, max_length=10)
    service_codes: list[str] = Field(default_factory=list)
    declared_service: str | None = Field(None, max_length=255)
    origin_country: str = Field("US", min_length=2, max_length=2)
    destination_country: str = Field("US", min_length=2, max_length=2)
    origin_state: str | None = None
    destination_state: str | None = None
    residential: bool = False
    passthrough: dict[str, Any] = Field(default_factory=dict)

    @field_validator("shipment_id", "zone", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Any:
        """Accept numeric ids and zones from spreadsheets."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    def to_input(self, position: int) -> ShipmentInput:
        """Convert to the pipeline's ShipmentInput.

        Args:
            position: 1-based index in the request, used as the id when
                none was given.
        """
        passthrough = {**(self.model_extra or {}), **self.passthrough}
        dims = None
        if self.dimensions is not None:
            dims = Dimensions(
                length=self.dimensions.length,
                width=self.dimensions.width,
                height=self.dimensions.height,
            )
        return ShipmentInput(
            shipment_id=self.shipment_id or str(position),
            origin_zip=self.origin_zip.strip(),
            destination_zip=self.destination_zip.strip(),
            weight=self.weight,
            currently_paid=self.currently_paid,
            currency=self.currency.upper(),
            dimensions=dims,
            zone=self.zone,
            service_codes=tuple(self.service_codes),
            declared_service=self.declared_service,
            origin_country=self.origin_country.upper(),
            destination_country=self.destination_country.upper(),
            origin_state=self.origin_state,
            destination_state=self.destination_state,
            residential=self.residential,
            passthrough=passthrough,
        )


class AnalysisRequest(CamelModel):
    """Request schema for POST /jobs."""

    shipments: list[ShipmentIn] = Field(..., min_length=1)
    carrier_account_ids: list[str] = Field(..., min_length=1)

    def to_inputs(self) -> list[ShipmentInput]:
        return [s.to_input(i) for i, s in enumerate(self.shipments, start=1)]


# Job schemas


class JobCreatedResponse(CamelModel):
    """Response schema for an accepted submission."""

    job_id: str


class JobStatusResponse(CamelModel):
    """Pollable job status."""

    job_id: str
    status: str
    processed_count: int
    total_count: int
    orphaned_count: int = 0
    error: str | None = None


class JobSummaryResponse(CamelModel):
    """Response schema for a job in list views."""

    id: str
    status: str
    total_count: int
    processed_count: int
    orphaned_count: int
    carrier_account_ids: list[str]
    total_current_cost: Decimal | None = None
    total_best_cost: Decimal | None = None
    total_savings: Decimal | None = None
    savings_percentage: Decimal | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: str
    started_at: str | None = None
    completed_at: str | None = None

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class JobListResponse(CamelModel):
    """Response schema for the job list."""

    jobs: list[JobSummaryResponse]
    total: int


class ShipmentResultResponse(CamelModel):
    """One stored shipment result."""

    shipment_id: str
    sequence: int
    orphaned: bool
    orphan_reason: str | None = None
    carrier_account_id: str | None = None
    carrier_type: str | None = None
    service_code: str | None = None
    service_name: str | None = None
    source: str | None = None
    is_negotiated: bool | None = None
    currency: str | None = None
    best_amount: Decimal | None = None
    published_amount: Decimal | None = None
    transit_days: int | None = None
    currently_paid: Decimal
    savings: Decimal | None = None
    candidate_count: int = 0
    declared_service: str | None = Field(None, max_length=255)
    passthrough: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )

    @field_validator("passthrough", mode="before")
    @classmethod
    def _default_passthrough(cls, v: dict | None) -> dict:
        return v or {}


class ShipmentRateResponse(CamelModel):
    """One candidate rate considered for a shipment."""

    carrier_account_id: str
    service_code: str
    service_name: str
    source: str
    amount: Decimal
    published_amount: Decimal | None = None
    currency: str
    transit_days: int | None = None
    is_negotiated: bool

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class ShipmentRatesResponse(CamelModel):
    """Every candidate recorded for one shipment, cheapest first."""

    job_id: str
    shipment_id: str
    rates: list[ShipmentRateResponse]


class JobResultsResponse(CamelModel):
    """Priced and orphaned results of a job, listed separately."""

    job_id: str
    status: str
    results: list[ShipmentResultResponse]
    orphaned: list[ShipmentResultResponse]
    limit: int
    offset: int


# Carrier account schemas


class CarrierAccountCreate(CamelModel):
    """Request schema for registering a carrier account."""

    carrier_type: CarrierType
    account_name: str = Field(..., min_length=1, max_length=255)
    account_number: str | None = Field(None, max_length=50)
    credentials_ref: str | None = Field(None, max_length=100)
    is_sandbox: bool = True
    is_rate_card: bool = False
    enabled_services: list[str] = Field(default_factory=list)
    dimensional_divisor: Decimal = Field(Decimal("166"), gt=0)
    fuel_surcharge_percent: Decimal = Field(Decimal("0"), ge=0, le=100)


class CarrierAccountResponse(CamelModel):
    """Response schema for a carrier account. Credentials are never returned."""

    id: str
    carrier_type: str
    account_name: str
    account_number: str | None
    credentials_ref: str | None
    is_sandbox: bool
    is_rate_card: bool
    is_active: bool
    enabled_services: list[str]
    dimensional_divisor: Decimal
    fuel_surcharge_percent: Decimal
    created_at: str

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class RateTableEntryIn(CamelModel):
    """One rate table tier."""

    service_code: str = Field(..., min_length=1, max_length=20)
    service_name: str | None = Field(None, max_length=100)
    zone: str = Field(..., min_length=1, max_length=10)
    weight_break: Decimal = Field(..., gt=0)
    rate_amount: Decimal = Field(..., ge=0)
    currency: str = Field("USD", min_length=3, max_length=3)

    @field_validator("zone", mode="before")
    @classmethod
    def _stringify_zone(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class RateTableReplace(CamelModel):
    """Request schema replacing an account's whole rate table."""

    entries: list[RateTableEntryIn]


class RateTableResponse(CamelModel):
    """Response schema after a rate table replacement."""

    carrier_account_id: str
    entry_count: int
