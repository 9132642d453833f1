"""Database module for shiprate state management and persistence."""

from shiprate.db.connection import (
    SessionLocal,
    engine,
    get_db,
    get_db_context,
    init_db,
)
from shiprate.db.models import (
    AnalysisJob,
    CarrierAccount,
    CarrierType,
    JobStatus,
    RateSource,
    RateTableEntry,
    ShipmentRate,
    ShipmentResultRecord,
)

__all__ = [
    # Models
    "AnalysisJob",
    "CarrierAccount",
    "RateTableEntry",
    "ShipmentResultRecord",
    "ShipmentRate",
    # Enums
    "JobStatus",
    "CarrierType",
    "RateSource",
    # Connection
    "engine",
    "SessionLocal",
    "get_db",
    "get_db_context",
    "init_db",
]
