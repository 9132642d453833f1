"""Service layer for shiprate.

Provides the rate-shopping pipeline (rate tables, carrier clients,
best-rate selection, progressive persistence) and job lifecycle
management.
"""

from shiprate.services.job_service import InvalidStateTransition, JobService
from shiprate.services.orchestrator import AnalysisContext, JobOrchestrator
from shiprate.services.persister import ProgressivePersister
from shiprate.services.result_store import ResultStore

__all__ = [
    "JobService",
    "InvalidStateTransition",
    "JobOrchestrator",
    "AnalysisContext",
    "ProgressivePersister",
    "ResultStore",
]
