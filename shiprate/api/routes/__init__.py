"""FastAPI route modules.

Exports all route modules for inclusion in the main application.
"""

from shiprate.api.routes import carrier_accounts, jobs, progress

__all__ = [
    "carrier_accounts",
    "jobs",
    "progress",
]
