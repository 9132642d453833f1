"""Best-rate selection and savings arithmetic."""

import logging
from decimal import Decimal

from shiprate.db.models import RateSource
from shiprate.services.models import RateCandidate, ShipmentInput, ShipmentResult

logger = logging.getLogger(__name__)


def _selection_key(candidate: RateCandidate) -> tuple[Decimal, int]:
    # Ties go to rate_card.
    return (candidate.amount, 0 if candidate.source == RateSource.rate_card else 1)


def select_best(candidates: list[RateCandidate], currency: str = "USD") -> RateCandidate | None:
    """Return the minimum-amount candidate priced in currency.

    Selection is by amount only, never by position in the list. Amounts in
    other currencies are not comparable and never win.

    Returns:
        The winning candidate, or None when no candidate is in currency.
    """
    comparable = [c for c in candidates if c.currency == currency]
    if not comparable:
        return None
    return min(comparable, key=_selection_key)


def compute_savings(currently_paid: Decimal, best: RateCandidate) -> Decimal:
    """Currently-paid minus best amount. Negative values are kept."""
    return currently_paid - best.amount


def build_result(
    shipment: ShipmentInput,
    candidates: list[RateCandidate],
    no_rate_reason: str = "No rate card coverage or carrier quote available",
) -> ShipmentResult:
    """Collapse a shipment's candidates into its ShipmentResult.

    Args:
        shipment: The shipment being priced.
        candidates: Every candidate gathered for it.
        no_rate_reason: Orphan reason used when no candidate is usable.

    Returns:
        Priced result, or an orphaned result when there is no candidate.
    """
    best = select_best(candidates, shipment.currency)
    if best is None:
        foreign = sorted({c.currency for c in candidates if c.currency != shipment.currency})
        if foreign:
            logger.warning(
                "Shipment %s has only %s rates, not comparable with %s",
                shipment.shipment_id, ", ".join(foreign), shipment.currency,
            )
            return ShipmentResult.orphan(
                shipment, f"No rate available in {shipment.currency}"
            )
        return ShipmentResult.orphan(shipment, no_rate_reason)

    return ShipmentResult(
        shipment_id=shipment.shipment_id,
        currently_paid=shipment.currently_paid,
        best=best,
        savings=compute_savings(shipment.currently_paid, best),
        candidates=list(candidates),
        declared_service=shipment.declared_service,
        passthrough=dict(shipment.passthrough),
    )
