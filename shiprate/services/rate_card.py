"""Price shipments against rate-card carrier accounts."""

import logging
from decimal import Decimal

from shiprate.db.models import RateSource
from shiprate.services.models import (
    CarrierAccountConfig,
    RateCandidate,
    ShipmentInput,
    to_money,
)
from shiprate.services.rate_table import RateTableStore
from shiprate.services.zones import estimate_zone

logger = logging.getLogger(__name__)

DEFAULT_DIMENSIONAL_DIVISOR = Decimal("166")


def billable_weight(shipment: ShipmentInput, divisor: Decimal = DEFAULT_DIMENSIONAL_DIVISOR) -> Decimal:
    """Return the greater of actual and dimensional weight.

    Dimensional weight is L x W x H / divisor and only applies when all
    three dimensions are known and positive.

    Args:
        shipment: Shipment to weigh.
        divisor: Carrier dimensional divisor (cubic inches per pound).

    Returns:
        Billable weight in pounds.
    """
    weight = shipment.weight
    dims = shipment.dimensions
    if dims is None or divisor <= 0:
        return weight
    if min(dims.length, dims.width, dims.height) <= 0:
        return weight
    return max(weight, dims.cubic_inches / divisor)


class RateCardResolver:
    """Matches shipments against a job's RateTableStore.

    Pure with respect to its inputs: the store is read-only and no state is
    kept between calls.
    """

    def __init__(self, store: RateTableStore) -> None:
        self.store = store

    def resolve(
        self,
        shipment: ShipmentInput,
        account: CarrierAccountConfig,
        service_code: str,
    ) -> RateCandidate | None:
        """Price one service of one rate-card account.

        Args:
            shipment: Shipment to price.
            account: Rate-card carrier account.
            service_code: Service to look up.

        Returns:
            A rate_card candidate, or None when the table has no tier for
            the zone that covers the billable weight.
        """
        zone = shipment.zone or estimate_zone(shipment.origin_zip, shipment.destination_zip)
        if zone is None:
            return None

        weight = billable_weight(shipment, account.dimensional_divisor)
        entry = self.store.lookup(account.id, service_code, zone, weight)
        if entry is None:
            return None

        amount = entry.rate_amount
        if account.fuel_surcharge_percent:
            amount = amount * (1 + account.fuel_surcharge_percent / Decimal(100))

        return RateCandidate(
            carrier_account_id=account.id,
            carrier_type=account.carrier_type,
            service_code=entry.service_code,
            service_name=entry.service_name,
            amount=to_money(amount),
            source=RateSource.rate_card,
            currency=entry.currency,
            is_negotiated=True,
        )

    def resolve_all(
        self, shipment: ShipmentInput, account: CarrierAccountConfig
    ) -> list[RateCandidate]:
        """Price every applicable service of a rate-card account.

        Services considered are the shipment's service_codes if given,
        otherwise every service in the account's table; the account's
        enabled_services always filter.
        """
        service_codes = list(shipment.service_codes) or list(self.store.services(account.id))
        if account.enabled_services:
            service_codes = [c for c in service_codes if c in account.enabled_services]

        candidates = []
        for service_code in service_codes:
            candidate = self.resolve(shipment, account, service_code)
            if candidate is not None:
                candidates.append(candidate)
        return candidates
