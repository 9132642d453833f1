"""In-memory index of locally cached carrier rate tables.

One RateTableStore is built per job and discarded with it, so a rate
table edited between jobs is always picked up by the next job.
"""

import bisect
import logging
from collections.abc import Callable, Iterable
from decimal import Decimal

from sqlalchemy.orm import Session

from shiprate.db.models import RateTableEntry
from shiprate.services.models import RateEntry

logger = logging.getLogger(__name__)

# (service_code, zone) -> tiers sorted by weight_break
_TierIndex = dict[tuple[str, str], list[RateEntry]]


class RateTableStore:
    """Rate table tiers grouped by carrier account, service and zone.

    Read-only after load(); safe to share between concurrent workers.
    """

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        """Initialize an empty store.

        Args:
            session_factory: Callable returning a new SQLAlchemy session,
                used by load(). Not needed when using add_entries().
        """
        self._session_factory = session_factory
        self._index: dict[str, _TierIndex] = {}
        self._breaks: dict[str, dict[tuple[str, str], list[Decimal]]] = {}

    def load(self, carrier_account_ids: Iterable[str]) -> None:
        """Replace the index with the rate tables of the given accounts.

        Args:
            carrier_account_ids: Accounts whose entries should be indexed.

        Raises:
            RuntimeError: If the store was built without a session factory.
        """
        if self._session_factory is None:
            raise RuntimeError("RateTableStore.load() requires a session_factory")

        account_ids = list(carrier_account_ids)
        self._index = {}
        self._breaks = {}
        if not account_ids:
            return

        db = self._session_factory()
        try:
            records = (
                db.query(RateTableEntry)
                .filter(RateTableEntry.carrier_account_id.in_(account_ids))
                .all()
            )
            entries = [
                RateEntry(
                    carrier_account_id=r.carrier_account_id,
                    service_code=r.service_code,
                    service_name=r.service_name or r.service_code,
                    zone=str(r.zone),
                    weight_break=Decimal(r.weight_break),
                    rate_amount=Decimal(r.rate_amount),
                    currency=r.currency or "USD",
                )
                for r in records
            ]
        finally:
            db.close()

        self.add_entries(entries)
        logger.info(
            "Loaded %d rate table entries for %d account(s)", len(entries), len(account_ids)
        )

    def add_entries(self, entries: Iterable[RateEntry]) -> None:
        """Index rate entries in addition to those already loaded."""
        for entry in entries:
            tiers = self._index.setdefault(entry.carrier_account_id, {}).setdefault(
                (entry.service_code, entry.zone), []
            )
            tiers.append(entry)

        for account_id, by_key in self._index.items():
            breaks = self._breaks.setdefault(account_id, {})
            for key, tiers in by_key.items():
                tiers.sort(key=lambda e: (e.weight_break, e.rate_amount))
                breaks[key] = [t.weight_break for t in tiers]

    def lookup(
        self,
        carrier_account_id: str,
        service_code: str,
        zone: str,
        weight: Decimal,
    ) -> RateEntry | None:
        """Find the cheapest tier that still covers the weight.

        Among entries for the account, service and zone, returns the one
        with the smallest weight_break that is >= weight.

        Args:
            carrier_account_id: Carrier account id.
            service_code: Carrier service code.
            zone: Carrier zone.
            weight: Billable weight in pounds.

        Returns:
            The matching entry, or None when nothing covers the weight.
        """
        key = (service_code, str(zone))
        breaks = self._breaks.get(carrier_account_id, {}).get(key)
        if not breaks:
            return None
        position = bisect.bisect_left(breaks, weight)
        if position >= len(breaks):
            return None
        return self._index[carrier_account_id][key][position]

    def services(self, carrier_account_id: str) -> dict[str, str]:
        """Return {service_code: service_name} present in an account's table."""
        services: dict[str, str] = {}
        for (service_code, _zone), tiers in self._index.get(carrier_account_id, {}).items():
            services.setdefault(service_code, tiers[0].service_name)
        return services

    def has_account(self, carrier_account_id: str) -> bool:
        return carrier_account_id in self._index

    def __len__(self) -> int:
        return sum(
            len(tiers) for by_key in self._index.values() for tiers in by_key.values()
        )
