"""Zone estimation from ZIP code prefixes.

Used only when a shipment arrives without a carrier zone. Real zone
charts are per-carrier and per-origin; this band table approximates them
from the distance between 3-digit ZIP prefixes.
"""

import re

# (exclusive upper bound of prefix distance, zone)
ZONE_BANDS: tuple[tuple[int, str], ...] = (
    (50, "2"),
    (150, "3"),
    (300, "4"),
    (500, "5"),
    (700, "6"),
    (900, "7"),
)
FARTHEST_ZONE = "8"

_ZIP_PREFIX = re.compile(r"^\s*(\d{3})")


def zip_prefix(postal_code: str | None) -> int | None:
    """Return the numeric 3-digit prefix of a US ZIP, or None."""
    if not postal_code:
        return None
    match = _ZIP_PREFIX.match(postal_code)
    return int(match.group(1)) if match else None


def estimate_zone(origin_zip: str | None, destination_zip: str | None) -> str | None:
    """Estimate a carrier zone from origin and destination ZIP codes.

    Args:
        origin_zip: Origin postal code.
        destination_zip: Destination postal code.

    Returns:
        Zone string "2" through "8", or None when either ZIP is not a
        numeric US ZIP.
    """
    origin = zip_prefix(origin_zip)
    destination = zip_prefix(destination_zip)
    if origin is None or destination is None:
        return None

    distance = abs(origin - destination)
    for upper_bound, zone in ZONE_BANDS:
        if distance < upper_bound:
            return zone
    return FARTHEST_ZONE
