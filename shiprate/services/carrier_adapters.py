"""Per-carrier request builders and response adapters.

Each carrier's rating API has its own payload and response shape. An
adapter turns a ShipmentInput into the carrier request and turns the raw
response into a RateCandidate, so the RemoteRateClient never reads
carrier-specific fields itself.
"""

import re
from collections.abc import Iterator
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from shiprate.config import CarrierConfig
from shiprate.db.models import CarrierType, RateSource
from shiprate.services.credentials import CarrierCredentials
from shiprate.services.errors import CarrierResponseError
from shiprate.services.models import (
    CarrierAccountConfig,
    RateCandidate,
    ShipmentInput,
    to_money,
)

# UPS service code to name mapping
UPS_SERVICE_NAMES: dict[str, str] = {
    "01": "UPS Next Day Air",
    "02": "UPS 2nd Day Air",
    "03": "UPS Ground",
    "12": "UPS 3 Day Select",
    "13": "UPS Next Day Air Saver",
    "14": "UPS Next Day Air Early",
    "59": "UPS 2nd Day Air A.M.",
    "93": "UPS Ground Saver",
}

FEDEX_SERVICE_NAMES: dict[str, str] = {
    "FEDEX_GROUND": "FedEx Ground",
    "GROUND_HOME_DELIVERY": "FedEx Home Delivery",
    "FEDEX_EXPRESS_SAVER": "FedEx Express Saver",
    "FEDEX_2_DAY": "FedEx 2Day",
    "FEDEX_2_DAY_AM": "FedEx 2Day A.M.",
    "STANDARD_OVERNIGHT": "FedEx Standard Overnight",
    "PRIORITY_OVERNIGHT": "FedEx Priority Overnight",
    "FIRST_OVERNIGHT": "FedEx First Overnight",
}

# Carrier error codes meaning "no rate for this lane/service", not a failure
UPS_NO_SERVICE_CODES = frozenset({"111210", "111100"})
FEDEX_NO_SERVICE_CODES = frozenset({
    "RATE.LOCATION.NOSERVICE",
    "SERVICE.PACKAGECOMBINATION.INVALID",
})

_TRANSIT_WORDS = {
    "ONE": 1, "TWO": 2, "THREE": 3, "FOUR": 4, "FIVE": 5,
    "SIX": 6, "SEVEN": 7, "EIGHT": 8, "NINE": 9, "TEN": 10,
}


@dataclass(frozen=True)
class TokenRequest:
    """How to obtain an OAuth access token from a carrier."""

    url: str
    data: dict[str, str]
    auth: tuple[str, str] | None = None


def _decimal(value: Any) -> Decimal | None:
    """Parse a carrier money value; None for missing, empty, non-numeric or non-finite."""
    if value is None or value == "" or isinstance(value, (dict, list, bool)):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() else None


def _mapping(value: Any) -> dict:
    """Return value when it is a JSON object, else an empty dict."""
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _fmt(value: Decimal) -> str:
    return format(value.normalize(), "f")


def _error_codes(payload: Any) -> set[str]:
    """Collect carrier error codes from either carrier's error envelope."""
    if not isinstance(payload, dict):
        return set()
    errors = payload.get("errors")
    if errors is None:
        errors = _mapping(payload.get("response")).get("errors")
    if not isinstance(errors, list):
        return set()
    return {str(e.get("code")) for e in errors if isinstance(e, dict) and e.get("code")}


class CarrierAdapter:
    """Base adapter. Subclasses define one carrier's wire format."""

    carrier_type: str = ""
    service_names: dict[str, str] = {}
    no_service_codes: frozenset[str] = frozenset()
    rating_path: str = ""

    def base_url(self, account: CarrierAccountConfig, config: CarrierConfig) -> str:
        raise NotImplementedError

    def token_request(self, base_url: str, credentials: CarrierCredentials) -> TokenRequest:
        raise NotImplementedError

    def rating_headers(self, access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    def build_rate_request(
        self, shipment: ShipmentInput, account: CarrierAccountConfig, service_code: str
    ) -> dict[str, Any]:
        raise NotImplementedError

    def parse_rate_response(
        self, payload: Any, account: CarrierAccountConfig, service_code: str
    ) -> RateCandidate:
        raise NotImplementedError

    @property
    def default_service_codes(self) -> tuple[str, ...]:
        return tuple(self.service_names)

    def service_name(self, service_code: str) -> str:
        return self.service_names.get(service_code, f"{self.carrier_type.upper()} {service_code}")

    def is_no_service(self, payload: Any) -> bool:
        """True when an error body says the carrier has no rate for the lane/service."""
        return bool(_error_codes(payload) & self.no_service_codes)

    def _match_service(self, matches: Iterator[dict], service_code: str) -> dict:
        """Return the reply entry for the requested service.

        Raises:
            CarrierResponseError: If the reply has no entry for that service.
        """
        entry = next(matches, None)
        if entry is None:
            raise CarrierResponseError.from_code(
                "E-3003",
                carrier=self.carrier_type,
                service_code=service_code,
                reason=f"no rate returned for requested service {service_code}",
            )
        return entry

    def _candidate(
        self,
        account: CarrierAccountConfig,
        service_code: str,
        negotiated: Decimal | None,
        published: Decimal | None,
        currency: str,
        transit_days: int | None,
    ) -> RateCandidate:
        """Build a candidate preferring the negotiated rate over the published one."""
        if negotiated is not None and negotiated > 0:
            amount, is_negotiated = negotiated, True
        elif published is not None and published > 0:
            amount, is_negotiated = published, False
        else:
            raise CarrierResponseError.from_code(
                "E-3003",
                carrier=self.carrier_type,
                service_code=service_code,
                reason="no positive charge in response",
            )
        return RateCandidate(
            carrier_account_id=account.id,
            carrier_type=self.carrier_type,
            service_code=service_code,
            service_name=self.service_name(service_code),
            amount=to_money(amount),
            source=RateSource.carrier_api,
            currency=currency or "USD",
            is_negotiated=is_negotiated,
            published_amount=to_money(published) if published else None,
            transit_days=transit_days,
        )


class UPSAdapter(CarrierAdapter):
    """UPS Rating API v1 (OAuth client credentials, basic auth token call)."""

    carrier_type = CarrierType.ups.value
    service_names = UPS_SERVICE_NAMES
    no_service_codes = UPS_NO_SERVICE_CODES
    rating_path = "/api/rating/v1/Rate"

    def base_url(self, account: CarrierAccountConfig, config: CarrierConfig) -> str:
        return config.ups_sandbox_base_url if account.is_sandbox else config.ups_base_url

    def token_request(self, base_url: str, credentials: CarrierCredentials) -> TokenRequest:
        return TokenRequest(
            url=f"{base_url}/security/v1/oauth/token",
            data={"grant_type": "client_credentials"},
            auth=(credentials.client_id, credentials.client_secret),
        )

    def rating_headers(self, access_token: str) -> dict[str, str]:
        headers = super().rating_headers(access_token)
        headers["transactionSrc"] = "shiprate"
        return headers

    def build_rate_request(
        self, shipment: ShipmentInput, account: CarrierAccountConfig, service_code: str
    ) -> dict[str, Any]:
        ship_from = {
            "PostalCode": shipment.origin_zip[:5],
            "CountryCode": shipment.origin_country,
        }
        if shipment.origin_state:
            ship_from["StateProvinceCode"] = shipment.origin_state
        ship_to: dict[str, str] = {
            "PostalCode": shipment.destination_zip[:5],
            "CountryCode": shipment.destination_country,
        }
        if shipment.destination_state:
            ship_to["StateProvinceCode"] = shipment.destination_state
        if shipment.residential:
            ship_to["ResidentialAddressIndicator"] = "Y"

        package: dict[str, Any] = {
            "PackagingType": {"Code": "02"},
            "PackageWeight": {
                "UnitOfMeasurement": {"Code": "LBS"},
                "Weight": _fmt(shipment.weight),
            },
        }
        if shipment.dimensions is not None:
            package["Dimensions"] = {
                "UnitOfMeasurement": {"Code": "IN"},
                "Length": _fmt(shipment.dimensions.length),
                "Width": _fmt(shipment.dimensions.width),
                "Height": _fmt(shipment.dimensions.height),
            }

        shipment_body: dict[str, Any] = {
            "Shipper": {"ShipperNumber": account.account_number or "", "Address": ship_from},
            "ShipFrom": {"Address": ship_from},
            "ShipTo": {"Address": ship_to},
            "Service": {"Code": service_code},
            "Package": package,
        }
        if account.account_number:
            shipment_body["ShipmentRatingOptions"] = {"NegotiatedRatesIndicator": "Y"}
            shipment_body["PaymentDetails"] = {
                "ShipmentCharge": [{
                    "Type": "01",
                    "BillShipper": {"AccountNumber": account.account_number},
                }]
            }

        return {
            "RateRequest": {
                "Request": {"TransactionReference": {"CustomerContext": shipment.shipment_id}},
                "Shipment": shipment_body,
            }
        }

    def parse_rate_response(
        self, payload: Any, account: CarrierAccountConfig, service_code: str
    ) -> RateCandidate:
        rated = _mapping(_mapping(payload).get("RateResponse")).get("RatedShipment")
        if isinstance(rated, dict):
            rated = [rated]
        if not rated or not isinstance(rated, list):
            raise CarrierResponseError.from_code(
                "E-3003",
                carrier=self.carrier_type,
                service_code=service_code,
                reason="missing RateResponse.RatedShipment",
            )

        shipment = self._match_service(
            (r for r in rated if _mapping(_mapping(r).get("Service")).get("Code") == service_code),
            service_code,
        )
        total = _mapping(shipment.get("TotalCharges"))
        negotiated_total = _mapping(_mapping(shipment.get("NegotiatedRateCharges")).get("TotalCharge"))
        transit = _mapping(shipment.get("GuaranteedDelivery")).get("BusinessDaysInTransit")

        return self._candidate(
            account,
            service_code,
            negotiated=_decimal(negotiated_total.get("MonetaryValue")),
            published=_decimal(total.get("MonetaryValue")),
            currency=_text(total.get("CurrencyCode")) or _text(negotiated_total.get("CurrencyCode")) or "USD",
            transit_days=int(transit) if isinstance(transit, (str, int)) and str(transit).isdigit() else None,
        )


class FedExAdapter(CarrierAdapter):
    """FedEx Rate API v1 (OAuth client credentials in the form body)."""

    carrier_type = CarrierType.fedex.value
    service_names = FEDEX_SERVICE_NAMES
    no_service_codes = FEDEX_NO_SERVICE_CODES
    rating_path = "/rate/v1/rates/quotes"

    def base_url(self, account: CarrierAccountConfig, config: CarrierConfig) -> str:
        return config.fedex_sandbox_base_url if account.is_sandbox else config.fedex_base_url

    def token_request(self, base_url: str, credentials: CarrierCredentials) -> TokenRequest:
        return TokenRequest(
            url=f"{base_url}/oauth/token",
            data={
                "grant_type": "client_credentials",
                "client_id": credentials.client_id,
                "client_secret": credentials.client_secret,
            },
        )

    def rating_headers(self, access_token: str) -> dict[str, str]:
        headers = super().rating_headers(access_token)
        headers["X-locale"] = "en_US"
        return headers

    def build_rate_request(
        self, shipment: ShipmentInput, account: CarrierAccountConfig, service_code: str
    ) -> dict[str, Any]:
        package: dict[str, Any] = {
            "weight": {"units": "LB", "value": float(shipment.weight)},
        }
        if shipment.dimensions is not None:
            package["dimensions"] = {
                "length": float(shipment.dimensions.length),
                "width": float(shipment.dimensions.width),
                "height": float(shipment.dimensions.height),
                "units": "IN",
            }

        recipient: dict[str, Any] = {
            "postalCode": shipment.destination_zip[:5],
            "countryCode": shipment.destination_country,
            "residential": shipment.residential,
        }
        if shipment.destination_state:
            recipient["stateOrProvinceCode"] = shipment.destination_state
        shipper: dict[str, Any] = {
            "postalCode": shipment.origin_zip[:5],
            "countryCode": shipment.origin_country,
        }
        if shipment.origin_state:
            shipper["stateOrProvinceCode"] = shipment.origin_state

        return {
            "accountNumber": {"value": account.account_number or ""},
            "requestedShipment": {
                "shipper": {"address": shipper},
                "recipient": {"address": recipient},
                "serviceType": service_code,
                "pickupType": "DROPOFF_AT_FEDEX_LOCATION",
                "rateRequestType": ["ACCOUNT", "LIST"],
                "requestedPackageLineItems": [package],
            },
        }

    def parse_rate_response(
        self, payload: Any, account: CarrierAccountConfig, service_code: str
    ) -> RateCandidate:
        details = _mapping(_mapping(payload).get("output")).get("rateReplyDetails")
        if not details or not isinstance(details, list):
            raise CarrierResponseError.from_code(
                "E-3003",
                carrier=self.carrier_type,
                service_code=service_code,
                reason="missing output.rateReplyDetails",
            )

        reply = self._match_service(
            (d for d in details if _mapping(d).get("serviceType") == service_code),
            service_code,
        )
        rated = reply.get("ratedShipmentDetails")
        if not isinstance(rated, list):
            rated = []
        by_type = {_text(d.get("rateType")): d for d in rated if isinstance(d, dict)}
        account_rate = _mapping(by_type.get("ACCOUNT"))
        list_rate = _mapping(by_type.get("LIST"))

        return self._candidate(
            account,
            service_code,
            negotiated=_decimal(account_rate.get("totalNetCharge")),
            published=_decimal(list_rate.get("totalNetCharge")),
            currency=_text(account_rate.get("currency")) or _text(list_rate.get("currency")) or "USD",
            transit_days=parse_transit_time(_mapping(reply.get("operationalDetail")).get("transitTime")),
        )


def parse_transit_time(value: Any) -> int | None:
    """Parse FedEx transit values like "TWO_DAYS" or "3" into a day count."""
    if value is None:
        return None
    text = str(value).strip().upper()
    if text.isdigit():
        return int(text)
    match = re.match(r"^([A-Z]+)_DAYS?$", text)
    if match:
        return _TRANSIT_WORDS.get(match.group(1))
    return None


ADAPTERS: dict[str, CarrierAdapter] = {
    CarrierType.ups.value: UPSAdapter(),
    CarrierType.fedex.value: FedExAdapter(),
}


def get_adapter(carrier_type: str) -> CarrierAdapter:
    """Return the adapter for a carrier type.

    Raises:
        KeyError: If no adapter exists for the carrier.
    """
    try:
        return ADAPTERS[carrier_type.lower()]
    except KeyError:
        raise KeyError(f"No rating adapter for carrier '{carrier_type}'") from None
