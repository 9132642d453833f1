"""Runtime resolution of carrier API credentials.

Credentials never live in the database. A carrier account's
credentials_ref names an environment prefix; for credentials_ref
"UPS_MAIN" the client id and secret are read from UPS_MAIN_CLIENT_ID and
UPS_MAIN_CLIENT_SECRET.
"""

import os
import re
from dataclasses import dataclass

from shiprate.services.errors import AuthError
from shiprate.services.models import CarrierAccountConfig

_REF_SANITIZE = re.compile(r"[^A-Z0-9_]")


@dataclass(frozen=True)
class CarrierCredentials:
    """Typed OAuth client_credentials for one carrier account."""

    client_id: str
    client_secret: str

    def __repr__(self) -> str:
        return f"CarrierCredentials(client_id={self.client_id[:4]}***)"


def env_prefix(credentials_ref: str) -> str:
    """Normalize a credentials_ref to an environment variable prefix."""
    return _REF_SANITIZE.sub("_", credentials_ref.strip().upper())


def resolve_credentials(account: CarrierAccountConfig) -> CarrierCredentials:
    """Read a carrier account's OAuth credentials from the environment.

    Args:
        account: Account whose credentials_ref names the env prefix.

    Returns:
        CarrierCredentials for the account.

    Raises:
        AuthError: If the ref is unset or either variable is missing/empty.
    """
    if not account.credentials_ref:
        raise AuthError.from_code("E-5002", account_id=account.id)

    prefix = env_prefix(account.credentials_ref)
    client_id = os.environ.get(f"{prefix}_CLIENT_ID", "").strip()
    client_secret = os.environ.get(f"{prefix}_CLIENT_SECRET", "").strip()
    if not client_id or not client_secret:
        raise AuthError.from_code(
            "E-5002",
            account_id=account.id,
            details={"credentials_ref": account.credentials_ref},
        )
    return CarrierCredentials(client_id=client_id, client_secret=client_secret)
