"""Test helper utilities shared across test packages."""

from tests.helpers.api import ALICE, BOB, wait_for_terminal
from tests.helpers.factories import (
    add_account,
    add_rate,
    make_account_config,
    make_shipment,
)

__all__ = [
    "ALICE",
    "BOB",
    "add_account",
    "add_rate",
    "make_account_config",
    "make_shipment",
    "wait_for_terminal",
]
