"""FastAPI routes for carrier account administration.

Accounts are owner-scoped. Rate tables are replaced wholesale; running
jobs are unaffected because each job loads its own copy at start.
"""

import logging

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from shiprate.api.dependencies import get_owner
from shiprate.api.schemas import (
    CarrierAccountCreate,
    CarrierAccountResponse,
    RateTableReplace,
    RateTableResponse,
)
from shiprate.db.connection import get_db
from shiprate.db.models import CarrierAccount, RateTableEntry
from shiprate.errors import NotFoundError
from shiprate.services.carrier_adapters import get_adapter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/carrier-accounts", tags=["carrier-accounts"])


def _owned_account(db: Session, account_id: str, owner: str) -> CarrierAccount:
    account = (
        db.query(CarrierAccount)
        .filter(CarrierAccount.id == account_id, CarrierAccount.owner == owner)
        .first()
    )
    if account is None:
        raise NotFoundError("CarrierAccount", account_id)
    return account


@router.post("", response_model=CarrierAccountResponse, status_code=201)
def create_carrier_account(
    payload: CarrierAccountCreate,
    owner: str = Depends(get_owner),
    db: Session = Depends(get_db),
) -> CarrierAccount:
    """Register a carrier account for the caller."""
    account = CarrierAccount(
        owner=owner,
        carrier_type=payload.carrier_type.value,
        account_name=payload.account_name,
        account_number=payload.account_number,
        credentials_ref=payload.credentials_ref,
        is_sandbox=payload.is_sandbox,
        is_rate_card=payload.is_rate_card,
        enabled_services=list(payload.enabled_services),
        dimensional_divisor=payload.dimensional_divisor,
        fuel_surcharge_percent=payload.fuel_surcharge_percent,
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    logger.info(
        "Created %s carrier account %s (rate_card=%s)",
        account.carrier_type, account.id, account.is_rate_card,
    )
    return account


@router.get("", response_model=list[CarrierAccountResponse])
def list_carrier_accounts(
    include_inactive: bool = False,
    owner: str = Depends(get_owner),
    db: Session = Depends(get_db),
) -> list[CarrierAccount]:
    """List the caller's carrier accounts."""
    query = db.query(CarrierAccount).filter(CarrierAccount.owner == owner)
    if not include_inactive:
        query = query.filter(CarrierAccount.is_active.is_(True))
    return query.order_by(CarrierAccount.created_at).all()


@router.delete("/{account_id}", status_code=204)
def deactivate_carrier_account(
    account_id: str,
    owner: str = Depends(get_owner),
    db: Session = Depends(get_db),
) -> Response:
    """Deactivate an account. New jobs can no longer reference it."""
    account = _owned_account(db, account_id, owner)
    account.is_active = False
    db.commit()
    return Response(status_code=204)


@router.put("/{account_id}/rate-table", response_model=RateTableResponse)
def replace_rate_table(
    account_id: str,
    payload: RateTableReplace,
    owner: str = Depends(get_owner),
    db: Session = Depends(get_db),
) -> RateTableResponse:
    """Replace every rate table entry of an account.

    Entries without a service name get the carrier's name for the code.
    """
    account = _owned_account(db, account_id, owner)
    try:
        adapter = get_adapter(account.carrier_type)
    except KeyError:
        adapter = None

    db.query(RateTableEntry).filter(
        RateTableEntry.carrier_account_id == account.id
    ).delete(synchronize_session=False)
    for entry in payload.entries:
        service_name = entry.service_name
        if not service_name:
            service_name = adapter.service_name(entry.service_code) if adapter else entry.service_code
        db.add(
            RateTableEntry(
                carrier_account_id=account.id,
                service_code=entry.service_code,
                service_name=service_name,
                zone=entry.zone,
                weight_break=entry.weight_break,
                rate_amount=entry.rate_amount,
                currency=entry.currency.upper(),
            )
        )
    db.commit()
    logger.info(
        "Replaced rate table for account %s with %d entries", account.id, len(payload.entries)
    )
    return RateTableResponse(carrier_account_id=account.id, entry_count=len(payload.entries))
