"""Wallet routes: balance, deposit, withdraw and transaction history"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from config import Config
from database import get_db
from models import TransactionStatus, TransactionType
from routes.dependencies import get_caller, to_json
from services.ledger_service import LedgerService
from services.projections import transaction_projection
from utils.caller_context import Caller
from utils.exception_handler import OperationNotAllowedError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/wallet", tags=["wallet"])


class AmountBody(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)


def _many(transactions):
    return [to_json(transaction_projection(tx)) for tx in transactions]


@router.get("/balance")
def wallet_balance(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    ledger = LedgerService(db)
    return {
        "user_id": caller.id,
        "currency": Config.DEFAULT_CURRENCY,
        "balance": str(ledger.get_wallet_balance(caller.id)),
        "escrow_held": str(ledger.get_escrow_held(caller.id)),
    }


@router.post("/deposit", status_code=201)
def deposit(body: AmountBody, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return to_json(transaction_projection(LedgerService(db).deposit(caller, body.amount)))


@router.post("/withdraw", status_code=201)
def withdraw(body: AmountBody, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return to_json(transaction_projection(LedgerService(db).withdraw(caller, body.amount)))


@router.get("/transactions")
def my_transactions(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    ledger = LedgerService(db)
    if start is not None or end is not None:
        return _many(ledger.get_between_dates(caller.id, start, end))
    return _many(ledger.get_user_transactions(caller.id))


@router.get("/transactions/reference/{reference}")
def transaction_by_reference(reference: str, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return to_json(transaction_projection(LedgerService(db).get_by_reference(caller, reference)))


@router.get("/transactions/{transaction_id}")
def transaction_detail(transaction_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return to_json(transaction_projection(LedgerService(db).get_transaction(caller, transaction_id)))


@router.get("/admin/transactions")
def all_transactions(
    transaction_type: Optional[TransactionType] = None,
    status: Optional[TransactionStatus] = None,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    ledger = LedgerService(db)
    if transaction_type is not None and status is not None:
        if not caller.is_admin:
            raise OperationNotAllowedError("Only admins can list all transactions")
        return _many(ledger.get_by_type_and_status(transaction_type, status))
    return _many(ledger.get_all_transactions(caller))


@router.post("/admin/reconcile/{user_id}")
def reconcile_wallet(user_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    if not caller.is_admin:
        raise OperationNotAllowedError("Only admins can reconcile wallets")
    return to_json(LedgerService(db).reconcile_wallet(user_id))
