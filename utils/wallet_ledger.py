"""
Wallet balance derivation rules.

A user's balance is never stored authoritatively; it is the fold of every
ledger row the user participates in:

    DEPOSIT  success, payee == user            + amount
    WITHDRAW success, payer == user            - amount
    ESCROW   pending/success/refunded, payer   - amount
    RELEASE  success, payee == user            + net_amount
    REFUND   success, payee == user            + amount

The same rules are expressed as a SQL aggregate in services.ledger_service;
the two must agree for any ledger state.
"""

from decimal import Decimal
from typing import Any, Iterable

from models import TransactionStatus, TransactionType
from utils.decimal_precision import MonetaryDecimal

ESCROW_DEBIT_STATUSES = frozenset({
    TransactionStatus.PENDING.value,
    TransactionStatus.SUCCESS.value,
    TransactionStatus.REFUNDED.value,
})

ZERO = Decimal("0.00")


def balance_effect(row: Any, user_id: int) -> Decimal:
    """Signed effect of one ledger row on user_id's balance"""
    tx_type = row.transaction_type
    status = row.status
    amount = MonetaryDecimal.to_decimal(row.amount)

    if tx_type == TransactionType.DEPOSIT.value:
        if status == TransactionStatus.SUCCESS.value and row.payee_id == user_id:
            return amount
    elif tx_type == TransactionType.WITHDRAW.value:
        if status == TransactionStatus.SUCCESS.value and row.payer_id == user_id:
            return -amount
    elif tx_type == TransactionType.ESCROW.value:
        if status in ESCROW_DEBIT_STATUSES and row.payer_id == user_id:
            return -amount
    elif tx_type == TransactionType.RELEASE.value:
        if status == TransactionStatus.SUCCESS.value and row.payee_id == user_id:
            return MonetaryDecimal.to_decimal(row.net_amount)
    elif tx_type == TransactionType.REFUND.value:
        if status == TransactionStatus.SUCCESS.value and row.payee_id == user_id:
            return amount

    return ZERO


def fold_wallet_balance(rows: Iterable[Any], user_id: int) -> Decimal:
    """Derive a balance from any iterable of ledger rows"""
    total = ZERO
    for row in rows:
        total += balance_effect(row, user_id)
    return MonetaryDecimal.quantize_amount(total)
