"""
Ledger Service - derived wallet balances and plain wallet money movement

The transactions table is the single source of truth for money. A wallet
balance is the fold of a user's ledger rows (see utils.wallet_ledger); the
wallet_accounts row only carries a display snapshot and the version counter
that serializes concurrent debits through compare-and-swap.
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.orm import Session

from config import Config
from models import (
    PaymentGateway, PaymentMethod, Transaction, TransactionStatus,
    TransactionType, User, WalletAccount,
)
from services.notification_service import (
    DomainEvent, NotificationEventType, NotificationService, Recipient,
    notification_service as default_notifier,
)
from services.projections import transaction_projection
from utils.atomic_transactions import atomic_transaction, run_after_commit
from utils.caller_context import Caller
from utils.datetime_helpers import ensure_naive_datetime
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    InsufficientBalanceError, InvalidRequestError, OperationNotAllowedError,
    ResourceNotFoundError,
)
from utils.helpers import generate_transaction_reference
from utils.optimistic_locking import OptimisticLockManager, RetryPolicy, with_optimistic_locking
from utils.wallet_ledger import ESCROW_DEBIT_STATUSES, fold_wallet_balance

logger = logging.getLogger(__name__)


def wallet_balance_expression(user_id: int):
    """SQL CASE aggregate mirroring utils.wallet_ledger.balance_effect"""
    success = TransactionStatus.SUCCESS.value
    effect = case(
        (
            and_(Transaction.transaction_type == TransactionType.DEPOSIT.value,
                 Transaction.status == success, Transaction.payee_id == user_id),
            Transaction.amount,
        ),
        (
            and_(Transaction.transaction_type == TransactionType.WITHDRAW.value,
                 Transaction.status == success, Transaction.payer_id == user_id),
            -Transaction.amount,
        ),
        (
            and_(Transaction.transaction_type == TransactionType.ESCROW.value,
                 Transaction.status.in_(ESCROW_DEBIT_STATUSES), Transaction.payer_id == user_id),
            -Transaction.amount,
        ),
        (
            and_(Transaction.transaction_type == TransactionType.RELEASE.value,
                 Transaction.status == success, Transaction.payee_id == user_id),
            Transaction.net_amount,
        ),
        (
            and_(Transaction.transaction_type == TransactionType.REFUND.value,
                 Transaction.status == success, Transaction.payee_id == user_id),
            Transaction.amount,
        ),
        else_=0,
    )
    return func.coalesce(func.sum(effect), 0)


class LedgerService:
    """Wallet balance derivation, deposits, withdrawals and ledger queries"""

    def __init__(
        self,
        session: Session,
        retry_policy: Optional[RetryPolicy] = None,
        notifier: Optional[NotificationService] = None,
    ):
        self.session = session
        self.retry_policy = retry_policy or RetryPolicy()
        self.notifier = notifier or default_notifier
        self.lock_manager = OptimisticLockManager(session)

    # ------------------------------------------------------------------
    # Balance derivation
    # ------------------------------------------------------------------

    def get_wallet_balance(self, user_id: int) -> Decimal:
        """Derived balance via the database aggregate"""
        self.session.flush()
        raw = self.session.execute(
            select(wallet_balance_expression(user_id)).where(
                or_(Transaction.payer_id == user_id, Transaction.payee_id == user_id)
            )
        ).scalar()
        return MonetaryDecimal.quantize_amount(raw or 0)

    def get_net_wallet_flow(self, user_id: int) -> Decimal:
        """Fold of the user's full history in Python; always equals the derived balance"""
        return fold_wallet_balance(self._history(user_id), user_id)

    def get_escrow_held(self, user_id: int) -> Decimal:
        """Amount the user currently has locked in pending escrows"""
        self.session.flush()
        raw = self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.payer_id == user_id,
                Transaction.transaction_type == TransactionType.ESCROW.value,
                Transaction.status == TransactionStatus.PENDING.value,
            )
        ).scalar()
        return MonetaryDecimal.quantize_amount(raw or 0)

    def _history(self, user_id: int) -> List[Transaction]:
        self.session.flush()
        return list(self.session.execute(
            select(Transaction)
            .where(or_(Transaction.payer_id == user_id, Transaction.payee_id == user_id))
            .order_by(Transaction.created_at, Transaction.id)
        ).scalars())

    # ------------------------------------------------------------------
    # Wallet concurrency token
    # ------------------------------------------------------------------

    def ensure_wallet(self, user_id: int) -> WalletAccount:
        wallet = self.session.execute(
            select(WalletAccount).where(WalletAccount.user_id == user_id)
        ).scalar_one_or_none()
        if wallet is None:
            wallet = WalletAccount(
                user_id=user_id,
                currency=Config.DEFAULT_CURRENCY,
                balance_snapshot=Decimal("0.00"),
                version=1,
            )
            self.session.add(wallet)
            self.session.flush()
            logger.info(f"👛 WALLET_CREATED: user={user_id}")
        return wallet

    def _reload_wallet(self, user_id: int) -> WalletAccount:
        wallet = self.ensure_wallet(user_id)
        return self.lock_manager.reload(WalletAccount, wallet.id)

    def reserve_funds(
        self,
        user_id: int,
        amount: Decimal,
        label: str,
        insufficient_message: str = "Insufficient wallet balance",
    ) -> int:
        """
        Check solvency and advance the payer's wallet version in one CAS.

        Every concurrent debit against the same user conflicts on the version,
        so only one of them can pass the balance check for a given ledger state.
        Returns the number of attempts used.
        """
        def attempt(attempt_no: int) -> int:
            wallet = self._reload_wallet(user_id)
            balance = self.get_wallet_balance(user_id)
            if balance < amount:
                logger.warning(
                    f"💸 INSUFFICIENT_BALANCE: user={user_id} balance={balance} required={amount} ({label})"
                )
                raise InsufficientBalanceError(insufficient_message)

            self.lock_manager.versioned_update(
                WalletAccount,
                wallet.id,
                {"balance_snapshot": MonetaryDecimal.quantize_amount(balance - amount)},
                wallet.version,
            )
            return attempt_no

        return self.retry_policy.run(attempt, label=f"{label} user={user_id}")

    def sync_wallet_snapshot(self, user_id: int, label: str = "wallet_credit") -> int:
        """Advance the wallet version and refresh its display snapshot after a credit"""
        def attempt(attempt_no: int) -> int:
            wallet = self._reload_wallet(user_id)
            balance = self.get_wallet_balance(user_id)
            self.lock_manager.versioned_update(
                WalletAccount, wallet.id, {"balance_snapshot": balance}, wallet.version
            )
            return attempt_no

        return self.retry_policy.run(attempt, label=f"{label} user={user_id}")

    # ------------------------------------------------------------------
    # Deposits and withdrawals
    # ------------------------------------------------------------------

    def deposit(self, caller: Caller, amount: Any) -> Transaction:
        """Credit the caller's wallet immediately (internal gateway)"""
        value = self._positive_amount(amount)

        with atomic_transaction(self.session):
            user = self._require_user(caller.id)
            tx = self.build_row(
                transaction_type=TransactionType.DEPOSIT,
                status=TransactionStatus.SUCCESS,
                payer_id=user.id,
                payee_id=user.id,
                amount=value,
                net_amount=value,
                description="Wallet deposit",
            )
            self.session.add(tx)
            self.session.flush()
            attempts = self.sync_wallet_snapshot(user.id, label="deposit")
            tx.retry_count = attempts - 1
            self._publish_after_commit(NotificationEventType.DEPOSIT_SUCCESS, tx, [user])

        logger.info(f"💰 DEPOSIT_SUCCESS: user={caller.id} amount={value} ref={tx.transaction_reference}")
        return tx

    def withdraw(self, caller: Caller, amount: Any) -> Transaction:
        """Debit the caller's wallet if the derived balance covers it"""
        value = self._positive_amount(amount)

        with atomic_transaction(self.session):
            user = self._require_user(caller.id)
            attempts = self.reserve_funds(user.id, value, label="withdraw")
            tx = self.build_row(
                transaction_type=TransactionType.WITHDRAW,
                status=TransactionStatus.SUCCESS,
                payer_id=user.id,
                payee_id=user.id,
                amount=value,
                net_amount=Decimal("0.00"),
                description="Wallet withdrawal",
            )
            tx.retry_count = attempts - 1
            self.session.add(tx)
            self.session.flush()
            self._publish_after_commit(NotificationEventType.WITHDRAW_SUCCESS, tx, [user])

        logger.info(f"🏧 WITHDRAW_SUCCESS: user={caller.id} amount={value} ref={tx.transaction_reference}")
        return tx

    def reconcile_wallet(self, user_id: int) -> Dict[str, Any]:
        """
        Compare the display snapshot with the derived balance and repair drift.

        Also cross-checks the SQL aggregate against the Python fold.
        """
        @with_optimistic_locking(self.retry_policy)
        def repair(wallet_id: int, balance: Decimal):
            wallet = self.lock_manager.reload(WalletAccount, wallet_id)
            self.lock_manager.versioned_update(
                WalletAccount, wallet.id, {"balance_snapshot": balance}, wallet.version
            )

        with atomic_transaction(self.session):
            self._require_user(user_id)
            wallet = self.ensure_wallet(user_id)
            derived = self.get_wallet_balance(user_id)
            folded = self.get_net_wallet_flow(user_id)
            snapshot = MonetaryDecimal.quantize_amount(wallet.balance_snapshot or 0)

            drift = derived - snapshot
            if drift != 0:
                logger.warning(
                    f"⚖️ WALLET_DRIFT: user={user_id} snapshot={snapshot} derived={derived}, repairing"
                )
                repair(wallet.id, derived)

            if derived != folded:
                logger.error(
                    f"❌ LEDGER_MISMATCH: user={user_id} aggregate={derived} fold={folded}"
                )

        return {
            "user_id": user_id,
            "derived_balance": derived,
            "folded_balance": folded,
            "snapshot_before": snapshot,
            "drift": drift,
            "repaired": drift != 0,
            "consistent": derived == folded,
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_transaction(self, caller: Caller, transaction_id: int) -> Transaction:
        tx = self.session.get(Transaction, transaction_id)
        if tx is None:
            raise ResourceNotFoundError(f"Transaction {transaction_id} not found")
        self._require_participant(caller, tx)
        return tx

    def get_by_reference(self, caller: Caller, reference: str) -> Transaction:
        tx = self.session.execute(
            select(Transaction).where(Transaction.transaction_reference == reference)
        ).scalar_one_or_none()
        if tx is None:
            raise ResourceNotFoundError(f"Transaction with reference {reference} not found")
        self._require_participant(caller, tx)
        return tx

    def get_user_transactions(self, user_id: int) -> List[Transaction]:
        return self._history(user_id)

    def get_by_payer(self, payer_id: int, status: Optional[TransactionStatus] = None) -> List[Transaction]:
        stmt = select(Transaction).where(Transaction.payer_id == payer_id)
        if status is not None:
            stmt = stmt.where(Transaction.status == status.value)
        return self._list(stmt)

    def get_by_payee(self, payee_id: int, status: Optional[TransactionStatus] = None) -> List[Transaction]:
        stmt = select(Transaction).where(Transaction.payee_id == payee_id)
        if status is not None:
            stmt = stmt.where(Transaction.status == status.value)
        return self._list(stmt)

    def get_by_booking(self, booking_id: int, status: Optional[TransactionStatus] = None) -> List[Transaction]:
        stmt = select(Transaction).where(Transaction.booking_id == booking_id)
        if status is not None:
            stmt = stmt.where(Transaction.status == status.value)
        return self._list(stmt)

    def get_by_type_and_status(
        self, transaction_type: TransactionType, status: TransactionStatus
    ) -> List[Transaction]:
        return self._list(
            select(Transaction).where(
                Transaction.transaction_type == transaction_type.value,
                Transaction.status == status.value,
            )
        )

    def get_payer_transactions_above(self, payer_id: int, amount: Any) -> List[Transaction]:
        threshold = MonetaryDecimal.to_decimal(amount, "threshold")
        return self._list(
            select(Transaction).where(Transaction.payer_id == payer_id, Transaction.amount > threshold)
        )

    def get_between_dates(
        self, user_id: int, start: Optional[datetime], end: Optional[datetime]
    ) -> List[Transaction]:
        if start is None or end is None:
            raise InvalidRequestError("Both start and end dates are required")
        start, end = ensure_naive_datetime(start), ensure_naive_datetime(end)
        if start > end:
            raise InvalidRequestError("Start date must be before end date")
        return self._list(
            select(Transaction).where(
                or_(Transaction.payer_id == user_id, Transaction.payee_id == user_id),
                Transaction.created_at >= start,
                Transaction.created_at <= end,
            )
        )

    def get_all_transactions(self, caller: Caller) -> List[Transaction]:
        if not caller.is_admin:
            raise OperationNotAllowedError("Only admins can list all transactions")
        return self._list(select(Transaction))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _list(self, stmt) -> List[Transaction]:
        return list(self.session.execute(
            stmt.order_by(Transaction.created_at.desc(), Transaction.id.desc())
        ).scalars())

    def build_row(
        self,
        transaction_type: TransactionType,
        status: TransactionStatus,
        payer_id: int,
        payee_id: int,
        amount: Decimal,
        net_amount: Decimal,
        platform_fee: Decimal = Decimal("0.00"),
        booking_id: Optional[int] = None,
        is_escrow: bool = False,
        description: Optional[str] = None,
    ) -> Transaction:
        return Transaction(
            transaction_reference=generate_transaction_reference(),
            booking_id=booking_id,
            payer_id=payer_id,
            payee_id=payee_id,
            amount=amount,
            platform_fee=platform_fee,
            net_amount=net_amount,
            currency=Config.DEFAULT_CURRENCY,
            transaction_type=transaction_type.value,
            status=status.value,
            is_escrow=is_escrow,
            payment_gateway=PaymentGateway.INTERNAL.value,
            payment_method=PaymentMethod.WALLET.value,
            retry_count=0,
            version=1,
            description=description,
        )

    def _publish_after_commit(
        self, event_type: NotificationEventType, tx: Transaction, users: List[User]
    ) -> None:
        event = DomainEvent(
            event_type=event_type,
            payload=transaction_projection(tx),
            recipients=tuple(Recipient.from_user(u) for u in users),
        )
        publish: Callable[[], Any] = lambda: self.notifier.publish(event)
        run_after_commit(self.session, publish)

    def _require_user(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if user is None or not user.is_active:
            raise ResourceNotFoundError(f"User {user_id} not found")
        return user

    @staticmethod
    def _positive_amount(amount: Any) -> Decimal:
        try:
            value = MonetaryDecimal.quantize_amount(amount)
        except (ValueError, InvalidOperation):
            raise InvalidRequestError("Amount must be a valid number") from None
        if value <= 0:
            raise InvalidRequestError("Amount must be greater than zero")
        return value

    @staticmethod
    def _require_participant(caller: Caller, tx: Transaction) -> None:
        if caller.is_admin or caller.id in (tx.payer_id, tx.payee_id):
            return
        raise OperationNotAllowedError("You are not a party to this transaction")
