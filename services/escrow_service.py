"""
Escrow Service - lock, release and refund booking funds against the ledger

Exactly one ESCROW row exists per funded booking. It is created PENDING when
the provider confirms, and moves once: to SUCCESS on release (with a RELEASE
row crediting the provider) or to REFUNDED on refund (with a REFUND row
crediting the requester). Status flips are compare-and-swap on the row's
version so a concurrent second release or refund cannot also succeed.
"""

import logging
from decimal import InvalidOperation
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import (
    Booking, BookingStatus, Transaction, TransactionStatus, TransactionType, User,
)
from services.ledger_service import LedgerService
from services.notification_service import (
    DomainEvent, NotificationEventType, NotificationService, Recipient,
    notification_service as default_notifier,
)
from services.projections import transaction_projection
from utils.atomic_transactions import atomic_transaction, run_after_commit
from utils.datetime_helpers import Clock, get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    EscrowNotFoundError, InvalidRequestError, ResourceNotFoundError,
    TransactionAlreadyProcessedError,
)
from utils.optimistic_locking import OptimisticLockManager, RetryPolicy

logger = logging.getLogger(__name__)


class EscrowService:
    """Escrow engine backing the booking lifecycle"""

    def __init__(
        self,
        session: Session,
        ledger: Optional[LedgerService] = None,
        retry_policy: Optional[RetryPolicy] = None,
        notifier: Optional[NotificationService] = None,
        clock: Optional[Clock] = None,
    ):
        self.session = session
        self.retry_policy = retry_policy or RetryPolicy()
        self.notifier = notifier or default_notifier
        self.ledger = ledger or LedgerService(session, retry_policy=self.retry_policy, notifier=self.notifier)
        self.lock_manager = OptimisticLockManager(session)
        self.clock = clock or get_naive_utc_now

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_pending_escrow(self, booking_id: int) -> Optional[Transaction]:
        return self.session.execute(
            select(Transaction)
            .where(
                Transaction.booking_id == booking_id,
                Transaction.transaction_type == TransactionType.ESCROW.value,
                Transaction.status == TransactionStatus.PENDING.value,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _find_latest_escrow(self, booking_id: int) -> Optional[Transaction]:
        return self.session.execute(
            select(Transaction)
            .where(
                Transaction.booking_id == booking_id,
                Transaction.transaction_type == TransactionType.ESCROW.value,
            )
            .order_by(Transaction.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _get_booking(self, booking_id: int) -> Booking:
        booking = self.session.get(Booking, booking_id)
        if booking is None:
            raise ResourceNotFoundError(f"Booking {booking_id} not found")
        return booking

    # ------------------------------------------------------------------
    # Lock
    # ------------------------------------------------------------------

    def create_escrow_transaction(
        self,
        payer_id: int,
        booking: Booking,
        amount: Any,
        transaction_type: TransactionType = TransactionType.ESCROW,
    ) -> Transaction:
        """
        Lock `amount` of the payer's balance against a CONFIRMED booking.

        Raises:
            InvalidRequestError: booking not CONFIRMED, non-positive amount or wrong type
            TransactionAlreadyProcessedError: a pending escrow already exists
            InsufficientBalanceError: derived balance cannot cover the amount
            TransactionFailedError: optimistic retries exhausted
        """
        if transaction_type != TransactionType.ESCROW:
            raise InvalidRequestError("Only ESCROW transactions can lock booking funds")

        try:
            value = MonetaryDecimal.quantize_amount(amount)
        except (ValueError, InvalidOperation):
            raise InvalidRequestError("Escrow amount must be a valid number") from None
        if value <= 0:
            raise InvalidRequestError("Escrow amount must be greater than zero")

        with atomic_transaction(self.session):
            if booking.status != BookingStatus.CONFIRMED.value:
                raise InvalidRequestError("Escrow can be created only on CONFIRMED booking")

            if self.find_pending_escrow(booking.id) is not None:
                raise TransactionAlreadyProcessedError("Escrow already exists")

            attempts = self.ledger.reserve_funds(
                payer_id,
                value,
                label=f"escrow booking={booking.id}",
                insufficient_message="Not enough balance to create escrow",
            )

            fee = MonetaryDecimal.percentage_of(value, Config.PLATFORM_FEE_PERCENTAGE)
            escrow = self.ledger.build_row(
                transaction_type=TransactionType.ESCROW,
                status=TransactionStatus.PENDING,
                payer_id=payer_id,
                payee_id=booking.provider_id,
                amount=value,
                platform_fee=fee,
                net_amount=value - fee,
                booking_id=booking.id,
                is_escrow=True,
                description=f"Escrow for booking #{booking.id}",
            )
            escrow.retry_count = attempts - 1
            self.session.add(escrow)
            try:
                self.session.flush()
            except IntegrityError as e:
                # Partial unique index: another pending escrow won the race
                logger.warning(f"🔁 ESCROW_DUPLICATE: booking={booking.id}: {e.orig}")
                raise TransactionAlreadyProcessedError("Escrow already exists") from e

            self._publish_after_commit(NotificationEventType.ESCROW_LOCKED, escrow, [payer_id])

        logger.info(
            f"🔒 ESCROW_LOCKED: booking={booking.id} payer={payer_id} amount={value} "
            f"fee={fee} ref={escrow.transaction_reference}"
        )
        return escrow

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release_escrow(self, booking_id: int) -> Transaction:
        """Flip the pending escrow to SUCCESS and credit the provider its net amount"""
        with atomic_transaction(self.session):
            booking = self._get_booking(booking_id)
            if booking.status != BookingStatus.COMPLETED.value:
                raise InvalidRequestError("Booking must be COMPLETED to release escrow")

            now = self.clock()

            def attempt(attempt_no: int) -> Transaction:
                escrow = self.find_pending_escrow(booking_id)
                if escrow is None:
                    raise EscrowNotFoundError(f"No pending escrow found for booking {booking_id}")
                self.lock_manager.versioned_update(
                    Transaction,
                    escrow.id,
                    {"status": TransactionStatus.SUCCESS.value, "escrow_release_at": now},
                    escrow.version,
                )
                return escrow

            escrow = self.retry_policy.run(attempt, label=f"release booking={booking_id}")
            self.session.refresh(escrow)

            release = self.ledger.build_row(
                transaction_type=TransactionType.RELEASE,
                status=TransactionStatus.SUCCESS,
                payer_id=escrow.payer_id,
                payee_id=escrow.payee_id,
                amount=escrow.amount,
                platform_fee=escrow.platform_fee,
                net_amount=escrow.net_amount,
                booking_id=booking_id,
                is_escrow=True,
                description=f"Escrow release for booking #{booking_id}",
            )
            self.session.add(release)
            self.session.flush()
            self.ledger.sync_wallet_snapshot(escrow.payee_id, label="escrow_release")
            self._publish_after_commit(
                NotificationEventType.ESCROW_RELEASED, release, [escrow.payer_id, escrow.payee_id]
            )

        logger.info(
            f"✅ ESCROW_RELEASED: booking={booking_id} payee={release.payee_id} "
            f"net={release.net_amount} ref={release.transaction_reference}"
        )
        return release

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    def refund(self, booking_id: int) -> Transaction:
        """Flip the pending escrow to REFUNDED and credit the requester the locked amount"""
        with atomic_transaction(self.session):
            booking = self._get_booking(booking_id)
            if booking.status != BookingStatus.CANCELLED.value:
                raise InvalidRequestError("Booking must be CANCELLED to refund escrow")

            def attempt(attempt_no: int) -> Transaction:
                escrow = self._find_latest_escrow(booking_id)
                if escrow is None:
                    raise EscrowNotFoundError(f"No pending escrow found for booking {booking_id}")
                if escrow.status != TransactionStatus.PENDING.value:
                    raise TransactionAlreadyProcessedError(
                        f"Escrow for booking {booking_id} already {escrow.status}"
                    )
                self.lock_manager.versioned_update(
                    Transaction,
                    escrow.id,
                    {"status": TransactionStatus.REFUNDED.value},
                    escrow.version,
                )
                return escrow

            escrow = self.retry_policy.run(attempt, label=f"refund booking={booking_id}")
            self.session.refresh(escrow)

            refund = self.ledger.build_row(
                transaction_type=TransactionType.REFUND,
                status=TransactionStatus.SUCCESS,
                payer_id=escrow.payer_id,
                payee_id=escrow.payer_id,
                amount=escrow.amount,
                net_amount=escrow.amount,
                booking_id=booking_id,
                is_escrow=True,
                description=f"Escrow refund for booking #{booking_id}",
            )
            self.session.add(refund)
            self.session.flush()
            self.ledger.sync_wallet_snapshot(escrow.payer_id, label="escrow_refund")
            self._publish_after_commit(NotificationEventType.ESCROW_REFUNDED, refund, [escrow.payer_id])

        logger.info(
            f"↩️ ESCROW_REFUNDED: booking={booking_id} payer={refund.payee_id} "
            f"amount={refund.amount} ref={refund.transaction_reference}"
        )
        return refund

    def _publish_after_commit(self, event_type: NotificationEventType, tx: Transaction, user_ids) -> None:
        users = [self.session.get(User, uid) for uid in dict.fromkeys(user_ids)]
        event = DomainEvent(
            event_type=event_type,
            payload=transaction_projection(tx),
            recipients=tuple(Recipient.from_user(u) for u in users if u is not None),
        )
        run_after_commit(self.session, lambda: self.notifier.publish(event))
