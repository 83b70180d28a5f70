"""
Booking Service - lifecycle state machine for booked sessions

    PENDING -> CONFIRMED -> IN_PROGRESS -> COMPLETED -> DISPUTED
    PENDING | CONFIRMED | IN_PROGRESS -> CANCELLED

Escrow is locked when the provider confirms, released in the same unit of
work that completes the booking, and refunded when a funded booking is
cancelled. Every transition re-reads the booking under a row lock and checks
BookingStateValidator before writing.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from sqlalchemy import and_, exists, or_, select
from sqlalchemy.orm import Session

from config import Config
from models import (
    Booking, BookingStatus, CancelledBy, Skill, SkillRequest, SkillRequestStatus,
)
from services.escrow_service import EscrowService
from services.notification_service import (
    DomainEvent, NotificationEventType, NotificationService, Recipient,
    notification_service as default_notifier,
)
from services.projections import booking_projection
from services.skill_catalog import SkillCatalog
from utils.atomic_transactions import atomic_transaction, lock_row_for_update, run_after_commit
from utils.caller_context import Caller
from utils.datetime_helpers import Clock, ensure_naive_datetime, get_naive_utc_now, minutes_between
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    BadRequestError, OperationNotAllowedError, OverlappingBookingError,
    RecentBookingCooldownError, ResourceNotFoundError,
)
from utils.helpers import normalize_reason
from utils.optimistic_locking import RetryPolicy
from utils.state_validators import BookingStateValidator, SkillRequestStateValidator

logger = logging.getLogger(__name__)


class EscrowFailurePolicy(Enum):
    """What confirm_booking leaves behind when the requester cannot fund escrow"""
    ROLLBACK = "rollback"              # booking stays PENDING, error surfaces
    KEEP_CONFIRMED = "keep_confirmed"  # booking committed CONFIRMED, funds locked later

    @classmethod
    def from_config(cls) -> "EscrowFailurePolicy":
        try:
            return cls(Config.ESCROW_FAILURE_POLICY)
        except ValueError:
            logger.warning(f"⚠️ Unknown ESCROW_FAILURE_POLICY {Config.ESCROW_FAILURE_POLICY!r}, using rollback")
            return cls.ROLLBACK


def _cooldown_label(seconds: int) -> str:
    if seconds % 60 == 0:
        return f"{seconds // 60} min"
    return f"{seconds} sec"


class BookingService:
    """Owns booking transitions, slot validation and escrow hand-offs"""

    def __init__(
        self,
        session: Session,
        escrow: Optional[EscrowService] = None,
        notifier: Optional[NotificationService] = None,
        clock: Optional[Clock] = None,
        escrow_failure_policy: Optional[EscrowFailurePolicy] = None,
        retry_policy: Optional[RetryPolicy] = None,
        cooldown_seconds: Optional[int] = None,
    ):
        self.session = session
        self.clock = clock or get_naive_utc_now
        self.notifier = notifier or default_notifier
        self.escrow = escrow or EscrowService(
            session, retry_policy=retry_policy, notifier=self.notifier, clock=self.clock
        )
        self.catalog = SkillCatalog(session)
        self.escrow_failure_policy = escrow_failure_policy or EscrowFailurePolicy.from_config()
        self.cooldown_seconds = Config.BOOKING_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds

    # ==================================================================
    # CREATE
    # ==================================================================

    def create_booking(
        self,
        caller: Caller,
        skill_request_id: int,
        start_time: Optional[datetime],
        end_time: Optional[datetime],
        duration_minutes: Optional[int] = None,
        message: Optional[str] = None,
    ) -> Booking:
        """Book a slot against the caller's ACCEPTED skill request"""
        if start_time is None or end_time is None:
            raise BadRequestError("Start time and End time are required")

        start_time = ensure_naive_datetime(start_time)
        end_time = ensure_naive_datetime(end_time)

        if end_time < start_time:
            raise BadRequestError("End time must be after start time")

        slot_minutes = minutes_between(start_time, end_time)
        if slot_minutes <= 0:
            raise BadRequestError("Booking duration must be greater than zero")

        billed_minutes = slot_minutes if duration_minutes is None else int(duration_minutes)
        if billed_minutes <= 0:
            raise BadRequestError("Booking duration must be greater than zero")

        with atomic_transaction(self.session):
            # Exclusive lock: two bookings can never consume the same request
            skill_request = lock_row_for_update(self.session, SkillRequest, skill_request_id)
            if skill_request is None:
                raise ResourceNotFoundError("Skill request not found")

            if skill_request.status != SkillRequestStatus.ACCEPTED.value:
                raise BadRequestError("Only ACCEPTED skill request can be booked")

            if skill_request.sender_id != caller.id:
                raise OperationNotAllowedError("Only request sender can create booking")

            provider_id = skill_request.receiver_id
            skill = self.catalog.get_skill(skill_request.skill_id)
            if skill is None:
                raise ResourceNotFoundError("Skill not found")

            if self._has_overlap(Booking.provider_id, provider_id, start_time, end_time):
                logger.info(
                    f"📅 SLOT_CONFLICT: provider={provider_id} {start_time:%Y-%m-%d %H:%M}-{end_time:%H:%M}"
                )
                raise OverlappingBookingError("Provider is not available for this slot")

            if self._has_overlap(Booking.requester_id, caller.id, start_time, end_time):
                raise OverlappingBookingError("You already have another booking in this slot")

            now = self.clock()
            if self._has_recent_booking(caller.id, provider_id, now):
                raise RecentBookingCooldownError(
                    f"Please wait {_cooldown_label(self.cooldown_seconds)} before booking again"
                )

            booking = Booking(
                skill_request_id=skill_request.id,
                skill_id=skill.id,
                requester_id=caller.id,
                provider_id=provider_id,
                start_time=start_time,
                end_time=end_time,
                duration_minutes=billed_minutes,
                price_per_hour=skill.hourly_rate,
                total_amount=MonetaryDecimal.booking_total(skill.hourly_rate, billed_minutes),
                status=BookingStatus.PENDING.value,
                message=message,
                created_at=now,
                updated_at=now,
            )
            self.session.add(booking)

            self._move_request(skill_request, SkillRequestStatus.BOOKED)
            self.session.flush()
            self._publish_after_commit(NotificationEventType.BOOKING_CREATED, booking)

        logger.info(
            f"📅 BOOKING_CREATED: id={booking.id} requester={caller.id} provider={booking.provider_id} "
            f"minutes={booking.duration_minutes} total={booking.total_amount}"
        )
        return booking

    # ==================================================================
    # CONFIRM
    # ==================================================================

    def confirm_booking(self, booking_id: int, caller: Caller) -> Booking:
        """
        Provider accepts the booking and the requester's funds are locked.

        Under ROLLBACK a failed escrow leaves the booking PENDING; under
        KEEP_CONFIRMED the CONFIRMED status is committed first and the escrow
        error still surfaces to the caller.
        """
        if self.escrow_failure_policy == EscrowFailurePolicy.KEEP_CONFIRMED:
            with atomic_transaction(self.session):
                booking = self._confirm_status(booking_id, caller)
                self._publish_after_commit(NotificationEventType.BOOKING_CONFIRMED, booking)

            with atomic_transaction(self.session):
                try:
                    self._lock_escrow(booking)
                except Exception as e:
                    logger.warning(
                        f"💳 ESCROW_PENDING_PAYMENT: booking={booking_id} stays CONFIRMED without escrow: {e}"
                    )
                    raise
        else:
            with atomic_transaction(self.session):
                booking = self._confirm_status(booking_id, caller)
                self._lock_escrow(booking)
                self._publish_after_commit(NotificationEventType.BOOKING_CONFIRMED, booking)

        logger.info(f"✅ BOOKING_CONFIRMED: id={booking_id} provider={caller.id}")
        return booking

    def retry_escrow_lock(self, booking_id: int, caller: Caller) -> Booking:
        """Lock funds for a CONFIRMED booking whose escrow could not be created at confirm time"""
        with atomic_transaction(self.session):
            booking = self._get_booking_for_update(booking_id)
            self._require_participant(booking, caller, "retry payment for")
            if booking.status != BookingStatus.CONFIRMED.value:
                raise OperationNotAllowedError("Only confirmed bookings awaiting payment can be funded")
            self._lock_escrow(booking)

        logger.info(f"🔁 ESCROW_LOCK_RETRIED: booking={booking_id} by={caller.id}")
        return booking

    def _confirm_status(self, booking_id: int, caller: Caller) -> Booking:
        booking = self._get_booking_for_update(booking_id)
        self._require_provider(booking, caller, "confirm")
        if booking.status != BookingStatus.PENDING.value:
            raise OperationNotAllowedError("Only pending bookings can be confirmed")
        self._transition(booking, BookingStatus.CONFIRMED)
        booking.confirmed_at = self.clock()
        self.session.flush()
        return booking

    def _lock_escrow(self, booking: Booking) -> None:
        self.escrow.create_escrow_transaction(
            payer_id=booking.requester_id,
            booking=booking,
            amount=booking.total_amount,
        )

    # ==================================================================
    # START / COMPLETE
    # ==================================================================

    def start_booking(self, booking_id: int, caller: Caller) -> Booking:
        with atomic_transaction(self.session):
            booking = self._get_booking_for_update(booking_id)
            self._require_provider(booking, caller, "start")
            if booking.status != BookingStatus.CONFIRMED.value:
                raise OperationNotAllowedError("Booking must be confirmed before starting")
            if self.escrow.find_pending_escrow(booking.id) is None:
                raise OperationNotAllowedError("Payment for this booking has not been secured in escrow")

            self._transition(booking, BookingStatus.IN_PROGRESS)
            booking.started_at = self.clock()
            self.session.flush()
            self._publish_after_commit(NotificationEventType.BOOKING_STARTED, booking)

        logger.info(f"▶️ BOOKING_STARTED: id={booking_id}")
        return booking

    def complete_booking(self, booking_id: int, caller: Caller) -> Booking:
        """Mark COMPLETED and release escrow; a failed release undoes the completion"""
        with atomic_transaction(self.session):
            booking = self._get_booking_for_update(booking_id)
            self._require_provider(booking, caller, "complete")
            if booking.status != BookingStatus.IN_PROGRESS.value:
                raise OperationNotAllowedError("Booking must be in progress to complete")

            self._transition(booking, BookingStatus.COMPLETED)
            booking.completed_at = self.clock()
            self.session.flush()

            self.escrow.release_escrow(booking.id)

            skill_request = self.session.get(SkillRequest, booking.skill_request_id)
            if skill_request is not None:
                self._move_request(skill_request, SkillRequestStatus.COMPLETED)

            self._publish_after_commit(NotificationEventType.BOOKING_COMPLETED, booking)

        logger.info(f"🏁 BOOKING_COMPLETED: id={booking_id} total={booking.total_amount}")
        return booking

    # ==================================================================
    # CANCEL
    # ==================================================================

    def cancel_booking(self, booking_id: int, caller: Caller, reason: Optional[str]) -> Booking:
        """Requester or provider cancels; funded bookings are refunded"""
        with atomic_transaction(self.session):
            booking = self._get_booking_for_update(booking_id)
            self._ensure_cancellable(booking)

            if caller.id not in (booking.requester_id, booking.provider_id):
                raise OperationNotAllowedError("Not allowed to cancel this booking")

            cancelled_by = CancelledBy.USER if caller.id == booking.requester_id else CancelledBy.PROVIDER
            self._cancel(booking, reason, cancelled_by)

        logger.info(f"🚫 BOOKING_CANCELLED: id={booking_id} by={cancelled_by.value}")
        return booking

    def admin_cancel_booking(self, booking_id: int, caller: Caller, reason: Optional[str]) -> Booking:
        if not caller.is_admin:
            raise OperationNotAllowedError("Only admins can perform this cancellation")

        with atomic_transaction(self.session):
            booking = self._get_booking_for_update(booking_id)
            self._ensure_cancellable(booking)
            self._cancel(booking, reason, CancelledBy.ADMIN)

        logger.warning(f"🛡️ BOOKING_ADMIN_CANCELLED: id={booking_id} admin={caller.id}")
        return booking

    def _ensure_cancellable(self, booking: Booking) -> None:
        if booking.status == BookingStatus.CANCELLED.value:
            raise OperationNotAllowedError("Booking already cancelled")
        if booking.status == BookingStatus.COMPLETED.value:
            raise OperationNotAllowedError("Completed booking cannot be cancelled")
        if booking.status == BookingStatus.DISPUTED.value:
            raise OperationNotAllowedError("Disputed booking cannot be cancelled")
        if not BookingStateValidator.can_cancel(booking.status):
            raise OperationNotAllowedError(f"Booking in status {booking.status} cannot be cancelled")

    def _cancel(self, booking: Booking, reason: Optional[str], cancelled_by: CancelledBy) -> None:
        reason = normalize_reason(reason)
        if not reason:
            raise BadRequestError("Cancel reason is required")

        previous_status = booking.status
        self._transition(booking, BookingStatus.CANCELLED)
        booking.cancelled_by = cancelled_by.value
        booking.cancel_reason = reason
        booking.cancelled_at = self.clock()
        self.session.flush()

        if previous_status in BookingStateValidator.REFUNDABLE_STATES:
            if self.escrow.find_pending_escrow(booking.id) is not None:
                self.escrow.refund(booking.id)
            else:
                logger.info(f"ℹ️ NO_ESCROW_TO_REFUND: booking={booking.id} was {previous_status}")

        skill_request = self.session.get(SkillRequest, booking.skill_request_id)
        if skill_request is not None and skill_request.status == SkillRequestStatus.BOOKED.value:
            if self._has_other_open_request(skill_request):
                # A newer open request for the same skill takes over; this one stays BOOKED
                logger.warning(
                    f"⚠️ SKILL_REQUEST_UNLOCK_SKIPPED: id={skill_request.id} superseded by an open request"
                )
            else:
                self._move_request(skill_request, SkillRequestStatus.ACCEPTED)

        self._publish_after_commit(NotificationEventType.BOOKING_CANCELLED, booking)

    # ==================================================================
    # DISPUTE
    # ==================================================================

    def raise_dispute(self, booking_id: int, caller: Caller, reason: Optional[str]) -> Booking:
        with atomic_transaction(self.session):
            booking = self._get_booking_for_update(booking_id)

            if caller.id not in (booking.requester_id, booking.provider_id):
                raise OperationNotAllowedError("Not allowed to dispute this booking")
            if booking.status == BookingStatus.DISPUTED.value:
                raise OperationNotAllowedError("Booking already disputed")
            if booking.status != BookingStatus.COMPLETED.value:
                raise OperationNotAllowedError("Only completed bookings can be disputed")

            reason = normalize_reason(reason)
            if not reason:
                raise BadRequestError("Dispute reason is required")

            self._transition(booking, BookingStatus.DISPUTED)
            booking.dispute_reason = reason
            self.session.flush()
            self._publish_after_commit(NotificationEventType.BOOKING_DISPUTED, booking)

        logger.warning(f"⚠️ BOOKING_DISPUTED: id={booking_id} by={caller.id}")
        return booking

    # ==================================================================
    # QUERIES
    # ==================================================================

    def get_booking(self, booking_id: int, caller: Caller) -> Booking:
        booking = self.session.get(Booking, booking_id)
        if booking is None:
            raise ResourceNotFoundError("Booking not found")
        if not caller.is_admin and caller.id not in (booking.requester_id, booking.provider_id):
            raise OperationNotAllowedError("You are not a participant of this booking")
        return booking

    def get_booking_for_requester(self, booking_id: int, caller: Caller) -> Optional[Booking]:
        return self.session.execute(
            select(Booking).where(Booking.id == booking_id, Booking.requester_id == caller.id)
        ).scalar_one_or_none()

    def get_bookings_by_requester(self, requester_id: int, status: Optional[BookingStatus] = None) -> List[Booking]:
        stmt = select(Booking).where(Booking.requester_id == requester_id)
        if status is not None:
            stmt = stmt.where(Booking.status == status.value)
        return self._list(stmt.order_by(Booking.start_time))

    def get_bookings_by_provider(self, provider_id: int, status: Optional[BookingStatus] = None) -> List[Booking]:
        stmt = select(Booking).where(Booking.provider_id == provider_id)
        if status is not None:
            stmt = stmt.where(Booking.status == status.value)
        return self._list(stmt.order_by(Booking.start_time))

    def get_bookings_by_status(self, status: BookingStatus) -> List[Booking]:
        return self._list(select(Booking).where(Booking.status == status.value).order_by(Booking.start_time))

    def get_bookings_by_skill(self, skill_id: int, status: Optional[BookingStatus] = None) -> List[Booking]:
        if self.session.get(Skill, skill_id) is None:
            raise ResourceNotFoundError("Skill not found")
        stmt = select(Booking).where(Booking.skill_id == skill_id)
        if status is not None:
            stmt = stmt.where(Booking.status == status.value)
        return self._list(stmt.order_by(Booking.start_time))

    def get_provider_bookings_in_range(
        self, provider_id: int, status: BookingStatus, start: datetime, end: datetime
    ) -> List[Booking]:
        start, end = ensure_naive_datetime(start), ensure_naive_datetime(end)
        if start is None or end is None:
            raise BadRequestError("Start and end are required")
        if start > end:
            raise BadRequestError("Start date must be before end date")
        return self._list(
            select(Booking).where(
                Booking.provider_id == provider_id,
                Booking.status == status.value,
                Booking.start_time.between(start, end),
            ).order_by(Booking.start_time)
        )

    def get_upcoming_bookings_for_provider(self, provider_id: int) -> List[Booking]:
        now = self.clock()
        return self._list(
            select(Booking).where(
                Booking.provider_id == provider_id,
                or_(
                    and_(Booking.status == BookingStatus.CONFIRMED.value, Booking.start_time > now),
                    and_(Booking.status == BookingStatus.IN_PROGRESS.value, Booking.end_time > now),
                ),
            ).order_by(Booking.start_time)
        )

    def get_upcoming_bookings_for_requester(self, requester_id: int) -> List[Booking]:
        now = self.clock()
        return self._list(
            select(Booking).where(
                Booking.requester_id == requester_id,
                or_(
                    Booking.status == BookingStatus.PENDING.value,
                    and_(Booking.status == BookingStatus.CONFIRMED.value, Booking.start_time > now),
                    and_(Booking.status == BookingStatus.IN_PROGRESS.value, Booking.end_time > now),
                ),
            ).order_by(Booking.start_time)
        )

    def get_past_bookings_for_provider(self, provider_id: int) -> List[Booking]:
        return self._past(Booking.provider_id == provider_id)

    def get_past_bookings_for_requester(self, requester_id: int) -> List[Booking]:
        return self._past(Booking.requester_id == requester_id)

    def is_slot_available(self, provider_id: int, start: datetime, end: datetime) -> bool:
        return not self._has_overlap(
            Booking.provider_id, provider_id, ensure_naive_datetime(start), ensure_naive_datetime(end)
        )

    def is_requester_available(self, requester_id: int, start: datetime, end: datetime) -> bool:
        return not self._has_overlap(
            Booking.requester_id, requester_id, ensure_naive_datetime(start), ensure_naive_datetime(end)
        )

    # ==================================================================
    # HELPERS
    # ==================================================================

    def _has_overlap(self, party_column, party_id: int, start: datetime, end: datetime) -> bool:
        # Closed intervals: touching endpoints count as a conflict
        return bool(self.session.execute(
            select(exists().where(
                party_column == party_id,
                Booking.status.not_in(BookingStateValidator.SLOT_RELEASING_STATES),
                Booking.start_time <= end,
                Booking.end_time >= start,
            ))
        ).scalar())

    def _has_recent_booking(self, requester_id: int, provider_id: int, now: datetime) -> bool:
        if self.cooldown_seconds <= 0:
            return False
        since = now - timedelta(seconds=self.cooldown_seconds)
        return bool(self.session.execute(
            select(exists().where(
                Booking.requester_id == requester_id,
                Booking.provider_id == provider_id,
                Booking.created_at >= since,
            ))
        ).scalar())

    def _past(self, party_clause) -> List[Booking]:
        return self._list(
            select(Booking).where(
                party_clause,
                Booking.status.in_([BookingStatus.COMPLETED.value, BookingStatus.CANCELLED.value]),
            ).order_by(Booking.updated_at.desc(), Booking.id.desc())
        )

    def _list(self, stmt) -> List[Booking]:
        return list(self.session.execute(stmt).scalars())

    def _get_booking_for_update(self, booking_id: int) -> Booking:
        booking = lock_row_for_update(self.session, Booking, booking_id)
        if booking is None:
            raise ResourceNotFoundError("Booking not found")
        return booking

    @staticmethod
    def _require_provider(booking: Booking, caller: Caller, action: str) -> None:
        if booking.provider_id != caller.id:
            raise OperationNotAllowedError(f"Only the provider can {action} this booking")

    @staticmethod
    def _require_participant(booking: Booking, caller: Caller, action: str) -> None:
        if caller.id not in (booking.requester_id, booking.provider_id):
            raise OperationNotAllowedError(f"Not allowed to {action} this booking")

    def _transition(self, booking: Booking, target: BookingStatus) -> None:
        if not BookingStateValidator.is_valid_transition(booking.status, target.value):
            raise OperationNotAllowedError(
                f"Cannot move booking from {booking.status} to {target.value}"
            )
        booking.status = target.value
        booking.updated_at = self.clock()

    def _has_other_open_request(self, skill_request: SkillRequest) -> bool:
        return self.session.execute(
            select(exists().where(
                SkillRequest.id != skill_request.id,
                SkillRequest.sender_id == skill_request.sender_id,
                SkillRequest.receiver_id == skill_request.receiver_id,
                SkillRequest.skill_id == skill_request.skill_id,
                SkillRequest.status.in_(SkillRequestStateValidator.ACTIVE_STATES),
            ))
        ).scalar()

    def _move_request(self, skill_request: SkillRequest, target: SkillRequestStatus) -> None:
        if not SkillRequestStateValidator.is_valid_transition(skill_request.status, target.value):
            logger.warning(
                f"⚠️ SKILL_REQUEST_TRANSITION_SKIPPED: id={skill_request.id} "
                f"{skill_request.status} -> {target.value}"
            )
            return
        skill_request.status = target.value
        skill_request.updated_at = self.clock()

    def _publish_after_commit(self, event_type: NotificationEventType, booking: Booking) -> None:
        self.session.flush()
        event = DomainEvent(
            event_type=event_type,
            payload=booking_projection(booking),
            recipients=tuple(
                Recipient.from_user(user)
                for user in (booking.requester, booking.provider)
                if user is not None
            ),
        )
        run_after_commit(self.session, lambda: self.notifier.publish(event))
