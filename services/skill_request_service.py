"""
Skill Request Service - pre-booking negotiation between learner and skill owner

PENDING requests are accepted or rejected by the receiver, cancelled by the
sender, or expired by the hourly sweep. An ACCEPTED request is what a booking
is created against; the booking service moves it to BOOKED and back.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import SkillRequest, SkillRequestStatus, User
from services.skill_catalog import SkillCatalog
from utils.atomic_transactions import atomic_transaction, lock_row_for_update
from utils.caller_context import Caller
from utils.datetime_helpers import Clock, get_naive_utc_now
from utils.exception_handler import (
    InvalidStateError, OperationNotAllowedError, ResourceNotFoundError,
)
from utils.state_validators import SkillRequestStateValidator

logger = logging.getLogger(__name__)


class SkillRequestService:
    """Negotiation gate in front of booking creation"""

    def __init__(self, session: Session, clock: Optional[Clock] = None, catalog: Optional[SkillCatalog] = None):
        self.session = session
        self.clock = clock or get_naive_utc_now
        self.catalog = catalog or SkillCatalog(session)

    def send_request(self, caller: Caller, skill_id: int, message: Optional[str] = None) -> SkillRequest:
        """Create a PENDING request from the caller to the skill's owner"""
        if message is not None and len(message) > 500:
            raise InvalidStateError("Message must be at most 500 characters")

        with atomic_transaction(self.session):
            sender = self.session.get(User, caller.id)
            if sender is None or not sender.is_active:
                raise ResourceNotFoundError("Sender not found")

            skill = self.catalog.get_skill(skill_id)
            if skill is None or not skill.active:
                raise ResourceNotFoundError("Skill not found")

            if skill.owner_id == sender.id:
                raise InvalidStateError("You cannot send request to yourself")

            existing = self.session.execute(
                select(SkillRequest.id).where(
                    SkillRequest.sender_id == sender.id,
                    SkillRequest.receiver_id == skill.owner_id,
                    SkillRequest.skill_id == skill.id,
                    SkillRequest.status.in_(SkillRequestStateValidator.ACTIVE_STATES),
                ).limit(1)
            ).scalar_one_or_none()
            if existing is not None:
                raise InvalidStateError("Active request already exists for this skill")

            now = self.clock()
            request = SkillRequest(
                sender_id=sender.id,
                receiver_id=skill.owner_id,
                skill_id=skill.id,
                message=message,
                status=SkillRequestStatus.PENDING.value,
                expires_at=now + timedelta(hours=Config.SKILL_REQUEST_TTL_HOURS),
                created_at=now,
                updated_at=now,
            )
            self.session.add(request)
            try:
                self.session.flush()
            except IntegrityError as e:
                # Partial unique index: a concurrent send for the same triple won
                logger.warning(f"🔁 SKILL_REQUEST_DUPLICATE: sender={sender.id} skill={skill.id}: {e.orig}")
                raise InvalidStateError("Active request already exists for this skill") from e

        logger.info(
            f"📝 SKILL_REQUEST_SENT: id={request.id} sender={caller.id} "
            f"receiver={request.receiver_id} skill={skill_id}"
        )
        return request

    def accept_request(self, caller: Caller, request_id: int) -> SkillRequest:
        return self._receiver_decision(caller, request_id, SkillRequestStatus.ACCEPTED, "accept")

    def reject_request(self, caller: Caller, request_id: int) -> SkillRequest:
        return self._receiver_decision(caller, request_id, SkillRequestStatus.REJECTED, "reject")

    def _receiver_decision(
        self, caller: Caller, request_id: int, target: SkillRequestStatus, verb: str
    ) -> SkillRequest:
        with atomic_transaction(self.session):
            request = self._get_request(request_id, for_update=True)
            self._ensure_not_terminal(request)

            if request.receiver_id != caller.id:
                raise OperationNotAllowedError(f"You are not allowed to {verb} this request")
            if request.status != SkillRequestStatus.PENDING.value:
                raise OperationNotAllowedError(f"Only pending requests can be {target.value}")

            self.transition(request, target)

        logger.info(f"✅ SKILL_REQUEST_{target.name}: id={request_id} by={caller.id}")
        return request

    def cancel_request(self, caller: Caller, request_id: int) -> SkillRequest:
        """Sender withdraws a PENDING request; BOOKED requests are freed by cancelling the booking"""
        with atomic_transaction(self.session):
            request = self._get_request(request_id, for_update=True)

            if request.status == SkillRequestStatus.BOOKED.value:
                raise OperationNotAllowedError("Cannot cancel request after booking is created")
            self._ensure_not_terminal(request)

            if request.sender_id != caller.id:
                raise OperationNotAllowedError("You are not allowed to cancel this request")
            if request.status != SkillRequestStatus.PENDING.value:
                raise OperationNotAllowedError("Only pending requests can be cancelled")

            self.transition(request, SkillRequestStatus.CANCELLED)

        logger.info(f"🚫 SKILL_REQUEST_CANCELLED: id={request_id} by={caller.id}")
        return request

    def mark_completed(self, caller: Caller, request_id: int) -> SkillRequest:
        with atomic_transaction(self.session):
            request = self._get_request(request_id, for_update=True)
            self._ensure_not_terminal(request)

            if caller.id not in (request.sender_id, request.receiver_id):
                raise OperationNotAllowedError("Not authorized to mark completed")
            if request.status != SkillRequestStatus.ACCEPTED.value:
                raise OperationNotAllowedError("Only accepted requests can be completed")

            self.transition(request, SkillRequestStatus.COMPLETED)

        logger.info(f"🏁 SKILL_REQUEST_COMPLETED: id={request_id} by={caller.id}")
        return request

    def auto_expire_requests(self, batch_size: Optional[int] = None) -> Dict[str, Any]:
        """
        Move PENDING requests past their expiry to EXPIRED.

        Each candidate is re-read before mutation so a request accepted or
        cancelled since the scan is left alone.
        """
        results = {"scanned": 0, "expired": 0, "skipped": 0, "expired_ids": []}
        now = self.clock()
        limit = batch_size or Config.SKILL_REQUEST_EXPIRY_BATCH_SIZE

        with atomic_transaction(self.session):
            candidate_ids = list(self.session.execute(
                select(SkillRequest.id).where(
                    SkillRequest.status == SkillRequestStatus.PENDING.value,
                    SkillRequest.expires_at < now,
                ).order_by(SkillRequest.expires_at).limit(limit)
            ).scalars())
            results["scanned"] = len(candidate_ids)

            for request_id in candidate_ids:
                request = lock_row_for_update(self.session, SkillRequest, request_id)
                if request is None or request.status != SkillRequestStatus.PENDING.value:
                    results["skipped"] += 1
                    continue

                try:
                    self.transition(request, SkillRequestStatus.EXPIRED)
                except (InvalidStateError, OperationNotAllowedError):
                    results["skipped"] += 1
                    continue
                results["expired"] += 1
                results["expired_ids"].append(request_id)

        if results["expired"]:
            logger.info(
                f"⏰ SKILL_REQUEST_EXPIRY: expired {results['expired']} of {results['scanned']} candidates"
            )
        return results

    # Queries

    def my_sent_requests(self, caller: Caller) -> List[SkillRequest]:
        return list(self.session.execute(
            select(SkillRequest)
            .where(SkillRequest.sender_id == caller.id)
            .order_by(SkillRequest.created_at.desc(), SkillRequest.id.desc())
        ).scalars())

    def my_received_requests(self, caller: Caller) -> List[SkillRequest]:
        return list(self.session.execute(
            select(SkillRequest)
            .where(SkillRequest.receiver_id == caller.id)
            .order_by(SkillRequest.created_at.desc(), SkillRequest.id.desc())
        ).scalars())

    def get_request(self, caller: Caller, request_id: int) -> SkillRequest:
        request = self._get_request(request_id)
        if not caller.is_admin and caller.id not in (request.sender_id, request.receiver_id):
            raise OperationNotAllowedError("You are not a participant of this request")
        return request

    # Helpers

    def _get_request(self, request_id: int, for_update: bool = False) -> SkillRequest:
        if for_update:
            request = lock_row_for_update(self.session, SkillRequest, request_id)
        else:
            request = self.session.get(SkillRequest, request_id)
        if request is None:
            raise ResourceNotFoundError("Request not found")
        return request

    @staticmethod
    def _ensure_not_terminal(request: SkillRequest) -> None:
        if SkillRequestStateValidator.is_terminal_state(request.status):
            raise InvalidStateError("Request already finalized")

    def transition(self, request: SkillRequest, target: SkillRequestStatus) -> None:
        """
        Move a request to target, compare-and-swap on the status that was read.

        Raises instead of overwriting when another writer changed the row first.
        """
        expected = request.status
        if not SkillRequestStateValidator.is_valid_transition(expected, target.value):
            raise OperationNotAllowedError(
                f"Cannot move request from {expected} to {target.value}"
            )

        result = self.session.execute(
            update(SkillRequest)
            .where(SkillRequest.id == request.id, SkillRequest.status == expected)
            .values(status=target.value, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = lock_row_for_update(self.session, SkillRequest, request.id)
            logger.warning(
                f"🔒 SKILL_REQUEST_CONFLICT: id={request.id} expected={expected} "
                f"found={current.status if current else None}"
            )
            if current is None or SkillRequestStateValidator.is_terminal_state(current.status):
                raise InvalidStateError("Request already finalized")
            raise OperationNotAllowedError(
                f"Cannot move request from {current.status} to {target.value}"
            )

        self.session.refresh(request)
