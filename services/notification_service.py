"""
Booking and wallet event fan-out.

Services publish events after their unit of work commits. Delivery runs on a
background worker pool; failures are logged and never reach the publisher.
"""

import asyncio
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from config import Config
from models import User
from services.email_service import BrevoEmailService
from services.email_templates import render_event_email
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class NotificationEventType(Enum):
    """Events emitted by the booking and ledger services"""
    BOOKING_CREATED = "booking_created"
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_STARTED = "booking_started"
    BOOKING_COMPLETED = "booking_completed"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_DISPUTED = "booking_disputed"
    DEPOSIT_SUCCESS = "deposit_success"
    WITHDRAW_SUCCESS = "withdraw_success"
    ESCROW_LOCKED = "escrow_locked"
    ESCROW_RELEASED = "escrow_released"
    ESCROW_REFUNDED = "escrow_refunded"


@dataclass(frozen=True)
class Recipient:
    user_id: int
    email: str
    name: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "Recipient":
        return cls(user_id=user.id, email=user.email, name=user.name)


@dataclass(frozen=True)
class DomainEvent:
    """Snapshot of what happened, taken before the publishing session commits"""
    event_type: NotificationEventType
    payload: Dict[str, Any]
    recipients: Tuple[Recipient, ...]
    occurred_at: datetime = field(default_factory=get_naive_utc_now)


class NotificationService:
    """Best-effort async delivery of domain events as emails"""

    def __init__(
        self,
        email_service: Optional[BrevoEmailService] = None,
        max_workers: Optional[int] = None,
        enabled: Optional[bool] = None,
    ):
        self._email_service = email_service
        self.max_workers = max_workers or Config.NOTIFICATION_WORKERS
        self.enabled = Config.EMAIL_NOTIFICATIONS_ENABLED if enabled is None else enabled
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    @property
    def email_service(self) -> BrevoEmailService:
        if self._email_service is None:
            self._email_service = BrevoEmailService()
        return self._email_service

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers, thread_name_prefix="notify"
                )
            return self._executor

    def publish(self, event: DomainEvent) -> Optional[Future]:
        """Hand an event to the worker pool; never raises"""
        if not self.enabled:
            logger.debug(f"📭 NOTIFICATIONS_DISABLED: dropping {event.event_type.value}")
            return None

        try:
            future = self._get_executor().submit(self._deliver, event)
            logger.info(
                f"📨 EVENT_PUBLISHED: {event.event_type.value} to {len(event.recipients)} recipient(s)"
            )
            return future
        except Exception as e:
            logger.error(f"❌ EVENT_PUBLISH_FAILED: {event.event_type.value}: {e}")
            return None

    def _deliver(self, event: DomainEvent) -> int:
        """Send one email per recipient; returns how many were accepted"""
        delivered = 0
        for recipient in event.recipients:
            try:
                content = render_event_email(event.event_type.value, event.payload, recipient.name)
                sent = asyncio.run(
                    self.email_service.send_email(
                        to_email=recipient.email,
                        to_name=recipient.name,
                        subject=content["subject"],
                        html_content=content["html_content"],
                        text_content=content["text_content"],
                        tags=["skillswap", event.event_type.value],
                    )
                )
                if sent:
                    delivered += 1
            except Exception as e:
                logger.error(
                    f"❌ NOTIFICATION_DELIVERY_FAILED: {event.event_type.value} "
                    f"user={recipient.user_id}: {e}"
                )
        return delivered

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=wait)
                self._executor = None
                logger.info("🛑 Notification worker pool stopped")


notification_service = NotificationService()
