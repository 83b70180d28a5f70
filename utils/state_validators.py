#!/usr/bin/env python3
"""
Booking and Skill Request State Machines
Transition tables consulted before every lifecycle write
"""

import logging
from typing import Dict, Optional, Set

from models import BookingStatus, SkillRequestStatus

logger = logging.getLogger(__name__)


class BookingStateValidator:
    """Validates booking state transitions and prevents invalid changes"""

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {BookingStatus.PENDING.value},
        BookingStatus.PENDING.value: {
            BookingStatus.CONFIRMED.value,
            BookingStatus.CANCELLED.value,
        },
        BookingStatus.CONFIRMED.value: {
            BookingStatus.IN_PROGRESS.value,
            BookingStatus.CANCELLED.value,
        },
        BookingStatus.IN_PROGRESS.value: {
            BookingStatus.COMPLETED.value,
            BookingStatus.CANCELLED.value,
        },
        BookingStatus.COMPLETED.value: {
            BookingStatus.DISPUTED.value,
        },
        # Terminal states (no transitions allowed)
        BookingStatus.CANCELLED.value: set(),
        BookingStatus.DISPUTED.value: set(),
    }

    # Bookings in these states no longer occupy a calendar slot
    SLOT_RELEASING_STATES = frozenset({
        BookingStatus.CANCELLED.value,
        BookingStatus.COMPLETED.value,
    })

    # Cancelling from these states may have locked funds to return
    REFUNDABLE_STATES = frozenset({
        BookingStatus.CONFIRMED.value,
        BookingStatus.IN_PROGRESS.value,
    })

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def get_valid_transitions(cls, current_status: Optional[str]) -> Set[str]:
        return cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(status, set())

    @classmethod
    def can_cancel(cls, status: str) -> bool:
        return cls.is_valid_transition(status, BookingStatus.CANCELLED.value)


class SkillRequestStateValidator:
    """Validates skill request state transitions"""

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {SkillRequestStatus.PENDING.value},
        SkillRequestStatus.PENDING.value: {
            SkillRequestStatus.ACCEPTED.value,
            SkillRequestStatus.REJECTED.value,
            SkillRequestStatus.CANCELLED.value,
            SkillRequestStatus.EXPIRED.value,
        },
        SkillRequestStatus.ACCEPTED.value: {
            SkillRequestStatus.BOOKED.value,
            SkillRequestStatus.COMPLETED.value,
        },
        SkillRequestStatus.BOOKED.value: {
            SkillRequestStatus.ACCEPTED.value,  # booking cancelled, request unlocked
            SkillRequestStatus.COMPLETED.value,
        },
        SkillRequestStatus.COMPLETED.value: set(),
        SkillRequestStatus.REJECTED.value: set(),
        SkillRequestStatus.CANCELLED.value: set(),
        SkillRequestStatus.EXPIRED.value: set(),
    }

    # At most one of these per (sender, receiver, skill)
    ACTIVE_STATES = frozenset({
        SkillRequestStatus.PENDING.value,
        SkillRequestStatus.ACCEPTED.value,
    })

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def get_valid_transitions(cls, current_status: Optional[str]) -> Set[str]:
        return cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(status, set())


__all__ = ["BookingStateValidator", "SkillRequestStateValidator"]
