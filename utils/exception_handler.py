"""
Exception Handler Module
Domain exceptions raised by the booking, escrow and ledger services.

Each exception carries a stable machine-readable code. Services raise them
unmodified; the HTTP boundary maps them to responses via utils.error_handler.
"""

import logging

logger = logging.getLogger(__name__)


class SkillSwapError(Exception):
    """Base class for all domain errors"""

    code = "INTERNAL_SERVER_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ResourceNotFoundError(SkillSwapError):
    """Booking, request, skill, user or transaction id does not resolve"""

    code = "RESOURCE_NOT_FOUND"


class EscrowNotFoundError(SkillSwapError):
    """No pending escrow exists for the booking"""

    code = "ESCROW_NOT_FOUND"


class OperationNotAllowedError(SkillSwapError):
    """Wrong lifecycle state or caller is not a participant"""

    code = "OPERATION_NOT_ALLOWED"


class InvalidStateError(SkillSwapError):
    """Self request, duplicate active request or already finalized request"""

    code = "INVALID_STATE"


class BadRequestError(SkillSwapError):
    """Malformed booking input or missing reason"""

    code = "BAD_REQUEST"


class InvalidRequestError(SkillSwapError):
    """Non-positive amount, escrow on wrong booking status or bad date range"""

    code = "INVALID_REQUEST"


class OverlappingBookingError(SkillSwapError):
    code = "BOOKING_SLOT_CONFLICT"


class RecentBookingCooldownError(SkillSwapError):
    code = "BOOKING_COOLDOWN_ACTIVE"


class TransactionAlreadyProcessedError(SkillSwapError):
    code = "TRANSACTION_ALREADY_PROCESSED"


class InsufficientBalanceError(SkillSwapError):
    code = "INSUFFICIENT_BALANCE"


class TransactionFailedError(SkillSwapError):
    """Optimistic concurrency retries exhausted"""

    code = "TRANSACTION_FAILED"
