"""Standardized error responses for domain exceptions"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from utils.exception_handler import SkillSwapError

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again later."


class ErrorCategory(Enum):
    """Error categories for classification"""

    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    RATE_LIMIT = "rate_limit"
    PAYMENT = "payment"
    DATABASE = "database"
    SYSTEM = "system"
    BUSINESS_LOGIC = "business_logic"
    NOT_FOUND = "not_found"


class ErrorSeverity(Enum):
    """Error severity levels"""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class StandardError:
    """Standard error response structure"""

    code: str
    message: str
    category: ErrorCategory
    severity: ErrorSeverity
    status_code: int
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None
    recoverable: bool = True

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["category"] = self.category.value
        payload["severity"] = self.severity.value
        payload.pop("recoverable")
        if payload["details"] is None:
            payload.pop("details")
        return payload


class ErrorCodes:
    """Centralized error codes"""

    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    ESCROW_NOT_FOUND = "ESCROW_NOT_FOUND"
    OPERATION_NOT_ALLOWED = "OPERATION_NOT_ALLOWED"
    INVALID_STATE = "INVALID_STATE"
    BAD_REQUEST = "BAD_REQUEST"
    INVALID_REQUEST = "INVALID_REQUEST"
    BOOKING_SLOT_CONFLICT = "BOOKING_SLOT_CONFLICT"
    TRANSACTION_ALREADY_PROCESSED = "TRANSACTION_ALREADY_PROCESSED"
    BOOKING_COOLDOWN_ACTIVE = "BOOKING_COOLDOWN_ACTIVE"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"


# code -> (HTTP status, category, severity)
ERROR_CATALOG: Dict[str, Tuple[int, ErrorCategory, ErrorSeverity]] = {
    ErrorCodes.RESOURCE_NOT_FOUND: (404, ErrorCategory.NOT_FOUND, ErrorSeverity.LOW),
    ErrorCodes.ESCROW_NOT_FOUND: (404, ErrorCategory.PAYMENT, ErrorSeverity.MEDIUM),
    ErrorCodes.OPERATION_NOT_ALLOWED: (400, ErrorCategory.AUTHORIZATION, ErrorSeverity.LOW),
    ErrorCodes.INVALID_STATE: (400, ErrorCategory.BUSINESS_LOGIC, ErrorSeverity.LOW),
    ErrorCodes.BAD_REQUEST: (400, ErrorCategory.VALIDATION, ErrorSeverity.LOW),
    ErrorCodes.INVALID_REQUEST: (400, ErrorCategory.VALIDATION, ErrorSeverity.LOW),
    ErrorCodes.BOOKING_SLOT_CONFLICT: (409, ErrorCategory.BUSINESS_LOGIC, ErrorSeverity.LOW),
    ErrorCodes.TRANSACTION_ALREADY_PROCESSED: (409, ErrorCategory.PAYMENT, ErrorSeverity.MEDIUM),
    ErrorCodes.BOOKING_COOLDOWN_ACTIVE: (429, ErrorCategory.RATE_LIMIT, ErrorSeverity.LOW),
    ErrorCodes.INSUFFICIENT_BALANCE: (400, ErrorCategory.PAYMENT, ErrorSeverity.MEDIUM),
    ErrorCodes.TRANSACTION_FAILED: (500, ErrorCategory.DATABASE, ErrorSeverity.HIGH),
    ErrorCodes.INTERNAL_SERVER_ERROR: (500, ErrorCategory.SYSTEM, ErrorSeverity.CRITICAL),
}


class ErrorResponseBuilder:
    """Builder for standardized error responses"""

    @staticmethod
    def from_domain_error(error: SkillSwapError) -> StandardError:
        """Map a domain exception to its stable code, status and message"""
        status_code, category, severity = ERROR_CATALOG.get(
            error.code, ERROR_CATALOG[ErrorCodes.INTERNAL_SERVER_ERROR]
        )
        if status_code >= 500:
            message = GENERIC_ERROR_MESSAGE if error.code == ErrorCodes.INTERNAL_SERVER_ERROR else error.message
        else:
            message = error.message

        return StandardError(
            code=error.code,
            message=message,
            category=category,
            severity=severity,
            status_code=status_code,
            recoverable=status_code < 500 or error.code == ErrorCodes.TRANSACTION_FAILED,
        )

    @staticmethod
    def validation_error(message: str, details: Optional[Dict] = None) -> StandardError:
        """Request body or query failed schema validation"""
        return StandardError(
            code=ErrorCodes.BAD_REQUEST,
            message=message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            status_code=400,
            details=details,
        )

    @staticmethod
    def unexpected_error() -> StandardError:
        """Anything that is not a domain error; detail never leaves the server"""
        return StandardError(
            code=ErrorCodes.INTERNAL_SERVER_ERROR,
            message=GENERIC_ERROR_MESSAGE,
            category=ErrorCategory.SYSTEM,
            severity=ErrorSeverity.CRITICAL,
            status_code=500,
            recoverable=False,
        )


def log_standard_error(error: StandardError, context: str = "") -> None:
    """Log at a level matching severity"""
    prefix = f"[{context}] " if context else ""
    line = f"{prefix}{error.code} ({error.status_code}): {error.message}"
    if error.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
        logger.error(f"❌ {line}")
    elif error.severity == ErrorSeverity.MEDIUM:
        logger.warning(f"⚠️ {line}")
    else:
        logger.info(f"ℹ️ {line}")
