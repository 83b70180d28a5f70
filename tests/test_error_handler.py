"""Domain exception to HTTP error mapping"""

import pytest

from utils.error_handler import (
    ErrorCategory, ErrorCodes, ErrorResponseBuilder, GENERIC_ERROR_MESSAGE,
)
from utils.exception_handler import (
    BadRequestError, EscrowNotFoundError, InsufficientBalanceError, InvalidStateError,
    OperationNotAllowedError, OverlappingBookingError, RecentBookingCooldownError,
    ResourceNotFoundError, SkillSwapError, TransactionAlreadyProcessedError,
    TransactionFailedError,
)


@pytest.mark.parametrize("error,status,code", [
    (ResourceNotFoundError("Booking not found"), 404, ErrorCodes.RESOURCE_NOT_FOUND),
    (EscrowNotFoundError("No pending escrow"), 404, ErrorCodes.ESCROW_NOT_FOUND),
    (OperationNotAllowedError("Not allowed"), 400, ErrorCodes.OPERATION_NOT_ALLOWED),
    (InvalidStateError("Request already finalized"), 400, ErrorCodes.INVALID_STATE),
    (BadRequestError("Start time and End time are required"), 400, ErrorCodes.BAD_REQUEST),
    (OverlappingBookingError("Provider is not available for this slot"), 409, ErrorCodes.BOOKING_SLOT_CONFLICT),
    (TransactionAlreadyProcessedError("Escrow already exists"), 409, ErrorCodes.TRANSACTION_ALREADY_PROCESSED),
    (RecentBookingCooldownError("Please wait 1 min before booking again"), 429, ErrorCodes.BOOKING_COOLDOWN_ACTIVE),
    (InsufficientBalanceError("Insufficient balance"), 400, ErrorCodes.INSUFFICIENT_BALANCE),
])
def test_client_errors_keep_their_message(error, status, code):
    response = ErrorResponseBuilder.from_domain_error(error)
    assert response.status_code == status
    assert response.code == code
    assert response.message == error.message
    assert response.recoverable


def test_transaction_failed_is_retryable_server_error():
    response = ErrorResponseBuilder.from_domain_error(
        TransactionFailedError("Transaction failed after 3 attempts due to concurrent updates")
    )
    assert response.status_code == 500
    assert response.category == ErrorCategory.DATABASE
    assert "3 attempts" in response.message
    assert response.recoverable


def test_base_error_hides_detail():
    response = ErrorResponseBuilder.from_domain_error(SkillSwapError("db password is hunter2"))
    assert response.status_code == 500
    assert response.message == GENERIC_ERROR_MESSAGE


def test_payload_shape():
    payload = ErrorResponseBuilder.from_domain_error(ResourceNotFoundError("Skill not found")).to_payload()
    assert payload["code"] == "RESOURCE_NOT_FOUND"
    assert payload["category"] == "not_found"
    assert payload["severity"] == "low"
    assert "recoverable" not in payload
    assert "details" not in payload
    assert payload["timestamp"]


def test_validation_error_carries_details():
    payload = ErrorResponseBuilder.validation_error("amount: bad", {"field": "amount"}).to_payload()
    assert payload["status_code"] == 400
    assert payload["details"] == {"field": "amount"}
