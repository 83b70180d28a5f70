"""Read-only snapshots of bookings, skill requests and ledger rows"""

from typing import Any, Dict

from models import Booking, SkillRequest, Transaction


def booking_projection(booking: Booking) -> Dict[str, Any]:
    return {
        "id": booking.id,
        "skill_id": booking.skill_id,
        "request_id": booking.skill_request_id,
        "requester_id": booking.requester_id,
        "provider_id": booking.provider_id,
        "start_time": booking.start_time,
        "end_time": booking.end_time,
        "duration_minutes": booking.duration_minutes,
        "price_per_hour": booking.price_per_hour,
        "total_amount": booking.total_amount,
        "status": booking.status,
        "message": booking.message,
        "cancel_reason": booking.cancel_reason,
        "cancelled_by": booking.cancelled_by,
        "dispute_reason": booking.dispute_reason,
        "created_at": booking.created_at,
        "updated_at": booking.updated_at,
    }


def skill_request_projection(request: SkillRequest) -> Dict[str, Any]:
    return {
        "id": request.id,
        "sender_id": request.sender_id,
        "receiver_id": request.receiver_id,
        "skill_id": request.skill_id,
        "message": request.message,
        "status": request.status,
        "expires_at": request.expires_at,
        "created_at": request.created_at,
        "updated_at": request.updated_at,
    }


def transaction_projection(transaction: Transaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "booking_id": transaction.booking_id,
        "payer_id": transaction.payer_id,
        "payee_id": transaction.payee_id,
        "amount": transaction.amount,
        "platform_fee": transaction.platform_fee,
        "net_amount": transaction.net_amount,
        "currency": transaction.currency,
        "transaction_type": transaction.transaction_type,
        "status": transaction.status,
        "is_escrow": transaction.is_escrow,
        "escrow_release_at": transaction.escrow_release_at,
        "transaction_reference": transaction.transaction_reference,
        "description": transaction.description,
        "created_at": transaction.created_at,
        "updated_at": transaction.updated_at,
    }
