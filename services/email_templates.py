"""Email templates for booking lifecycle and wallet notifications"""

from html import escape
from typing import Any, Dict

# event_type value -> (subject, body line); body may reference projection keys
BOOKING_TEMPLATES = {
    "booking_created": (
        "New booking request #{id}",
        "A booking has been requested for {start_time} to {end_time} ({duration_minutes} min, {total_amount}).",
    ),
    "booking_confirmed": (
        "Booking #{id} confirmed",
        "Your session on {start_time} is confirmed. {total_amount} is held in escrow until completion.",
    ),
    "booking_started": (
        "Booking #{id} has started",
        "The session that was scheduled for {start_time} is now in progress.",
    ),
    "booking_completed": (
        "Booking #{id} completed",
        "The session has been marked completed and the escrowed payment has been released.",
    ),
    "booking_cancelled": (
        "Booking #{id} cancelled",
        "The booking for {start_time} was cancelled by {cancelled_by}. Reason: {cancel_reason}",
    ),
    "booking_disputed": (
        "Dispute raised on booking #{id}",
        "A dispute was raised on this completed booking. Reason: {dispute_reason}",
    ),
}

TRANSACTION_TEMPLATES = {
    "deposit_success": (
        "Wallet top-up of {amount} {currency} received",
        "Your wallet has been credited. Reference: {transaction_reference}",
    ),
    "withdraw_success": (
        "Withdrawal of {amount} {currency} processed",
        "The amount has been debited from your wallet. Reference: {transaction_reference}",
    ),
    "escrow_locked": (
        "{amount} {currency} locked for booking #{booking_id}",
        "Funds are held in escrow until the session is completed or cancelled.",
    ),
    "escrow_released": (
        "Payment released for booking #{booking_id}",
        "{net_amount} {currency} has been released from escrow. Reference: {transaction_reference}",
    ),
    "escrow_refunded": (
        "Refund for booking #{booking_id}",
        "{amount} {currency} has been returned to your wallet. Reference: {transaction_reference}",
    ),
}


class _SafeDict(dict):
    def __missing__(self, key):
        return "-"


def render_event_email(event_type: str, payload: Dict[str, Any], recipient_name: str = None) -> Dict[str, str]:
    """Build subject, html and text bodies for one recipient of an event"""
    subject_tpl, body_tpl = BOOKING_TEMPLATES.get(event_type) or TRANSACTION_TEMPLATES[event_type]
    values = _SafeDict({k: ("-" if v is None else v) for k, v in payload.items()})

    subject = subject_tpl.format_map(values)
    body = body_tpl.format_map(values)
    greeting = f"Hi {recipient_name}," if recipient_name else "Hi,"

    text_content = f"{greeting}\n\n{body}\n\n- The SkillSwap team"
    html_content = (
        f"<html><body><p>{escape(greeting)}</p><p>{escape(body)}</p>"
        f"<p>- The SkillSwap team</p></body></html>"
    )
    return {"subject": subject, "html_content": html_content, "text_content": text_content}
