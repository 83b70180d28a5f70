"""Booking routes: create, confirm, start, complete, cancel, dispute and queries"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from database import get_db
from models import BookingStatus
from routes.dependencies import get_caller, to_json
from services.booking_service import BookingService
from services.projections import booking_projection
from utils.caller_context import Caller

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["bookings"])


class BookingCreate(BaseModel):
    skill_request_id: int
    start_time: datetime
    end_time: datetime
    duration_minutes: Optional[int] = Field(None, gt=0)
    message: Optional[str] = Field(None, max_length=1000)


class ReasonBody(BaseModel):
    reason: Optional[str] = None


def _one(booking):
    return to_json(booking_projection(booking))


def _many(bookings):
    return [to_json(booking_projection(b)) for b in bookings]


@router.post("", status_code=201)
def create_booking(body: BookingCreate, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    booking = BookingService(db).create_booking(
        caller,
        body.skill_request_id,
        body.start_time,
        body.end_time,
        duration_minutes=body.duration_minutes,
        message=body.message,
    )
    return _one(booking)


@router.get("/as-requester")
def my_bookings_as_requester(
    status: Optional[BookingStatus] = None,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    return _many(BookingService(db).get_bookings_by_requester(caller.id, status))


@router.get("/as-provider")
def my_bookings_as_provider(
    status: Optional[BookingStatus] = None,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    return _many(BookingService(db).get_bookings_by_provider(caller.id, status))


@router.get("/upcoming")
def upcoming_bookings(
    role: str = Query("requester", pattern="^(requester|provider)$"),
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    service = BookingService(db)
    if role == "provider":
        return _many(service.get_upcoming_bookings_for_provider(caller.id))
    return _many(service.get_upcoming_bookings_for_requester(caller.id))


@router.get("/past")
def past_bookings(
    role: str = Query("requester", pattern="^(requester|provider)$"),
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    service = BookingService(db)
    if role == "provider":
        return _many(service.get_past_bookings_for_provider(caller.id))
    return _many(service.get_past_bookings_for_requester(caller.id))


@router.get("/availability/{provider_id}")
def provider_availability(
    provider_id: int,
    start: datetime,
    end: datetime,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    return {"provider_id": provider_id, "available": BookingService(db).is_slot_available(provider_id, start, end)}


@router.get("/skill/{skill_id}")
def bookings_for_skill(
    skill_id: int,
    status: Optional[BookingStatus] = None,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    return _many(BookingService(db).get_bookings_by_skill(skill_id, status))


@router.get("/{booking_id}")
def get_booking(booking_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return _one(BookingService(db).get_booking(booking_id, caller))


@router.post("/{booking_id}/confirm")
def confirm_booking(booking_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return _one(BookingService(db).confirm_booking(booking_id, caller))


@router.post("/{booking_id}/fund")
def retry_escrow_lock(booking_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return _one(BookingService(db).retry_escrow_lock(booking_id, caller))


@router.post("/{booking_id}/start")
def start_booking(booking_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return _one(BookingService(db).start_booking(booking_id, caller))


@router.post("/{booking_id}/complete")
def complete_booking(booking_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return _one(BookingService(db).complete_booking(booking_id, caller))


@router.post("/{booking_id}/cancel")
def cancel_booking(
    booking_id: int,
    body: ReasonBody,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    return _one(BookingService(db).cancel_booking(booking_id, caller, body.reason))


@router.post("/{booking_id}/admin-cancel")
def admin_cancel_booking(
    booking_id: int,
    body: ReasonBody,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    return _one(BookingService(db).admin_cancel_booking(booking_id, caller, body.reason))


@router.post("/{booking_id}/dispute")
def raise_dispute(
    booking_id: int,
    body: ReasonBody,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    return _one(BookingService(db).raise_dispute(booking_id, caller, body.reason))
