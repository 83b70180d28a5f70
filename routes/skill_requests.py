"""Skill request routes: send, accept, reject, cancel, complete"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from database import get_db
from routes.dependencies import get_caller, to_json
from services.projections import skill_request_projection
from services.skill_request_service import SkillRequestService
from utils.caller_context import Caller

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/skill-requests", tags=["skill-requests"])


class SkillRequestCreate(BaseModel):
    skill_id: int
    message: Optional[str] = Field(None, max_length=500)


@router.post("", status_code=201)
def send_request(
    body: SkillRequestCreate,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    request = SkillRequestService(db).send_request(caller, body.skill_id, body.message)
    return to_json(skill_request_projection(request))


@router.get("/sent")
def my_sent_requests(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return [to_json(skill_request_projection(r)) for r in SkillRequestService(db).my_sent_requests(caller)]


@router.get("/received")
def my_received_requests(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return [to_json(skill_request_projection(r)) for r in SkillRequestService(db).my_received_requests(caller)]


@router.get("/{request_id}")
def get_request(request_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return to_json(skill_request_projection(SkillRequestService(db).get_request(caller, request_id)))


@router.post("/{request_id}/accept")
def accept_request(request_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return to_json(skill_request_projection(SkillRequestService(db).accept_request(caller, request_id)))


@router.post("/{request_id}/reject")
def reject_request(request_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return to_json(skill_request_projection(SkillRequestService(db).reject_request(caller, request_id)))


@router.post("/{request_id}/cancel")
def cancel_request(request_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return to_json(skill_request_projection(SkillRequestService(db).cancel_request(caller, request_id)))


@router.post("/{request_id}/complete")
def mark_completed(request_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return to_json(skill_request_projection(SkillRequestService(db).mark_completed(caller, request_id)))
