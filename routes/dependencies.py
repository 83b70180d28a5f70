"""Shared FastAPI dependencies for the SkillSwap routers"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import Header

from utils.caller_context import Caller, ROLE_USER
from utils.exception_handler import BadRequestError


def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_roles: Optional[str] = Header(None),
) -> Caller:
    """Identity forwarded by the upstream auth gateway"""
    if not x_user_id:
        raise BadRequestError("X-User-Id header is required")
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise BadRequestError("X-User-Id header must be an integer") from None

    roles = (x_user_roles or ROLE_USER).split(",")
    return Caller.of(user_id, roles)


def to_json(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Money as exact strings, datetimes as ISO-8601"""
    result = {}
    for key, value in payload.items():
        if isinstance(value, Decimal):
            result[key] = str(value)
        elif isinstance(value, datetime):
            result[key] = value.isoformat()
        else:
            result[key] = value
    return result
