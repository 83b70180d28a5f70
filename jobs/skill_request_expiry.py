"""
Skill Request Expiry Job

Hourly sweep that moves PENDING skill requests past their expiry to EXPIRED.
A request accepted, rejected or cancelled between scan and update is skipped.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from database import managed_session
from services.skill_request_service import SkillRequestService
from utils.datetime_helpers import Clock

logger = logging.getLogger(__name__)


def run_skill_request_expiry(
    session_factory=None,
    clock: Optional[Clock] = None,
    batch_size: Optional[int] = None,
) -> Dict[str, Any]:
    """Run one expiry sweep in its own session"""
    started = datetime.now()
    try:
        with managed_session(session_factory) as session:
            results = SkillRequestService(session, clock=clock).auto_expire_requests(batch_size=batch_size)
    except Exception as e:
        logger.error(f"❌ SKILL_REQUEST_EXPIRY: sweep failed - {e}", exc_info=True)
        return {"scanned": 0, "expired": 0, "skipped": 0, "expired_ids": [], "status": "error", "error": str(e)}

    results["status"] = "success"
    results["execution_time_ms"] = (datetime.now() - started).total_seconds() * 1000
    if results["expired"] == 0:
        logger.debug("✅ SKILL_REQUEST_EXPIRY: nothing to expire")
    return results


async def skill_request_expiry_job() -> Dict[str, Any]:
    """Scheduler entry point; keeps the blocking ORM work off the event loop"""
    return await asyncio.to_thread(run_skill_request_expiry)
