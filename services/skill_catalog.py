"""Read-only view of the skill catalog mirror"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from models import Skill

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SkillSnapshot:
    id: int
    owner_id: int
    title: str
    hourly_rate: Decimal
    active: bool


class SkillCatalog:
    """Skill lookups used by the request gate and booking pricing"""

    def __init__(self, session: Session):
        self.session = session

    def get_skill(self, skill_id: int) -> Optional[SkillSnapshot]:
        skill = self.session.get(Skill, skill_id)
        if skill is None:
            return None
        return SkillSnapshot(
            id=skill.id,
            owner_id=skill.owner_id,
            title=skill.title,
            hourly_rate=Decimal(str(skill.hourly_rate)),
            active=bool(skill.is_active),
        )
