"""Authenticated caller identity passed explicitly into every core operation"""

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable

ROLE_USER = "user"
ROLE_ADMIN = "admin"


@dataclass(frozen=True)
class Caller:
    """Identity resolved by the external identity provider"""

    id: int
    roles: FrozenSet[str] = field(default_factory=lambda: frozenset({ROLE_USER}))

    @classmethod
    def of(cls, user_id: int, roles: Iterable[str] = (ROLE_USER,)) -> "Caller":
        return cls(id=int(user_id), roles=frozenset(r.strip().lower() for r in roles if r.strip()))

    @property
    def is_admin(self) -> bool:
        return ROLE_ADMIN in self.roles
