"""
Shared API dependencies: the engine instance and the acting user
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Header

from ..engine import LendingEngine
from ..errors import ValidationError


_engine: Optional[LendingEngine] = None


def get_engine() -> LendingEngine:
    """Engine built from the global configuration on first use"""
    global _engine
    if _engine is None:
        _engine = LendingEngine()
    return _engine


@dataclass
class ActingUser:
    """
    Staff user on whose behalf a request runs. Identity is established by
    the authentication layer in front of this API and forwarded as headers.
    """
    user_id: Optional[str]
    role: Optional[str]
    branch_id: Optional[str]

    def require_id(self) -> str:
        if not self.user_id:
            raise ValidationError("X-User-Id header is required for this operation")
        return self.user_id


def get_acting_user(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_branch_id: Optional[str] = Header(None)
) -> ActingUser:
    return ActingUser(user_id=x_user_id, role=x_user_role, branch_id=x_branch_id)
