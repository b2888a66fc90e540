"""Request-scoped caller identity passed explicitly into service calls"""

from dataclasses import dataclass
from typing import Optional

from models import UserRole


@dataclass(frozen=True)
class RequestContext:
    """Who is calling. The engine keeps no per-user state between requests."""

    user_id: Optional[int] = None
    role: UserRole = UserRole.USER
    via_admin_token: bool = False

    @property
    def is_admin(self) -> bool:
        return self.via_admin_token or self.role in (UserRole.ADMIN, UserRole.MODERATOR)

    @classmethod
    def system(cls) -> "RequestContext":
        """Context for scheduler jobs and payment callbacks"""
        return cls(user_id=None, role=UserRole.ADMIN, via_admin_token=True)
