"""Who performed an operation on the queue."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Actor:
    id: Optional[int] = None
    name: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def from_user(cls, user, ip_address: Optional[str] = None) -> "Actor":
        """Build from an authenticated TokenData."""
        return cls(id=user.user_id, name=user.full_name, ip_address=ip_address)


SYSTEM = Actor(id=None, name="system")
