"""Role checks for the offline sync API.

Tokens are issued by the POS auth service. A terminal token carries a
``device_id`` claim and may only queue, sync and cancel sessions for that device; operator
tokens without the claim may act on any device.
"""

from enum import Enum
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status

from possync.core.security import decode_access_token


class UserRole(str, Enum):
    OWNER = "owner"
    MANAGER = "manager"
    STAFF = "staff"


# Conflict resolution, retry resets and purges need manager or above
ROLE_LEVEL = {
    UserRole.STAFF: 1,
    UserRole.MANAGER: 2,
    UserRole.OWNER: 3,
}


class TokenData:
    """Claims of an authenticated caller.

    Attributes:
        user_id: Operator id in the auth service.
        email: Operator email.
        role: Operator role.
        full_name: Display name recorded on audit entries and sync sessions.
        device_id: Terminal the token is bound to, if any.
    """

    def __init__(
        self,
        user_id: int,
        email: str,
        role: UserRole,
        full_name: str = "",
        device_id: Optional[str] = None,
    ):
        self.user_id = user_id
        self.id = user_id
        self.email = email
        self.role = role
        self.full_name = full_name or email.split("@")[0]
        self.device_id = device_id

    def can_act_for(self, device_id: str) -> bool:
        return self.device_id is None or self.device_id == device_id


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(request: Request) -> TokenData:
    auth_header = request.headers.get("Authorization", "")
    token = auth_header[7:] if auth_header.startswith("Bearer ") else ""
    payload = decode_access_token(token) if token else None
    if payload is None:
        raise _unauthorized("Not authenticated")

    missing = [claim for claim in ("sub", "email", "role") if not payload.get(claim)]
    if missing:
        raise _unauthorized(f"Token is missing claims: {', '.join(missing)}")

    try:
        role = UserRole(payload["role"])
        user_id = int(payload["sub"])
    except ValueError:
        raise _unauthorized("Invalid token claims")

    return TokenData(
        user_id=user_id,
        email=payload["email"],
        role=role,
        full_name=payload.get("full_name") or "",
        device_id=payload.get("device_id"),
    )


def require_role(minimum_role: UserRole):
    async def role_checker(
        current_user: Annotated[TokenData, Depends(get_current_user)]
    ) -> TokenData:
        if ROLE_LEVEL.get(current_user.role, 0) < ROLE_LEVEL[minimum_role]:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role {minimum_role.value} or higher",
            )
        return current_user

    return role_checker


def ensure_device_access(user: TokenData, device_id: str) -> None:
    """Raise 403 when a terminal token is used for another device's queue."""
    if not user.can_act_for(device_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Token is bound to device {user.device_id}",
        )


RequireManager = Annotated[TokenData, Depends(require_role(UserRole.MANAGER))]
CurrentUser = Annotated[TokenData, Depends(get_current_user)]
