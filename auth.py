"""
Request identity

Tokens are verified by the upstream auth gateway, which forwards the caller
as X-User-Id / X-User-Role headers. This service trusts those headers.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException
from pydantic import BaseModel

from errors import AuthorizationError

ROLES = ("consumer", "farmer", "admin")


class CurrentUser(BaseModel):
    id: str
    role: str


def get_current_user(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> CurrentUser:
    if not x_user_id or not x_user_role:
        raise HTTPException(status_code=401, detail="No identity, authorization denied")
    role = x_user_role.lower()
    if role not in ROLES:
        raise HTTPException(status_code=401, detail=f"Unknown role: {x_user_role}")
    return CurrentUser(id=x_user_id, role=role)


def require_role(role: str):
    def dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role != role:
            raise AuthorizationError(f"Access denied. {role.capitalize()} account required.")
        return user
    return dependency


require_consumer = require_role("consumer")
require_farmer = require_role("farmer")
