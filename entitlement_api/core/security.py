from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt

from entitlement_api.core import config
from entitlement_api.core.plan_catalog import Role


def create_access_token(user_id: str, role: Role, email: Optional[str] = None, expires_delta: timedelta = None, **claims):
    """
    Mint a bearer token in the shape get_current_user reads.

    Used by ops scripts and tests; production tokens come from the auth service.
    """
    to_encode = {"sub": str(user_id), "role": Role(role).value, **claims}
    if email:
        to_encode["email"] = email
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)
