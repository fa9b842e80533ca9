import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError

from entitlement_api.core import config
from entitlement_api.core.plan_catalog import Role

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


@dataclass
class AuthUser:
    """Identity established by the upstream auth service."""
    user_id: str
    role: Role
    email: Optional[str] = None
    firstname: Optional[str] = None
    lastname: Optional[str] = None
    phone: Optional[str] = None


def get_current_user(token: str = Depends(oauth2_scheme)) -> AuthUser:
    """Get the caller's identity from the JWT bearer token."""
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    user_id = payload.get("sub")
    role = payload.get("role")
    if not user_id or role not in {r.value for r in Role}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    return AuthUser(
        user_id=str(user_id),
        role=Role(role),
        email=payload.get("email"),
        firstname=payload.get("given_name"),
        lastname=payload.get("family_name"),
        phone=payload.get("phone"),
    )


def verify_cron_token(authorization: Optional[str] = Header(None)) -> None:
    """
    Shared-secret bearer check for the scheduled renewal batch.

    Rejects every call when AUTO_RENEW_SECRET_TOKEN is not configured.
    """
    expected = config.AUTO_RENEW_SECRET_TOKEN
    if not expected:
        logger.error("AUTO_RENEW_SECRET_TOKEN not configured - rejecting renewal call")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
