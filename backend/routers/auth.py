"""Authentication: bearer JWT validation shared by all routers.

Tokens are issued by the identity provider in front of this service, signed
with JWT_SECRET. ``create_access_token`` mints compatible tokens for local
use and tests.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from config import settings

logger = logging.getLogger("Ledgerline.Auth")

router = APIRouter()

security = HTTPBearer()


def create_access_token(user_id: str, email: Optional[str] = None) -> str:
    payload = {
        "sub": user_id,
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRY_HOURS),
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def get_current_user_dep(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """Validate the JWT and return the caller's user id."""
    token = credentials.credentials
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return user_id


# ─── Endpoints ────────────────────────────────────────────────────────────────

@router.get("/me")
def get_me(user_id: str = Depends(get_current_user_dep)):
    """Echo the authenticated user id."""
    return {"user_id": user_id}
