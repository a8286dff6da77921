from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..config import settings
from ..services.permissions import ROLES, Actor


http_bearer = HTTPBearer(auto_error=False)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def _optional_int(payload: dict, claim: str) -> Optional[int]:
    value = payload.get(claim)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid {claim} claim")


def actor_from_claims(payload: dict) -> Actor:
    """Build the Actor from identity-provider claims, which are trusted as issued."""
    subject = payload.get("sub")
    role = payload.get("role")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")
    if role not in ROLES:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid role")
    try:
        firm_ids = frozenset(int(f) for f in payload.get("firm_ids") or [])
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid firm_ids claim")
    return Actor(
        id=str(subject),
        role=role,
        firm_ids=firm_ids,
        crew_id=_optional_int(payload, "crew_id"),
        crew_member_id=_optional_int(payload, "crew_member_id"),
    )


def get_current_actor(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> Actor:
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return actor_from_claims(decode_token(creds.credentials))


def require_roles(*required_roles: str):
    def _dep(actor: Actor = Depends(get_current_actor)):
        if actor.role not in required_roles:
            raise HTTPException(status_code=403, detail="Forbidden")
        return actor

    return _dep
