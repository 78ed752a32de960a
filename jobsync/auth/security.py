import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..errors import PermissionDeniedError
from ..models.models import User, UserRole


http_bearer = HTTPBearer(auto_error=False)


def create_access_token(user_id: str, ttl_seconds: Optional[int] = None) -> str:
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": str(user_id),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds or settings.jwt_ttl_seconds)).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def user_id_from_token(token: Optional[str]) -> Optional[uuid.UUID]:
    """Subject of a token, or None when the token is missing or invalid (WebSocket handshakes)."""
    if not token:
        return None
    try:
        payload = decode_token(token)
        return uuid.UUID(str(payload.get("sub")))
    except (HTTPException, ValueError):
        return None


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    db: Session = Depends(get_db),
):
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(creds.credentials)
    user_id_raw = payload.get("sub")
    try:
        user_uuid = uuid.UUID(str(user_id_raw))
    except Exception:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")
    user = db.query(User).filter(User.id == user_uuid).first()
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not active")
    return user


def user_roles_in(db: Session, user_id: uuid.UUID, company_id: uuid.UUID) -> set:
    rows = (
        db.query(UserRole.role)
        .filter(UserRole.user_id == user_id, UserRole.company_id == company_id)
        .all()
    )
    return {r[0] for r in rows}


def ensure_company_member(db: Session, user_id: uuid.UUID, company_id: Optional[uuid.UUID]) -> None:
    if company_id is None or not user_roles_in(db, user_id, company_id):
        raise PermissionDeniedError("Actor is outside the company scope", entity_type="company", entity_id=company_id)


def ensure_company_admin(db: Session, user_id: uuid.UUID, company_id: Optional[uuid.UUID]) -> None:
    if company_id is None or "company" not in user_roles_in(db, user_id, company_id):
        raise PermissionDeniedError("Company admin role required", entity_type="company", entity_id=company_id)
