import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..errors import AuthenticationFailure
from ..models.models import User
from ..services.access_guard import Principal, principal_from_user
from ..services.permissions import can_perform


http_bearer = HTTPBearer(auto_error=False)


def _create_token(sub: str, ttl_seconds: int, extra: Optional[dict] = None) -> str:
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": sub,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    if extra:
        payload.update(extra)
    token = jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return token


def create_access_token(user_id, role: Optional[str] = None, ttl_seconds: Optional[int] = None) -> str:
    return _create_token(str(user_id), ttl_seconds or settings.jwt_ttl_seconds, extra={"role": role} if role else None)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthenticationFailure("token-expired")
    except jwt.InvalidTokenError:
        raise AuthenticationFailure("invalid-token")


def resolve_principal(db: Session, token: Optional[str]) -> Principal:
    """Bearer token -> active user of an active company -> Principal."""
    if not token:
        raise AuthenticationFailure("not-authenticated")
    payload = decode_token(token)
    try:
        user_uuid = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise AuthenticationFailure("invalid-subject")
    user = db.query(User).filter(User.id == user_uuid).first()
    if user is None or not user.is_active:
        raise AuthenticationFailure("user-not-active")
    if user.company_id is not None and (user.company is None or not user.company.is_active):
        raise AuthenticationFailure("company-not-active")
    return principal_from_user(user)


def get_current_principal(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    db: Session = Depends(get_db),
) -> Principal:
    try:
        return resolve_principal(db, creds.credentials if creds else None)
    except AuthenticationFailure as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "authentication_failure", "reason": e.reason},
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_permissions(*required_permissions: str):
    """
    Require at least one of the specified "resource:action" permissions (OR logic).
    Coarse route gate only; scope checks happen in the access guard.
    """
    def _dep(principal: Principal = Depends(get_current_principal)):
        has_any = any(
            can_perform(principal, *perm.split(":", 1))
            for perm in required_permissions
            if ":" in perm
        )
        if not has_any:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"error": "authorization_denied", "reason": "insufficient-permission"},
            )
        return principal

    return _dep
