import hmac
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Header
from sqlalchemy.orm import Session

from .config import settings
from .db import get_db
from .exceptions import (
    AuthenticationError,
    InvalidTokenError,
    TokenExpiredError,
    handle_ledger_exceptions,
    to_http_exception,
)
from .models import User
from .services.credits import CreditLedger


def create_access_token(sub: str, expires_minutes: int = 60) -> str:
    """Issue a token the way the identity provider does. Used by local tooling and tests."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "exp": now + timedelta(minutes=expires_minutes),
        "iat": now,
    }
    if settings.jwt_audience:
        payload["aud"] = settings.jwt_audience
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> str:
    """Return the external user id (``sub``) of a valid token."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options={"require": ["sub", "exp"], "verify_aud": bool(settings.jwt_audience)},
        )
    except jwt.ExpiredSignatureError:
        raise TokenExpiredError()
    except jwt.InvalidTokenError as e:
        raise InvalidTokenError(str(e))
    return str(payload["sub"])


def _bearer(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError("Authorization header must be 'Bearer <token>'")
    return token.strip()


def get_external_user_id(authorization: Optional[str] = Header(None)) -> str:
    try:
        return decode_access_token(_bearer(authorization))
    except AuthenticationError as e:
        raise to_http_exception(e)


@handle_ledger_exceptions
def get_current_user(
    external_id: str = Depends(get_external_user_id),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the caller to an internal user, provisioning it on first sight."""
    return CreditLedger(db).get_or_create_user(external_id)


def require_admin(authorization: Optional[str] = Header(None)) -> None:
    try:
        token = _bearer(authorization)
    except AuthenticationError as e:
        raise to_http_exception(e)
    if not hmac.compare_digest(token, settings.admin_api_key):
        raise to_http_exception(AuthenticationError("Invalid admin credentials"))
