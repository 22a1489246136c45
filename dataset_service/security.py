from datetime import datetime, timedelta, timezone

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from .config import settings

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")
_password_hasher = PasswordHasher()


def hash_password(password: str) -> str:
    return _password_hasher.hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    try:
        return _password_hasher.verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        return False


def _credentials_error(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user_id(token: str = Depends(oauth2_scheme)) -> int:
    """Resolve the caller from a bearer token whose ``sub`` is the user id."""
    try:
        claims = jwt.decode(token, settings.auth.secret, algorithms=[settings.auth.algorithm])
    except JWTError:
        raise _credentials_error("invalid token")

    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject.isdigit():
        raise _credentials_error("invalid token payload")
    return int(subject)


def create_access_token(user_id: int, expires_minutes: int | None = None) -> str:
    issued_at = datetime.now(timezone.utc)
    expires_at = issued_at + timedelta(minutes=expires_minutes or settings.auth.expires_minutes)
    claims = {"sub": str(user_id), "iat": issued_at, "exp": expires_at}
    return jwt.encode(claims, settings.auth.secret, algorithm=settings.auth.algorithm)
