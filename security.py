from datetime import datetime, timezone, timedelta
from functools import lru_cache
from typing import Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError
from passlib.context import CryptContext

from database import get_by_id
from deps import Services, get_services
from errors import Forbidden, Unauthorized

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)


@lru_cache()
def _pwd_context(rounds: int) -> CryptContext:
    return CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)


def hash_password(password: str, rounds: int = 12) -> str:
    return _pwd_context(rounds).hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return _pwd_context(12).verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        return False


def create_access_token(data: dict, settings, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_token(token: str, settings) -> dict:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        raise Unauthorized("Invalid or expired token")
    if not payload.get("sub"):
        raise Unauthorized("Invalid or expired token")
    return payload


def user_from_token(token: Optional[str], services: Services) -> dict:
    if not token:
        raise Unauthorized("Authentication required")
    payload = decode_token(token, services.settings)
    user = get_by_id(services.db, "user", payload["sub"])
    if not user:
        raise Unauthorized("User not found")
    if not user.get("isActive", True):
        raise Unauthorized("Account is deactivated")
    return user


# Dependency: get current user from token

def get_current_user(token: Optional[str] = Depends(oauth2_scheme),
                     services: Services = Depends(get_services)):
    return user_from_token(token, services)


def get_optional_user(token: Optional[str] = Depends(oauth2_scheme),
                      services: Services = Depends(get_services)):
    if not token:
        return None
    try:
        return user_from_token(token, services)
    except Unauthorized:
        return None


def require_roles(*roles):
    def wrapper(user=Depends(get_current_user)):
        if user.get("role") not in roles:
            raise Forbidden("Forbidden: insufficient role")
        return user
    return wrapper
