from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Callable

from beanie import PydanticObjectId as OID
from fastapi import Depends, Header
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError

from edumarket.config import get_settings
from edumarket.constants import AccountKind, Role
from edumarket.errors import AuthenticationError, AuthorizationError

settings = get_settings()

# Tokens are issued by the accounts service; tokenUrl only feeds the Swagger UI.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


@dataclass(frozen=True)
class AuthUser:
    """Identity extracted from a verified access token."""
    id: OID
    role: Role

    @property
    def kind(self) -> AccountKind:
        return self.role.account_kind


# ------------------------ JWT helpers ------------------------


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed JWT access token (short-lived - 1 hour by default)."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str, token_type: str = "access") -> dict:
    """Decode JWT token and verify its type."""
    try:
        payload = jwt.decode(
            token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError:
        raise AuthenticationError("Invalid or expired token")
    if payload.get("type") != token_type:
        raise AuthenticationError(f"Invalid token type. Expected {token_type}")
    return payload


def user_from_token(token: str | None) -> AuthUser:
    """Verify a bearer token and build the AuthUser it describes."""
    if not token:
        raise AuthenticationError("Authentication required")
    payload = decode_token(token, token_type="access")
    user_id = payload.get("sub")
    role = payload.get("role")
    if not user_id or role not in (Role.STUDENT.value, Role.TEACHER.value):
        raise AuthenticationError()
    try:
        return AuthUser(id=OID(user_id), role=Role(role))
    except Exception:
        raise AuthenticationError()


def bearer_from_header(value: str | None) -> str | None:
    if value and value.startswith("Bearer "):
        return value[len("Bearer "):].strip()
    return None


async def get_current_user(token: str | None = Depends(oauth2_scheme)) -> AuthUser:
    """Decode the access token of the request.
    Raises 401 if token is missing, invalid or expired.
    """
    return user_from_token(token)


# ------------------------ RBAC helpers ------------------------


def require_roles(allowed: List[Role]) -> Callable:
    """FastAPI dependency factory to enforce role-based access.
    Usage: Depends(require_roles([Role.STUDENT]))
    """

    async def checker(current_user: AuthUser = Depends(get_current_user)) -> AuthUser:
        if current_user.role not in allowed:
            raise AuthorizationError("Insufficient permissions")
        return current_user

    return checker


async def verify_internal_secret(x_internal_secret: str | None = Header(None)) -> None:
    """Guard for service-to-service routes."""
    if not x_internal_secret or x_internal_secret != settings.INTERNAL_API_SECRET:
        raise AuthenticationError("Invalid internal secret")
