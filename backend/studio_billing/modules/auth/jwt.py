"""JWT bearer tokens carrying the caller's tenant.

Tokens are issued by the identity service; this module only decodes them.
The ``tid`` claim holds the tenant id that scopes every billing call.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from studio_billing.core.config import settings
from studio_billing.core.logging import bind_tenant


class TokenPayload(BaseModel):
    """JWT token payload structure."""

    sub: str  # User ID
    tid: str  # Tenant ID
    exp: datetime
    iat: datetime
    type: str
    jti: str


class CurrentPrincipal(BaseModel):
    """Authenticated caller."""

    user_id: uuid.UUID
    tenant_id: uuid.UUID


def create_access_token(
    user_id: uuid.UUID,
    tenant_id: uuid.UUID,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create an access token for a user acting within a tenant."""
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {
        "sub": str(user_id),
        "tid": str(tenant_id),
        "exp": expire,
        "iat": now,
        "type": "access",
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Optional[TokenPayload]:
    """Decode and validate a JWT token.

    Returns:
        TokenPayload | None: Decoded payload if valid, None otherwise
    """
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
        return TokenPayload(
            sub=payload["sub"],
            tid=payload["tid"],
            exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            type=payload["type"],
            jti=payload["jti"],
        )
    except (JWTError, KeyError):
        return None


def validate_token(token: str, expected_type: str = "access") -> Optional[TokenPayload]:
    payload = decode_token(token)
    if payload is None:
        return None
    if payload.type != expected_type:
        return None
    if payload.exp < datetime.now(timezone.utc):
        return None
    return payload


security = HTTPBearer()


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> CurrentPrincipal:
    """Resolve the authenticated caller from the bearer token.

    Raises:
        HTTPException: If the token is invalid, expired or lacks a tenant
    """
    payload = validate_token(credentials.credentials, "access")
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return CurrentPrincipal(
            user_id=uuid.UUID(payload.sub),
            tenant_id=uuid.UUID(payload.tid),
        )
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Malformed token subject",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_tenant_id(
    principal: CurrentPrincipal = Depends(get_current_principal),
) -> uuid.UUID:
    """Tenant id of the authenticated caller."""
    bind_tenant(principal.tenant_id)
    return principal.tenant_id
