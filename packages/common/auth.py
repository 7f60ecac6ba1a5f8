"""Bearer-token authentication for the audit endpoints.

- `Principal`: the caller behind a validated token (subject, school, roles)
- `verify_jwt`: RS256 signature, expiry and (optional) audience checks
- `get_current_user`: FastAPI dependency reading `Authorization: Bearer ...`

Chat and assistant routes are open to the UI; only moderator views use this.
"""

from typing import Any

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from .config import get_settings
from .errors import MisconfigurationError

security = HTTPBearer(auto_error=False)


class Principal(BaseModel):
    """Caller identity taken from token claims."""
    sub: str
    email: str | None = None
    school_id: str | None = None
    roles: list[str] = []

    def has_role(self, *roles: str) -> bool:
        return bool(set(roles) & set(self.roles))


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def verify_jwt(token: str) -> Principal:
    """Validate `token` against the configured public key and return its principal.

    Audience is enforced only when `OIDC_AUDIENCE` is set.

    Raises:
        MisconfigurationError: no `JWT_PUBLIC_KEY` configured (500, not 401).
        HTTPException: 401 on a bad signature, expiry or audience.
    """
    s = get_settings()
    if not s.JWT_PUBLIC_KEY:
        raise MisconfigurationError("JWT_PUBLIC_KEY is not configured")
    try:
        claims: dict[str, Any] = jwt.decode(
            token,
            s.JWT_PUBLIC_KEY,
            algorithms=["RS256"],
            audience=s.OIDC_AUDIENCE or None,
            options={"require": ["exp", "sub"], "verify_aud": bool(s.OIDC_AUDIENCE)},
        )
    except jwt.PyJWTError as e:
        raise _unauthorized("Invalid token") from e
    return Principal(
        sub=claims["sub"],
        email=claims.get("email"),
        school_id=claims.get("school_id"),
        roles=list(claims.get("roles") or []),
    )


def get_current_user(creds: HTTPAuthorizationCredentials = Depends(security)) -> Principal:
    """Resolve the caller from the bearer token; 401 when it is missing or invalid."""
    if not creds:
        raise _unauthorized("Missing credentials")
    return verify_jwt(creds.credentials)
