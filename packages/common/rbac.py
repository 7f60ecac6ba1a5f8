"""Role checks for FastAPI routes.

`require_roles("moderator")` guards the audit views: the caller must hold at
least one of the listed roles.
"""

from typing import Callable

from fastapi import Depends, HTTPException, status

from .auth import Principal, get_current_user


def require_roles(*allowed: str) -> Callable[[Principal], Principal]:
    """Build a dependency that returns the caller, or raises 403 if they hold none of `allowed`."""

    def check(principal: Principal = Depends(get_current_user)) -> Principal:
        if not principal.has_role(*allowed):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires one of: {', '.join(allowed)}",
            )
        return principal

    return check
