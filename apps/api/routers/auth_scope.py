"""Shop scoping for authenticated API requests."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import decode_session_token


shop_session_scheme = HTTPBearer(auto_error=False, description="Shop session token")


@dataclass(frozen=True)
class AuthContext:
    shop_domain: str
    expires_at: Optional[int] = None


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(shop_session_scheme),
) -> AuthContext:
    """Every job and billing route runs as exactly one shop, taken from the token."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(shop_domain=claims["shop"], expires_at=claims.get("exp"))
