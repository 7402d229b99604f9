"""Signed shop session tokens for the embedded admin API."""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "bcs_shop_session"

_SHOP_DOMAIN_PATTERN = re.compile(r"^[a-z0-9][a-z0-9\-]*\.myshopify\.com$")


def normalize_shop_domain(value: Any) -> Optional[str]:
    """Lowercase a shop host and strip any scheme or path; None if it is not a myshopify domain."""
    if not isinstance(value, str):
        return None
    host = value.strip().lower()
    host = re.sub(r"^https?://", "", host).split("/", 1)[0]
    return host if _SHOP_DOMAIN_PATTERN.match(host) else None


def create_session_token(
    shop_domain: str,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Issue a token binding API calls to one installed shop."""
    shop = normalize_shop_domain(shop_domain)
    if not shop:
        raise ValueError(f"Invalid shop domain: {shop_domain!r}")

    issued_at = datetime.now(timezone.utc)
    lifetime = timedelta(hours=max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    expires_at = int((issued_at + lifetime).timestamp())
    token = jwt.encode(
        {
            "sub": shop,
            "dest": f"https://{shop}",
            "type": SESSION_TOKEN_TYPE,
            "iat": int(issued_at.timestamp()),
            "exp": expires_at,
        },
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    return {"token": token, "shop": shop, "expires_at": expires_at}


def decode_session_token(token: str) -> Dict[str, Any]:
    """Verify a shop session token and return its claims with ``shop`` resolved."""
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if claims.get("type") != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")

    shop = normalize_shop_domain(claims.get("sub"))
    if not shop:
        raise ValueError("Session token missing shop domain.")
    dest = claims.get("dest")
    if dest and normalize_shop_domain(dest) != shop:
        raise ValueError("Session token destination does not match its shop.")

    claims["shop"] = shop
    return claims
