"""
auth/tokens.py -- Session token, bearer JWT, and cookie utilities.

Security design decisions:
  Session ids: secrets.token_urlsafe(32) gives 256 bits of entropy. The raw
       value lives only in the client's cookie. The sessions table stores
       HMAC-SHA256(SECRET_KEY, raw) so a leaked database does not hand out
       live sessions, and lookup by hash stays O(1).

  JWT: python-jose with HS256 for API clients that cannot carry a cookie
       (POST /api/token). Tokens carry user_id, username, role and expiry.
       Verification returns None on any failure -- the access gate turns
       that into a 401. The user row is always re-read, so a deactivated
       account loses access before its token expires.

Layer rule: no imports from api/. Settings are passed in, never read here.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import JWTError, jwt

if TYPE_CHECKING:
    from core.config import Settings

_ALGORITHM = "HS256"


# ---------------------------------------------------------------------------
# Session ids
# ---------------------------------------------------------------------------


def generate_session_token() -> str:
    return secrets.token_urlsafe(32)


def hash_session_token(raw_token: str, secret_key: str) -> str:
    """Return HMAC-SHA256(secret_key, raw_token) as a hex string."""
    return hmac.new(secret_key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user_id: int, username: str, role: str, secret_key: str, expire_seconds: int) -> str:
    """Encode a signed JWT with user identity and expiry."""
    expire = datetime.now(timezone.utc) + timedelta(seconds=expire_seconds)
    payload = {
        "sub": username,
        "user_id": user_id,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(payload, secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str, secret_key: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if not isinstance(payload.get("user_id"), int):
        return None
    return payload


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, settings: Settings, max_age: int | None = None) -> None:
    """Write the opaque session id as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: HTTPS only when SECURE_COOKIES is on (default outside DEBUG).
    max_age: the sliding session window. A fresh session gets the full
             SESSION_TTL_SECONDS; a resumed one passes its remaining time so
             the cookie expires with the server-side row.
    """
    response.set_cookie(
        settings.session_cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=bool(settings.secure_cookies),
        max_age=settings.session_ttl_seconds if max_age is None else max_age,
    )


def clear_session_cookie(response, settings: Settings) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        httponly=True,
        samesite="lax",
        secure=bool(settings.secure_cookies),
    )
