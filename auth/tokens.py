"""
auth/tokens.py -- Session and setup token utilities.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       the account id (sub), role, a token type (typ) and expiry. Verification
       returns None on any failure -- tampering, expiry, wrong type and
       missing claims are indistinguishable to the caller, and the
       dependency layer turns every one of them into the same 401.

  Token types:
       access     -- session token. The only token protected routes accept.
       mfa_setup  -- short-lived token handed out at registration, or when a
                     verified password meets an account without active MFA.
                     It unlocks the MFA enrolment endpoints and nothing else.

  The role claim is informational for clients. Authorization decisions
  re-read the role from the store on every request (auth/dependencies.py),
  so a demoted or deactivated account loses access immediately.

  SECRET_KEY: sourced from core.config.get_settings(), validated at startup
  (>= 32 chars, required outside DEBUG).

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.models import Role
from core.config import get_settings

logger = logging.getLogger("taskguard.auth.tokens")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"
_ACCESS = "access"
_MFA_SETUP = "mfa_setup"


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def _encode(account_id: str, token_type: str, duration: int, issued_at: datetime | None, **claims) -> str:
    issued = issued_at or datetime.now(timezone.utc)
    payload = {
        "sub": account_id,
        "typ": token_type,
        "iat": issued,
        "exp": issued + timedelta(seconds=duration),
        **claims,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def _decode(token: str, token_type: str) -> dict | None:
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("typ") != token_type or not payload.get("sub"):
        return None
    return payload


def create_access_token(
    account_id: str,
    role: Role | str,
    expire_seconds: int = 0,
    issued_at: datetime | None = None,
) -> str:
    """Encode a signed session token for an account.

    Args:
        account_id:     Account UUID, stored as the sub claim.
        role:           Role at issue time.
        expire_seconds: Session duration. If 0 (default), uses
                        Settings.token_expire_seconds.
        issued_at:      Issue time; defaults to now. Tests pass a past time
                        to mint an already-expired token.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    return _encode(account_id, _ACCESS, duration, issued_at, role=Role(role).value)


def decode_access_token(token: str) -> dict | None:
    """Verify a session token. Returns {"sub", "role", ...} or None on any failure.

    Returning None (rather than raising) keeps the caller simple: any invalid
    token is treated as unauthenticated.
    """
    payload = _decode(token, _ACCESS)
    if payload is None or payload.get("role") not in {r.value for r in Role}:
        return None
    return payload


def verify_access_token(token: str) -> tuple[str, Role] | None:
    """Convenience wrapper returning (account_id, role) or None."""
    payload = decode_access_token(token)
    if payload is None:
        return None
    return payload["sub"], Role(payload["role"])


def create_setup_token(account_id: str, issued_at: datetime | None = None) -> str:
    """Encode a short-lived token that only unlocks MFA enrolment."""
    return _encode(account_id, _MFA_SETUP, _settings.setup_token_expire_seconds, issued_at)


def decode_setup_token(token: str) -> str | None:
    """Return the account id carried by a valid setup token, or None."""
    payload = _decode(token, _MFA_SETUP)
    return payload["sub"] if payload else None


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the JWT expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )
