"""Verification of Supabase access tokens."""
from __future__ import annotations

from dataclasses import dataclass

import jwt


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str | None = None


def decode_access_token(token: str, secret: str, audience: str) -> Identity:
    """Return the identity carried by a Supabase JWT.

    Raises ``jwt.PyJWTError`` for expired, tampered or malformed tokens.
    """
    payload = jwt.decode(
        token,
        secret,
        algorithms=["HS256"],
        audience=audience,
        options={"verify_exp": True, "require": ["sub"]},
    )
    sub = str(payload.get("sub") or "").strip()
    if not sub:
        raise jwt.InvalidTokenError("Token has no subject")
    return Identity(user_id=sub, email=payload.get("email"))


def bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", 1)[1].strip()
    return token or None


__all__ = ["Identity", "decode_access_token", "bearer_token"]
