from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from cabinet_lending import config


TOKEN_BYTES = 32


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_hash: str
    expires_at: datetime


def hash_token(token: str) -> str:
    return hashlib.sha256((token or "").encode("utf-8")).hexdigest()


def tokens_match(token: str, stored_hash: str | None) -> bool:
    if not stored_hash:
        return False
    return hmac.compare_digest(hash_token(token), stored_hash)


def token_expiry(now: datetime | None = None, minutes: int | None = None) -> datetime:
    ttl = config.TOKEN_TTL_MINUTES if minutes is None else minutes
    return (now or datetime.now()) + timedelta(minutes=ttl)


def is_token_expired(expires_at: datetime | None, now: datetime | None = None) -> bool:
    if expires_at is None:
        return True
    return (now or datetime.now()) > expires_at


def issue_token(now: datetime | None = None) -> IssuedToken:
    """Create a URL-safe bearer token with its stored verifier and expiry.

    The plain token goes to the requester; lookups only ever use the hash.
    """
    token = secrets.token_urlsafe(TOKEN_BYTES)
    return IssuedToken(token=token, token_hash=hash_token(token), expires_at=token_expiry(now))
