# eligibility.py
from __future__ import annotations

import base64
import calendar
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

REASON_MISSING_HASH = "missing identity hash"
REASON_MISSING_CREATED_AT = "missing or unparseable account creation date"
REASON_TOO_NEW = "account too new"
REASON_ALREADY_RECEIVED = "already received"

DEFAULT_MIN_ACCOUNT_AGE_MONTHS = 6


@dataclass(frozen=True)
class Identity:
    """What the identity provider tells us about the caller (claims, unverified by us)."""
    user_hash: Optional[str] = None
    account_created_at: Optional[str] = None  # ISO-8601


# ---------------------------
# User hash
# ---------------------------
def generate_user_hash(salt: str, provider: str, user_id: str) -> str:
    # Irreversible, stable per (provider, user id); changes if the salt changes.
    combined = f"{provider}:{user_id}:{salt}"
    digest = hashlib.sha256(combined.encode("utf-8")).digest()
    return base64.b64encode(digest).decode()


# ---------------------------
# Time helpers
# ---------------------------
def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC. None if unparseable."""
    if not value or not value.strip():
        return None
    s = value.strip()
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def add_months(dt: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the length of the target month."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------
# Eligibility
# ---------------------------
def is_admin(user_hash: Optional[str], admin_user_hash: Optional[str]) -> bool:
    if not admin_user_hash or not admin_user_hash.strip() or not user_hash:
        return False
    return hmac.compare_digest(admin_user_hash.strip(), user_hash)


def check_eligibility(
    identity: Optional[Identity],
    has_received: Callable[[str], bool],
    admin_user_hash: Optional[str] = None,
    min_account_age_months: int = DEFAULT_MIN_ACCOUNT_AGE_MONTHS,
    now: Optional[datetime] = None,
) -> Tuple[bool, str]:
    """
    Decide whether `identity` may receive a payout. First failing rule wins:

    1. a user hash must be present
    2. the admin hash is always eligible
    3. the account creation date must parse
    4. the account must be at least `min_account_age_months` old
    5. the user must not have any ledger record yet

    Only rule 5 touches the ledger, through `has_received`.
    """
    user_hash = identity.user_hash if identity else None
    if not user_hash:
        return False, REASON_MISSING_HASH

    if is_admin(user_hash, admin_user_hash):
        return True, ""

    created_at = parse_timestamp(identity.account_created_at)
    if created_at is None:
        return False, REASON_MISSING_CREATED_AT

    now = now or utc_now()
    if created_at > add_months(now, -min_account_age_months):
        return False, REASON_TOO_NEW

    if has_received(user_hash):
        return False, REASON_ALREADY_RECEIVED

    return True, ""


# ---------------------------
# Signed session tokens
# (stand-in for the OAuth cookie; the provider integration lives elsewhere)
# ---------------------------
def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def hmac_sha256(key: bytes, msg: str) -> str:
    return b64url(hmac.new(key, msg.encode(), hashlib.sha256).digest())


def make_session_token(key: bytes, identity: Identity, ttl_sec: int, now_unix: Optional[int] = None) -> str:
    if not identity.user_hash:
        raise ValueError("identity has no user hash")
    exp = int(now_unix if now_unix is not None else time.time()) + int(ttl_sec)
    rnd = b64url(secrets.token_bytes(9))
    stamp = f"v1|uh={identity.user_hash}|created={identity.account_created_at or ''}|exp={exp}|rand={rnd}"
    return f"{stamp}|sig={hmac_sha256(key, stamp)}"


def parse_session_token(key: bytes, token: str, now_unix: Optional[int] = None) -> Identity:
    """Verify signature and expiry, return the carried identity. Raises ValueError."""
    if "|sig=" not in token:
        raise ValueError("missing sig")
    stamp, sig = token.rsplit("|sig=", 1)
    if not hmac.compare_digest(hmac_sha256(key, stamp).encode(), sig.encode()):
        raise ValueError("bad sig")

    parts = stamp.split("|")
    if not parts or parts[0] != "v1":
        raise ValueError("bad version")
    kv = {}
    for p in parts[1:]:
        if "=" not in p:
            continue
        k, v = p.split("=", 1)
        kv[k] = v
    for k in ("uh", "created", "exp"):
        if k not in kv:
            raise ValueError(f"missing {k}")

    now = int(now_unix if now_unix is not None else time.time())
    if int(kv["exp"]) < now:
        raise ValueError("expired")

    return Identity(user_hash=kv["uh"] or None, account_created_at=kv["created"] or None)
