#!/usr/bin/env python3
# issue_session.py
#
# Operator tool: mint a signed session token for an identity that was verified
# out of band (the OAuth sign-in normally does this).
#
#   python issue_session.py --provider GitHub --user-id 12345 --created-at 2015-04-01T10:00:00Z
#
# Uses FAUCET_SECRET_SALT / SESSION_HMAC_KEY / SESSION_TTL_SEC from env or backend/.env.
from __future__ import annotations

import argparse
import json
import sys
from typing import List, Optional

try:
    from .eligibility import Identity, generate_user_hash, make_session_token, parse_timestamp  # type: ignore
    from .faucet_config import load_settings  # type: ignore
except ImportError:
    from eligibility import Identity, generate_user_hash, make_session_token, parse_timestamp  # type: ignore
    from faucet_config import load_settings  # type: ignore


def main(argv: Optional[List[str]] = None) -> int:
    settings = load_settings()

    ap = argparse.ArgumentParser(description="Issue a faucet session token")
    ap.add_argument("--provider", required=True, help="identity provider name, e.g. GitHub or Discord")
    ap.add_argument("--user-id", required=True, help="provider-side user id")
    ap.add_argument("--created-at", required=True, help="account creation time (ISO-8601)")
    ap.add_argument("--ttl", type=int, default=settings.session_ttl_sec, help="token lifetime in seconds")
    args = ap.parse_args(argv)

    if not settings.secret_salt:
        print("[fatal] FAUCET_SECRET_SALT is not set", file=sys.stderr)
        return 2

    created = parse_timestamp(args.created_at)
    if created is None:
        print(f"[fatal] cannot parse --created-at '{args.created_at}'", file=sys.stderr)
        return 2

    identity = Identity(
        user_hash=generate_user_hash(settings.secret_salt, args.provider, args.user_id),
        account_created_at=created.isoformat(),
    )
    token = make_session_token(settings.session_hmac_key, identity, args.ttl)
    print(json.dumps({
        "user_hash": identity.user_hash,
        "account_created_at": identity.account_created_at,
        "token": token,
    }, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
