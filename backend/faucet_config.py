# faucet_config.py
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

from dotenv import load_dotenv

try:
    from .faucet_errors import InvalidArgument  # type: ignore
except ImportError:
    from faucet_errors import InvalidArgument  # type: ignore

BACKEND_DIR = Path(__file__).resolve().parent

# Payout bounds accepted from configuration (satoshis)
MIN_CONFIGURABLE_PAYOUT = 10_000


def _env_bool(v: Optional[str], default: bool) -> bool:
    if v is None or not v.strip():
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class FaucetSettings:
    db_path: str = "faucet.db"
    secret_salt: str = ""
    session_hmac_key: bytes = b"change-me-session-key"
    session_ttl_sec: int = 86400

    network: str = "testnet"
    rpc_url: str = "http://127.0.0.1:48332/"
    rpc_user: str = ""
    rpc_password: str = ""
    rpc_timeout_sec: float = 30.0
    rpc_verify_tls: bool = True

    faucet_address: str = ""
    faucet_private_key: str = ""

    initial_payout: int = 10_000_000
    minimum_payout: int = 1_000_000
    decay_rate: float = 0.001
    fee_rate_sat_per_vb: float = 1.0
    op_return_data: str = ""
    # must be switched off explicitly before anything is broadcast
    dry_run: bool = True

    admin_user_hash: Optional[str] = None
    min_account_age_months: int = 6
    balance_cache_ttl_min: float = 5.0

    cors_origins: List[str] = field(default_factory=lambda: ["http://127.0.0.1:8080", "http://localhost:8080"])

    @property
    def op_return_bytes(self) -> Optional[bytes]:
        return self.op_return_data.encode("utf-8") if self.op_return_data else None

    @property
    def balance_cache_ttl_sec(self) -> float:
        return self.balance_cache_ttl_min * 60.0

    def validate(self) -> "FaucetSettings":
        if self.initial_payout < MIN_CONFIGURABLE_PAYOUT:
            raise InvalidArgument(f"INITIAL_PAYOUT must be >= {MIN_CONFIGURABLE_PAYOUT}")
        if self.minimum_payout < MIN_CONFIGURABLE_PAYOUT:
            raise InvalidArgument(f"MINIMUM_PAYOUT must be >= {MIN_CONFIGURABLE_PAYOUT}")
        if self.minimum_payout > self.initial_payout:
            raise InvalidArgument("MINIMUM_PAYOUT must not exceed INITIAL_PAYOUT")
        if not (0.0 <= self.decay_rate <= 1.0):
            raise InvalidArgument("DECAY_RATE must be within [0, 1]")
        if self.fee_rate_sat_per_vb < 0:
            raise InvalidArgument("FEE_RATE_SAT_PER_VB must be >= 0")
        if self.min_account_age_months < 0:
            raise InvalidArgument("MIN_ACCOUNT_AGE_MONTHS must be >= 0")
        if self.balance_cache_ttl_min < 0:
            raise InvalidArgument("BALANCE_CACHE_TTL_MIN must be >= 0")
        if self.session_ttl_sec <= 0:
            raise InvalidArgument("SESSION_TTL_SEC must be > 0")
        if len(self.op_return_data.encode("utf-8")) > 80:
            raise InvalidArgument("OP_RETURN_DATA must be at most 80 bytes")
        return self


def settings_from_env(env: Mapping[str, str]) -> FaucetSettings:
    def get(key: str, default: str = "") -> str:
        return (env.get(key) or default).strip()

    try:
        origins = [o.strip() for o in get("CORS_ORIGINS", "http://127.0.0.1:8080,http://localhost:8080").split(",")]
        settings = FaucetSettings(
            db_path=get("FAUCET_DB", "faucet.db"),
            secret_salt=get("FAUCET_SECRET_SALT"),
            session_hmac_key=get("SESSION_HMAC_KEY", "change-me-session-key").encode(),
            session_ttl_sec=int(get("SESSION_TTL_SEC", "86400")),
            network=get("FAUCET_NETWORK", "testnet").lower(),
            rpc_url=get("RPC_URL", "http://127.0.0.1:48332/"),
            rpc_user=get("RPC_USER"),
            rpc_password=get("RPC_PASSWORD"),
            rpc_timeout_sec=float(get("RPC_TIMEOUT_SEC", "30")),
            rpc_verify_tls=_env_bool(env.get("RPC_VERIFY_TLS"), True),
            faucet_address=get("FAUCET_ADDRESS"),
            faucet_private_key=get("FAUCET_PRIVATE_KEY"),
            initial_payout=int(get("INITIAL_PAYOUT", "10000000")),
            minimum_payout=int(get("MINIMUM_PAYOUT", "1000000")),
            decay_rate=float(get("DECAY_RATE", "0.001")),
            fee_rate_sat_per_vb=float(get("FEE_RATE_SAT_PER_VB", "1.0")),
            op_return_data=env.get("OP_RETURN_DATA") or "",
            dry_run=_env_bool(env.get("DRY_RUN"), True),
            admin_user_hash=get("ADMIN_USER_HASH") or None,
            min_account_age_months=int(get("MIN_ACCOUNT_AGE_MONTHS", "6")),
            balance_cache_ttl_min=float(get("BALANCE_CACHE_TTL_MIN", "5")),
            cors_origins=[o for o in origins if o],
        )
    except ValueError as e:
        raise InvalidArgument(f"bad configuration value: {e}") from e

    return settings.validate()


def load_settings(env_file: Optional[Path] = None) -> FaucetSettings:
    """Load backend/.env (if present) into the environment, then read settings from it."""
    # In production env vars usually come from systemd; a missing .env is a no-op.
    load_dotenv(env_file or (BACKEND_DIR / ".env"))
    return settings_from_env(os.environ)
