from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

# Local imports (support running as `app:app` and as `backend.app:app`)
try:
    from .eligibility import Identity, parse_session_token  # type: ignore
    from .faucet import Faucet  # type: ignore
    from .faucet_config import FaucetSettings, load_settings  # type: ignore
    from .faucet_errors import (  # type: ignore
        BroadcastFailed,
        DisbursementCancelled,
        FaucetError,
        FinalizationFailed,
        InsufficientFunds,
        InvalidAddress,
        InvalidArgument,
        LedgerError,
        NodeRpcError,
        NotEligible,
    )
    from .faucet_models import (  # type: ignore
        BalanceOut,
        ConfigOut,
        DisburseIn,
        DisburseOut,
        EligibilityOut,
        HistoryEntryOut,
        HistoryOut,
        WhoAmIOut,
    )
    from .ledger import ReservationLedger  # type: ignore
    from .ledger_store import LedgerStore  # type: ignore
    from .node_rpc import NodeRpcClient  # type: ignore
    from .payout_utils import PayoutCalculator  # type: ignore
    from .tx_builder import TransactionBuilder, select_network  # type: ignore
    from .wallet import DryRunSubmitter, FaucetWallet, RpcSubmitter  # type: ignore
except ImportError:
    from eligibility import Identity, parse_session_token  # type: ignore
    from faucet import Faucet  # type: ignore
    from faucet_config import FaucetSettings, load_settings  # type: ignore
    from faucet_errors import (  # type: ignore
        BroadcastFailed,
        DisbursementCancelled,
        FaucetError,
        FinalizationFailed,
        InsufficientFunds,
        InvalidAddress,
        InvalidArgument,
        LedgerError,
        NodeRpcError,
        NotEligible,
    )
    from faucet_models import (  # type: ignore
        BalanceOut,
        ConfigOut,
        DisburseIn,
        DisburseOut,
        EligibilityOut,
        HistoryEntryOut,
        HistoryOut,
        WhoAmIOut,
    )
    from ledger import ReservationLedger  # type: ignore
    from ledger_store import LedgerStore  # type: ignore
    from node_rpc import NodeRpcClient  # type: ignore
    from payout_utils import PayoutCalculator  # type: ignore
    from tx_builder import TransactionBuilder, select_network  # type: ignore
    from wallet import DryRunSubmitter, FaucetWallet, RpcSubmitter  # type: ignore

logger = logging.getLogger("faucet.app")

GENERIC_FAILURE = "Something went wrong. Please try again later."


# ---------------------------
# Wiring
# ---------------------------
def build_faucet(settings: FaucetSettings) -> Faucet:
    """Assemble the disbursement engine from settings. Raises InvalidArgument on bad config."""
    if not settings.faucet_address:
        raise InvalidArgument("FAUCET_ADDRESS is required")
    if not settings.faucet_private_key:
        raise InvalidArgument("FAUCET_PRIVATE_KEY is required")

    select_network(settings.network)

    store = LedgerStore(settings.db_path)
    store.init_db()
    calculator = PayoutCalculator(settings.initial_payout, settings.minimum_payout, settings.decay_rate)
    ledger = ReservationLedger(store, calculator)

    rpc = NodeRpcClient(
        settings.rpc_url,
        settings.rpc_user,
        settings.rpc_password,
        timeout=settings.rpc_timeout_sec,
        verify_tls=settings.rpc_verify_tls,
    )
    builder = TransactionBuilder(
        settings.faucet_private_key,
        settings.faucet_address,
        fee_rate=settings.fee_rate_sat_per_vb,
        data_payload=settings.op_return_bytes,
    )
    submitter = DryRunSubmitter() if settings.dry_run else RpcSubmitter(rpc)
    wallet = FaucetWallet(rpc, builder, submitter, balance_ttl_sec=settings.balance_cache_ttl_sec)

    if settings.dry_run:
        logger.warning("DRY_RUN is enabled: transactions are built and logged, never broadcast")

    return Faucet(
        ledger,
        wallet,
        admin_user_hash=settings.admin_user_hash,
        min_account_age_months=settings.min_account_age_months,
    )


def http_error_for(e: FaucetError) -> HTTPException:
    if isinstance(e, NotEligible):
        return HTTPException(status_code=403, detail=f"not eligible: {e.reason}")
    if isinstance(e, (InvalidAddress, InvalidArgument)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, FinalizationFailed):
        # the payout may be live; hand the txid back for reconciliation
        return HTTPException(status_code=500, detail=f"payout sent but not recorded (txid={e.txid})")
    if isinstance(e, DisbursementCancelled):
        return HTTPException(status_code=409, detail="request cancelled")
    if isinstance(e, (InsufficientFunds, BroadcastFailed, LedgerError, NodeRpcError)):
        return HTTPException(status_code=503, detail=GENERIC_FAILURE)
    return HTTPException(status_code=500, detail=GENERIC_FAILURE)


# ---------------------------
# App
# ---------------------------
def create_app(settings: Optional[FaucetSettings] = None, faucet: Optional[Faucet] = None) -> FastAPI:
    settings = settings or load_settings()
    app = FastAPI(title="testnet faucet")
    app.state.settings = settings
    app.state.faucet = faucet

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def _startup():
        logging.basicConfig(
            level=os.getenv("LOG_LEVEL", "INFO").upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        if app.state.faucet is None:
            app.state.faucet = build_faucet(settings)

    def get_faucet() -> Faucet:
        f = app.state.faucet
        if f is None:
            raise HTTPException(status_code=503, detail="faucet not initialized")
        return f

    def auth_identity(req: Request) -> Identity:
        # Header: Authorization: Bearer <session token>
        auth = req.headers.get("authorization", "")
        if not auth.lower().startswith("bearer "):
            raise HTTPException(status_code=401, detail="missing bearer token")
        token = auth.split(" ", 1)[1].strip()
        if not token:
            raise HTTPException(status_code=401, detail="empty bearer token")
        try:
            return parse_session_token(settings.session_hmac_key, token)
        except ValueError as e:
            raise HTTPException(status_code=401, detail=f"invalid session: {e}")

    @app.get("/config", response_model=ConfigOut)
    def get_config():
        """Public payout parameters, so the frontend does not hardcode them."""
        f = get_faucet()
        try:
            issued = f.ledger.payout_count()
            next_payout = f.ledger.next_payout_amount()
        except FaucetError as e:
            raise http_error_for(e)
        return ConfigOut(
            network=settings.network,
            faucet_address=f.wallet.address,
            initial_payout=f.ledger.calculator.initial_amount,
            minimum_payout=f.ledger.calculator.minimum_amount,
            decay_rate=f.ledger.calculator.decay_rate,
            fee_rate_sat_per_vb=f.wallet.builder.fee_rate,
            min_account_age_months=f.min_account_age_months,
            dry_run=settings.dry_run,
            payouts_issued=issued,
            next_payout=next_payout,
        )

    @app.get("/whoami", response_model=WhoAmIOut)
    def whoami(req: Request):
        identity = auth_identity(req)
        return WhoAmIOut(user_hash=identity.user_hash, account_created_at=identity.account_created_at)

    @app.get("/balance", response_model=BalanceOut)
    def balance():
        f = get_faucet()
        try:
            value = f.get_wallet_balance()
        except FaucetError as e:
            logger.error(f"balance lookup failed: {e}")
            raise http_error_for(e)
        return BalanceOut(balance_sat=value, address=f.wallet.address)

    @app.get("/eligibility", response_model=EligibilityOut)
    def eligibility(req: Request):
        identity = auth_identity(req)
        f = get_faucet()
        try:
            eligible, reason = f.check_eligibility(identity)
        except FaucetError as e:
            raise http_error_for(e)
        return EligibilityOut(eligible=eligible, reason=reason)

    @app.get("/history", response_model=HistoryOut)
    def history(req: Request, limit: int = 20):
        identity = auth_identity(req)
        f = get_faucet()
        try:
            records = f.history(identity, limit=limit)
        except FaucetError as e:
            raise http_error_for(e)
        return HistoryOut(entries=[
            HistoryEntryOut(
                id=r.id,
                transaction_id=r.transaction_id,
                amount=r.amount,
                created_at=r.created_at,
                pending=r.pending,
            )
            for r in records
        ])

    @app.post("/disburse", response_model=DisburseOut)
    def disburse(data: DisburseIn, req: Request):
        identity = auth_identity(req)
        f = get_faucet()
        address = (data.receiving_address or "").strip()
        if not address:
            raise HTTPException(status_code=400, detail="missing receiving address")

        try:
            txid = f.disburse(identity, address)
        except FaucetError as e:
            if not isinstance(e, (NotEligible, InvalidAddress)):
                logger.error(f"Failed to send coins: {e!r}")
            raise http_error_for(e)

        return DisburseOut(ok=True, transaction_id=txid, dry_run=settings.dry_run)

    return app


app = create_app()
