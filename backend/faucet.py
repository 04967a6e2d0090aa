# faucet.py
import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Tuple

try:
    from .eligibility import DEFAULT_MIN_ACCOUNT_AGE_MONTHS, Identity, check_eligibility, is_admin, utc_now  # type: ignore
    from .faucet_errors import (  # type: ignore
        BroadcastFailed,
        DisbursementCancelled,
        FaucetError,
        FinalizationFailed,
        InsufficientFunds,
        LedgerUnavailable,
        NotEligible,
    )
    from .ledger import Reservation, ReservationLedger  # type: ignore
    from .ledger_store import HistoryRecord  # type: ignore
    from .tx_builder import parse_address  # type: ignore
    from .wallet import FaucetWallet  # type: ignore
except ImportError:
    from eligibility import DEFAULT_MIN_ACCOUNT_AGE_MONTHS, Identity, check_eligibility, is_admin, utc_now  # type: ignore
    from faucet_errors import (  # type: ignore
        BroadcastFailed,
        DisbursementCancelled,
        FaucetError,
        FinalizationFailed,
        InsufficientFunds,
        LedgerUnavailable,
        NotEligible,
    )
    from ledger import Reservation, ReservationLedger  # type: ignore
    from ledger_store import HistoryRecord  # type: ignore
    from tx_builder import parse_address  # type: ignore
    from wallet import FaucetWallet  # type: ignore

logger = logging.getLogger("faucet.disburse")


class DisbursementState(str, Enum):
    CHECKING_ELIGIBILITY = "checking_eligibility"
    RESERVING = "reserving"
    BUILDING = "building"
    BROADCASTING = "broadcasting"
    FINALIZING = "finalizing"
    ROLLING_BACK = "rolling_back"
    DONE = "done"
    FAILED = "failed"


class Faucet:
    """
    Disbursement orchestrator.

    eligibility -> reserve -> build -> broadcast -> finalize. Everything after
    eligibility runs under the wallet lock; the reservation also takes the
    ledger lock and re-checks the user inside its write transaction, so two
    requests from one identity cannot both be paid. Anything that
    fails after the reservation and before a successful broadcast rolls the
    reservation back; nothing after a broadcast is ever rolled back.
    """

    def __init__(
        self,
        ledger: ReservationLedger,
        wallet: FaucetWallet,
        admin_user_hash: Optional[str] = None,
        min_account_age_months: int = DEFAULT_MIN_ACCOUNT_AGE_MONTHS,
        now_func: Callable[[], datetime] = utc_now,
    ):
        self.ledger = ledger
        self.wallet = wallet
        self.admin_user_hash = admin_user_hash
        self.min_account_age_months = min_account_age_months
        self.now = now_func

    # ---------------------------
    # Read-only operations
    # ---------------------------
    def get_wallet_balance(self) -> int:
        return self.wallet.get_balance()

    def check_eligibility(self, identity: Optional[Identity]) -> Tuple[bool, str]:
        return check_eligibility(
            identity,
            self.ledger.has_received,
            admin_user_hash=self.admin_user_hash,
            min_account_age_months=self.min_account_age_months,
            now=self.now(),
        )

    def history(self, identity: Identity, limit: int = 50) -> List[HistoryRecord]:
        if not identity.user_hash:
            return []
        return self.ledger.history(identity.user_hash, limit=limit)

    # ---------------------------
    # Disbursement
    # ---------------------------
    def disburse(
        self,
        identity: Optional[Identity],
        destination: str,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        """
        Pay out to `destination` and return the transaction id.

        `cancel` is honored only before a phase starts; once the pending record
        exists, rollback or finalize always runs to completion.
        """
        state = DisbursementState.CHECKING_ELIGIBILITY
        self._check_cancel(cancel, state)
        eligible, reason = self.check_eligibility(identity)
        if not eligible:
            logger.info(f"Refused payout: {reason}")
            raise NotEligible(reason)
        parse_address(destination)

        allow_repeat = is_admin(identity.user_hash, self.admin_user_hash)

        # one disbursement end to end at a time: reserve, build, broadcast and
        # finalize all run under the wallet lock (the ledger lock nests inside)
        with self.wallet.lock:
            state = DisbursementState.RESERVING
            self._check_cancel(cancel, state)
            reservation = self.ledger.reserve_next(identity.user_hash, allow_repeat=allow_repeat)

            txid = None
            try:
                state = DisbursementState.BUILDING
                self._check_cancel(cancel, state)
                signed = self.wallet.build(destination, reservation.amount)

                state = DisbursementState.BROADCASTING
                txid = self.wallet.submit(signed)
            except BaseException as e:
                self._rollback(reservation, state, e)
                if isinstance(e, InsufficientFunds):
                    logger.error(f"Faucet cannot fund ordinal {reservation.ordinal}: {e}")
                if isinstance(e, Exception) and not isinstance(e, FaucetError):
                    raise BroadcastFailed(f"{state.value} failed: {e}") from e
                if isinstance(e, FaucetError) and state == DisbursementState.BROADCASTING \
                        and not isinstance(e, BroadcastFailed):
                    raise BroadcastFailed(f"broadcast failed: {e}") from e
                raise

            state = DisbursementState.FINALIZING
            try:
                self.ledger.finalize(reservation, txid)
            except Exception as e:
                logger.error(
                    f"Transaction {txid} was broadcast but record {reservation.record_id} "
                    f"could not be finalized: {e}"
                )
                raise FinalizationFailed(txid, f"broadcast txid={txid} but ledger finalize failed: {e}") from e
            finally:
                self.wallet.balance_cache.invalidate()

        logger.info(f"Paid {reservation.amount} sat (ordinal {reservation.ordinal}) to {destination}: {txid}")
        return txid

    def _check_cancel(self, cancel: Optional[threading.Event], state: DisbursementState) -> None:
        if cancel is not None and cancel.is_set():
            raise DisbursementCancelled(f"cancelled before {state.value}")

    def _rollback(self, reservation: Reservation, state: DisbursementState, cause: BaseException) -> None:
        logger.warning(f"{state.value} failed for ordinal {reservation.ordinal}: {cause!r}; rolling back")
        try:
            self.ledger.rollback(reservation)
        except Exception as e:
            logger.error(f"Rollback of record {reservation.record_id} failed: {e}")
            raise LedgerUnavailable(
                f"rollback of record {reservation.record_id} failed after {state.value} error: {cause}"
            ) from e
