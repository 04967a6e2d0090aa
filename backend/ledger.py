# ledger.py
import logging
import threading
from dataclasses import dataclass
from typing import ContextManager, List, Optional

try:
    from .faucet_errors import LedgerError, LedgerUnavailable, NotEligible  # type: ignore
    from .ledger_store import HistoryRecord, LedgerStore  # type: ignore
    from .payout_utils import PayoutCalculator  # type: ignore
except ImportError:
    from faucet_errors import LedgerError, LedgerUnavailable, NotEligible  # type: ignore
    from ledger_store import HistoryRecord, LedgerStore  # type: ignore
    from payout_utils import PayoutCalculator  # type: ignore

logger = logging.getLogger("faucet.ledger")


@dataclass(frozen=True)
class Reservation:
    ordinal: int
    amount: int
    record_id: int
    user_hash: str


class ReservationLedger:
    """
    Single source of truth for "how many payouts have been issued".

    `reserve_next` assigns the next ordinal and stores a pending record with the
    payout for that ordinal; the critical section is held until the insert has
    committed. `finalize` and `rollback` close the reservation either way.
    """

    def __init__(
        self,
        store: LedgerStore,
        calculator: PayoutCalculator,
        lock: Optional[ContextManager] = None,
    ):
        self.store = store
        self.calculator = calculator
        self._lock = lock if lock is not None else threading.Lock()

    def has_received(self, user_hash: str) -> bool:
        return self.store.exists_by_user_hash(user_hash)

    def history(self, user_hash: str, limit: int = 50) -> List[HistoryRecord]:
        return self.store.list_by_user_hash(user_hash, limit=limit)

    def payout_count(self) -> int:
        return self.store.count_all()

    def next_payout_amount(self) -> int:
        # advisory only, the real amount is fixed at reservation time
        return self.calculator.calculate_payout(self.store.count_all() + 1)

    def reserve_next(self, user_hash: str, allow_repeat: bool = False) -> Reservation:
        """
        Raises NotEligible if `user_hash` already holds a record and
        `allow_repeat` is not set (the admin identity sets it).
        """
        with self._lock:
            try:
                ordinal, record = self.store.insert_pending(
                    user_hash, self.calculator.calculate_payout, allow_repeat=allow_repeat
                )
            except (LedgerError, NotEligible):
                raise
            except Exception as e:
                raise LedgerUnavailable(f"reservation failed: {e}") from e

        logger.info(f"Reserved ordinal {ordinal} ({record.amount} sat) as record {record.id}")
        return Reservation(ordinal=ordinal, amount=record.amount, record_id=record.id, user_hash=user_hash)

    def finalize(self, reservation: Reservation, transaction_id: str) -> None:
        self.store.finalize(reservation.record_id, transaction_id)
        logger.info(f"Finalized record {reservation.record_id} (ordinal {reservation.ordinal}) txid={transaction_id}")

    def rollback(self, reservation: Reservation) -> None:
        with self._lock:
            self.store.delete_pending(reservation.record_id)
        logger.warning(f"Rolled back record {reservation.record_id} (ordinal {reservation.ordinal})")
