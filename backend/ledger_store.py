# ledger_store.py
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

try:
    from .eligibility import REASON_ALREADY_RECEIVED  # type: ignore
    from .faucet_errors import LedgerUnavailable, NotEligible, RecordNotFound  # type: ignore
except ImportError:
    from eligibility import REASON_ALREADY_RECEIVED  # type: ignore
    from faucet_errors import LedgerUnavailable, NotEligible, RecordNotFound  # type: ignore


PENDING_TXID = "pending"


@dataclass
class HistoryRecord:
    id: int
    user_hash: str
    transaction_id: str
    amount: int
    created_at: int

    @property
    def pending(self) -> bool:
        return self.transaction_id == PENDING_TXID

    def to_dict(self) -> Dict[str, Any]:
        return dict(
            id=self.id,
            user_hash=self.user_hash,
            transaction_id=self.transaction_id,
            amount=self.amount,
            created_at=self.created_at,
        )


def _row_to_record(r) -> HistoryRecord:
    return HistoryRecord(
        id=int(r[0]),
        user_hash=str(r[1]),
        transaction_id=str(r[2]),
        amount=int(r[3]),
        created_at=int(r[4]),
    )


class LedgerStore:
    """
    Durable history of faucet payouts (SQLite).

    One row per payout, keyed by an autoincrement id and indexed by user hash.
    Rows are only updated to set the transaction id, and only deleted while
    still pending.
    """

    def __init__(self, db_path: str, now_unix_func: Callable[[], int] = lambda: int(time.time())):
        self.db_path = db_path
        self.now_unix = now_unix_func

    def db(self) -> sqlite3.Connection:
        try:
            con = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)  # autocommit
            con.execute("PRAGMA journal_mode=WAL;")
            con.execute("PRAGMA synchronous=NORMAL;")
            con.execute("PRAGMA busy_timeout=30000;")
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"cannot open ledger '{self.db_path}': {e}") from e
        return con

    def init_db(self) -> None:
        con = self.db()
        try:
            con.execute("""
            CREATE TABLE IF NOT EXISTS transaction_history (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              user_hash TEXT NOT NULL,
              transaction_id TEXT NOT NULL,
              amount INTEGER NOT NULL,
              created_at INTEGER NOT NULL
            );
            """)
            con.execute("CREATE INDEX IF NOT EXISTS idx_history_user_hash ON transaction_history(user_hash);")
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"failed to initialize ledger: {e}") from e
        finally:
            con.close()

    # ---------------------------
    # Reads
    # ---------------------------
    def count_all(self) -> int:
        con = self.db()
        try:
            row = con.execute("SELECT COUNT(*) FROM transaction_history").fetchone()
            return int(row[0])
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"count failed: {e}") from e
        finally:
            con.close()

    def exists_by_user_hash(self, user_hash: str) -> bool:
        con = self.db()
        try:
            row = con.execute(
                "SELECT 1 FROM transaction_history WHERE user_hash=? LIMIT 1",
                (user_hash,),
            ).fetchone()
            return row is not None
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"lookup failed: {e}") from e
        finally:
            con.close()

    def list_by_user_hash(self, user_hash: str, limit: int = 50) -> List[HistoryRecord]:
        limit = int(limit)
        if limit < 1:
            limit = 1
        if limit > 500:
            limit = 500

        con = self.db()
        try:
            rows = con.execute(
                """
                SELECT id, user_hash, transaction_id, amount, created_at
                FROM transaction_history
                WHERE user_hash=?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (user_hash, limit),
            ).fetchall()
            return [_row_to_record(r) for r in rows]
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"history query failed: {e}") from e
        finally:
            con.close()

    def get(self, record_id: int) -> Optional[HistoryRecord]:
        con = self.db()
        try:
            row = con.execute(
                "SELECT id, user_hash, transaction_id, amount, created_at FROM transaction_history WHERE id=?",
                (int(record_id),),
            ).fetchone()
            return _row_to_record(row) if row else None
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"lookup failed: {e}") from e
        finally:
            con.close()

    # ---------------------------
    # Writes
    # ---------------------------
    def insert_pending(
        self,
        user_hash: str,
        amount_for_ordinal: Callable[[int], int],
        allow_repeat: bool = False,
    ) -> Tuple[int, HistoryRecord]:
        """
        Count existing rows and insert a pending row in one write transaction.

        Unless `allow_repeat` is set, a user hash that already has a row (pending
        or final) is refused inside the same transaction with NotEligible.

        The ordinal is count + 1; `amount_for_ordinal` turns it into the amount
        stored on the row. Returns (ordinal, record).
        """
        con = self.db()
        try:
            con.execute("BEGIN IMMEDIATE;")
            try:
                if not allow_repeat:
                    seen = con.execute(
                        "SELECT 1 FROM transaction_history WHERE user_hash=? LIMIT 1",
                        (user_hash,),
                    ).fetchone()
                    if seen is not None:
                        raise NotEligible(REASON_ALREADY_RECEIVED)
                count = int(con.execute("SELECT COUNT(*) FROM transaction_history").fetchone()[0])
                ordinal = count + 1
                amount = int(amount_for_ordinal(ordinal))
                ts = int(self.now_unix())
                cur = con.execute(
                    """
                    INSERT INTO transaction_history(user_hash, transaction_id, amount, created_at)
                    VALUES(?,?,?,?)
                    """,
                    (user_hash, PENDING_TXID, amount, ts),
                )
                record_id = int(cur.lastrowid)
                con.execute("COMMIT;")
            except Exception:
                con.execute("ROLLBACK;")
                raise
            return ordinal, HistoryRecord(
                id=record_id,
                user_hash=user_hash,
                transaction_id=PENDING_TXID,
                amount=amount,
                created_at=ts,
            )
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"reservation insert failed: {e}") from e
        finally:
            con.close()

    def finalize(self, record_id: int, transaction_id: str) -> None:
        con = self.db()
        try:
            cur = con.execute(
                "UPDATE transaction_history SET transaction_id=? WHERE id=? AND transaction_id=?",
                (transaction_id, int(record_id), PENDING_TXID),
            )
            if cur.rowcount == 0:
                row = con.execute(
                    "SELECT transaction_id FROM transaction_history WHERE id=?",
                    (int(record_id),),
                ).fetchone()
                if not row:
                    raise RecordNotFound(f"history record {record_id} not found")
                if str(row[0]) != transaction_id:
                    raise RecordNotFound(
                        f"history record {record_id} already finalized with txid={row[0]}"
                    )
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"finalize failed: {e}") from e
        finally:
            con.close()

    def delete_pending(self, record_id: int) -> None:
        con = self.db()
        try:
            cur = con.execute(
                "DELETE FROM transaction_history WHERE id=? AND transaction_id=?",
                (int(record_id), PENDING_TXID),
            )
            if cur.rowcount == 0:
                raise RecordNotFound(f"pending history record {record_id} not found")
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"delete failed: {e}") from e
        finally:
            con.close()
