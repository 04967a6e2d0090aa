# wallet.py
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, ContextManager, List, Optional

try:
    from .faucet_errors import BroadcastFailed, InvalidArgument, NodeRpcError  # type: ignore
    from .node_rpc import NodeRpcClient, UnspentOutput  # type: ignore
    from .tx_builder import SignedTransaction, TransactionBuilder, key_controls_address  # type: ignore
except ImportError:
    from faucet_errors import BroadcastFailed, InvalidArgument, NodeRpcError  # type: ignore
    from node_rpc import NodeRpcClient, UnspentOutput  # type: ignore
    from tx_builder import SignedTransaction, TransactionBuilder, key_controls_address  # type: ignore

logger = logging.getLogger("faucet.wallet")

DEFAULT_BALANCE_TTL_SEC = 5 * 60


# ---------------------------
# Balance cache
# ---------------------------
@dataclass(frozen=True)
class BalanceCacheEntry:
    value: int
    computed_at: float


class BalanceCache:
    """
    Single-slot memo of the faucet balance (sum of unspent output values).

    The slot is replaced or evicted as a whole; concurrent misses may each
    recompute, last writer wins. The balance is advisory and never used for
    coin selection.
    """

    def __init__(
        self,
        compute: Callable[[], int],
        ttl_sec: float = DEFAULT_BALANCE_TTL_SEC,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._compute = compute
        self.ttl_sec = float(ttl_sec)
        self._clock = clock
        self._entry: Optional[BalanceCacheEntry] = None

    def get(self) -> int:
        entry = self._entry
        now = self._clock()
        if entry is not None and now - entry.computed_at < self.ttl_sec:
            return entry.value

        value = int(self._compute())
        self._entry = BalanceCacheEntry(value=value, computed_at=now)
        logger.info(f"Balance recomputed: {value} sat")
        return value

    def invalidate(self) -> None:
        self._entry = None


# ---------------------------
# Transaction submitters
# ---------------------------
class RpcSubmitter:
    """Broadcasts through the node's sendrawtransaction."""

    def __init__(self, rpc: NodeRpcClient):
        self.rpc = rpc

    def submit(self, signed: SignedTransaction) -> str:
        logger.info(f"Broadcasting transaction {signed.txid}")
        try:
            node_txid = self.rpc.send_raw_transaction(signed.tx_hex)
        except NodeRpcError as e:
            raise BroadcastFailed(f"broadcast of {signed.txid} rejected: {e}") from e

        if node_txid and node_txid != signed.txid:
            logger.warning(f"Node reported txid {node_txid}, computed {signed.txid}")
        logger.info(f"Broadcasted transaction {node_txid or signed.txid}")
        return node_txid or signed.txid


class DryRunSubmitter:
    """Does not broadcast; logs the raw transaction and returns its computed txid."""

    def submit(self, signed: SignedTransaction) -> str:
        logger.info(f"Dry run enabled, not broadcasting transaction {signed.txid}:\n{signed.tx_hex}")
        return signed.txid


# ---------------------------
# Faucet wallet
# ---------------------------
class FaucetWallet:
    """
    One key, one funding address. Owns the wallet critical section: callers hold
    `wallet.lock` across reserve, fetch, build, broadcast and finalize so two
    payouts never select the same input or share an ordinal.
    """

    def __init__(
        self,
        rpc: NodeRpcClient,
        builder: TransactionBuilder,
        submitter,
        balance_ttl_sec: float = DEFAULT_BALANCE_TTL_SEC,
        clock: Callable[[], float] = time.monotonic,
        lock: Optional[ContextManager] = None,
    ):
        if not key_controls_address(builder.key, builder.change_address):
            raise InvalidArgument("faucet private key does not control the faucet address")

        self.rpc = rpc
        self.builder = builder
        self.submitter = submitter
        self.address = builder.change_address
        self.lock = lock if lock is not None else threading.Lock()
        self.balance_cache = BalanceCache(self.compute_balance, ttl_sec=balance_ttl_sec, clock=clock)

    def list_unspent(self) -> List[UnspentOutput]:
        return self.builder.order_outputs(self.rpc.list_unspent(self.address))

    def compute_balance(self) -> int:
        return sum(u.amount for u in self.rpc.list_unspent(self.address))

    def get_balance(self) -> int:
        return self.balance_cache.get()

    def build(self, destination: str, amount: int) -> SignedTransaction:
        logger.info(f"Building payout of {amount} sat to {destination}")
        return self.builder.build(destination, amount, self.list_unspent())

    def submit(self, signed: SignedTransaction) -> str:
        return self.submitter.submit(signed)
