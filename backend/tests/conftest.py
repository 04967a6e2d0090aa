"""
Shared fixtures: regtest keys, a temporary ledger and an in-memory node.
"""

import threading
from datetime import datetime, timezone
from typing import List, Optional

import pytest
from bitcoin.core import Hash160, b2x
from bitcoin.core.script import CScript
from bitcoin.wallet import CBitcoinSecret, P2PKHBitcoinAddress, P2WPKHBitcoinAddress

from eligibility import Identity, generate_user_hash
from faucet import Faucet
from faucet_errors import NodeRpcError
from ledger import ReservationLedger
from ledger_store import LedgerStore
from node_rpc import UnspentOutput
from payout_utils import PayoutCalculator
from tx_builder import TransactionBuilder, select_network
from wallet import DryRunSubmitter, FaucetWallet

NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)
OLD_ACCOUNT = "2015-04-01T10:00:00+00:00"


@pytest.fixture(autouse=True, scope="session")
def regtest():
    select_network("regtest")
    yield


@pytest.fixture
def faucet_key():
    return CBitcoinSecret.from_secret_bytes(b"\x01" * 32)


@pytest.fixture
def other_key():
    return CBitcoinSecret.from_secret_bytes(b"\x02" * 32)


@pytest.fixture
def faucet_address(faucet_key):
    return str(P2PKHBitcoinAddress.from_pubkey(faucet_key.pub))


@pytest.fixture
def faucet_segwit_address(faucet_key):
    return str(P2WPKHBitcoinAddress.from_scriptPubKey(CScript([0, Hash160(faucet_key.pub)])))


@pytest.fixture
def destination(other_key):
    return str(P2PKHBitcoinAddress.from_pubkey(other_key.pub))


def make_utxo(n: int, amount: int, confirmations: int = 10, script_pubkey: str = "") -> UnspentOutput:
    return UnspentOutput(
        txid=f"{n:064x}",
        vout=n % 4,
        amount=amount,
        confirmations=confirmations,
        script_pubkey=script_pubkey,
    )


def script_hex(address_obj) -> str:
    return b2x(address_obj.to_scriptPubKey())


class FakeNode:
    """In-memory stand-in for the node's JSON-RPC."""

    def __init__(self, utxos: Optional[List[UnspentOutput]] = None):
        self.utxos = list(utxos or [])
        self.broadcasts: List[str] = []
        self.list_calls = 0
        self.fail_broadcast = False
        self.fail_list = False
        self._lock = threading.Lock()

    def list_unspent(self, address, min_confirmations=0, max_confirmations=9_999_999):
        with self._lock:
            self.list_calls += 1
            if self.fail_list:
                raise NodeRpcError("listunspent: connection refused")
            return list(self.utxos)

    def send_raw_transaction(self, tx_hex):
        with self._lock:
            if self.fail_broadcast:
                raise NodeRpcError("sendrawtransaction: rpc error -26: min relay fee not met")
            self.broadcasts.append(tx_hex)
            return ""


@pytest.fixture
def node():
    return FakeNode([make_utxo(i + 1, 50_000_000, confirmations=100 - i) for i in range(5)])


@pytest.fixture
def store(tmp_path):
    s = LedgerStore(str(tmp_path / "faucet.db"))
    s.init_db()
    return s


@pytest.fixture
def calculator():
    return PayoutCalculator(100_000_000, 1_000_000, 0.001)


@pytest.fixture
def ledger(store, calculator):
    return ReservationLedger(store, calculator)


@pytest.fixture
def builder(faucet_key, faucet_address):
    return TransactionBuilder(faucet_key, faucet_address, fee_rate=1.0)


@pytest.fixture
def wallet(node, builder):
    return FaucetWallet(node, builder, DryRunSubmitter())


@pytest.fixture
def faucet(ledger, wallet):
    return Faucet(ledger, wallet, admin_user_hash=None, now_func=lambda: NOW)


def identity_for(user_id: str, created_at: str = OLD_ACCOUNT) -> Identity:
    return Identity(
        user_hash=generate_user_hash("test-salt", "GitHub", user_id),
        account_created_at=created_at,
    )
