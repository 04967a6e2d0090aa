# node_rpc.py
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Any, List, Optional

import requests
from requests.auth import HTTPBasicAuth

try:
    from .faucet_errors import NodeRpcError  # type: ignore
except ImportError:
    from faucet_errors import NodeRpcError  # type: ignore


SAT_FACTOR = Decimal("100000000")
MAX_CONFIRMATIONS = 9_999_999


def sat_from_amount(amount_coin: Any) -> int:
    # amount_coin is usually a float from JSON; go through str() to avoid binary rounding
    d = Decimal(str(amount_coin))
    sat = (d * SAT_FACTOR).to_integral_value(rounding=ROUND_DOWN)
    return int(sat)


@dataclass(frozen=True)
class UnspentOutput:
    txid: str
    vout: int
    amount: int  # satoshis
    confirmations: int
    script_pubkey: str = ""  # hex

    def to_dict(self) -> dict:
        return {
            "txid": self.txid,
            "vout": self.vout,
            "amount": self.amount,
            "confirmations": self.confirmations,
            "script_pubkey": self.script_pubkey,
        }


class NodeRpcClient:
    """Minimal bitcoind-style JSON-RPC client."""

    def __init__(self, url: str, user: str = "", password: str = "", timeout: float = 30.0, verify_tls: bool = True):
        self.url = url
        self.user = user
        self.password = password
        self.timeout = timeout
        self.verify_tls = verify_tls
        self.session = requests.Session()

    def call(self, method: str, params: Optional[list] = None) -> Any:
        """
        Call a JSON-RPC method and return its result.

        Some node versions answer standard JSON-RPC errors with HTTP 500, so the
        body is parsed first and the RPC error surfaced in preference to the
        HTTP status.
        """
        payload = {"jsonrpc": "1.0", "id": "faucet", "method": method, "params": params or []}
        auth = HTTPBasicAuth(self.user, self.password) if (self.user or self.password) else None

        try:
            r = self.session.post(self.url, json=payload, auth=auth, timeout=self.timeout, verify=self.verify_tls)
        except requests.RequestException as e:
            raise NodeRpcError(f"{method}: rpc request failed: {e}") from e

        try:
            j = r.json()
        except ValueError:
            raise NodeRpcError(
                f"{method}: rpc http {r.status_code}, non-json body={(r.text or '').strip()[:300]}"
            )

        if isinstance(j, dict) and j.get("error"):
            err = j.get("error")
            if isinstance(err, dict):
                raise NodeRpcError(f"{method}: rpc error {err.get('code')}: {err.get('message')}")
            raise NodeRpcError(f"{method}: rpc error: {err}")

        if r.status_code >= 400:
            raise NodeRpcError(f"{method}: rpc http {r.status_code}: {(r.text or '').strip()[:300]}")

        if not isinstance(j, dict):
            raise NodeRpcError(f"{method}: rpc invalid json result type: {type(j)}")

        return j.get("result")

    def list_unspent(
        self,
        address: str,
        min_confirmations: int = 0,
        max_confirmations: int = MAX_CONFIRMATIONS,
    ) -> List[UnspentOutput]:
        result = self.call("listunspent", [int(min_confirmations), int(max_confirmations), [address]])
        if not isinstance(result, list):
            raise NodeRpcError(f"listunspent: unexpected result type: {type(result).__name__}")

        out: List[UnspentOutput] = []
        for u in result:
            out.append(
                UnspentOutput(
                    txid=str(u["txid"]),
                    vout=int(u["vout"]),
                    amount=sat_from_amount(u["amount"]),
                    confirmations=int(u.get("confirmations", 0) or 0),
                    script_pubkey=str(u.get("scriptPubKey", "") or ""),
                )
            )
        return out

    def send_raw_transaction(self, tx_hex: str) -> str:
        txid = self.call("sendrawtransaction", [tx_hex])
        if not isinstance(txid, str):
            txid = str(txid)
        return txid
