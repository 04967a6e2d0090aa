# tx_builder.py
"""
Faucet transaction builder (python-bitcoinlib).

Given the faucet's unspent outputs, builds and signs a transaction that:
1. spends inputs greedily, most-confirmed first
2. pays the destination `amount - fee` (the payout funds its own fee)
3. returns all change to the faucet address, however small (no dust elision)
4. optionally carries a zero-value OP_RETURN output

No I/O happens here: callers pass in the UTXO snapshot and broadcast the result.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

import bitcoin
from bitcoin.core import (
    CMutableTransaction,
    CMutableTxIn,
    CMutableTxOut,
    COutPoint,
    CTransaction,
    CTxInWitness,
    CTxWitness,
    Hash160,
    b2lx,
    b2x,
    lx,
)
from bitcoin.core.script import (
    OP_CHECKSIG,
    OP_DUP,
    OP_EQUALVERIFY,
    OP_HASH160,
    OP_RETURN,
    SIGHASH_ALL,
    SIGVERSION_BASE,
    SIGVERSION_WITNESS_V0,
    CScript,
    CScriptWitness,
    SignatureHash,
)
from bitcoin.wallet import CBitcoinAddress, CBitcoinSecret

try:
    from .faucet_errors import (  # type: ignore
        InsufficientFunds,
        InvalidAddress,
        InvalidArgument,
        SigningError,
        UnbalancedTransaction,
    )
    from .node_rpc import UnspentOutput  # type: ignore
except ImportError:
    from faucet_errors import (  # type: ignore
        InsufficientFunds,
        InvalidAddress,
        InvalidArgument,
        SigningError,
        UnbalancedTransaction,
    )
    from node_rpc import UnspentOutput  # type: ignore

logger = logging.getLogger("faucet.tx_builder")


# ============================================================================
# CONSTANTS
# ============================================================================

SUPPORTED_NETWORKS = ("mainnet", "testnet", "signet", "regtest")
NETWORK_ALIASES = {"testnet4": "testnet", "testnet3": "testnet"}  # same address and key encodings
OP_RETURN_MAX_SIZE = 80  # standardness limit for OP_RETURN payloads

# Size estimation, in weight units (1 vbyte = 4 WU)
TX_OVERHEAD_WU = 10 * 4          # version, locktime, vin/vout counts
SEGWIT_MARKER_WU = 2             # marker + flag bytes
P2PKH_INPUT_WU = 148 * 4         # outpoint, sequence, scriptSig with sig + compressed pubkey
P2WPKH_INPUT_WU = 41 * 4 + 108   # non-witness part + witness stack

SCRIPT_P2PKH = "p2pkh"
SCRIPT_P2WPKH = "p2wpkh"


# ============================================================================
# NETWORK / ADDRESSES
# ============================================================================

def select_network(name: str) -> None:
    """Select address/key parameters for the whole process (python-bitcoinlib keeps them global)."""
    name = (name or "").strip().lower()
    name = NETWORK_ALIASES.get(name, name)
    if name not in SUPPORTED_NETWORKS:
        raise InvalidArgument(f"unsupported network: {name!r}")
    bitcoin.SelectParams(name)


def parse_address(address: str) -> CBitcoinAddress:
    """Parse an address for the selected network, raising InvalidAddress."""
    if not isinstance(address, str) or not address.strip():
        raise InvalidAddress("missing address")
    try:
        return CBitcoinAddress(address.strip())
    except Exception as e:
        network = getattr(bitcoin.params, "NAME", "?")
        raise InvalidAddress(f"invalid address for network {network}: {address}") from e


def is_valid_address(address: str) -> bool:
    try:
        parse_address(address)
    except InvalidAddress:
        return False
    return True


def parse_private_key(wif: str) -> CBitcoinSecret:
    try:
        return CBitcoinSecret((wif or "").strip())
    except Exception as e:
        raise InvalidArgument("invalid faucet private key (expected WIF for the selected network)") from e


def p2pkh_script(key: CBitcoinSecret) -> CScript:
    return CScript([OP_DUP, OP_HASH160, Hash160(key.pub), OP_EQUALVERIFY, OP_CHECKSIG])


def p2wpkh_script(key: CBitcoinSecret) -> CScript:
    return CScript([0, Hash160(key.pub)])


def key_controls_address(key: CBitcoinSecret, address: str) -> bool:
    script = parse_address(address).to_scriptPubKey()
    return script in (p2pkh_script(key), p2wpkh_script(key))


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class SignedTransaction:
    """A fully signed transaction, ready to broadcast."""
    tx_hex: str
    txid: str
    inputs: List[UnspentOutput]
    outputs: List[Dict[str, Any]]
    fee: int
    payment_amount: int
    change_amount: int
    vsize: int
    tx: Optional[CTransaction] = field(default=None, repr=False)

    @property
    def total_in(self) -> int:
        return sum(u.amount for u in self.inputs)

    @property
    def total_out(self) -> int:
        return sum(int(o["amount"]) for o in self.outputs)

    def to_dict(self) -> dict:
        return {
            "tx_hex": self.tx_hex,
            "txid": self.txid,
            "inputs": [u.to_dict() for u in self.inputs],
            "outputs": self.outputs,
            "fee": self.fee,
            "payment_amount": self.payment_amount,
            "change_amount": self.change_amount,
            "vsize": self.vsize,
        }


# ============================================================================
# TRANSACTION BUILDER
# ============================================================================

def _output_weight(script: CScript) -> int:
    n = len(script)
    varint = 1 if n < 0xfd else 3
    return (8 + varint + n) * 4


class TransactionBuilder:
    """
    Builds signed faucet payouts from a single key / single funding address.

    Example:
        select_network("testnet")
        builder = TransactionBuilder(
            private_key=parse_private_key(wif),
            change_address=faucet_address,
            fee_rate=1.0,
            data_payload=b"tn4 faucet",
        )
        signed = builder.build(destination, 1_000_000, rpc.list_unspent(faucet_address))
        rpc.send_raw_transaction(signed.tx_hex)
    """

    def __init__(
        self,
        private_key: Union[CBitcoinSecret, str],
        change_address: str,
        fee_rate: float = 1.0,  # sat per vbyte
        data_payload: Optional[bytes] = None,
    ):
        if isinstance(private_key, str):
            private_key = parse_private_key(private_key)
        if fee_rate is None or fee_rate < 0 or math.isnan(fee_rate):
            raise InvalidArgument("fee rate must be >= 0")
        if data_payload and len(data_payload) > OP_RETURN_MAX_SIZE:
            raise InvalidArgument(f"data payload exceeds {OP_RETURN_MAX_SIZE} bytes")

        self.key = private_key
        self.change_address = change_address
        self.change_script = parse_address(change_address).to_scriptPubKey()
        self.fee_rate = float(fee_rate)
        self.data_payload = bytes(data_payload) if data_payload else None

        self._key_scripts = {
            bytes(p2pkh_script(self.key)): SCRIPT_P2PKH,
            bytes(p2wpkh_script(self.key)): SCRIPT_P2WPKH,
        }

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------
    def _input_kind(self, utxo: UnspentOutput) -> Optional[str]:
        if utxo.script_pubkey:
            try:
                script = bytes.fromhex(utxo.script_pubkey)
            except ValueError:
                return None
        else:
            # snapshot without script: it sits at the faucet address
            script = bytes(self.change_script)
        return self._key_scripts.get(script)

    def estimate_vsize(self, inputs: Sequence[UnspentOutput], output_scripts: Sequence[CScript]) -> int:
        weight = TX_OVERHEAD_WU
        has_witness = False
        for u in inputs:
            if self._input_kind(u) == SCRIPT_P2WPKH:
                weight += P2WPKH_INPUT_WU
                has_witness = True
            else:
                weight += P2PKH_INPUT_WU
        if has_witness:
            weight += SEGWIT_MARKER_WU
        for script in output_scripts:
            weight += _output_weight(script)
        return (weight + 3) // 4

    def estimate_fee(self, inputs: Sequence[UnspentOutput], output_scripts: Sequence[CScript]) -> int:
        return int(math.ceil(self.estimate_vsize(inputs, output_scripts) * self.fee_rate))

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------
    @staticmethod
    def order_outputs(available: Sequence[UnspentOutput]) -> List[UnspentOutput]:
        # maturer coins first; stable for equal confirmation counts
        return sorted((u for u in available if u.amount > 0), key=lambda u: u.confirmations, reverse=True)

    def select_inputs(
        self,
        amount: int,
        available: Sequence[UnspentOutput],
        output_scripts: Sequence[CScript],
    ) -> List[UnspentOutput]:
        selected: List[UnspentOutput] = []
        total = 0
        needed = amount + self.estimate_fee([], output_scripts)

        for utxo in self.order_outputs(available):
            selected.append(utxo)
            total += utxo.amount
            needed = amount + self.estimate_fee(selected, output_scripts)
            if total >= needed:
                return selected

        raise InsufficientFunds(available=total, needed=needed)

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------
    def build(self, destination: str, amount: int, available_outputs: Sequence[UnspentOutput]) -> SignedTransaction:
        """
        Build and sign a payout of `amount` satoshis (fee included) to `destination`.

        Raises:
            InvalidAddress: destination is not valid for the selected network
            InvalidArgument: amount is not positive or cannot cover the fee
            InsufficientFunds: available outputs cannot cover amount + fee
            SigningError: an input cannot be signed by the faucet key
            UnbalancedTransaction: outputs plus fee do not add up to the inputs
        """
        dest_script = parse_address(destination).to_scriptPubKey()
        amount = int(amount)
        if amount <= 0:
            raise InvalidArgument("amount must be positive")

        data_script = CScript([OP_RETURN, self.data_payload]) if self.data_payload else None
        output_scripts = [dest_script, self.change_script]
        if data_script is not None:
            output_scripts.append(data_script)

        selected = self.select_inputs(amount, available_outputs, output_scripts)
        total_in = sum(u.amount for u in selected)
        fee = self.estimate_fee(selected, output_scripts)

        payment = amount - fee
        if payment <= 0:
            raise InvalidArgument(f"amount {amount} sat does not cover the fee of {fee} sat")
        change = total_in - payment - fee

        vin = [CMutableTxIn(COutPoint(lx(u.txid), u.vout)) for u in selected]
        vout = [CMutableTxOut(payment, dest_script)]
        outputs: List[Dict[str, Any]] = [{"type": "payment", "address": destination, "amount": payment}]

        if change > 0:
            vout.append(CMutableTxOut(change, self.change_script))
            outputs.append({"type": "change", "address": self.change_address, "amount": change})

        if data_script is not None:
            vout.append(CMutableTxOut(0, data_script))
            outputs.append({"type": "op_return", "data": self.data_payload.hex(), "amount": 0})

        total_out = sum(o["amount"] for o in outputs)
        if total_in != total_out + fee:
            raise UnbalancedTransaction(
                f"inputs {total_in} sat do not equal outputs {total_out} sat + fee {fee} sat"
            )

        tx = CMutableTransaction(vin, vout, nVersion=2)
        self._sign(tx, selected)

        final = CTransaction.from_tx(tx)
        raw = final.serialize()
        txid = b2lx(final.GetTxid())

        logger.info(
            f"Built TX {txid}: {len(selected)} inputs, pay {payment} sat, change {change} sat, fee {fee} sat"
        )

        return SignedTransaction(
            tx_hex=b2x(raw),
            txid=txid,
            inputs=list(selected),
            outputs=outputs,
            fee=fee,
            payment_amount=payment,
            change_amount=change,
            vsize=self.estimate_vsize(selected, output_scripts),
            tx=final,
        )

    def _sign(self, tx: CMutableTransaction, selected: Sequence[UnspentOutput]) -> None:
        witnesses = []
        has_witness = False
        pub = self.key.pub

        for i, utxo in enumerate(selected):
            kind = self._input_kind(utxo)
            if kind is None:
                raise SigningError(
                    f"cannot sign input {utxo.txid}:{utxo.vout}: script not controlled by the faucet key"
                )

            # P2WPKH signs over the equivalent P2PKH script code
            script_code = p2pkh_script(self.key)
            if kind == SCRIPT_P2WPKH:
                sighash = SignatureHash(
                    script_code, tx, i, SIGHASH_ALL, amount=utxo.amount, sigversion=SIGVERSION_WITNESS_V0
                )
            else:
                sighash = SignatureHash(script_code, tx, i, SIGHASH_ALL, sigversion=SIGVERSION_BASE)

            der = self.key.sign(sighash)
            if not pub.verify(sighash, der):
                raise SigningError(f"signature check failed for input {utxo.txid}:{utxo.vout}")
            sig = der + bytes([SIGHASH_ALL])

            if kind == SCRIPT_P2WPKH:
                witnesses.append(CTxInWitness(CScriptWitness([sig, pub])))
                has_witness = True
            else:
                tx.vin[i].scriptSig = CScript([sig, pub])
                witnesses.append(CTxInWitness())

        if has_witness:
            tx.wit = CTxWitness(tuple(witnesses))


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

def build_transaction(
    destination: str,
    amount: int,
    available_outputs: Sequence[UnspentOutput],
    fee_rate: float,
    change_address: str,
    private_key: Union[CBitcoinSecret, str],
    data_payload: Optional[bytes] = None,
) -> SignedTransaction:
    builder = TransactionBuilder(private_key, change_address, fee_rate=fee_rate, data_payload=data_payload)
    return builder.build(destination, amount, available_outputs)
