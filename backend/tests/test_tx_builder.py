"""
Tests for tx_builder.py

Input selection, fee handling, output layout and signing (regtest params).
"""

from unittest.mock import Mock

import pytest
from bitcoin.core import CTransaction, b2lx, b2x, x
from bitcoin.core.script import OP_RETURN
from bitcoin.core.scripteval import VerifyScript
from bitcoin.wallet import CBitcoinAddress

from conftest import make_utxo
from faucet_errors import InsufficientFunds, InvalidAddress, InvalidArgument, SigningError, UnbalancedTransaction
from tx_builder import (
    OP_RETURN_MAX_SIZE,
    TransactionBuilder,
    build_transaction,
    is_valid_address,
    key_controls_address,
    p2pkh_script,
    p2wpkh_script,
    parse_address,
    select_network,
)


def decode(signed) -> CTransaction:
    return CTransaction.deserialize(x(signed.tx_hex))


# ============================================================================
# ADDRESSES / NETWORK
# ============================================================================

class TestAddresses:

    def test_regtest_addresses_parse(self, faucet_address, faucet_segwit_address, destination):
        assert is_valid_address(faucet_address)
        assert is_valid_address(faucet_segwit_address)
        assert is_valid_address(destination)

    @pytest.mark.parametrize("bad", [
        "",
        "   ",
        "not-an-address",
        "1BoatSLRHtKNngkdXEeobR76b53LETtpyT",  # mainnet
    ])
    def test_invalid_addresses(self, bad):
        assert not is_valid_address(bad)
        with pytest.raises(InvalidAddress):
            parse_address(bad)

    def test_key_controls_both_script_types(self, faucet_key, faucet_address, faucet_segwit_address, destination):
        assert key_controls_address(faucet_key, faucet_address)
        assert key_controls_address(faucet_key, faucet_segwit_address)
        assert not key_controls_address(faucet_key, destination)

    def test_unknown_network(self):
        with pytest.raises(InvalidArgument):
            select_network("moonnet")

    def test_testnet4_uses_testnet_encoding(self, faucet_key):
        try:
            select_network("testnet4")
            assert str(CBitcoinAddress.from_scriptPubKey(p2wpkh_script(faucet_key))).startswith("tb1")
        finally:
            select_network("regtest")


# ============================================================================
# BUILD
# ============================================================================

class TestBuild:

    def test_fee_comes_out_of_the_payout(self, builder, destination, node):
        signed = builder.build(destination, 10_000_000, node.utxos)

        # 1 P2PKH input, 2 P2PKH outputs
        assert signed.vsize == 226
        assert signed.fee == 226
        assert signed.payment_amount == 10_000_000 - 226
        assert signed.change_amount == 40_000_000
        assert len(signed.inputs) == 1

    def test_inputs_balance_outputs_plus_fee(self, builder, destination, node):
        signed = builder.build(destination, 120_000_000, node.utxos)
        tx = decode(signed)

        assert len(signed.inputs) == 3
        assert signed.total_in == sum(out.nValue for out in tx.vout) + signed.fee
        assert signed.total_in == signed.total_out + signed.fee

    def test_txid_matches_serialized_transaction(self, builder, destination, node):
        signed = builder.build(destination, 10_000_000, node.utxos)
        assert b2lx(decode(signed).GetTxid()) == signed.txid

    def test_greedy_selection_by_confirmations(self, builder, destination):
        utxos = [
            make_utxo(1, 5_000_000, confirmations=1),
            make_utxo(2, 5_000_000, confirmations=50),
            make_utxo(3, 5_000_000, confirmations=10),
        ]
        signed = builder.build(destination, 8_000_000, utxos)
        assert [u.txid for u in signed.inputs] == [utxos[1].txid, utxos[2].txid]

    def test_zero_value_outputs_are_ignored(self, builder):
        utxos = [make_utxo(1, 0, confirmations=99), make_utxo(2, 10, confirmations=1)]
        assert [u.amount for u in builder.order_outputs(utxos)] == [10]

    def test_insufficient_funds(self, builder, destination):
        utxos = [make_utxo(i, 5_000_000) for i in range(1, 4)]
        with pytest.raises(InsufficientFunds) as exc:
            builder.build(destination, 20_000_000, utxos)
        assert exc.value.available == 15_000_000
        assert exc.value.needed > 20_000_000

    def test_no_outputs_at_all(self, builder, destination):
        with pytest.raises(InsufficientFunds):
            builder.build(destination, 1_000_000, [])

    def test_small_change_is_kept(self, builder, destination):
        # change equals the fee here, far below any dust threshold
        amount = 1_000_000
        signed = builder.build(destination, amount, [make_utxo(1, amount + 226)])
        assert signed.change_amount == 226
        assert [o["type"] for o in signed.outputs] == ["payment", "change"]

    def test_no_change_output_when_exact(self, faucet_key, faucet_address, destination):
        builder = TransactionBuilder(faucet_key, faucet_address, fee_rate=0)
        signed = builder.build(destination, 1_000_000, [make_utxo(1, 1_000_000)])
        assert signed.fee == 0
        assert signed.change_amount == 0
        assert [o["type"] for o in signed.outputs] == ["payment"]
        assert len(decode(signed).vout) == 1

    @pytest.mark.parametrize("amount", [0, -5])
    def test_amount_must_be_positive(self, builder, destination, node, amount):
        with pytest.raises(InvalidArgument):
            builder.build(destination, amount, node.utxos)

    def test_amount_must_cover_fee(self, builder, destination, node):
        with pytest.raises(InvalidArgument):
            builder.build(destination, 100, node.utxos)

    def test_invalid_destination(self, builder, node):
        with pytest.raises(InvalidAddress):
            builder.build("1BoatSLRHtKNngkdXEeobR76b53LETtpyT", 1_000_000, node.utxos)

    def test_fee_rate_scales_fee(self, faucet_key, faucet_address, destination, node):
        builder = TransactionBuilder(faucet_key, faucet_address, fee_rate=2.5)
        signed = builder.build(destination, 10_000_000, node.utxos)
        assert signed.fee == 565  # ceil(226 * 2.5)

    def test_unbalanced_transaction_is_not_signed(self, builder, destination, monkeypatch):
        # negative fee: outputs plus fee exceed the inputs by 50 sat
        monkeypatch.setattr(builder, "estimate_fee", lambda *a, **k: -100)
        sign = Mock()
        monkeypatch.setattr(builder, "_sign", sign)

        with pytest.raises(UnbalancedTransaction):
            builder.build(destination, 1_000_000, [make_utxo(1, 1_000_000 - 50)])
        sign.assert_not_called()


# ============================================================================
# OP_RETURN
# ============================================================================

class TestOpReturn:

    def test_absent_without_payload(self, builder, destination, node):
        signed = builder.build(destination, 10_000_000, node.utxos)
        assert all(o["type"] != "op_return" for o in signed.outputs)

    def test_zero_value_data_output(self, faucet_key, faucet_address, destination, node):
        builder = TransactionBuilder(faucet_key, faucet_address, data_payload=b"tn faucet")
        signed = builder.build(destination, 10_000_000, node.utxos)
        tx = decode(signed)

        last = tx.vout[-1]
        assert last.nValue == 0
        assert last.scriptPubKey[0] == OP_RETURN
        assert signed.outputs[-1] == {"type": "op_return", "data": b"tn faucet".hex(), "amount": 0}
        # the extra output is paid for
        assert signed.fee == 226 + 20

    def test_payload_too_large(self, faucet_key, faucet_address):
        with pytest.raises(InvalidArgument):
            TransactionBuilder(faucet_key, faucet_address, data_payload=b"x" * (OP_RETURN_MAX_SIZE + 1))


# ============================================================================
# SIGNING
# ============================================================================

class TestSigning:

    def test_p2pkh_inputs_verify(self, builder, faucet_key, destination, node):
        signed = builder.build(destination, 120_000_000, node.utxos)
        tx = decode(signed)
        for i in range(len(tx.vin)):
            VerifyScript(tx.vin[i].scriptSig, p2pkh_script(faucet_key), tx, i)
        assert not tx.has_witness()

    def test_p2wpkh_inputs_carry_witness(self, faucet_key, faucet_segwit_address, destination, node):
        builder = TransactionBuilder(faucet_key, faucet_segwit_address)
        signed = builder.build(destination, 10_000_000, node.utxos)
        tx = decode(signed)

        assert tx.has_witness()
        stack = tx.wit.vtxinwit[0].scriptWitness.stack
        assert len(stack) == 2
        assert stack[1] == faucet_key.pub
        assert len(tx.vin[0].scriptSig) == 0
        # 1 P2WPKH input, P2PKH payment, P2WPKH change
        assert signed.fee == 144

    def test_mixed_script_types(self, builder, faucet_key, destination):
        utxos = [
            make_utxo(1, 5_000_000, confirmations=20),
            make_utxo(2, 5_000_000, confirmations=10, script_pubkey=b2x(p2wpkh_script(faucet_key))),
        ]
        tx = decode(builder.build(destination, 8_000_000, utxos))
        assert len(tx.vin[0].scriptSig) > 0
        assert len(tx.vin[1].scriptSig) == 0
        assert len(tx.wit.vtxinwit[1].scriptWitness.stack) == 2

    def test_foreign_script_fails_closed(self, builder, other_key, destination):
        utxos = [make_utxo(1, 50_000_000, script_pubkey=b2x(p2pkh_script(other_key)))]
        with pytest.raises(SigningError):
            builder.build(destination, 10_000_000, utxos)

    def test_unknown_script_type_fails_closed(self, builder, destination):
        # P2SH output: not something a single key signs
        utxos = [make_utxo(1, 50_000_000, script_pubkey="a914" + "00" * 20 + "87")]
        with pytest.raises(SigningError):
            builder.build(destination, 10_000_000, utxos)


class TestConvenience:

    def test_build_transaction_with_wif(self, faucet_key, faucet_address, destination, node):
        signed = build_transaction(
            destination, 10_000_000, node.utxos,
            fee_rate=1.0, change_address=faucet_address, private_key=str(faucet_key),
        )
        assert signed.payment_amount == 10_000_000 - 226
        assert signed.to_dict()["txid"] == signed.txid

    def test_bad_wif(self, faucet_address):
        with pytest.raises(InvalidArgument):
            TransactionBuilder("not-a-key", faucet_address)
