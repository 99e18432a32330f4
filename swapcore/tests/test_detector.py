"""
Tests for swap output detection.
"""

from __future__ import annotations

from swapcore.detector import detect
from swapcore.taproot import p2tr_script
from swapcore.transaction import Transaction, TxInput, TxOutput

TWEAKED_KEY = bytes.fromhex("79be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798")


def _lockup(outputs: list[TxOutput]) -> Transaction:
    return Transaction(
        version=2,
        inputs=[TxInput(b"\x33" * 32, 0, b"", 0xFFFFFFFD, [b"\x01" * 64])],
        outputs=outputs,
    )


def test_detects_output_among_decoys(btc_chain):
    tx = _lockup(
        [
            TxOutput(10_000, bytes([0x00, 0x14]) + b"\x01" * 20),
            TxOutput(24_675, p2tr_script(TWEAKED_KEY)),
            TxOutput(5_000, p2tr_script(b"\x02" * 32)),
        ]
    )

    output = detect(TWEAKED_KEY, tx.to_hex(), btc_chain)

    assert output is not None
    assert output.output_index == 1
    assert output.value == 24_675
    assert output.script == p2tr_script(TWEAKED_KEY)
    assert output.tx_hash == tx.hash
    assert output.txid == tx.txid
    assert output.asset is None


def test_first_matching_output_wins(btc_chain):
    tx = _lockup(
        [
            TxOutput(1_000, p2tr_script(TWEAKED_KEY)),
            TxOutput(2_000, p2tr_script(TWEAKED_KEY)),
        ]
    )
    output = detect(TWEAKED_KEY, tx.to_hex(), btc_chain)
    assert output is not None
    assert output.output_index == 0


def test_no_matching_output(btc_chain):
    tx = _lockup([TxOutput(10_000, p2tr_script(b"\x02" * 32))])
    assert detect(TWEAKED_KEY, tx.to_hex(), btc_chain) is None
