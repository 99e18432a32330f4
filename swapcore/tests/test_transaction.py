"""
Tests for the Bitcoin transaction codec and key-path sighash.
"""

from __future__ import annotations

import pytest

from swapcore.constants import SIGHASH_ALL, SIGHASH_DEFAULT
from swapcore.transaction import (
    Transaction,
    TransactionError,
    TxInput,
    TxOutput,
    deserialize_transaction,
    encode_varint,
    read_varint,
    taproot_key_path_sighash,
)

P2TR = bytes([0x51, 0x20]) + b"\x11" * 32
P2WPKH = bytes([0x00, 0x14]) + b"\x22" * 20


def _claim_like(witness: list[bytes] | None = None) -> Transaction:
    return Transaction(
        version=2,
        inputs=[TxInput(b"\xaa" * 32, 1, b"", 0xFFFFFFFD, witness or [])],
        outputs=[TxOutput(24_000, P2WPKH)],
        locktime=0,
    )


@pytest.mark.parametrize(
    "value,encoded",
    [
        (0, "00"),
        (0xFC, "fc"),
        (0xFD, "fdfd00"),
        (0xFFFF, "fdffff"),
        (0x10000, "fe00000100"),
        (0x100000000, "ff0000000001000000"),
    ],
)
def test_varint(value, encoded):
    assert encode_varint(value).hex() == encoded
    assert read_varint(bytes.fromhex(encoded), 0) == (value, len(encoded) // 2)


def test_witness_round_trip():
    tx = _claim_like([b"\x01" * 64])
    parsed = deserialize_transaction(tx.serialize())
    assert parsed == tx


def test_txid_excludes_witness():
    bare = _claim_like()
    signed = _claim_like([b"\x01" * 64])
    assert bare.txid == signed.txid
    assert bare.serialize() != signed.serialize()
    assert bare.hash[::-1].hex() == bare.txid


def test_key_path_claim_vsize():
    # 82 base bytes, 68 witness bytes
    tx = _claim_like([b"\x01" * 64])
    assert tx.weight() == 396
    assert tx.vsize() == 99


def test_deserialize_rejects_garbage():
    with pytest.raises(TransactionError):
        deserialize_transaction(b"\x02\x00\x00")


def test_deserialize_rejects_trailing_bytes():
    with pytest.raises(TransactionError, match="trailing"):
        deserialize_transaction(_claim_like().serialize() + b"\x00")


def test_sighash_is_deterministic():
    tx = _claim_like()
    first = taproot_key_path_sighash(tx, 0, [25_000], [P2TR])
    second = taproot_key_path_sighash(tx, 0, [25_000], [P2TR])
    assert first == second
    assert len(first) == 32


def test_sighash_ignores_witness():
    assert taproot_key_path_sighash(_claim_like(), 0, [25_000], [P2TR]) == (
        taproot_key_path_sighash(_claim_like([b"\x01" * 64]), 0, [25_000], [P2TR])
    )


def test_sighash_commits_to_amounts_and_outputs():
    tx = _claim_like()
    base = taproot_key_path_sighash(tx, 0, [25_000], [P2TR])
    assert taproot_key_path_sighash(tx, 0, [25_001], [P2TR]) != base

    tx.outputs[0].value -= 1
    assert taproot_key_path_sighash(tx, 0, [25_000], [P2TR]) != base


def test_sighash_types():
    tx = _claim_like()
    default = taproot_key_path_sighash(tx, 0, [25_000], [P2TR], SIGHASH_DEFAULT)
    sighash_all = taproot_key_path_sighash(tx, 0, [25_000], [P2TR], SIGHASH_ALL)
    assert default != sighash_all

    with pytest.raises(TransactionError, match="Unsupported"):
        taproot_key_path_sighash(tx, 0, [25_000], [P2TR], 0x83)


def test_sighash_requires_prevouts_for_every_input():
    with pytest.raises(TransactionError):
        taproot_key_path_sighash(_claim_like(), 0, [], [])
