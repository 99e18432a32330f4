"""
Bitcoin transaction codec and the BIP-341 key-path signature hash.
"""

from __future__ import annotations

import hashlib
import math
import struct
from dataclasses import dataclass, field

from swapcore.constants import SIGHASH_ALL, SIGHASH_DEFAULT
from swapcore.crypto import sha256, tagged_hash
from swapcore.errors import SwapError


class TransactionError(SwapError):
    pass


@dataclass
class TxInput:
    txid_le: bytes
    vout: int
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF
    witness: list[bytes] = field(default_factory=list)

    @property
    def txid(self) -> str:
        return self.txid_le[::-1].hex()


@dataclass
class TxOutput:
    value: int
    script: bytes


@dataclass
class Transaction:
    version: int
    inputs: list[TxInput]
    outputs: list[TxOutput]
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        with_witness = include_witness and self.has_witness
        result = struct.pack("<i", self.version)
        if with_witness:
            result += bytes([0x00, 0x01])

        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.txid_le + struct.pack("<I", inp.vout)
            result += encode_varint(len(inp.script_sig)) + inp.script_sig
            result += struct.pack("<I", inp.sequence)

        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += struct.pack("<Q", out.value)
            result += encode_varint(len(out.script)) + out.script

        if with_witness:
            for inp in self.inputs:
                result += encode_varint(len(inp.witness))
                for item in inp.witness:
                    result += encode_varint(len(item)) + item

        result += struct.pack("<I", self.locktime)
        return result

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def hash(self) -> bytes:
        """Transaction id in internal byte order (as used in outpoints)."""
        return hash256(self.serialize(include_witness=False))

    def weight(self) -> int:
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize(include_witness=True))
        return base * 3 + total

    def vsize(self) -> int:
        return math.ceil(self.weight() / 4)


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    if first == 0xFD:
        value = int.from_bytes(data[offset : offset + 2], "little")
        return value, offset + 2
    if first == 0xFE:
        value = int.from_bytes(data[offset : offset + 4], "little")
        return value, offset + 4
    value = int.from_bytes(data[offset : offset + 8], "little")
    return value, offset + 8


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def deserialize_transaction(tx_bytes: bytes) -> Transaction:
    try:
        offset = 0
        version = struct.unpack("<i", tx_bytes[offset : offset + 4])[0]
        offset += 4

        has_witness = False
        if tx_bytes[offset] == 0x00 and tx_bytes[offset + 1] == 0x01:
            has_witness = True
            offset += 2

        input_count, offset = read_varint(tx_bytes, offset)
        inputs: list[TxInput] = []
        for _ in range(input_count):
            txid_le = tx_bytes[offset : offset + 32]
            offset += 32
            vout = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
            offset += 4
            script_len, offset = read_varint(tx_bytes, offset)
            script_sig = tx_bytes[offset : offset + script_len]
            offset += script_len
            sequence = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
            offset += 4
            inputs.append(TxInput(txid_le, vout, script_sig, sequence))

        output_count, offset = read_varint(tx_bytes, offset)
        outputs: list[TxOutput] = []
        for _ in range(output_count):
            value = struct.unpack("<Q", tx_bytes[offset : offset + 8])[0]
            offset += 8
            script_len, offset = read_varint(tx_bytes, offset)
            outputs.append(TxOutput(value, tx_bytes[offset : offset + script_len]))
            offset += script_len

        if has_witness:
            for inp in inputs:
                stack_count, offset = read_varint(tx_bytes, offset)
                for _ in range(stack_count):
                    item_len, offset = read_varint(tx_bytes, offset)
                    inp.witness.append(tx_bytes[offset : offset + item_len])
                    offset += item_len

        locktime = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
        offset += 4
        if offset != len(tx_bytes):
            raise ValueError(f"{len(tx_bytes) - offset} trailing bytes")
        return Transaction(version, inputs, outputs, locktime)

    except (IndexError, ValueError, struct.error) as e:
        raise TransactionError(f"Failed to parse transaction: {e}") from e


def taproot_key_path_sighash(
    tx: Transaction,
    input_index: int,
    prevout_values: list[int],
    prevout_scripts: list[bytes],
    hash_type: int = SIGHASH_DEFAULT,
) -> bytes:
    """
    BIP-341 signature hash for a key-path spend.

    Only SIGHASH_DEFAULT and SIGHASH_ALL are supported; both commit to
    every input and output.

    Args:
        tx: Transaction being signed
        input_index: Index of the input to sign
        prevout_values: Values of all spent outputs, in input order
        prevout_scripts: scriptPubKeys of all spent outputs, in input order
        hash_type: Sighash type

    Returns:
        32-byte message for a BIP-340 signature
    """
    if hash_type not in (SIGHASH_DEFAULT, SIGHASH_ALL):
        raise TransactionError(f"Unsupported sighash type: {hash_type}")
    if input_index >= len(tx.inputs):
        raise TransactionError("Input index out of range")
    if len(prevout_values) != len(tx.inputs) or len(prevout_scripts) != len(tx.inputs):
        raise TransactionError("Spent output data must cover every input")

    sha_prevouts = sha256(
        b"".join(inp.txid_le + struct.pack("<I", inp.vout) for inp in tx.inputs)
    )
    sha_amounts = sha256(b"".join(struct.pack("<Q", v) for v in prevout_values))
    sha_scriptpubkeys = sha256(
        b"".join(encode_varint(len(script)) + script for script in prevout_scripts)
    )
    sha_sequences = sha256(b"".join(struct.pack("<I", inp.sequence) for inp in tx.inputs))
    sha_outputs = sha256(
        b"".join(
            struct.pack("<Q", out.value) + encode_varint(len(out.script)) + out.script
            for out in tx.outputs
        )
    )

    sig_msg = (
        bytes([0x00])  # epoch
        + bytes([hash_type])
        + struct.pack("<i", tx.version)
        + struct.pack("<I", tx.locktime)
        + sha_prevouts
        + sha_amounts
        + sha_scriptpubkeys
        + sha_sequences
        + sha_outputs
        + bytes([0x00])  # key path, no annex
        + struct.pack("<I", input_index)
    )
    return tagged_hash("TapSighash", sig_msg)
