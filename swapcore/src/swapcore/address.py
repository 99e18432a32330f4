"""
Bitcoin address decoding for claim destinations.
"""

from __future__ import annotations

import base58
import wallycore as wally

from swapcore.chains import ChainParams
from swapcore.errors import AddressError


def address_to_scriptpubkey(address: str, chain: ChainParams) -> bytes:
    """
    Convert a Bitcoin address to scriptPubKey, checking it belongs to the chain.

    Supports:
    - P2WPKH / P2WSH (witness v0, bech32)
    - P2TR (witness v1, bech32m)
    - P2PKH / P2SH (base58)
    """
    if chain.confidential:
        raise AddressError(f"{chain.symbol} addresses are decoded by the Liquid adapter")

    lowered = address.lower()
    if lowered.startswith(chain.hrp + "1"):
        try:
            script = bytes(wally.addr_segwit_to_bytes(lowered, chain.hrp, 0))
        except ValueError as e:
            raise AddressError(f"Invalid segwit address: {address}") from e

        # OP_0 <20-byte-pubkeyhash | 32-byte-scripthash>
        if script[0] == 0x00 and len(script) in (22, 34):
            return script
        # OP_1 <32-byte-pubkey>
        if script[0] == 0x51 and len(script) == 34:
            return script
        raise AddressError(f"Unsupported witness program in {address}")

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise AddressError(f"Invalid address for {chain.network.value}: {address}") from e
    if len(decoded) != 21:
        raise AddressError(f"Invalid base58 payload length in {address}")

    version, payload = decoded[0], decoded[1:]
    if version == chain.p2pkh_version:
        # OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
        return bytes([0x76, 0xA9, 0x14]) + payload + bytes([0x88, 0xAC])
    if version == chain.p2sh_version:
        # OP_HASH160 <20-byte-scripthash> OP_EQUAL
        return bytes([0xA9, 0x14]) + payload + bytes([0x87])
    raise AddressError(f"Address version 0x{version:02x} is not valid on {chain.network.value}")
