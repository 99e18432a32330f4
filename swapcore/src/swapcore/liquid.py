"""
Liquid (Elements) adapter built on libwally-core.

Confidential transactions are parsed, unblinded, blinded and hashed with
wallycore; nothing here reimplements Elements serialization.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING

import wallycore as wally
from loguru import logger

from swapcore.chains import ChainParams
from swapcore.constants import CLAIM_SEQUENCE, SCHNORR_SIGNATURE_SIZE
from swapcore.errors import AddressError, SwapError
from swapcore.transaction import encode_varint

if TYPE_CHECKING:
    from swapcore.detector import SwapOutput

TX_FLAGS = wally.WALLY_TX_FLAG_USE_WITNESS | wally.WALLY_TX_FLAG_USE_ELEMENTS

# Explicit (unblinded) asset and value commitments start with 0x01
EXPLICIT_PREFIX = 0x01

# Weight saved by weighing a 33-byte commitment as a 9-byte explicit value
# or a 1-byte null nonce
CONFIDENTIAL_VALUE_SIZE = 33
VALUE_COMMITMENT_DISCOUNT = (33 - 9) * 4
NONCE_COMMITMENT_DISCOUNT = (33 - 1) * 4


class LiquidError(SwapError):
    pass


@dataclass
class UnblindedOutput:
    value: int
    asset: bytes
    asset_blinder: bytes
    value_blinder: bytes


def tx_from_hex(tx_hex: str):
    try:
        return wally.tx_from_hex(tx_hex, TX_FLAGS)
    except ValueError as e:
        raise LiquidError(f"Failed to parse Liquid transaction: {e}") from e


def tx_to_hex(tx) -> str:
    return wally.tx_to_hex(tx, wally.WALLY_TX_FLAG_USE_WITNESS)


def txid(tx) -> str:
    return wally.tx_get_txid(tx)[::-1].hex()


def output_scripts(tx) -> list[bytes]:
    return [
        bytes(wally.tx_get_output_script(tx, i) or b"")
        for i in range(wally.tx_get_num_outputs(tx))
    ]


def unblind_output(tx, index: int, blinding_key: bytes | None) -> UnblindedOutput:
    """Recover value, asset and blinders of an output (explicit outputs pass through)."""
    asset_commitment = bytes(wally.tx_get_output_asset(tx, index))
    value_commitment = bytes(wally.tx_get_output_value(tx, index))

    if asset_commitment[0] == EXPLICIT_PREFIX and value_commitment[0] == EXPLICIT_PREFIX:
        return UnblindedOutput(
            value=wally.tx_confidential_value_to_satoshi(value_commitment),
            asset=asset_commitment[1:],
            asset_blinder=bytes(32),
            value_blinder=bytes(32),
        )

    if blinding_key is None:
        raise LiquidError(f"Output {index} is blinded but no blinding key was provided")

    try:
        value, asset, asset_blinder, value_blinder = wally.asset_unblind(
            wally.tx_get_output_nonce(tx, index),
            blinding_key,
            wally.tx_get_output_rangeproof(tx, index),
            value_commitment,
            wally.tx_get_output_script(tx, index),
            asset_commitment,
        )
    except ValueError as e:
        raise LiquidError(f"Failed to unblind output {index}: {e}") from e
    return UnblindedOutput(value, bytes(asset), bytes(asset_blinder), bytes(value_blinder))


def decode_confidential_address(address: str, chain: ChainParams) -> tuple[bytes, bytes]:
    """
    Split a confidential segwit address into output script and blinding pubkey.

    Raises:
        AddressError: For unconfidential or malformed addresses
    """
    if chain.confidential_hrp is None:
        raise AddressError(f"{chain.symbol} has no confidential addresses")
    if not address.lower().startswith(chain.confidential_hrp + "1"):
        raise AddressError(
            f"A confidential {chain.symbol} address ({chain.confidential_hrp}1...) is required, "
            f"got {address[:12]}..."
        )
    try:
        blinding_pubkey = wally.confidential_addr_segwit_to_ec_public_key(
            address, chain.confidential_hrp
        )
        unconfidential = wally.confidential_addr_to_addr_segwit(
            address, chain.confidential_hrp, chain.hrp
        )
        script = wally.addr_segwit_to_bytes(unconfidential, chain.hrp, 0)
    except ValueError as e:
        raise AddressError(f"Invalid confidential address {address}: {e}") from e
    return bytes(script), bytes(blinding_pubkey)


def _blinding_entropy(num_outputs_to_blind: int) -> bytes:
    # 32 bytes each for asset blinder, value blinder, ephemeral ECDH key,
    # explicit value rangeproof and surjection proof seed
    return secrets.token_bytes(num_outputs_to_blind * 5 * 32)


def _int_map(value: bytes):
    result = wally.map_init(1, None)
    wally.map_add_integer(result, 0, value)
    return result


def build_claim(
    output: SwapOutput,
    destination_script: bytes,
    blinding_pubkey: bytes,
    fee: int,
):
    """
    Build and blind a one-input claim: a blinded destination output plus an
    explicit fee output. The input carries a placeholder key-path witness
    so the returned transaction has its final size.
    """
    if output.asset is None or output.asset_blinder is None or output.value_blinder is None:
        raise LiquidError("Swap output carries no Liquid asset data")
    try:
        tx = _build_claim(output, destination_script, blinding_pubkey, fee)
    except ValueError as e:
        raise LiquidError(f"Failed to build Liquid claim: {e}") from e
    logger.debug(f"Built blinded Liquid claim paying {output.value - fee} with fee {fee}")
    return tx


def _build_claim(output: SwapOutput, destination_script: bytes, blinding_pubkey: bytes, fee: int):
    value = output.value - fee
    psbt = wally.psbt_init(wally.WALLY_PSBT_VERSION_2, 1, 2, 0, wally.WALLY_PSBT_INIT_PSET)

    tx_input = wally.tx_input_init(output.tx_hash, output.output_index, CLAIM_SEQUENCE, None, None)
    wally.psbt_add_tx_input_at(psbt, 0, 0, tx_input)
    wally.psbt_set_input_witness_utxo_from_tx(
        psbt, 0, tx_from_hex(output.transaction_hex), output.output_index
    )
    # Explicit lockup outputs carry no rangeproof
    if output.rangeproof:
        wally.psbt_set_input_utxo_rangeproof(psbt, 0, output.rangeproof)

    asset_tag = bytes([EXPLICIT_PREFIX]) + output.asset
    txout = wally.tx_elements_output_init(
        destination_script, asset_tag, wally.tx_confidential_value_from_satoshi(value), None
    )
    wally.psbt_add_tx_output_at(psbt, 0, 0, txout)
    wally.psbt_set_output_blinding_public_key(psbt, 0, blinding_pubkey)
    wally.psbt_set_output_blinder_index(psbt, 0, 0)

    fee_txout = wally.tx_elements_output_init(
        None, asset_tag, wally.tx_confidential_value_from_satoshi(fee)
    )
    wally.psbt_add_tx_output_at(psbt, 1, 0, fee_txout)

    values, vbfs, assets, abfs = [wally.map_init(1, None) for _ in range(4)]
    wally.map_add_integer(values, 0, wally.tx_confidential_value_from_satoshi(output.value))
    wally.map_add_integer(vbfs, 0, output.value_blinder)
    wally.map_add_integer(assets, 0, output.asset)
    wally.map_add_integer(abfs, 0, output.asset_blinder)
    wally.psbt_blind(psbt, values, vbfs, assets, abfs, _blinding_entropy(1), 0, 0)

    placeholder = wally.tx_witness_stack_init(1)
    wally.tx_witness_stack_add(placeholder, bytes(SCHNORR_SIGNATURE_SIZE))
    wally.psbt_set_input_final_witness(psbt, 0, placeholder)

    return wally.psbt_extract(psbt, 0)


def vsize(tx) -> int:
    """
    Discounted virtual size (ELIP-200): blinded outputs are weighed as if
    they were explicit, so proofs and commitments add no fee.
    """
    weight = wally.tx_get_weight(tx)
    for index in range(wally.tx_get_num_outputs(tx)):
        rangeproof = wally.tx_get_output_rangeproof(tx, index) or b""
        surjectionproof = wally.tx_get_output_surjectionproof(tx, index) or b""
        # Output witness, except the two length bytes of an empty one
        weight -= (
            len(encode_varint(len(surjectionproof)))
            + len(surjectionproof)
            + len(encode_varint(len(rangeproof)))
            + len(rangeproof)
            - 2
        )
        if len(wally.tx_get_output_value(tx, index)) == CONFIDENTIAL_VALUE_SIZE:
            weight -= VALUE_COMMITMENT_DISCOUNT
        if len(wally.tx_get_output_nonce(tx, index) or b"") == CONFIDENTIAL_VALUE_SIZE:
            weight -= NONCE_COMMITMENT_DISCOUNT
    return (weight + 3) // 4


def taproot_sighash(tx, output: SwapOutput, chain: ChainParams) -> bytes:
    """Elements Taproot key-path sighash (SIGHASH_DEFAULT) for input 0."""
    if output.asset_commitment is None or output.value_commitment is None:
        raise LiquidError("Swap output carries no asset or value commitment")
    return bytes(
        wally.tx_get_input_signature_hash(
            tx,
            0,
            _int_map(output.script),
            _int_map(output.asset_commitment),
            _int_map(output.value_commitment),
            None,
            0,
            wally.WALLY_NO_CODESEPARATOR,
            None,
            chain.genesis_hash_bytes,
            wally.WALLY_SIGHASH_DEFAULT,
            wally.WALLY_SIGTYPE_SW_V1,
            None,
        )
    )


def set_key_path_witness(tx, signature: bytes) -> None:
    if len(signature) != SCHNORR_SIGNATURE_SIZE:
        raise LiquidError(f"Key-path signature must be 64 bytes, got {len(signature)}")
    stack = wally.tx_witness_stack_init(1)
    wally.tx_witness_stack_add(stack, signature)
    wally.tx_set_input_witness(tx, 0, stack)
