"""
Locate the swap output in a lockup transaction by its tweaked Taproot key.
"""

from __future__ import annotations

from dataclasses import dataclass

import wallycore as wally
from loguru import logger

from swapcore import liquid
from swapcore.chains import ChainParams
from swapcore.errors import UnexpectedLockupAmount
from swapcore.taproot import output_key_from_script
from swapcore.transaction import deserialize_transaction


@dataclass
class SwapOutput:
    """A spendable swap output, derived fresh for each claim attempt."""

    output_index: int
    value: int
    script: bytes
    tweaked_key: bytes
    tx_hash: bytes
    transaction_hex: str
    # Liquid only
    asset: bytes | None = None
    asset_commitment: bytes | None = None
    value_commitment: bytes | None = None
    rangeproof: bytes | None = None
    asset_blinder: bytes | None = None
    value_blinder: bytes | None = None

    @property
    def txid(self) -> str:
        return self.tx_hash[::-1].hex()


def detect(
    tweaked_key: bytes,
    transaction_hex: str,
    chain: ChainParams,
    blinding_key: bytes | None = None,
) -> SwapOutput | None:
    """
    Find the first output paying to `tweaked_key`.

    Args:
        tweaked_key: 32-byte x-only Taproot output key
        transaction_hex: Raw lockup transaction
        chain: Chain the transaction belongs to
        blinding_key: Swap blinding private key (Liquid, blinded outputs)

    Returns:
        The matching output, or None if no output pays to the key
    """
    if chain.confidential:
        return _detect_liquid(tweaked_key, transaction_hex, chain, blinding_key)

    tx = deserialize_transaction(bytes.fromhex(transaction_hex))
    for index, out in enumerate(tx.outputs):
        if output_key_from_script(out.script) == tweaked_key:
            logger.debug(f"Swap output found at {tx.txid}:{index} ({out.value} sats)")
            return SwapOutput(
                output_index=index,
                value=out.value,
                script=out.script,
                tweaked_key=tweaked_key,
                tx_hash=tx.hash,
                transaction_hex=transaction_hex,
            )
    logger.debug(f"No output of {tx.txid} pays to {tweaked_key.hex()}")
    return None


def _detect_liquid(
    tweaked_key: bytes,
    transaction_hex: str,
    chain: ChainParams,
    blinding_key: bytes | None,
) -> SwapOutput | None:
    tx = liquid.tx_from_hex(transaction_hex)
    for index, script in enumerate(liquid.output_scripts(tx)):
        if output_key_from_script(script) != tweaked_key:
            continue
        unblinded = liquid.unblind_output(tx, index, blinding_key)
        if unblinded.asset != chain.asset_bytes:
            raise UnexpectedLockupAmount(
                f"Swap output {index} holds asset {unblinded.asset[::-1].hex()}, "
                f"expected {chain.asset_id}"
            )
        logger.debug(f"Swap output found at {liquid.txid(tx)}:{index} ({unblinded.value} sats)")
        return SwapOutput(
            output_index=index,
            value=unblinded.value,
            script=script,
            tweaked_key=tweaked_key,
            tx_hash=bytes(wally.tx_get_txid(tx)),
            transaction_hex=transaction_hex,
            asset=unblinded.asset,
            asset_commitment=bytes(wally.tx_get_output_asset(tx, index)),
            value_commitment=bytes(wally.tx_get_output_value(tx, index)),
            rangeproof=bytes(wally.tx_get_output_rangeproof(tx, index) or b""),
            asset_blinder=unblinded.asset_blinder,
            value_blinder=unblinded.value_blinder,
        )
    return None
