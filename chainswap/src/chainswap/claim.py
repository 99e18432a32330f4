"""
Claim transaction construction and the cooperative (key-path) claim.

A claim attempt detects the service's lockup output, builds a claim at the
target fee rate, co-signs the service's claim of our own lockup, exchanges
MuSig2 partial signatures for our claim and broadcasts the result.
"""

from __future__ import annotations

import asyncio
import math
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, TypeVar

from loguru import logger
from swapcore import liquid
from swapcore.address import address_to_scriptpubkey
from swapcore.chains import ChainParams
from swapcore.constants import CLAIM_SEQUENCE, CLAIM_TX_VERSION, SCHNORR_SIGNATURE_SIZE
from swapcore.crypto import SigningKey
from swapcore.detector import SwapOutput, detect
from swapcore.errors import (
    FeeTargetError,
    InsufficientFunds,
    OutputNotFound,
    ProtocolViolation,
    UnexpectedLockupAmount,
)
from swapcore.models import ClaimToSign, PartialSignature
from swapcore.musig import SigningSession
from swapcore.taproot import tweak_session
from swapcore.transaction import Transaction, TxInput, TxOutput, taproot_key_path_sighash

from chainswap.client import SwapServiceClient

if TYPE_CHECKING:
    from chainswap.controller import SwapRecord

MAX_FEE_ITERATIONS = 10

T = TypeVar("T")


def target_fee(
    fee_rate: float,
    build: Callable[[int], T],
    vsize_of: Callable[[T], int],
    max_iterations: int = MAX_FEE_ITERATIONS,
) -> tuple[T, int]:
    """
    Rebuild a transaction until its fee matches ceil(vsize * fee_rate).

    Stops once the fee covers the requirement with at most one unit of
    excess. If the size oscillates between two fees, the larger one is
    kept.

    Returns:
        (transaction, fee)
    """
    fee = 0
    tried: set[int] = set()
    for _ in range(max_iterations):
        tx = build(fee)
        required = math.ceil(vsize_of(tx) * fee_rate)
        if 0 <= fee - required <= 1:
            return tx, fee
        if fee > required and required in tried:
            return tx, fee
        tried.add(fee)
        fee = required
    raise FeeTargetError(f"Fee did not converge within {max_iterations} iterations (last {fee})")


class ClaimTransaction(ABC):
    """Unsigned claim spending one swap output through the key path."""

    def __init__(self, output: SwapOutput, fee: int):
        if output.value - fee <= 0:
            raise InsufficientFunds(
                f"Swap output of {output.value} cannot cover a fee of {fee}"
            )
        self.output = output
        self.fee = fee

    @property
    def output_value(self) -> int:
        return self.output.value - self.fee

    @abstractmethod
    def vsize(self) -> int:
        """Virtual size including a 64-byte key-path witness."""

    @abstractmethod
    def sighash(self) -> bytes:
        """Taproot key-path signature hash of input 0."""

    @abstractmethod
    def unsigned_hex(self) -> str:
        """Transaction as sent to the service for co-signing."""

    @abstractmethod
    def finalize(self, signature: bytes) -> str:
        """Attach the aggregated signature and return the raw transaction."""

    @property
    @abstractmethod
    def txid(self) -> str: ...


class BitcoinClaimTransaction(ClaimTransaction):
    def __init__(self, output: SwapOutput, destination_script: bytes, fee: int):
        super().__init__(output, fee)
        self.tx = Transaction(
            version=CLAIM_TX_VERSION,
            inputs=[TxInput(output.tx_hash, output.output_index, b"", CLAIM_SEQUENCE)],
            outputs=[TxOutput(self.output_value, destination_script)],
            locktime=0,
        )

    def vsize(self) -> int:
        placeholder = [bytes(SCHNORR_SIGNATURE_SIZE)]
        measured = replace(
            self.tx, inputs=[replace(inp, witness=placeholder) for inp in self.tx.inputs]
        )
        return measured.vsize()

    def sighash(self) -> bytes:
        return taproot_key_path_sighash(self.tx, 0, [self.output.value], [self.output.script])

    def unsigned_hex(self) -> str:
        return self.tx.serialize(include_witness=False).hex()

    def finalize(self, signature: bytes) -> str:
        if len(signature) != SCHNORR_SIGNATURE_SIZE:
            raise ProtocolViolation(f"Key-path signature must be 64 bytes, got {len(signature)}")
        self.tx.inputs[0].witness = [signature]
        return self.tx.to_hex()

    @property
    def txid(self) -> str:
        return self.tx.txid


class LiquidClaimTransaction(ClaimTransaction):
    def __init__(
        self,
        output: SwapOutput,
        destination_script: bytes,
        blinding_pubkey: bytes,
        fee: int,
        chain: ChainParams,
    ):
        super().__init__(output, fee)
        self.chain = chain
        self.tx = liquid.build_claim(output, destination_script, blinding_pubkey, fee)

    def vsize(self) -> int:
        return liquid.vsize(self.tx)

    def sighash(self) -> bytes:
        return liquid.taproot_sighash(self.tx, self.output, self.chain)

    def unsigned_hex(self) -> str:
        return liquid.tx_to_hex(self.tx)

    def finalize(self, signature: bytes) -> str:
        liquid.set_key_path_witness(self.tx, signature)
        return liquid.tx_to_hex(self.tx)

    @property
    def txid(self) -> str:
        return liquid.txid(self.tx)


class ClaimTransactionBuilder:
    """Builds claims for one chain, searching for the fee that matches a rate."""

    def __init__(self, chain: ChainParams, max_fee_iterations: int = MAX_FEE_ITERATIONS):
        self.chain = chain
        self.max_fee_iterations = max_fee_iterations

    def build(self, output: SwapOutput, destination: str, fee_rate: float) -> ClaimTransaction:
        """
        Args:
            output: Detected swap output
            destination: Claim address (confidential on Liquid)
            fee_rate: Target fee rate in sat/vbyte

        Raises:
            AddressError: Destination not valid for the chain
            InsufficientFunds: Fee consumes the whole output
            FeeTargetError: Fee search did not converge
        """
        if self.chain.confidential:
            script, blinding_pubkey = liquid.decode_confidential_address(destination, self.chain)

            def build_for_fee(fee: int) -> ClaimTransaction:
                return LiquidClaimTransaction(output, script, blinding_pubkey, fee, self.chain)

        else:
            script = address_to_scriptpubkey(destination, self.chain)

            def build_for_fee(fee: int) -> ClaimTransaction:
                return BitcoinClaimTransaction(output, script, fee)

        tx, fee = target_fee(
            fee_rate, build_for_fee, lambda t: t.vsize(), max_iterations=self.max_fee_iterations
        )
        logger.info(
            f"Built {self.chain.symbol} claim {tx.txid}: {tx.output_value} sats, "
            f"fee {fee} ({tx.vsize()} vB at {fee_rate} sat/vB)"
        )
        return tx


@dataclass
class ClaimContext:
    """Everything one claim attempt passes between detection, building and signing."""

    session: SigningSession
    remote_pubkey: bytes
    output: SwapOutput | None = None
    transaction: ClaimTransaction | None = None


class CooperativeClaim:
    """A single claim attempt for one swap. Each attempt draws fresh nonces."""

    def __init__(
        self,
        client: SwapServiceClient,
        key: SigningKey,
        record: SwapRecord,
        network: str,
        fee_rate: float | None = None,
        detection_retries: int = 5,
        detection_backoff_sec: float = 2.0,
    ):
        self.client = client
        self.key = key
        self.record = record
        self.claim_chain = record.direction.claim_chain(network)
        self.lockup_chain = record.direction.lockup_chain(network)
        self.fee_rate = fee_rate
        self.detection_retries = detection_retries
        self.detection_backoff_sec = detection_backoff_sec

    def new_context(self) -> ClaimContext:
        remote = bytes.fromhex(self.record.claim_public_key)
        session = SigningSession(self.key, [remote, self.key.public_key()])
        return ClaimContext(session=session, remote_pubkey=remote)

    async def run(self) -> str:
        """Execute the claim and return the broadcast transaction id."""
        record = self.record
        context = self.new_context()
        tweaked_key = tweak_session(context.session, record.claim_tree, self.claim_chain)

        context.output = await self.detect_output(tweaked_key)
        if context.output.value < record.expected_amount:
            raise UnexpectedLockupAmount(
                f"Service locked {context.output.value}, expected {record.expected_amount}"
            )

        fee_rate = self.fee_rate
        if fee_rate is None:
            fee_rate = await self.client.get_network_fee(self.claim_chain.symbol)
        record.fee_rate = fee_rate
        builder = ClaimTransactionBuilder(self.claim_chain)
        context.transaction = builder.build(context.output, record.user_address, fee_rate)

        service_signature = await self.cosign_service_claim()
        their_partial = await self.client.submit_claim(
            record.swap_id,
            record.preimage,
            service_signature,
            ClaimToSign(
                index=0,
                transaction=context.transaction.unsigned_hex(),
                pub_nonce=context.session.public_nonce.hex(),
            ),
        )

        session = context.session
        session.aggregate_nonces([(context.remote_pubkey, bytes.fromhex(their_partial.pub_nonce))])
        session.initialize_session(context.transaction.sighash())
        session.sign_partial()
        session.add_partial(context.remote_pubkey, bytes.fromhex(their_partial.partial_signature))
        signature = session.aggregate_partials()

        tx_hex = context.transaction.finalize(signature)
        return await self.client.broadcast(self.claim_chain.symbol, tx_hex)

    async def detect_output(self, tweaked_key: bytes) -> SwapOutput:
        """Find our output in the server lockup, refetching it with backoff."""
        blinding_key = (
            bytes.fromhex(self.record.claim_blinding_key)
            if self.record.claim_blinding_key
            else None
        )
        tx_hex = self.record.server_lock_hex
        for attempt in range(self.detection_retries):
            if tx_hex is None:
                tx_hex = await self._fetch_server_lock()
            if tx_hex is not None:
                output = detect(tweaked_key, tx_hex, self.claim_chain, blinding_key)
                if output is not None:
                    return output
                logger.warning(
                    f"Swap {self.record.swap_id}: no output pays {tweaked_key.hex()} "
                    f"(attempt {attempt + 1}/{self.detection_retries})"
                )
            if attempt + 1 < self.detection_retries:
                await asyncio.sleep(self.detection_backoff_sec * (2**attempt))
            tx_hex = None
        raise OutputNotFound(
            f"No output paying {tweaked_key.hex()} in the server lockup of {self.record.swap_id}"
        )

    async def _fetch_server_lock(self) -> str | None:
        transactions = await self.client.get_swap_transactions(self.record.swap_id)
        if transactions.server_lock is None:
            return None
        return transactions.server_lock.transaction.hex

    async def cosign_service_claim(self) -> PartialSignature:
        """Partial signature for the service's key-path claim of our lockup."""
        record = self.record
        details = await self.client.get_claim_details(record.swap_id)
        if details.public_key != record.lockup_public_key:
            raise ProtocolViolation(
                f"Claim details signed by {details.public_key}, "
                f"expected {record.lockup_public_key}"
            )
        remote = bytes.fromhex(record.lockup_public_key)
        session = SigningSession(self.key, [remote, self.key.public_key()])
        tweak_session(session, record.lockup_tree, self.lockup_chain)
        session.aggregate_nonces([(remote, bytes.fromhex(details.pub_nonce))])
        session.initialize_session(bytes.fromhex(details.transaction_hash))
        partial = session.sign_partial()
        logger.debug(f"Swap {record.swap_id}: co-signed service claim {details.transaction_hash}")
        return PartialSignature(pub_nonce=session.public_nonce.hex(), partial_signature=partial.hex())
