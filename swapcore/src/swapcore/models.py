"""
Wire models for the swap service REST API and event stream.

The service speaks camelCase JSON; models accept both the wire names and
the Python field names.
"""

from __future__ import annotations

import json
import math
from decimal import Decimal
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def _validate_hex(v: str | None) -> str | None:
    if v is None:
        return v
    try:
        bytes.fromhex(v)
    except ValueError as e:
        raise ValueError(f"Invalid hex string: {v[:16]}...") from e
    return v.lower()


class SwapTreeLeaf(WireModel):
    version: int = Field(..., ge=0, le=0xFF)
    output: str

    @field_validator("output")
    @classmethod
    def validate_output(cls, v: str) -> str:
        result = _validate_hex(v)
        assert result is not None
        return result

    @property
    def script(self) -> bytes:
        return bytes.fromhex(self.output)


class SwapTree(WireModel):
    """Serialized Taproot script tree of a swap output."""

    claim_leaf: SwapTreeLeaf
    refund_leaf: SwapTreeLeaf
    covenant_claim_leaf: SwapTreeLeaf | None = None

    @classmethod
    def from_json(cls, data: str | dict[str, Any]) -> SwapTree:
        if isinstance(data, str):
            data = json.loads(data)
        return cls.model_validate(data)

    def to_json(self) -> str:
        return json.dumps(self.to_wire())


class CreateChainSwapRequest(WireModel):
    from_: str = Field(..., alias="from")
    to: str
    user_lock_amount: int = Field(..., gt=0)
    user_address: str | None = None
    claim_public_key: str
    refund_public_key: str
    preimage_hash: str
    referral_id: str | None = None

    @field_validator("claim_public_key", "refund_public_key")
    @classmethod
    def validate_pubkey(cls, v: str) -> str:
        if len(v) != 66:
            raise ValueError("Public key must be 33 bytes hex")
        result = _validate_hex(v)
        assert result is not None
        return result

    @field_validator("preimage_hash")
    @classmethod
    def validate_preimage_hash(cls, v: str) -> str:
        if len(v) != 64:
            raise ValueError("Preimage hash must be 32 bytes hex")
        result = _validate_hex(v)
        assert result is not None
        return result


class ChainSwapDetails(WireModel):
    """One side (lockup or claim) of a chain swap."""

    amount: int
    swap_tree: SwapTree
    timeout_block_height: int
    server_public_key: str
    lockup_address: str | None = None
    bip21: str | None = None
    blinding_key: str | None = None
    refund_address: str | None = None

    @field_validator("server_public_key", "blinding_key")
    @classmethod
    def validate_keys(cls, v: str | None) -> str | None:
        return _validate_hex(v)


class ChainSwapResponse(WireModel):
    id: str
    referral_id: str | None = None
    lockup_details: ChainSwapDetails
    claim_details: ChainSwapDetails


class ClaimDetails(WireModel):
    """Service claim request: what it wants us to co-sign for our lockup."""

    pub_nonce: str
    public_key: str
    transaction_hash: str


class PartialSignature(WireModel):
    pub_nonce: str
    partial_signature: str


class ClaimToSign(WireModel):
    index: int = 0
    transaction: str
    pub_nonce: str


class ClaimRequest(WireModel):
    preimage: str
    signature: PartialSignature | None = None
    to_sign: ClaimToSign


class MinerFees(BaseModel):
    server: int
    user_claim: int
    user_lockup: int


class FeeSchedule(BaseModel):
    """Fees quoted for one direction."""

    percentage: float
    miner_fees: MinerFees
    minimal: int | None = None
    maximal: int | None = None

    @classmethod
    def from_pairs(cls, data: dict[str, Any], from_asset: str, to_asset: str) -> FeeSchedule:
        try:
            pair = data[from_asset][to_asset]
            fees = pair["fees"]
            miner = fees["minerFees"]
            limits = pair.get("limits", {})
            return cls(
                percentage=fees["percentage"],
                miner_fees=MinerFees(
                    server=miner["server"],
                    user_claim=miner["user"]["claim"],
                    user_lockup=miner["user"]["lockup"],
                ),
                minimal=limits.get("minimal"),
                maximal=limits.get("maximal"),
            )
        except KeyError as e:
            raise ValueError(f"No fee schedule for {from_asset} -> {to_asset}: missing {e}") from e

    def service_fee(self, amount: int) -> int:
        """Percentage fee on an amount, rounded up to whole units."""
        return math.ceil(Decimal(str(self.percentage)) * amount / 100)


class TransactionInfo(WireModel):
    id: str
    hex: str | None = None


class LockupTransaction(WireModel):
    transaction: TransactionInfo
    timeout: dict[str, Any] | None = None


class SwapTransactions(WireModel):
    user_lock: LockupTransaction | None = None
    server_lock: LockupTransaction | None = None


class SwapUpdate(WireModel):
    id: str
    status: str
    transaction: TransactionInfo | None = None
    failure_reason: str | None = None


class StreamMessage(WireModel):
    event: str
    channel: str | None = None
    args: list[Any] = Field(default_factory=list)

    def updates(self) -> list[SwapUpdate]:
        if self.event != "update":
            return []
        updates = []
        for arg in self.args:
            if not isinstance(arg, dict):
                continue
            if "error" in arg and "status" not in arg:
                logger.warning(f"Service error for swap {arg.get('id')}: {arg['error']}")
                continue
            try:
                updates.append(SwapUpdate.model_validate(arg))
            except ValidationError as e:
                logger.warning(f"Skipping malformed update {arg}: {e.error_count()} errors")
        return updates
