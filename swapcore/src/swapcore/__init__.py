"""
swapcore - Protocol library for Bitcoin <-> Liquid chain swaps

Provides Taproot swap trees, MuSig2 cooperative signing, lockup output
detection and claim transaction primitives for both chains.
"""

__version__ = "0.1.0"

from swapcore.chains import BTC, LBTC, ChainParams, NetworkType, get_chain_params
from swapcore.crypto import EphemeralKey, SigningKey, tagged_hash
from swapcore.detector import SwapOutput, detect
from swapcore.errors import (
    AddressError,
    FeeTargetError,
    InsufficientFunds,
    OutputNotFound,
    ProtocolViolation,
    RemoteRejected,
    SwapError,
    TransportError,
    UnexpectedLockupAmount,
)
from swapcore.models import (
    ChainSwapDetails,
    ChainSwapResponse,
    ClaimDetails,
    CreateChainSwapRequest,
    FeeSchedule,
    PartialSignature,
    StreamMessage,
    SwapTransactions,
    SwapTree,
    SwapTreeLeaf,
    SwapUpdate,
    TransactionInfo,
)
from swapcore.musig import SessionState, SigningSession
from swapcore.taproot import merkle_root, p2tr_script, tweak_session

__all__ = [
    "AddressError",
    "BTC",
    "ChainParams",
    "ChainSwapDetails",
    "ChainSwapResponse",
    "ClaimDetails",
    "CreateChainSwapRequest",
    "EphemeralKey",
    "FeeSchedule",
    "FeeTargetError",
    "InsufficientFunds",
    "LBTC",
    "NetworkType",
    "OutputNotFound",
    "PartialSignature",
    "ProtocolViolation",
    "RemoteRejected",
    "SessionState",
    "SigningKey",
    "SigningSession",
    "StreamMessage",
    "SwapError",
    "SwapOutput",
    "SwapTransactions",
    "SwapTree",
    "SwapTreeLeaf",
    "SwapUpdate",
    "TransactionInfo",
    "TransportError",
    "UnexpectedLockupAmount",
    "detect",
    "get_chain_params",
    "merkle_root",
    "p2tr_script",
    "tagged_hash",
    "tweak_session",
]
