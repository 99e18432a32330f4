"""
Bitcoin, Liquid and swap protocol constants.
"""

from __future__ import annotations

# secp256k1 group order
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

# Taproot leaf versions
LEAF_VERSION_TAPSCRIPT = 0xC0
LEAF_VERSION_TAPSCRIPT_ELEMENTS = 0xC4

# Sighash types used for key-path spends
SIGHASH_DEFAULT = 0x00
SIGHASH_ALL = 0x01

# Claim transactions signal RBF on Bitcoin
CLAIM_SEQUENCE = 0xFFFFFFFD
CLAIM_TX_VERSION = 2

# Witness v1 output: OP_1 PUSH32 <x-only key>
P2TR_PREFIX = bytes([0x51, 0x20])

# A key-path witness is a single BIP-340 signature (SIGHASH_DEFAULT, no suffix byte)
SCHNORR_SIGNATURE_SIZE = 64

PREIMAGE_SIZE = 32

# Service event stream channel and status strings
SWAP_UPDATE_CHANNEL = "swap.update"

STATUS_SWAP_CREATED = "swap.created"
STATUS_SWAP_EXPIRED = "swap.expired"
STATUS_LOCKUP = "transaction.lockup"
STATUS_USER_MEMPOOL = "transaction.mempool"
STATUS_USER_CONFIRMED = "transaction.confirmed"
STATUS_SERVER_MEMPOOL = "transaction.server.mempool"
STATUS_SERVER_CONFIRMED = "transaction.server.confirmed"
STATUS_CLAIMED = "transaction.claimed"
STATUS_LOCKUP_FAILED = "transaction.lockupFailed"
STATUS_CLAIM_FAILED = "transaction.claimFailed"
