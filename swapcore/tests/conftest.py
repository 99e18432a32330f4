"""
Test configuration for swapcore tests.
"""

from __future__ import annotations

from collections.abc import Callable

import pytest
from coincurve import PrivateKey

from swapcore.chains import LBTC, BTC, ChainParams, NetworkType, get_chain_params
from swapcore.constants import LEAF_VERSION_TAPSCRIPT, LEAF_VERSION_TAPSCRIPT_ELEMENTS
from swapcore.crypto import EphemeralKey
from swapcore.models import SwapTree, SwapTreeLeaf
from swapcore.musig import SigningSession


@pytest.fixture
def local_key() -> EphemeralKey:
    return EphemeralKey()


@pytest.fixture
def remote_key() -> EphemeralKey:
    return EphemeralKey()


@pytest.fixture
def fixed_key() -> EphemeralKey:
    """Deterministic key (not for production use!)."""
    return EphemeralKey(PrivateKey(bytes.fromhex("11" * 32)))


@pytest.fixture
def btc_chain() -> ChainParams:
    return get_chain_params(BTC, NetworkType.REGTEST)


@pytest.fixture
def liquid_chain() -> ChainParams:
    return get_chain_params(LBTC, NetworkType.REGTEST)


def _tree(version: int) -> SwapTree:
    claim_script = bytes([0xA8, 0x20]) + bytes(range(32)) + bytes([0x88, 0x20]) + b"\x02" * 32 + b"\xac"
    refund_script = bytes([0x20]) + b"\x03" * 32 + bytes([0xAD, 0x02, 0xE8, 0x03, 0xB1])
    return SwapTree(
        claim_leaf=SwapTreeLeaf(version=version, output=claim_script.hex()),
        refund_leaf=SwapTreeLeaf(version=version, output=refund_script.hex()),
    )


@pytest.fixture
def btc_tree() -> SwapTree:
    return _tree(LEAF_VERSION_TAPSCRIPT)


@pytest.fixture
def liquid_tree() -> SwapTree:
    return _tree(LEAF_VERSION_TAPSCRIPT_ELEMENTS)


@pytest.fixture
def two_party() -> Callable[..., tuple[SigningSession, SigningSession]]:
    """
    Run both sides of a signing session up to the point where each holds
    the other's partial signature. Returns (local, remote) sessions.
    """

    def run(
        local_key: EphemeralKey,
        remote_key: EphemeralKey,
        merkle_root: bytes,
        message: bytes,
        tag: str = "TapTweak",
    ) -> tuple[SigningSession, SigningSession]:
        keys = [remote_key.public_key(), local_key.public_key()]
        local = SigningSession(local_key, keys)
        remote = SigningSession(remote_key, keys)
        local.tweak(merkle_root, tag=tag)
        remote.tweak(merkle_root, tag=tag)
        local.aggregate_nonces([(remote_key.public_key(), remote.public_nonce)])
        remote.aggregate_nonces([(local_key.public_key(), local.public_nonce)])
        local.initialize_session(message)
        remote.initialize_session(message)
        local_partial = local.sign_partial()
        remote_partial = remote.sign_partial()
        local.add_partial(remote_key.public_key(), remote_partial)
        remote.add_partial(local_key.public_key(), local_partial)
        return local, remote

    return run
