"""
Key custody and hashing primitives for swap signing.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod

from coincurve import PrivateKey, PublicKeyXOnly

from swapcore.constants import CURVE_ORDER


def tagged_hash(tag: str, data: bytes) -> bytes:
    """BIP-340 tagged hash: SHA256(SHA256(tag) || SHA256(tag) || data)."""
    tag_digest = hashlib.sha256(tag.encode("utf-8")).digest()
    return hashlib.sha256(tag_digest + tag_digest + data).digest()


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def xonly(pubkey: bytes) -> bytes:
    """Drop the parity byte of a compressed public key."""
    if len(pubkey) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")
    return pubkey[1:]


def verify_schnorr(xonly_pubkey: bytes, message: bytes, signature: bytes) -> bool:
    """Verify a BIP-340 signature over a 32-byte message."""
    try:
        return PublicKeyXOnly(xonly_pubkey).verify(signature, message)
    except Exception:
        return False


class SigningKey(ABC):
    """
    Key custody capability.

    The signing engine only ever sees the public key and asks the key for
    its contribution to a signature, so custody can live behind any
    implementation (HSM, remote signer, derived wallet key).
    """

    @abstractmethod
    def public_key(self) -> bytes:
        """Compressed 33-byte public key."""

    @abstractmethod
    def sign(self, message: bytes) -> bytes:
        """BIP-340 signature over a 32-byte message."""

    @abstractmethod
    def musig_partial(self, k_1: int, k_2: int, nonce_coefficient: int, challenge_factor: int) -> int:
        """
        MuSig2 partial signature scalar.

        Returns k_1 + b * k_2 + c * d (mod n) where d is the secret key,
        b the nonce coefficient and c = e * a * g (challenge, key
        aggregation coefficient and parity/tweak accumulator).
        """

    def public_key_hex(self) -> str:
        return self.public_key().hex()


class EphemeralKey(SigningKey):
    """
    In-memory keypair generated once per process and never persisted.
    """

    def __init__(self, private_key: PrivateKey | None = None):
        if private_key is None:
            private_key = PrivateKey()
        self._private_key = private_key
        self._public_key = private_key.public_key.format(compressed=True)

    def public_key(self) -> bytes:
        return self._public_key

    def sign(self, message: bytes) -> bytes:
        return self._private_key.sign_schnorr(message)

    def musig_partial(self, k_1: int, k_2: int, nonce_coefficient: int, challenge_factor: int) -> int:
        d = self._private_key.to_int()
        return (k_1 + nonce_coefficient * k_2 + challenge_factor * d) % CURVE_ORDER
