"""
MuSig2 two-party signing (BIP-327) over coincurve points.

The module has two layers:

- Stateless BIP-327 algorithms (key_agg, nonce_gen, nonce_agg,
  session_values, partial_sig_verify, partial_sig_agg).
- SigningSession, a single-use state machine that enforces the call order
  tweak -> aggregate_nonces -> initialize_session -> sign_partial /
  add_partial -> aggregate_partials and refuses to sign twice with one nonce.

Public keys are 33-byte compressed keys and are aggregated in the order
given (no sorting), matching the swap service.
"""

from __future__ import annotations

import secrets
from collections import OrderedDict
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

from coincurve import PrivateKey, PublicKey
from loguru import logger

from swapcore.constants import CURVE_ORDER
from swapcore.crypto import SigningKey, tagged_hash, verify_schnorr
from swapcore.errors import ProtocolViolation, RemoteRejected

PUBNONCE_SIZE = 66
PARTIAL_SIG_SIZE = 32

# Oldest public nonces are forgotten past this many
MAX_TRACKED_NONCES = 10_000

_INFINITY_BYTES = b"\x00" * 33


def _int(data: bytes) -> int:
    return int.from_bytes(data, "big")


def _bytes32(value: int) -> bytes:
    return value.to_bytes(32, "big")


def _mul_g(k: int) -> PublicKey | None:
    if k % CURVE_ORDER == 0:
        return None
    return PrivateKey.from_int(k % CURVE_ORDER).public_key


def _mul(point: PublicKey | None, k: int) -> PublicKey | None:
    if point is None or k % CURVE_ORDER == 0:
        return None
    return point.multiply(_bytes32(k % CURVE_ORDER))


def _add(a: PublicKey | None, b: PublicKey | None) -> PublicKey | None:
    # None stands for the point at infinity
    if a is None:
        return b
    if b is None:
        return a
    try:
        return PublicKey.combine_keys([a, b])
    except ValueError:
        # a == -b
        return None


def _has_even_y(point: PublicKey) -> bool:
    return point.format(compressed=True)[0] == 0x02


def _xbytes(point: PublicKey) -> bytes:
    return point.format(compressed=True)[1:]


def _negate(point: PublicKey) -> PublicKey:
    compressed = point.format(compressed=True)
    return PublicKey(bytes([compressed[0] ^ 0x01]) + compressed[1:])


def _same_point(a: PublicKey | None, b: PublicKey | None) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return a.format(compressed=True) == b.format(compressed=True)


def _cpoint_ext(data: bytes) -> PublicKey | None:
    if data == _INFINITY_BYTES:
        return None
    return PublicKey(data)


def _cbytes_ext(point: PublicKey | None) -> bytes:
    if point is None:
        return _INFINITY_BYTES
    return point.format(compressed=True)


# --- Key aggregation -------------------------------------------------------


def _hash_keys(pubkeys: tuple[bytes, ...]) -> bytes:
    return tagged_hash("KeyAgg list", b"".join(pubkeys))


def _second_key(pubkeys: tuple[bytes, ...]) -> bytes:
    for pubkey in pubkeys[1:]:
        if pubkey != pubkeys[0]:
            return pubkey
    return _INFINITY_BYTES


def _key_agg_coeff(pubkeys: tuple[bytes, ...], pubkey: bytes) -> int:
    if pubkey not in pubkeys:
        raise ValueError(f"Public key {pubkey.hex()} is not part of the aggregate")
    if pubkey == _second_key(pubkeys):
        return 1
    return _int(tagged_hash("KeyAgg coefficient", _hash_keys(pubkeys) + pubkey)) % CURVE_ORDER


@dataclass(frozen=True)
class KeyAggContext:
    """Aggregate key Q with its parity (gacc) and tweak (tacc) accumulators."""

    pubkeys: tuple[bytes, ...]
    point: PublicKey
    gacc: int = 1
    tacc: int = 0

    @property
    def xonly(self) -> bytes:
        return _xbytes(self.point)

    def coefficient(self, pubkey: bytes) -> int:
        return _key_agg_coeff(self.pubkeys, pubkey)

    def apply_xonly_tweak(self, tweak: bytes) -> KeyAggContext:
        t = _int(tweak)
        if t >= CURVE_ORDER:
            raise ValueError("Tweak exceeds the curve order")
        g = 1 if _has_even_y(self.point) else CURVE_ORDER - 1
        base = self.point if g == 1 else _negate(self.point)
        tweaked = _add(base, _mul_g(t))
        if tweaked is None:
            raise ValueError("Tweaked aggregate key is the point at infinity")
        return KeyAggContext(
            pubkeys=self.pubkeys,
            point=tweaked,
            gacc=g * self.gacc % CURVE_ORDER,
            tacc=(t + g * self.tacc) % CURVE_ORDER,
        )


def key_agg(pubkeys: list[bytes]) -> KeyAggContext:
    """Aggregate compressed public keys in the given order."""
    keys = tuple(pubkeys)
    aggregate: PublicKey | None = None
    for pubkey in keys:
        point = PublicKey(pubkey)
        aggregate = _add(aggregate, _mul(point, _key_agg_coeff(keys, pubkey)))
    if aggregate is None:
        raise ValueError("Aggregate key is the point at infinity")
    return KeyAggContext(pubkeys=keys, point=aggregate)


# --- Nonces ----------------------------------------------------------------


def _nonce_hash(rand: bytes, pubkey: bytes, aggpk: bytes, index: int, extra_in: bytes) -> int:
    buf = rand
    buf += len(pubkey).to_bytes(1, "big") + pubkey
    buf += len(aggpk).to_bytes(1, "big") + aggpk
    # No message is committed to at generation time
    buf += b"\x00"
    buf += len(extra_in).to_bytes(4, "big") + extra_in
    buf += index.to_bytes(1, "big")
    return _int(tagged_hash("MuSig/nonce", buf))


def nonce_gen(
    rand: bytes, pubkey: bytes, aggpk: bytes = b"", extra_in: bytes = b""
) -> tuple[bytes, bytes]:
    """
    Derive a nonce pair from 32 bytes of fresh randomness.

    Returns:
        (secnonce, pubnonce): secnonce is k_1 || k_2 || pubkey (97 bytes),
        pubnonce is R_1 || R_2 (66 bytes)
    """
    if len(rand) != 32:
        raise ValueError("Nonce randomness must be 32 bytes")
    k_1 = _nonce_hash(rand, pubkey, aggpk, 0, extra_in) % CURVE_ORDER
    k_2 = _nonce_hash(rand, pubkey, aggpk, 1, extra_in) % CURVE_ORDER
    r_1 = _mul_g(k_1)
    r_2 = _mul_g(k_2)
    if r_1 is None or r_2 is None:
        raise ValueError("Degenerate nonce")
    pubnonce = r_1.format(compressed=True) + r_2.format(compressed=True)
    secnonce = _bytes32(k_1) + _bytes32(k_2) + pubkey
    return secnonce, pubnonce


def nonce_agg(pubnonces: list[bytes]) -> bytes:
    """Sum the R_1 and R_2 components of all public nonces."""
    aggnonce = b""
    for j in range(2):
        total: PublicKey | None = None
        for pubnonce in pubnonces:
            if len(pubnonce) != PUBNONCE_SIZE:
                raise ValueError(f"Invalid public nonce length: {len(pubnonce)}")
            total = _add(total, PublicKey(pubnonce[j * 33 : (j + 1) * 33]))
        aggnonce += _cbytes_ext(total)
    return aggnonce


# --- Signing ---------------------------------------------------------------


@dataclass(frozen=True)
class SessionValues:
    b: int
    r: PublicKey
    e: int


def session_values(keyagg: KeyAggContext, aggnonce: bytes, msg: bytes) -> SessionValues:
    b = _int(tagged_hash("MuSig/noncecoef", aggnonce + keyagg.xonly + msg)) % CURVE_ORDER
    r_1 = _cpoint_ext(aggnonce[0:33])
    r_2 = _cpoint_ext(aggnonce[33:66])
    r = _add(r_1, _mul(r_2, b))
    if r is None:
        r = _mul_g(1)
    assert r is not None
    e = _int(tagged_hash("BIP0340/challenge", _xbytes(r) + keyagg.xonly + msg)) % CURVE_ORDER
    return SessionValues(b=b, r=r, e=e)


def _parity_factor(keyagg: KeyAggContext) -> int:
    g = 1 if _has_even_y(keyagg.point) else CURVE_ORDER - 1
    return g * keyagg.gacc % CURVE_ORDER


def partial_sig_verify(
    psig: bytes,
    pubnonce: bytes,
    pubkey: bytes,
    keyagg: KeyAggContext,
    values: SessionValues,
) -> bool:
    """Check one signer's partial signature against its key and nonce."""
    try:
        s = _int(psig)
        if len(psig) != PARTIAL_SIG_SIZE or s >= CURVE_ORDER:
            return False
        r_s1 = PublicKey(pubnonce[0:33])
        r_s2 = PublicKey(pubnonce[33:66])
        re_s = _add(r_s1, _mul(r_s2, values.b))
        if re_s is not None and not _has_even_y(values.r):
            re_s = _negate(re_s)
        a = keyagg.coefficient(pubkey)
        factor = values.e * a * _parity_factor(keyagg) % CURVE_ORDER
        expected = _add(re_s, _mul(PublicKey(pubkey), factor))
        return _same_point(_mul_g(s), expected)
    except ValueError:
        return False


def partial_sig_agg(psigs: list[bytes], keyagg: KeyAggContext, values: SessionValues) -> bytes:
    """Combine partial signatures into a BIP-340 signature for the (tweaked) aggregate key."""
    s = 0
    for psig in psigs:
        s_i = _int(psig)
        if s_i >= CURVE_ORDER:
            raise ValueError("Partial signature exceeds the curve order")
        s = (s + s_i) % CURVE_ORDER
    g = 1 if _has_even_y(keyagg.point) else CURVE_ORDER - 1
    s = (s + values.e * g * keyagg.tacc) % CURVE_ORDER
    return _xbytes(values.r) + _bytes32(s)


class SessionState(str, Enum):
    CREATED = "created"
    TWEAKED = "tweaked"
    NONCES_AGGREGATED = "nonces_aggregated"
    INITIALIZED = "initialized"
    FINALIZED = "finalized"
    FAILED = "failed"


class SigningSession:
    """
    One cooperative signature between the local key and the remote signer.

    A session is single-use. Any out-of-order call or failing step moves it
    to FAILED and every later call raises ProtocolViolation; retries must
    create a new session, which draws a new nonce.
    """

    # Public nonces handed out by this process; a repeat means the same
    # secret nonce could sign two different messages.
    _issued_nonces: OrderedDict[bytes, None] = OrderedDict()

    def __init__(
        self,
        key: SigningKey,
        pubkeys: list[bytes],
        session_seed: bytes | None = None,
    ):
        """
        Args:
            key: Local key custody
            pubkeys: Ordered key set, [remote, local] for swaps
            session_seed: 32 bytes of nonce randomness (fresh random if not provided)
        """
        self.key = key
        self.local_pubkey = key.public_key()
        if self.local_pubkey not in pubkeys:
            raise ProtocolViolation("Local public key is not part of the signing set")
        if len(set(pubkeys)) != len(pubkeys):
            raise ProtocolViolation("Duplicate public key in the signing set")

        self.pubkeys = list(pubkeys)
        self.keyagg = key_agg(self.pubkeys)
        self.internal_key = self.keyagg.xonly

        seed = session_seed if session_seed is not None else secrets.token_bytes(32)
        secnonce, pubnonce = nonce_gen(seed, self.local_pubkey)
        if pubnonce in SigningSession._issued_nonces:
            self.state = SessionState.FAILED
            raise ProtocolViolation("Nonce reuse detected: this public nonce was already issued")
        SigningSession._remember_nonce(pubnonce)

        self._secnonce: bytes | None = secnonce
        self.public_nonce = pubnonce
        self.state = SessionState.CREATED
        self.tweaked_key: bytes | None = None
        self.aggregated_nonce: bytes | None = None
        self.session_hash: bytes | None = None
        self.remote_nonces: dict[bytes, bytes] = {}
        self.partial_signatures: dict[bytes, bytes] = {}
        self._values: SessionValues | None = None

    @classmethod
    def _remember_nonce(cls, pubnonce: bytes) -> None:
        cls._issued_nonces[pubnonce] = None
        while len(cls._issued_nonces) > MAX_TRACKED_NONCES:
            cls._issued_nonces.popitem(last=False)

    @property
    def remote_pubkeys(self) -> list[bytes]:
        return [pk for pk in self.pubkeys if pk != self.local_pubkey]

    @contextmanager
    def _step(self, operation: str, *allowed: SessionState) -> Iterator[None]:
        if self.state is SessionState.FAILED:
            raise ProtocolViolation(f"{operation}: session already failed, create a new one")
        if self.state not in allowed:
            current = self.state
            self._discard()
            raise ProtocolViolation(f"{operation} not allowed in state '{current.value}'")
        try:
            yield
        except Exception:
            self._discard()
            raise

    def _discard(self) -> None:
        self.state = SessionState.FAILED
        self._secnonce = None

    def tweak(self, merkle_root: bytes, tag: str = "TapTweak") -> bytes:
        """
        Apply the Taproot tweak for a script tree and return the output key.

        Args:
            merkle_root: Merkle root of the script tree
            tag: Tagged-hash name ("TapTweak" or "TapTweak/elements")

        Returns:
            32-byte x-only tweaked key
        """
        with self._step("tweak", SessionState.CREATED):
            tweak = tagged_hash(tag, self.internal_key + merkle_root)
            self.keyagg = self.keyagg.apply_xonly_tweak(tweak)
            self.tweaked_key = self.keyagg.xonly
            self.state = SessionState.TWEAKED
        assert self.tweaked_key is not None
        return self.tweaked_key

    def aggregate_nonces(self, remote_nonces: list[tuple[bytes, bytes]]) -> bytes:
        """Merge the remote nonce contributions with our own nonce."""
        with self._step("aggregate_nonces", SessionState.TWEAKED):
            expected = set(self.remote_pubkeys)
            for pubkey, nonce in remote_nonces:
                if pubkey == self.local_pubkey:
                    raise ProtocolViolation("Local key cannot contribute a remote nonce")
                if pubkey not in expected:
                    raise ProtocolViolation(f"Unknown signer {pubkey.hex()}")
                if pubkey in self.remote_nonces:
                    raise ProtocolViolation(f"Nonce for {pubkey.hex()} already aggregated")
                if len(nonce) != PUBNONCE_SIZE:
                    raise RemoteRejected(f"Invalid public nonce length {len(nonce)}")
                self.remote_nonces[pubkey] = nonce
            if set(self.remote_nonces) != expected:
                raise ProtocolViolation("Missing remote nonce contributions")

            ordered = [
                self.public_nonce if pk == self.local_pubkey else self.remote_nonces[pk]
                for pk in self.pubkeys
            ]
            try:
                self.aggregated_nonce = nonce_agg(ordered)
            except ValueError as e:
                raise RemoteRejected(f"Invalid remote nonce: {e}") from e
            self.state = SessionState.NONCES_AGGREGATED
        assert self.aggregated_nonce is not None
        return self.aggregated_nonce

    def initialize_session(self, sighash: bytes) -> None:
        """Bind the session to the exact 32-byte message that will be signed."""
        with self._step(
            "initialize_session", SessionState.NONCES_AGGREGATED, SessionState.INITIALIZED
        ):
            if self.local_pubkey in self.partial_signatures:
                raise ProtocolViolation("Cannot rebind a session after signing")
            if len(sighash) != 32:
                raise ProtocolViolation(f"Sighash must be 32 bytes, got {len(sighash)}")
            assert self.aggregated_nonce is not None
            self.session_hash = sighash
            self._values = session_values(self.keyagg, self.aggregated_nonce, sighash)
            self.state = SessionState.INITIALIZED

    def sign_partial(self) -> bytes:
        """Produce our partial signature; the secret nonce is consumed."""
        with self._step("sign_partial", SessionState.INITIALIZED):
            if self._secnonce is None or self.local_pubkey in self.partial_signatures:
                raise ProtocolViolation("Secret nonce already used")
            assert self._values is not None
            secnonce, self._secnonce = self._secnonce, None

            k_1 = _int(secnonce[0:32])
            k_2 = _int(secnonce[32:64])
            if not _has_even_y(self._values.r):
                k_1 = CURVE_ORDER - k_1
                k_2 = CURVE_ORDER - k_2
            a = self.keyagg.coefficient(self.local_pubkey)
            factor = self._values.e * a * _parity_factor(self.keyagg) % CURVE_ORDER
            s = self.key.musig_partial(k_1, k_2, self._values.b, factor)
            psig = _bytes32(s)

            if not partial_sig_verify(
                psig, self.public_nonce, self.local_pubkey, self.keyagg, self._values
            ):
                raise ProtocolViolation("Own partial signature failed verification")
            self.partial_signatures[self.local_pubkey] = psig
        return psig

    def add_partial(self, pubkey: bytes, partial_signature: bytes) -> None:
        """Record and verify the counter-party's partial signature."""
        with self._step("add_partial", SessionState.INITIALIZED):
            if pubkey not in self.remote_nonces:
                raise ProtocolViolation(f"No nonce aggregated for {pubkey.hex()}")
            if pubkey in self.partial_signatures:
                raise ProtocolViolation(f"Partial signature for {pubkey.hex()} already added")
            assert self._values is not None
            if not partial_sig_verify(
                partial_signature, self.remote_nonces[pubkey], pubkey, self.keyagg, self._values
            ):
                raise RemoteRejected(f"Invalid partial signature from {pubkey.hex()}")
            self.partial_signatures[pubkey] = partial_signature

    def aggregate_partials(self) -> bytes:
        """Combine all partials into the final 64-byte Schnorr signature."""
        with self._step("aggregate_partials", SessionState.INITIALIZED):
            missing = [pk.hex() for pk in self.pubkeys if pk not in self.partial_signatures]
            if missing:
                raise ProtocolViolation(f"Missing partial signatures from {missing}")
            assert self._values is not None and self.session_hash is not None
            signature = partial_sig_agg(
                [self.partial_signatures[pk] for pk in self.pubkeys], self.keyagg, self._values
            )
            if not verify_schnorr(self.keyagg.xonly, self.session_hash, signature):
                raise ProtocolViolation("Aggregated signature does not verify")
            self.state = SessionState.FINALIZED
            logger.debug(f"MuSig session finalized for key {self.keyagg.xonly.hex()}")
        return signature
