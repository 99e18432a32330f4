"""
Test configuration for chainswap tests.

FakeSwapService answers the swap service REST API through
httpx.MockTransport and co-signs with real MuSig2 sessions on its side.
"""

from __future__ import annotations

import asyncio
import json
import math
import secrets
from decimal import Decimal
from typing import Any

import httpx
import pytest
import wallycore as wally
from swapcore.chains import BTC, LBTC, get_chain_params
from swapcore.crypto import EphemeralKey, sha256, tagged_hash, verify_schnorr, xonly
from swapcore.errors import RemoteRejected
from swapcore.models import ChainSwapResponse, SwapTree, SwapTreeLeaf
from swapcore.musig import SigningSession, key_agg
from swapcore.taproot import merkle_root, p2tr_script, tweak_session
from swapcore.transaction import (
    Transaction,
    TxInput,
    TxOutput,
    deserialize_transaction,
    taproot_key_path_sighash,
)

from chainswap.client import SwapServiceClient
from chainswap.config import Settings
from chainswap.controller import SwapController, SwapRecord
from chainswap.direction import LBTC_TO_BTC

API_URL = "http://swap.test"
SWAP_ID = "swap1"

FEE_PAIRS = {
    "L-BTC": {
        "BTC": {
            "limits": {"minimal": 25_000, "maximal": 10_000_000},
            "fees": {
                "percentage": 0.1,
                "minerFees": {"server": 300, "user": {"claim": 150, "lockup": 50}},
            },
        }
    }
}


def _leaf_scripts(claimer: bytes, refunder: bytes, preimage_hash: bytes) -> tuple[bytes, bytes]:
    # OP_SIZE 32 OP_EQUALVERIFY OP_SHA256 <hash> OP_EQUALVERIFY <claimer> OP_CHECKSIG
    claim = (
        bytes([0x82, 0x01, 0x20, 0x88, 0xA8, 0x20])
        + preimage_hash
        + bytes([0x88, 0x20])
        + xonly(claimer)
        + bytes([0xAC])
    )
    # <refunder> OP_CHECKSIGVERIFY <1000> OP_CHECKLOCKTIMEVERIFY
    refund = bytes([0x20]) + xonly(refunder) + bytes([0xAD, 0x02, 0xE8, 0x03, 0xB1])
    return claim, refund


def _response(status_code: int, data: Any) -> httpx.Response:
    return httpx.Response(status_code, json=data)


class FakeSwapService:
    """In-memory swap service for one L-BTC -> BTC swap on regtest."""

    def __init__(
        self,
        percentage: float = 0.1,
        server_miner_fee: int = 300,
        fee_rate: float = 2.0,
    ):
        self.btc = get_chain_params(BTC, "regtest")
        self.liquid = get_chain_params(LBTC, "regtest")
        self.claim_key = EphemeralKey()
        self.lockup_key = EphemeralKey()
        self.percentage = percentage
        self.server_miner_fee = server_miner_fee
        self.fee_rate = fee_rate

        # Behaviour switches
        self.include_swap_output = True
        self.fail_claim_submissions = 0
        self.tamper_partial = False

        self.user_pubkey: bytes | None = None
        self.preimage_hash: bytes | None = None
        self.lock_amount = 0
        self.claim_tree: SwapTree | None = None
        self.lockup_tree: SwapTree | None = None
        self.tweaked_key: bytes | None = None
        self.server_lock: Transaction | None = None

        self.requests: list[tuple[str, str]] = []
        self.claim_nonces: list[str] = []
        self.service_claim_signatures: list[bytes] = []
        self.broadcasts: list[Transaction] = []
        self._cosign: SigningSession | None = None
        self._cosign_message: bytes | None = None

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self, **kwargs: Any) -> SwapServiceClient:
        kwargs.setdefault("retry_base_delay", 0)
        return SwapServiceClient(API_URL, transport=self.transport, **kwargs)

    def handle(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path
        self.requests.append((method, path))
        body = json.loads(request.content) if request.content else None

        if (method, path) == ("POST", "/v2/swap/chain"):
            return _response(201, self.create(body))
        if (method, path) == ("GET", "/v2/swap/chain"):
            return _response(200, FEE_PAIRS)
        if method == "GET" and path.startswith("/v2/chain/") and path.endswith("/fee"):
            return _response(200, {"fee": self.fee_rate})
        if (method, path) == ("GET", f"/v2/swap/chain/{SWAP_ID}/transactions"):
            return _response(200, self.transactions())
        if (method, path) == ("GET", f"/v2/swap/chain/{SWAP_ID}/claim"):
            return _response(200, self.claim_details())
        if (method, path) == ("POST", f"/v2/swap/chain/{SWAP_ID}/claim"):
            return self.claim(request, body)
        if (method, path) == ("POST", "/v2/chain/BTC/transaction"):
            return self.broadcast(body)
        return _response(404, {"error": f"{method} {path} not found"})

    def create(self, body: dict[str, Any]) -> dict[str, Any]:
        self.user_pubkey = bytes.fromhex(body["claimPublicKey"])
        self.preimage_hash = bytes.fromhex(body["preimageHash"])
        amount = body["userLockAmount"]
        self.lock_amount = (
            amount
            - math.ceil(Decimal(str(self.percentage)) * amount / 100)
            - self.server_miner_fee
        )

        claim, refund = _leaf_scripts(self.user_pubkey, self.claim_key.public_key(), self.preimage_hash)
        self.claim_tree = SwapTree(
            claim_leaf=SwapTreeLeaf(version=self.btc.leaf_version, output=claim.hex()),
            refund_leaf=SwapTreeLeaf(version=self.btc.leaf_version, output=refund.hex()),
        )
        claim, refund = _leaf_scripts(self.lockup_key.public_key(), self.user_pubkey, self.preimage_hash)
        self.lockup_tree = SwapTree(
            claim_leaf=SwapTreeLeaf(version=self.liquid.leaf_version, output=claim.hex()),
            refund_leaf=SwapTreeLeaf(version=self.liquid.leaf_version, output=refund.hex()),
        )

        keyagg = key_agg([self.claim_key.public_key(), self.user_pubkey])
        tweak = tagged_hash("TapTweak", keyagg.xonly + merkle_root(self.claim_tree, self.btc))
        self.tweaked_key = keyagg.apply_xonly_tweak(tweak).xonly

        outputs = [TxOutput(10_000, bytes([0x00, 0x14]) + b"\x05" * 20)]
        if self.include_swap_output:
            outputs.append(TxOutput(self.lock_amount, p2tr_script(self.tweaked_key)))
        outputs.append(TxOutput(5_000, p2tr_script(b"\x07" * 32)))
        self.server_lock = Transaction(
            version=2,
            inputs=[TxInput(secrets.token_bytes(32), 0, b"", 0xFFFFFFFD, [b"\x01" * 64])],
            outputs=outputs,
        )

        return {
            "id": SWAP_ID,
            "lockupDetails": {
                "amount": amount,
                "swapTree": self.lockup_tree.to_wire(),
                "timeoutBlockHeight": 2000,
                "serverPublicKey": self.lockup_key.public_key_hex(),
                "lockupAddress": "el1qqfakelockupaddress",
                "bip21": "liquidnetwork:el1qqfakelockupaddress?amount=0.00025",
            },
            "claimDetails": {
                "amount": self.lock_amount,
                "swapTree": self.claim_tree.to_wire(),
                "timeoutBlockHeight": 1000,
                "serverPublicKey": self.claim_key.public_key_hex(),
            },
        }

    def transactions(self) -> dict[str, Any]:
        assert self.server_lock is not None
        return {
            "serverLock": {
                "transaction": {"id": self.server_lock.txid, "hex": self.server_lock.to_hex()}
            }
        }

    def claim_details(self) -> dict[str, Any]:
        assert self.user_pubkey is not None and self.lockup_tree is not None
        session = SigningSession(self.lockup_key, [self.lockup_key.public_key(), self.user_pubkey])
        tweak_session(session, self.lockup_tree, self.liquid)
        self._cosign = session
        self._cosign_message = secrets.token_bytes(32)
        return {
            "pubNonce": session.public_nonce.hex(),
            "publicKey": self.lockup_key.public_key_hex(),
            "transactionHash": self._cosign_message.hex(),
        }

    def claim_sighash(self, tx: Transaction) -> bytes:
        assert self.tweaked_key is not None
        return taproot_key_path_sighash(tx, 0, [self.lock_amount], [p2tr_script(self.tweaked_key)])

    def claim(self, request: httpx.Request, body: dict[str, Any]) -> httpx.Response:
        assert self.user_pubkey is not None and self.claim_tree is not None
        to_sign = body["toSign"]
        self.claim_nonces.append(to_sign["pubNonce"])
        if self.fail_claim_submissions > 0:
            self.fail_claim_submissions -= 1
            raise httpx.ConnectError("connection reset by peer", request=request)

        if sha256(bytes.fromhex(body["preimage"])) != self.preimage_hash:
            return _response(400, {"error": "invalid preimage"})

        signature = body.get("signature")
        if signature is not None:
            assert self._cosign is not None and self._cosign_message is not None
            session = self._cosign
            session.aggregate_nonces([(self.user_pubkey, bytes.fromhex(signature["pubNonce"]))])
            session.initialize_session(self._cosign_message)
            session.sign_partial()
            try:
                session.add_partial(self.user_pubkey, bytes.fromhex(signature["partialSignature"]))
            except RemoteRejected:
                return _response(400, {"error": "invalid partial signature"})
            self.service_claim_signatures.append(session.aggregate_partials())

        tx = deserialize_transaction(bytes.fromhex(to_sign["transaction"]))
        sighash = bytes(32) if self.tamper_partial else self.claim_sighash(tx)
        session = SigningSession(self.claim_key, [self.claim_key.public_key(), self.user_pubkey])
        tweak_session(session, self.claim_tree, self.btc)
        session.aggregate_nonces([(self.user_pubkey, bytes.fromhex(to_sign["pubNonce"]))])
        session.initialize_session(sighash)
        partial = session.sign_partial()
        return _response(
            200, {"pubNonce": session.public_nonce.hex(), "partialSignature": partial.hex()}
        )

    def broadcast(self, body: dict[str, Any]) -> httpx.Response:
        assert self.tweaked_key is not None
        tx = deserialize_transaction(bytes.fromhex(body["hex"]))
        witness = tx.inputs[0].witness
        if len(witness) != 1 or not verify_schnorr(
            self.tweaked_key, self.claim_sighash(tx), witness[0]
        ):
            return _response(400, {"error": "non-mandatory-script-verify-flag"})
        self.broadcasts.append(tx)
        return _response(201, {"id": tx.txid})


class FakeStream:
    """Records subscriptions and replays pushed messages."""

    def __init__(self) -> None:
        self.subscribed: list[list[str]] = []
        self.unsubscribed: list[list[str]] = []
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    async def subscribe(self, swap_ids: list[str]) -> None:
        self.subscribed.append(list(swap_ids))

    async def unsubscribe(self, swap_ids: list[str]) -> None:
        self.unsubscribed.append(list(swap_ids))

    def push(self, message) -> None:
        self._queue.put_nowait(message)

    async def messages(self):
        while True:
            yield await self._queue.get()

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        network="regtest",
        api_url=API_URL,
        http_max_retries=1,
        http_retry_base_delay=0,
        max_claim_attempts=2,
        detection_retries=2,
        detection_backoff_sec=0,
        lockup_timeout_sec=60,
    )


@pytest.fixture
def service() -> FakeSwapService:
    return FakeSwapService()


@pytest.fixture
def user_key() -> EphemeralKey:
    return EphemeralKey()


@pytest.fixture
def user_address() -> str:
    return wally.addr_segwit_from_bytes(bytes([0x00, 0x14]) + bytes(range(20)), "bcrt", 0)


@pytest.fixture
def client(service, settings) -> SwapServiceClient:
    return service.client(max_retries=settings.http_max_retries)


@pytest.fixture
def stream() -> FakeStream:
    return FakeStream()


@pytest.fixture
def controller(client, stream, settings, user_key) -> SwapController:
    return SwapController(client, stream, settings, key=user_key)


@pytest.fixture
def record(service, user_key, user_address) -> SwapRecord:
    """A swap created directly against the fake service (not tracked)."""
    preimage = secrets.token_bytes(32)
    data = service.create(
        {
            "claimPublicKey": user_key.public_key_hex(),
            "preimageHash": sha256(preimage).hex(),
            "userLockAmount": 25_000,
        }
    )
    swap = ChainSwapResponse.model_validate(data)
    return SwapRecord.from_response(swap, LBTC_TO_BTC, user_address, preimage)
