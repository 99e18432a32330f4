"""
Tests for the swap service REST client.
"""

from __future__ import annotations

import json

import httpx
import pytest
from swapcore.errors import RemoteRejected, TransportError
from swapcore.models import ClaimToSign, CreateChainSwapRequest, PartialSignature

from chainswap.client import SwapServiceClient
from chainswap.direction import BTC_TO_LBTC, LBTC_TO_BTC


def _client(handler, max_retries: int = 3) -> SwapServiceClient:
    return SwapServiceClient(
        "http://swap.test/",
        max_retries=max_retries,
        retry_base_delay=0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_create_chain_swap(service, user_key):
    client = service.client()
    request = CreateChainSwapRequest(
        from_="L-BTC",
        to="BTC",
        user_lock_amount=25_000,
        claim_public_key=user_key.public_key_hex(),
        refund_public_key=user_key.public_key_hex(),
        preimage_hash="ab" * 32,
    )

    swap = await client.create_chain_swap(request)

    assert swap.id == "swap1"
    assert swap.claim_details.server_public_key == service.claim_key.public_key_hex()
    assert swap.lockup_details.swap_tree == service.lockup_tree
    await client.close()


@pytest.mark.asyncio
async def test_fee_schedule(service):
    async with service.client() as client:
        schedule = await client.get_fee_schedule(LBTC_TO_BTC)
        assert schedule.percentage == 0.1
        assert schedule.miner_fees.server == 300

        with pytest.raises(RemoteRejected):
            await client.get_fee_schedule(BTC_TO_LBTC)


@pytest.mark.asyncio
async def test_network_fee(service):
    async with service.client() as client:
        assert await client.get_network_fee("BTC") == 2.0


@pytest.mark.asyncio
async def test_malformed_network_fee():
    async with _client(lambda request: httpx.Response(200, json={"rate": 1})) as client:
        with pytest.raises(RemoteRejected, match="Malformed"):
            await client.get_network_fee("BTC")


@pytest.mark.asyncio
async def test_error_response():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "swap not found"})

    async with _client(handler) as client:
        with pytest.raises(RemoteRejected) as exc_info:
            await client.get_claim_details("missing")

    assert str(exc_info.value) == "swap not found"
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_error_response_without_json():
    async with _client(lambda request: httpx.Response(502, text="Bad Gateway")) as client:
        with pytest.raises(RemoteRejected) as exc_info:
            await client.get_swap_transactions("swap1")

    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_invalid_json_body():
    async with _client(lambda request: httpx.Response(200, text="<html>")) as client:
        with pytest.raises(RemoteRejected, match="Invalid JSON"):
            await client.get_claim_details("swap1")


@pytest.mark.asyncio
async def test_transport_errors_retried():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"fee": 1.5})

    async with _client(handler, max_retries=3) as client:
        assert await client.get_network_fee("L-BTC") == 1.5
    assert calls == 3


@pytest.mark.asyncio
async def test_transport_errors_exhausted():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        raise httpx.ReadTimeout("timed out", request=request)

    async with _client(handler, max_retries=2) as client:
        with pytest.raises(TransportError):
            await client.get_network_fee("BTC")
    assert calls == 2


@pytest.mark.asyncio
async def test_rejections_not_retried():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(500, json={"error": "internal"})

    async with _client(handler) as client:
        with pytest.raises(RemoteRejected):
            await client.broadcast("BTC", "00")
    assert calls == 1


@pytest.mark.asyncio
async def test_submit_claim_body():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"pubNonce": "aa" * 66, "partialSignature": "bb" * 32})

    async with _client(handler) as client:
        result = await client.submit_claim(
            "swap1",
            b"\x01" * 32,
            PartialSignature(pub_nonce="cc" * 66, partial_signature="dd" * 32),
            ClaimToSign(transaction="0200", pub_nonce="ee" * 66),
        )

    assert captured["path"] == "/v2/swap/chain/swap1/claim"
    assert captured["body"] == {
        "preimage": "01" * 32,
        "signature": {"pubNonce": "cc" * 66, "partialSignature": "dd" * 32},
        "toSign": {"index": 0, "transaction": "0200", "pubNonce": "ee" * 66},
    }
    assert result.partial_signature == "bb" * 32


@pytest.mark.asyncio
async def test_broadcast():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v2/chain/L-BTC/transaction"
        assert json.loads(request.content) == {"hex": "0200"}
        return httpx.Response(201, json={"id": "ff" * 32})

    async with _client(handler) as client:
        assert await client.broadcast("L-BTC", "0200") == "ff" * 32
