"""
Swap service REST client.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any

import httpx
from loguru import logger
from swapcore.errors import RemoteRejected, TransportError
from swapcore.models import (
    ChainSwapResponse,
    ClaimDetails,
    ClaimRequest,
    ClaimToSign,
    CreateChainSwapRequest,
    FeeSchedule,
    PartialSignature,
    SwapTransactions,
)

from chainswap.direction import Direction

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 0.5


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(data, dict) and "error" in data:
        return str(data["error"])
    return str(data)


class SwapServiceClient:
    """
    Async client for the swap service REST API.

    Transport failures are retried with exponential backoff and surface as
    TransportError once the retries are exhausted. Error responses from the
    service are not retried and raise RemoteRejected.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            base_url: Service root, e.g. https://api.boltz.exchange
            timeout: Per-request timeout in seconds
            max_retries: Attempts per request on transport errors
            retry_base_delay: First backoff delay in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> SwapServiceClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> Any:
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self.client.request(method, path, json=json)
                break
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    logger.error(f"{method} {path} failed after {attempt} attempts: {e}")
                    raise TransportError(f"{method} {path} failed: {e}") from e
                delay = self.retry_base_delay * (2 ** (attempt - 1)) + random.uniform(0, 0.1)
                logger.warning(
                    f"{method} {path} failed ({type(e).__name__}), retrying in {delay:.2f}s "
                    f"(attempt {attempt}/{self.max_retries})"
                )
                await asyncio.sleep(delay)

        if response.is_error:
            message = _error_message(response)
            logger.error(f"{method} {path} rejected with {response.status_code}: {message}")
            raise RemoteRejected(message, status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise RemoteRejected(f"Invalid JSON in response to {method} {path}") from e

    async def create_chain_swap(self, request: CreateChainSwapRequest) -> ChainSwapResponse:
        data = await self._request("POST", "/v2/swap/chain", json=request.to_wire())
        swap = ChainSwapResponse.model_validate(data)
        logger.info(f"Created chain swap {swap.id} ({request.from_} -> {request.to})")
        return swap

    async def get_fee_schedule(self, direction: Direction) -> FeeSchedule:
        data = await self._request("GET", "/v2/swap/chain")
        try:
            return FeeSchedule.from_pairs(data, direction.from_asset, direction.to_asset)
        except ValueError as e:
            raise RemoteRejected(str(e)) from e

    async def get_network_fee(self, currency: str) -> float:
        """Network fee rate in sat/vbyte for a chain."""
        data = await self._request("GET", f"/v2/chain/{currency}/fee")
        try:
            return float(data["fee"])
        except (KeyError, TypeError, ValueError) as e:
            raise RemoteRejected(f"Malformed fee response for {currency}: {data!r}") from e

    async def get_claim_details(self, swap_id: str) -> ClaimDetails:
        data = await self._request("GET", f"/v2/swap/chain/{swap_id}/claim")
        return ClaimDetails.model_validate(data)

    async def submit_claim(
        self,
        swap_id: str,
        preimage: bytes,
        signature: PartialSignature | None,
        to_sign: ClaimToSign,
    ) -> PartialSignature:
        """
        Send the preimage, our signature for the service's claim and our claim
        to be co-signed; returns the service's partial signature for it.
        """
        request = ClaimRequest(preimage=preimage.hex(), signature=signature, to_sign=to_sign)
        data = await self._request("POST", f"/v2/swap/chain/{swap_id}/claim", json=request.to_wire())
        return PartialSignature.model_validate(data)

    async def get_swap_transactions(self, swap_id: str) -> SwapTransactions:
        data = await self._request("GET", f"/v2/swap/chain/{swap_id}/transactions")
        return SwapTransactions.model_validate(data)

    async def broadcast(self, currency: str, tx_hex: str) -> str:
        data = await self._request("POST", f"/v2/chain/{currency}/transaction", json={"hex": tx_hex})
        try:
            txid = str(data["id"])
        except (KeyError, TypeError) as e:
            raise RemoteRejected(f"Malformed broadcast response: {data!r}") from e
        logger.info(f"Broadcast {currency} transaction {txid}")
        return txid
