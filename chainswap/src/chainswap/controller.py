"""
Swap lifecycle controller.

Routes event-stream updates to one tracker per swap. Each tracker owns a
queue and a task, so the updates of one swap are handled strictly in
delivery order while independent swaps progress concurrently.
"""

from __future__ import annotations

import asyncio
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from loguru import logger
from swapcore.constants import (
    PREIMAGE_SIZE,
    STATUS_CLAIM_FAILED,
    STATUS_CLAIMED,
    STATUS_LOCKUP,
    STATUS_LOCKUP_FAILED,
    STATUS_SERVER_CONFIRMED,
    STATUS_SERVER_MEMPOOL,
    STATUS_SWAP_CREATED,
    STATUS_SWAP_EXPIRED,
    STATUS_USER_CONFIRMED,
    STATUS_USER_MEMPOOL,
)
from swapcore.crypto import EphemeralKey, SigningKey, sha256
from swapcore.errors import TransportError
from swapcore.models import (
    ChainSwapResponse,
    CreateChainSwapRequest,
    FeeSchedule,
    StreamMessage,
    SwapTree,
    SwapUpdate,
)

from chainswap.claim import CooperativeClaim
from chainswap.client import SwapServiceClient
from chainswap.config import Settings
from chainswap.direction import Direction
from chainswap.events import SwapEventStream

USER_LOCKUP_STATUSES = (STATUS_LOCKUP, STATUS_USER_MEMPOOL, STATUS_USER_CONFIRMED)
FAILURE_STATUSES = (STATUS_LOCKUP_FAILED, STATUS_CLAIM_FAILED, STATUS_SWAP_EXPIRED)

# Raised internally by the lockup watchdog, never sent by the service
LOCKUP_TIMEOUT = "client.lockupTimeout"


class SwapStatus(int, Enum):
    CREATED = 0
    LOCKUP_PENDING = 1
    LOCKUP_CONFIRMED = 2
    CLAIM_PENDING = 3
    CLAIM_CONFIRMED = 4
    LOCKUP_FAILED = 5
    CLAIM_FAILED = 6

    @property
    def is_terminal(self) -> bool:
        return self in (SwapStatus.CLAIM_CONFIRMED, SwapStatus.LOCKUP_FAILED, SwapStatus.CLAIM_FAILED)


@dataclass
class SwapRecord:
    swap_id: str
    direction: Direction
    user_address: str
    preimage: bytes
    claim_public_key: str
    claim_tree: SwapTree
    lockup_public_key: str
    lockup_tree: SwapTree
    expected_amount: int
    lockup_amount: int = 0
    claim_blinding_key: str | None = None
    lockup_address: str | None = None
    bip21: str | None = None
    timeout_block_height: int | None = None
    service_fee: int = 0
    server_miner_fee: int = 0

    # Controller-owned
    fee_rate: float | None = None
    status: SwapStatus = SwapStatus.CREATED
    lockup_txid: str | None = None
    server_lock_hex: str | None = None
    claim_txid: str | None = None
    failure_reason: str | None = None

    @classmethod
    def from_response(
        cls,
        swap: ChainSwapResponse,
        direction: Direction,
        user_address: str,
        preimage: bytes,
        fees: FeeSchedule | None = None,
    ) -> SwapRecord:
        return cls(
            swap_id=swap.id,
            direction=direction,
            user_address=user_address,
            preimage=preimage,
            claim_public_key=swap.claim_details.server_public_key,
            claim_tree=direction.claim_tree(swap),
            claim_blinding_key=swap.claim_details.blinding_key,
            lockup_public_key=swap.lockup_details.server_public_key,
            lockup_tree=direction.lockup_tree(swap),
            expected_amount=swap.claim_details.amount,
            lockup_amount=swap.lockup_details.amount,
            lockup_address=swap.lockup_details.lockup_address,
            bip21=swap.lockup_details.bip21,
            timeout_block_height=swap.claim_details.timeout_block_height,
            service_fee=fees.service_fee(swap.lockup_details.amount) if fees else 0,
            server_miner_fee=fees.miner_fees.server if fees else 0,
        )


StatusListener = Callable[[SwapRecord], None]


class SwapTracker:
    """State machine for one swap, fed through its own queue."""

    def __init__(self, controller: SwapController, record: SwapRecord):
        self.controller = controller
        self.record = record
        self.queue: asyncio.Queue[SwapUpdate] = asyncio.Queue()
        self.done = asyncio.Event()
        self.unsubscribe_count = 0
        self._task: asyncio.Task | None = None
        self._watchdog: asyncio.Task | None = None

    def start(self) -> None:
        self._task = asyncio.create_task(self.run(), name=f"swap-{self.record.swap_id}")
        self._watchdog = asyncio.create_task(
            self._lockup_watchdog(), name=f"swap-watchdog-{self.record.swap_id}"
        )

    def cancel(self) -> list[asyncio.Task]:
        pending = [t for t in (self._task, self._watchdog) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        return pending

    async def stop(self) -> None:
        for task in self.cancel():
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def run(self) -> None:
        while not self.record.status.is_terminal:
            update = await self.queue.get()
            await self.handle(update)

    async def _lockup_watchdog(self) -> None:
        await asyncio.sleep(self.controller.settings.lockup_timeout_sec)
        if self.record.status < SwapStatus.LOCKUP_CONFIRMED:
            logger.warning(
                f"Swap {self.record.swap_id}: no lockup after "
                f"{self.controller.settings.lockup_timeout_sec}s"
            )
            self.queue.put_nowait(SwapUpdate(id=self.record.swap_id, status=LOCKUP_TIMEOUT))

    async def handle(self, update: SwapUpdate) -> None:
        record = self.record
        status = update.status
        if record.status.is_terminal:
            logger.debug(f"Swap {record.swap_id}: ignoring '{status}' in terminal state")
            return

        if status == STATUS_SWAP_CREATED:
            if record.status == SwapStatus.CREATED:
                await self._transition(SwapStatus.LOCKUP_PENDING)
                return

        elif status in USER_LOCKUP_STATUSES:
            if record.status == SwapStatus.LOCKUP_PENDING:
                if update.transaction is not None:
                    record.lockup_txid = update.transaction.id
                await self._transition(SwapStatus.LOCKUP_CONFIRMED)
                return

        elif status == STATUS_SERVER_MEMPOOL:
            if record.status == SwapStatus.LOCKUP_CONFIRMED:
                self._remember_server_lock(update)
                await self._transition(SwapStatus.CLAIM_PENDING)
                return

        elif status == STATUS_SERVER_CONFIRMED:
            if record.status in (SwapStatus.LOCKUP_CONFIRMED, SwapStatus.CLAIM_PENDING):
                self._remember_server_lock(update)
                await self._claim()
                return

        elif status == STATUS_CLAIMED:
            await self._transition(SwapStatus.CLAIM_CONFIRMED)
            return

        elif status in FAILURE_STATUSES:
            record.failure_reason = update.failure_reason or status
            await self._fail()
            return

        elif status == LOCKUP_TIMEOUT:
            if record.status < SwapStatus.LOCKUP_CONFIRMED:
                record.failure_reason = "lockup timed out"
                await self._transition(SwapStatus.LOCKUP_FAILED)
            return

        else:
            logger.info(f"Swap {record.swap_id}: unhandled status '{status}'")
            return

        logger.debug(
            f"Swap {record.swap_id}: ignoring '{status}' in state {record.status.name}"
        )

    def _remember_server_lock(self, update: SwapUpdate) -> None:
        if update.transaction is not None and update.transaction.hex:
            self.record.server_lock_hex = update.transaction.hex

    async def _fail(self) -> None:
        if self.record.status < SwapStatus.LOCKUP_CONFIRMED:
            await self._transition(SwapStatus.LOCKUP_FAILED)
        else:
            await self._transition(SwapStatus.CLAIM_FAILED)

    async def _claim(self) -> None:
        record = self.record
        settings = self.controller.settings
        try:
            for attempt in range(1, settings.max_claim_attempts + 1):
                claim = CooperativeClaim(
                    self.controller.client,
                    self.controller.key,
                    record,
                    settings.network,
                    fee_rate=settings.fee_rate,
                    detection_retries=settings.detection_retries,
                    detection_backoff_sec=settings.detection_backoff_sec,
                )
                try:
                    record.claim_txid = await claim.run()
                    break
                except TransportError as e:
                    if attempt >= settings.max_claim_attempts:
                        raise
                    logger.warning(
                        f"Swap {record.swap_id}: claim attempt {attempt}/"
                        f"{settings.max_claim_attempts} failed ({e}), retrying with fresh nonces"
                    )
        except Exception as e:
            logger.error(f"Swap {record.swap_id}: claim failed: {type(e).__name__}: {e}")
            record.failure_reason = str(e) or type(e).__name__
            await self._transition(SwapStatus.CLAIM_FAILED)
            return

        logger.info(f"Swap {record.swap_id}: claimed in {record.claim_txid}")
        await self._transition(SwapStatus.CLAIM_CONFIRMED)

    async def _transition(self, new_status: SwapStatus) -> None:
        record = self.record
        old_status = record.status
        record.status = new_status
        logger.info(f"Swap {record.swap_id}: {old_status.name} -> {new_status.name}")
        self.controller.notify(record)

        if new_status.is_terminal:
            await self._finish()

    async def _finish(self) -> None:
        if self._watchdog is not None and not self._watchdog.done():
            self._watchdog.cancel()
        if self.unsubscribe_count == 0:
            self.unsubscribe_count += 1
            await self.controller.stream.unsubscribe([self.record.swap_id])
        self.done.set()


class SwapController:
    """Creates swaps, tracks them on the event stream and drives their claims."""

    def __init__(
        self,
        client: SwapServiceClient,
        stream: SwapEventStream,
        settings: Settings,
        key: SigningKey | None = None,
        status_listener: StatusListener | None = None,
    ):
        self.client = client
        self.stream = stream
        self.settings = settings
        # One identity per process, shared read-only by every swap
        self.key = key or EphemeralKey()
        self.status_listener = status_listener
        self.trackers: dict[str, SwapTracker] = {}
        self._dispatch_task: asyncio.Task | None = None

    def notify(self, record: SwapRecord) -> None:
        if self.status_listener is not None:
            self.status_listener(record)

    async def start(self) -> None:
        if self._dispatch_task is None:
            self._dispatch_task = asyncio.create_task(self.run(), name="swap-dispatch")
            self._dispatch_task.add_done_callback(self._dispatch_stopped)

    async def run(self) -> None:
        async for message in self.stream.messages():
            try:
                self.dispatch(message)
            except Exception as e:
                logger.error(f"Failed to dispatch '{message.event}' message: {e}")

    def _dispatch_stopped(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Event dispatch stopped: {task.exception()!r}")

    def dispatch(self, message: StreamMessage) -> None:
        for update in message.updates():
            tracker = self.trackers.get(update.id)
            if tracker is None:
                logger.debug(f"Ignoring update for untracked swap {update.id}")
                continue
            tracker.queue.put_nowait(update)

    async def create_swap(self, direction: Direction, amount: int, user_address: str) -> SwapRecord:
        """
        Create a chain swap and start tracking it.

        Args:
            direction: Assets to swap from and to
            amount: Amount we lock, in sats
            user_address: Destination of the claim on the receiving chain
        """
        preimage = secrets.token_bytes(PREIMAGE_SIZE)
        public_key = self.key.public_key_hex()
        request = CreateChainSwapRequest(
            from_=direction.from_asset,
            to=direction.to_asset,
            user_lock_amount=amount,
            user_address=user_address,
            claim_public_key=public_key,
            refund_public_key=public_key,
            preimage_hash=sha256(preimage).hex(),
        )
        fees = await self.client.get_fee_schedule(direction)
        swap = await self.client.create_chain_swap(request)
        if swap.lockup_details.amount != amount:
            logger.warning(
                f"Swap {swap.id}: service expects {swap.lockup_details.amount} sats, "
                f"requested {amount}"
            )
        record = SwapRecord.from_response(swap, direction, user_address, preimage, fees)
        quoted = record.lockup_amount - record.service_fee - record.server_miner_fee
        if record.expected_amount != quoted:
            logger.warning(
                f"Swap {record.swap_id}: service will lock {record.expected_amount} sats, "
                f"fee schedule implies {quoted}"
            )
        await self.track(record)
        logger.info(
            f"Swap {record.swap_id}: send {record.lockup_amount} sats to {record.lockup_address}"
        )
        return record

    async def track(self, record: SwapRecord) -> SwapTracker:
        self.prune()
        tracker = SwapTracker(self, record)
        self.trackers[record.swap_id] = tracker
        tracker.start()
        await self.stream.subscribe([record.swap_id])
        return tracker

    async def wait(self, swap_id: str) -> SwapRecord:
        tracker = self.trackers[swap_id]
        await tracker.done.wait()
        if self.trackers.pop(swap_id, None) is not None:
            tracker.cancel()
        return tracker.record

    def prune(self) -> None:
        """Drop trackers of swaps that reached a terminal state."""
        for swap_id in [k for k, t in self.trackers.items() if t.done.is_set()]:
            self.trackers.pop(swap_id).cancel()

    async def close(self) -> None:
        if self._dispatch_task is not None:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
            self._dispatch_task = None
        for tracker in self.trackers.values():
            await tracker.stop()
        await self.stream.close()
