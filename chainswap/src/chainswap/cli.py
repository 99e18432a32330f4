"""
Command-line interface for the chain swap client.
"""

from __future__ import annotations

import asyncio
import sys
from typing import Annotated

import typer
from loguru import logger
from swapcore.errors import SwapError

from chainswap.client import SwapServiceClient
from chainswap.config import Settings, get_settings
from chainswap.controller import SwapController, SwapRecord, SwapStatus
from chainswap.direction import Direction
from chainswap.events import SwapEventStream

app = typer.Typer(
    name="chainswap",
    help="Trustless Bitcoin <-> Liquid chain swaps",
    add_completion=False,
)


def setup_logging(level: str) -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _apply_overrides(
    settings: Settings,
    network: str | None,
    api_url: str | None,
    fee_rate: float | None,
) -> Settings:
    updates: dict[str, object] = {}
    if network is not None:
        updates["network"] = network
    if api_url is not None:
        updates["api_url"] = api_url
    if fee_rate is not None:
        updates["fee_rate"] = fee_rate
    if not updates:
        return settings
    return Settings(**{**settings.model_dump(), **updates})


def _client(settings: Settings) -> SwapServiceClient:
    return SwapServiceClient(
        settings.api_url,
        timeout=settings.http_timeout,
        max_retries=settings.http_max_retries,
        retry_base_delay=settings.http_retry_base_delay,
    )


def _print_status(record: SwapRecord) -> None:
    typer.echo(f"[{record.swap_id}] {record.status.name}")


async def _run_swap(settings: Settings, direction: Direction, amount: int, address: str) -> SwapRecord:
    client = _client(settings)
    stream = SwapEventStream(
        settings.get_ws_url(),
        reconnect_base_delay=settings.ws_reconnect_base_delay,
        reconnect_max_delay=settings.ws_reconnect_max_delay,
    )
    controller = SwapController(client, stream, settings, status_listener=_print_status)
    try:
        await controller.start()
        record = await controller.create_swap(direction, amount, address)
        typer.echo(f"Swap {record.swap_id} created")
        typer.echo(f"  Lock {record.lockup_amount} sats of {direction.from_asset}")
        typer.echo(f"  Address: {record.lockup_address}")
        if record.bip21:
            typer.echo(f"  BIP21:   {record.bip21}")
        return await controller.wait(record.swap_id)
    finally:
        await controller.close()
        await client.close()


@app.command()
def swap(
    amount: Annotated[int, typer.Option("--amount", "-a", help="Amount to lock in sats")],
    address: Annotated[
        str, typer.Option("--address", "-d", help="Destination address on the receiving chain")
    ],
    from_asset: Annotated[str, typer.Option("--from", help="Asset to send (L-BTC or BTC)")] = "L-BTC",
    to_asset: Annotated[str, typer.Option("--to", help="Asset to receive (BTC or L-BTC)")] = "BTC",
    network: Annotated[
        str | None, typer.Option("--network", help="mainnet | testnet | regtest")
    ] = None,
    api_url: Annotated[str | None, typer.Option("--api-url", help="Swap service URL")] = None,
    fee_rate: Annotated[
        float | None, typer.Option("--fee-rate", help="Claim fee rate override (sat/vB)")
    ] = None,
    log_level: Annotated[str | None, typer.Option("--log-level", "-l", help="Log level")] = None,
) -> None:
    """Create a chain swap and follow it until it is claimed or fails."""
    settings = _apply_overrides(get_settings(), network, api_url, fee_rate)
    setup_logging(log_level or settings.log_level)

    try:
        direction = Direction.from_assets(from_asset, to_asset)
    except ValueError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    try:
        record = asyncio.run(_run_swap(settings, direction, amount, address))
    except SwapError as e:
        logger.error(f"Swap failed: {e}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        logger.warning("Interrupted; swap state is not persisted")
        raise typer.Exit(130)

    if record.status != SwapStatus.CLAIM_CONFIRMED:
        logger.error(f"Swap {record.swap_id} ended in {record.status.name}: {record.failure_reason}")
        raise typer.Exit(1)
    typer.echo(f"Swap {record.swap_id} complete, claim transaction {record.claim_txid}")


async def _show_fees(settings: Settings, direction: Direction) -> None:
    async with _client(settings) as client:
        schedule = await client.get_fee_schedule(direction)
        claim_fee = await client.get_network_fee(direction.to_asset)
        lockup_fee = await client.get_network_fee(direction.from_asset)

    typer.echo(f"Fees for {direction}:")
    typer.echo(f"  Service fee:        {schedule.percentage}%")
    typer.echo(f"  Server miner fee:   {schedule.miner_fees.server} sats")
    typer.echo(f"  User claim fee:     {schedule.miner_fees.user_claim} sats")
    typer.echo(f"  User lockup fee:    {schedule.miner_fees.user_lockup} sats")
    if schedule.minimal is not None and schedule.maximal is not None:
        typer.echo(f"  Limits:             {schedule.minimal} - {schedule.maximal} sats")
    typer.echo(f"  {direction.to_asset} fee rate:  {claim_fee} sat/vB")
    typer.echo(f"  {direction.from_asset} fee rate:  {lockup_fee} sat/vB")


@app.command()
def fees(
    from_asset: Annotated[str, typer.Option("--from", help="Asset to send")] = "L-BTC",
    to_asset: Annotated[str, typer.Option("--to", help="Asset to receive")] = "BTC",
    network: Annotated[str | None, typer.Option("--network")] = None,
    api_url: Annotated[str | None, typer.Option("--api-url", help="Swap service URL")] = None,
    log_level: Annotated[str | None, typer.Option("--log-level", "-l", help="Log level")] = None,
) -> None:
    """Print the service fee schedule and current network fee rates."""
    settings = _apply_overrides(get_settings(), network, api_url, None)
    setup_logging(log_level or settings.log_level)

    try:
        direction = Direction.from_assets(from_asset, to_asset)
        asyncio.run(_show_fees(settings, direction))
    except (ValueError, SwapError) as e:
        logger.error(str(e))
        raise typer.Exit(1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
