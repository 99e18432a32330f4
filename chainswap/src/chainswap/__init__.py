"""
chainswap - Client for trustless Bitcoin <-> Liquid chain swaps

Creates swaps with the swap service, follows them on its event stream and
claims the counter-party lockup cooperatively.
"""

__version__ = "0.1.0"

from chainswap.claim import ClaimContext, ClaimTransactionBuilder, CooperativeClaim, target_fee
from chainswap.client import SwapServiceClient
from chainswap.config import Settings, get_settings
from chainswap.controller import SwapController, SwapRecord, SwapStatus, SwapTracker
from chainswap.direction import BTC_TO_LBTC, LBTC_TO_BTC, Direction
from chainswap.events import SwapEventStream, parse_message

__all__ = [
    "BTC_TO_LBTC",
    "ClaimContext",
    "ClaimTransactionBuilder",
    "CooperativeClaim",
    "Direction",
    "LBTC_TO_BTC",
    "Settings",
    "SwapController",
    "SwapEventStream",
    "SwapRecord",
    "SwapServiceClient",
    "SwapStatus",
    "SwapTracker",
    "get_settings",
    "parse_message",
    "target_fee",
]
