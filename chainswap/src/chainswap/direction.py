"""
Swap direction: which chain is locked, which is claimed, and which swap
tree belongs to which role.
"""

from __future__ import annotations

from dataclasses import dataclass

from swapcore.chains import BTC, LBTC, ChainParams, NetworkType, get_chain_params
from swapcore.models import ChainSwapResponse, SwapTree


@dataclass(frozen=True)
class Direction:
    from_asset: str
    to_asset: str

    def lockup_chain(self, network: NetworkType | str) -> ChainParams:
        """Chain we lock funds on (the service claims from it)."""
        return get_chain_params(self.from_asset, network)

    def claim_chain(self, network: NetworkType | str) -> ChainParams:
        """Chain the service locks funds on and we claim from."""
        return get_chain_params(self.to_asset, network)

    def claim_tree(self, swap: ChainSwapResponse) -> SwapTree:
        return swap.claim_details.swap_tree

    def lockup_tree(self, swap: ChainSwapResponse) -> SwapTree:
        return swap.lockup_details.swap_tree

    def __str__(self) -> str:
        return f"{self.from_asset} -> {self.to_asset}"

    @classmethod
    def from_assets(cls, from_asset: str, to_asset: str) -> Direction:
        for direction in (LBTC_TO_BTC, BTC_TO_LBTC):
            if direction.from_asset == from_asset and direction.to_asset == to_asset:
                return direction
        raise ValueError(f"Unsupported swap direction: {from_asset} -> {to_asset}")


LBTC_TO_BTC = Direction(from_asset=LBTC, to_asset=BTC)
BTC_TO_LBTC = Direction(from_asset=BTC, to_asset=LBTC)
