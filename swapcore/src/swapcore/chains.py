"""
Per-chain parameters for the two sides of a chain swap.

Bitcoin and Liquid share the Taproot construction but differ in tagged-hash
names, leaf version, address prefixes and (on Liquid) the confidential
transaction machinery.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from swapcore.constants import LEAF_VERSION_TAPSCRIPT, LEAF_VERSION_TAPSCRIPT_ELEMENTS

BTC = "BTC"
LBTC = "L-BTC"


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    REGTEST = "regtest"


@dataclass(frozen=True)
class ChainParams:
    """Address, hashing and consensus parameters for one chain on one network."""

    symbol: str
    network: NetworkType
    confidential: bool
    hrp: str
    leaf_version: int
    tag_suffix: str = ""
    confidential_hrp: str | None = None
    p2pkh_version: int | None = None
    p2sh_version: int | None = None
    genesis_hash: str | None = None
    asset_id: str | None = None

    def tag(self, name: str) -> str:
        """Tagged-hash name for this chain (Liquid appends '/elements')."""
        return name + self.tag_suffix

    @property
    def genesis_hash_bytes(self) -> bytes:
        """Genesis block hash in internal (little-endian) byte order."""
        if self.genesis_hash is None:
            raise ValueError(f"No genesis hash configured for {self.symbol}")
        return bytes.fromhex(self.genesis_hash)[::-1]

    @property
    def asset_bytes(self) -> bytes:
        """Policy asset id in internal byte order."""
        if self.asset_id is None:
            raise ValueError(f"No policy asset configured for {self.symbol}")
        return bytes.fromhex(self.asset_id)[::-1]


_BITCOIN = {
    NetworkType.MAINNET: ChainParams(
        symbol=BTC,
        network=NetworkType.MAINNET,
        confidential=False,
        hrp="bc",
        leaf_version=LEAF_VERSION_TAPSCRIPT,
        p2pkh_version=0x00,
        p2sh_version=0x05,
    ),
    NetworkType.TESTNET: ChainParams(
        symbol=BTC,
        network=NetworkType.TESTNET,
        confidential=False,
        hrp="tb",
        leaf_version=LEAF_VERSION_TAPSCRIPT,
        p2pkh_version=0x6F,
        p2sh_version=0xC4,
    ),
    NetworkType.REGTEST: ChainParams(
        symbol=BTC,
        network=NetworkType.REGTEST,
        confidential=False,
        hrp="bcrt",
        leaf_version=LEAF_VERSION_TAPSCRIPT,
        p2pkh_version=0x6F,
        p2sh_version=0xC4,
    ),
}

_LIQUID = {
    NetworkType.MAINNET: ChainParams(
        symbol=LBTC,
        network=NetworkType.MAINNET,
        confidential=True,
        hrp="ex",
        confidential_hrp="lq",
        leaf_version=LEAF_VERSION_TAPSCRIPT_ELEMENTS,
        tag_suffix="/elements",
        genesis_hash="1466275836220db2944ca059a3a10ef6fd2ea684b0688d2c379296888a206003",
        asset_id="6f0279e9ed041c3d710a9f57d0c02928416460c4b722ae3457a11eec381c526d",
    ),
    NetworkType.TESTNET: ChainParams(
        symbol=LBTC,
        network=NetworkType.TESTNET,
        confidential=True,
        hrp="tex",
        confidential_hrp="tlq",
        leaf_version=LEAF_VERSION_TAPSCRIPT_ELEMENTS,
        tag_suffix="/elements",
        genesis_hash="a771da8e52ee6ad581ed1e9a99825e5b3b7992225534eaa2ae23244fe26ab1c1",
        asset_id="144c654344aa716d6f3abcc1ca90e5641e4e2a7f633bc09fe3baf64585819a49",
    ),
    NetworkType.REGTEST: ChainParams(
        symbol=LBTC,
        network=NetworkType.REGTEST,
        confidential=True,
        hrp="ert",
        confidential_hrp="el",
        leaf_version=LEAF_VERSION_TAPSCRIPT_ELEMENTS,
        tag_suffix="/elements",
        genesis_hash="00902a6b70c2ca83b5d9c815d96a0e2f4202179316970d14ea1bb7e5e5c0e7a0",
        asset_id="5ac9f65c0efcc4775e0baec4ec03abdde22473cd3cf33c0419ca290e0751b225",
    ),
}


def get_chain_params(symbol: str, network: NetworkType | str) -> ChainParams:
    """Look up the parameters for a chain symbol ("BTC" or "L-BTC") on a network."""
    network = NetworkType(network)
    if symbol == BTC:
        return _BITCOIN[network]
    if symbol == LBTC:
        return _LIQUID[network]
    raise ValueError(f"Unsupported chain: {symbol}")
