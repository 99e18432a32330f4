"""
Configuration management for the chain swap client.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from swapcore.chains import NetworkType


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    network: Literal["mainnet", "testnet", "regtest"] = "mainnet"

    api_url: str = "https://api.boltz.exchange"
    # Derived from api_url when empty
    ws_url: str = ""

    log_level: str = "INFO"

    # Overrides the service's network fee estimate (sat/vbyte)
    fee_rate: float | None = Field(default=None, gt=0)

    http_timeout: float = 30.0
    http_max_retries: int = Field(default=3, ge=1)
    http_retry_base_delay: float = 0.5

    max_claim_attempts: int = Field(default=3, ge=1)
    detection_retries: int = Field(default=5, ge=1)
    detection_backoff_sec: float = 2.0
    lockup_timeout_sec: float = Field(default=3600.0, gt=0)

    ws_reconnect_base_delay: float = 1.0
    ws_reconnect_max_delay: float = 60.0

    @property
    def network_type(self) -> NetworkType:
        return NetworkType(self.network)

    def get_ws_url(self) -> str:
        if self.ws_url:
            return self.ws_url
        base = self.api_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://") :]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://") :]
        return f"{base}/v2/ws"


def get_settings() -> Settings:
    return Settings()
