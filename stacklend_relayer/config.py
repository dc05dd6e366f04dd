"""
Configuration management for the StackLend relayer.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from web3 import Web3

from .errors import ConfigurationError, ValidationError

_PRIVATE_KEY_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
_EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

COLLATERAL_SUFFIX = ".collateral-v1"
LENDING_SUFFIX = ".lending-v1"


class Settings(BaseSettings):
    """
    Environment-based settings.

    Field names map to upper-case environment variables
    (``stacks_api_url`` -> ``STACKS_API_URL``).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # HTTP control API
    host: str = Field(default="0.0.0.0", description="Control API bind host")
    port: int = Field(default=3000, description="Control API port")
    log_level: str = Field(default="INFO", description="Log level")

    # Source chain (Stacks)
    stacks_api_url: str = Field(..., description="Stacks API base URL")
    collateral_contract_id: str = Field(
        ..., description="Collateral contract principal (SP...collateral-v1)"
    )
    lending_contract_id: Optional[str] = Field(
        default=None,
        description="Lending pool contract principal; derived from the collateral id if unset",
    )
    stacks_confirmations: int = Field(
        default=1, ge=0, description="Blocks an event must be buried under"
    )
    stacks_max_pages: int = Field(
        default=10, ge=1, description="Listing pages (50 txs each) scanned per contract per cycle"
    )

    # Destination chain (Scroll)
    scroll_rpc_url: str = Field(..., description="Destination chain RPC URL")
    relayer_private_key: str = Field(..., description="Signer private key (0x + 64 hex)")
    borrow_controller: str = Field(..., description="Borrow controller contract address")
    token_map: dict[str, str] = Field(
        default_factory=dict,
        description="JSON map of Stacks token-id to destination ERC20 address",
    )
    min_signer_balance_wei: int = Field(
        default=10**17, ge=0, description="Signer operating minimum (0.1 ETH)"
    )

    # Relayer loop
    poll_interval_ms: int = Field(default=6000, gt=0, description="Poll interval")
    state_file: Path = Field(default=Path("./state.json"), description="State document path")
    max_execution_attempts: int = Field(
        default=5, ge=1, description="Failed executions before an event is dead-lettered"
    )

    @field_validator("stacks_api_url", "scroll_rpc_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return value.rstrip("/")

    @field_validator("collateral_contract_id")
    @classmethod
    def _check_contract_id(cls, value: str) -> str:
        if "." not in value:
            raise ValueError("must be a contract principal (ADDRESS.contract-name)")
        return value

    @field_validator("relayer_private_key")
    @classmethod
    def _check_private_key(cls, value: str) -> str:
        if not _PRIVATE_KEY_RE.match(value):
            raise ValueError("must be 0x followed by 64 hex characters")
        return value

    @field_validator("borrow_controller")
    @classmethod
    def _check_controller(cls, value: str) -> str:
        if not _EVM_ADDRESS_RE.match(value):
            raise ValueError("must be 0x followed by 40 hex characters")
        return Web3.to_checksum_address(value)

    @field_validator("token_map")
    @classmethod
    def _check_token_map(cls, value: dict[str, str]) -> dict[str, str]:
        checked = {}
        for token_id, address in value.items():
            if not _EVM_ADDRESS_RE.match(address):
                raise ValueError(f"token {token_id!r} has invalid address {address!r}")
            checked[token_id] = Web3.to_checksum_address(address)
        return checked


def load_settings(env_path: Optional[Path] = None) -> Settings:
    """Load settings, converting validation failures into ConfigurationError."""
    try:
        return Settings(_env_file=env_path) if env_path else Settings()
    except ValueError as e:
        raise ConfigurationError(f"Invalid relayer configuration: {e}") from e


@dataclass
class RelayerConfig:
    """Full relayer configuration."""

    settings: Settings

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "RelayerConfig":
        """Load configuration from environment."""
        return cls(settings=load_settings(env_path))

    @property
    def collateral_contract_id(self) -> str:
        return self.settings.collateral_contract_id

    @property
    def lending_contract_id(self) -> Optional[str]:
        """Lending pool contract, derived from the collateral contract name when unset."""
        if self.settings.lending_contract_id:
            return self.settings.lending_contract_id
        collateral = self.settings.collateral_contract_id
        if collateral.endswith(COLLATERAL_SUFFIX):
            return collateral[: -len(COLLATERAL_SUFFIX)] + LENDING_SUFFIX
        return None

    @property
    def poll_interval_seconds(self) -> float:
        return self.settings.poll_interval_ms / 1000

    def resolve_token(self, token_id: str) -> str:
        """Map a Stacks token-id to its destination ERC20 address."""
        token = self.settings.token_map.get(token_id)
        if token is None:
            available = ", ".join(sorted(self.settings.token_map)) or "none"
            raise ValidationError(
                f"Unknown token-id: {token_id!r}. Available tokens: {available}"
            )
        return token
