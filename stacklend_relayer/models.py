"""
Pydantic models for control API responses.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Health
# ============================================================================

class DestinationChainSnapshot(ApiModel):
    """Signer and controller state on the destination chain."""

    signer_address: str = Field(..., description="Relayer signer address")
    balance: str = Field(..., description="Signer balance in ETH")
    balance_wei: str = Field(..., description="Signer balance in wei")
    block_number: int = Field(..., description="Latest destination block")
    is_authorized: bool = Field(..., description="Signer is the controller's relayer")
    rpc_url: str = Field(..., description="Destination RPC URL")


class HealthResponse(ApiModel):
    """Liveness and destination chain snapshot."""

    ok: bool
    timestamp: datetime
    is_processing: bool
    uptime: float = Field(..., description="Seconds since the relayer started")
    destination_chain_snapshot: DestinationChainSnapshot


class ErrorResponse(ApiModel):
    """Failure body shared by all routes."""

    ok: bool = False
    error: str
    timestamp: Optional[datetime] = None
    key: Optional[str] = Field(None, description="Event key that failed, if any")


# ============================================================================
# Stats and events
# ============================================================================

class StatsResponse(ApiModel):
    """Relay progress counters."""

    watermark: int = Field(..., description="Highest Stacks height fully handled")
    total_processed: int
    processed_last24h: int = Field(..., alias="processedLast24h")
    is_processing: bool
    next_poll_eta: datetime
    pending_retries: int
    dead_lettered: int


class EventRecord(ApiModel):
    """One processed source event."""

    id: str = Field(..., description="Event key (borrow:<txid>:<index> or deposit:...)")
    tx_hash: str = Field(..., description="Destination tx hash, or 'logged' for deposits")
    timestamp: datetime
    status: str


class EventsResponse(ApiModel):
    """Most recently processed events, newest first."""

    events: list[EventRecord]


# ============================================================================
# Trigger sync
# ============================================================================

class TriggerSyncResponse(ApiModel):
    """Result of a manual sync."""

    ok: bool = True
    results: dict[str, str] = Field(
        default_factory=dict, description="Event key to destination tx hash"
    )
    processed_count: int = 0
