"""
StackLend relayer control API.

Provides REST endpoints for:
- Health and destination chain snapshot (GET /health)
- Relay progress counters (GET /stats)
- Recently processed events (GET /events)
- Manual sync (POST /trigger-sync)
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import RelayerConfig
from .errors import BatchAbortedError, RelayerBusyError, RelayerError
from .models import (
    DestinationChainSnapshot,
    ErrorResponse,
    EventRecord,
    EventsResponse,
    HealthResponse,
    StatsResponse,
    TriggerSyncResponse,
)
from .relayer import StackLendRelayer
from .state import now_ms

logger = structlog.get_logger()

DAY_MS = 24 * 60 * 60 * 1000
RECENT_EVENTS_LIMIT = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _error(status_code: int, message: str, key: Optional[str] = None) -> JSONResponse:
    body = ErrorResponse(error=message, timestamp=_utcnow(), key=key)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


def get_relayer(request: Request) -> StackLendRelayer:
    return request.app.state.relayer


def create_app(
    relayer: Optional[StackLendRelayer] = None,
    config: Optional[RelayerConfig] = None,
    start_poller: bool = True,
) -> FastAPI:
    """
    Build the control API.

    When ``relayer`` is omitted one is created at startup from ``config``
    (or the environment) and closed at shutdown. With ``start_poller`` the
    periodic relay loop runs as a background task for the lifetime of the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        owned = app.state.relayer is None
        if owned:
            app.state.relayer = StackLendRelayer(config or RelayerConfig.from_env())
        service: StackLendRelayer = app.state.relayer

        poller: Optional[asyncio.Task] = None
        if start_poller:
            poller = asyncio.create_task(service.run())

        logger.info(
            "api_started",
            version=__version__,
            poller=start_poller,
            signer=service.executor.address,
        )

        yield

        if poller is not None:
            service.stop()
            poller.cancel()
            try:
                await poller
            except asyncio.CancelledError:
                pass
        if owned:
            await service.close()
        logger.info("api_stopped")

    app = FastAPI(
        title="StackLend Relayer",
        description="Relays Stacks borrow requests to the destination lending controller",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.relayer = relayer

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ========================================================================
    # Health Check
    # ========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check(service: StackLendRelayer = Depends(get_relayer)):
        """Relayer liveness plus signer balance and authorization on the destination chain."""
        try:
            snapshot = await service.executor.health()
        except Exception as e:
            logger.error("health_check_failed", error=str(e))
            return _error(500, str(e))

        return HealthResponse(
            ok=True,
            timestamp=_utcnow(),
            is_processing=service.is_processing,
            uptime=service.uptime_seconds,
            destination_chain_snapshot=DestinationChainSnapshot(
                signer_address=snapshot.signer_address,
                balance=snapshot.balance,
                balance_wei=str(snapshot.balance_wei),
                block_number=snapshot.block_number,
                is_authorized=snapshot.is_authorized,
                rpc_url=snapshot.rpc_url,
            ),
        )

    # ========================================================================
    # Stats and Events
    # ========================================================================

    @app.get("/stats", response_model=StatsResponse)
    async def stats(service: StackLendRelayer = Depends(get_relayer)) -> StatsResponse:
        store = service.store
        return StatsResponse(
            watermark=store.watermark,
            total_processed=len(store.state.processed),
            processed_last24h=store.count_since(now_ms() - DAY_MS),
            is_processing=service.is_processing,
            next_poll_eta=service.next_poll_eta,
            pending_retries=len(store.retry_queue()),
            dead_lettered=len(store.dead_letters()),
        )

    @app.get("/events", response_model=EventsResponse)
    async def events(service: StackLendRelayer = Depends(get_relayer)) -> EventsResponse:
        """The most recently processed events, newest first."""
        return EventsResponse(
            events=[
                EventRecord(
                    id=record.key,
                    tx_hash=record.tx_hash,
                    timestamp=_from_ms(record.processed_at),
                    status=record.status,
                )
                for record in service.store.recent(RECENT_EVENTS_LIMIT)
            ]
        )

    # ========================================================================
    # Manual Sync
    # ========================================================================

    @app.post("/trigger-sync", response_model=TriggerSyncResponse)
    async def trigger_sync(service: StackLendRelayer = Depends(get_relayer)):
        """
        Run one sync cycle now.

        Returns 429 while another cycle is running. The batch stops at the
        first failing borrow event, which is reported with HTTP 500.
        """
        try:
            result = await service.trigger_sync()
        except RelayerBusyError as e:
            return _error(429, str(e))
        except BatchAbortedError as e:
            logger.error("trigger_sync_failed", key=e.key, error=str(e.cause))
            return _error(500, str(e.cause), key=e.key)
        except RelayerError as e:
            logger.error("trigger_sync_failed", error=str(e))
            return _error(500, str(e))

        return TriggerSyncResponse(
            ok=True,
            results=result.results,
            processed_count=len(result.results),
        )

    return app
