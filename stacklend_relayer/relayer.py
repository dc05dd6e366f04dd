"""
Main relayer logic - reads Stacks events, executes borrows on the destination chain.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from .config import RelayerConfig
from .errors import (
    BatchAbortedError,
    DestinationUnavailableError,
    InsufficientFundsError,
    RelayerBusyError,
    RelayerError,
    ValidationError,
)
from .evm import DestinationExecutor
from .stacks import (
    BorrowRequested,
    Deposited,
    EventKind,
    ScanResult,
    StacksApiClient,
    event_sort_key,
)
from .state import LOGGED_HASH, STATUS_CONFIRMED, STATUS_LOGGED, STATUS_REVERTED, StateStore

logger = structlog.get_logger()

RECONCILE_BATCH = 25


@dataclass
class RelayerState:
    """Current relayer state."""

    is_running: bool = False
    started_at: float = field(default_factory=time.monotonic)
    last_poll_time: Optional[datetime] = None
    next_poll_at: Optional[datetime] = None
    borrows_submitted: int = 0
    borrows_failed: int = 0


@dataclass
class CycleResult:
    """Outcome of one sync cycle."""

    results: dict[str, str] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    deposits_logged: int = 0
    reads_complete: bool = True


class StackLendRelayer:
    """
    Relayer service that:
    1. Reads finalized borrow/deposit print events from the Stacks contracts
    2. Records deposits (observational only)
    3. Executes borrow requests on the destination borrow controller, one at a time

    A single lock guards the sync cycle. The periodic loop skips a tick while
    it is held; the manual trigger is rejected with RelayerBusyError.
    """

    def __init__(
        self,
        config: RelayerConfig,
        stacks_client: Optional[StacksApiClient] = None,
        executor: Optional[DestinationExecutor] = None,
        store: Optional[StateStore] = None,
    ):
        self.config = config
        self.state = RelayerState()
        self._busy = asyncio.Lock()
        self._write_lock = asyncio.Lock()

        settings = config.settings

        self.stacks = stacks_client or StacksApiClient(
            settings.stacks_api_url,
            config.collateral_contract_id,
            config.lending_contract_id,
            max_pages=settings.stacks_max_pages,
        )
        self.executor = executor or DestinationExecutor(
            rpc_url=settings.scroll_rpc_url,
            private_key=settings.relayer_private_key,
            controller_address=settings.borrow_controller,
            min_balance_wei=settings.min_signer_balance_wei,
        )
        self.store = store or StateStore(settings.state_file)

        logger.info(
            "relayer_initialized",
            stacks_api=settings.stacks_api_url,
            collateral_contract=config.collateral_contract_id,
            lending_contract=config.lending_contract_id,
            confirmations=settings.stacks_confirmations,
            poll_interval_ms=settings.poll_interval_ms,
            tokens=sorted(settings.token_map),
            watermark=self.store.watermark,
        )

    @property
    def is_processing(self) -> bool:
        return self._busy.locked()

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self.state.started_at

    @property
    def next_poll_eta(self) -> datetime:
        if self.state.next_poll_at is not None:
            return self.state.next_poll_at
        return datetime.now(timezone.utc) + timedelta(
            seconds=self.config.poll_interval_seconds
        )

    async def poll_once(self) -> Optional[CycleResult]:
        """Run one periodic cycle. Skips when busy; never raises."""
        if self.is_processing:
            logger.debug("poll_skipped_busy")
            return None

        try:
            result = await self._run_cycle(fail_fast=False)
        except Exception as e:
            logger.error("poll_cycle_error", error=str(e))
            return None

        if result.results or result.failures or result.deposits_logged:
            logger.info(
                "poll_cycle_complete",
                submitted=len(result.results),
                failed=len(result.failures),
                deposits=result.deposits_logged,
                watermark=self.store.watermark,
            )
        return result

    async def trigger_sync(self) -> CycleResult:
        """
        Run one cycle on demand.

        Raises:
            RelayerBusyError: A cycle is already running.
            BatchAbortedError: A borrow event failed; the rest of the batch
                was not attempted.
        """
        logger.info("manual_sync_triggered")
        result = await self._run_cycle(fail_fast=True)
        logger.info("manual_sync_completed", processed=len(result.results))
        return result

    async def _run_cycle(self, fail_fast: bool) -> CycleResult:
        if self._busy.locked():
            raise RelayerBusyError()

        async with self._busy:
            self.state.last_poll_time = datetime.now(timezone.utc)
            try:
                with self.store.deferred():
                    return await self._cycle(fail_fast)
            finally:
                await self._persist()

    async def _persist(self) -> None:
        """Write the state document off the event loop."""
        async with self._write_lock:
            document = self.store.snapshot()
            await asyncio.to_thread(self.store.write, document)

    async def _read(self, kind: EventKind, watermark: int, tip: int) -> ScanResult:
        return await self.stacks.fetch_events_since(
            kind, watermark, self.config.settings.stacks_confirmations, tip=tip
        )

    async def _read_all(self) -> tuple[ScanResult, ScanResult]:
        """Scan both event kinds against one tip so they share a finality window."""
        watermark = self.store.watermark
        try:
            tip = await self.stacks.tip_height()
        except Exception as e:
            logger.error("stacks_tip_failed", error=str(e))
            return ScanResult(complete=False), ScanResult(complete=False)

        scans = await asyncio.gather(
            self._read(EventKind.BORROW, watermark, tip),
            self._read(EventKind.DEPOSIT, watermark, tip),
            return_exceptions=True,
        )

        results = []
        for kind, scan in zip((EventKind.BORROW, EventKind.DEPOSIT), scans):
            if isinstance(scan, BaseException):
                logger.error("event_read_failed", kind=kind.value, error=str(scan))
                scan = ScanResult(complete=False)
            results.append(scan)
        return results[0], results[1]

    async def _cycle(self, fail_fast: bool) -> CycleResult:
        borrow_scan, deposit_scan = await self._read_all()
        complete = borrow_scan.complete and deposit_scan.complete
        result = CycleResult(reads_complete=complete)

        if borrow_scan.events or deposit_scan.events:
            logger.info(
                "events_found",
                borrow_events=len(borrow_scan.events),
                deposit_events=len(deposit_scan.events),
                watermark=self.store.watermark,
            )

        for deposit in deposit_scan.events:
            if isinstance(deposit, Deposited) and not self.store.is_processed(deposit.key):
                self._record_deposit(deposit, complete)
                result.deposits_logged += 1
        if result.deposits_logged:
            await self._persist()

        borrows = [e for e in borrow_scan.events if isinstance(e, BorrowRequested)]
        for event in self._borrow_queue(borrows):
            key = event.key
            if self.store.is_processed(key):
                logger.debug("event_already_processed", event_id=event.id)
                continue
            if self.store.is_dead_lettered(key):
                logger.debug("event_dead_lettered", event_id=event.id)
                continue

            try:
                tx_hash = await self._execute_borrow(event)
            except RelayerError as e:
                self._record_failure(event, e)
                result.failures[key] = str(e)
                if fail_fast:
                    raise BatchAbortedError(key, e, dict(result.results)) from e
                await self._persist()
                continue

            self.store.mark_processed(key, tx_hash, height=event.height if complete else None)
            self.state.borrows_submitted += 1
            result.results[key] = tx_hash
            await self._persist()

        return result

    def _borrow_queue(self, fetched: list[BorrowRequested]) -> list[BorrowRequested]:
        """Fetched borrow events plus retryable failures, in replay order."""
        queued = {event.id: event for event in fetched}
        for failure in self.store.retry_queue():
            try:
                event = BorrowRequested.from_dict(failure.event)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("retry_event_unreadable", key=failure.key, error=str(e))
                continue
            queued.setdefault(event.id, event)
        return sorted(queued.values(), key=event_sort_key)

    def _record_deposit(self, deposit: Deposited, advance: bool) -> None:
        logger.info(
            "deposit_detected",
            event_id=deposit.id,
            user=deposit.user,
            amount=str(deposit.amount),
            balance=str(deposit.balance),
            pool=deposit.pool_kind,
        )
        self.store.mark_processed(
            deposit.key,
            LOGGED_HASH,
            height=deposit.height if advance else None,
            status=STATUS_LOGGED,
        )

    async def _execute_borrow(self, event: BorrowRequested) -> str:
        """Validate and submit one borrow request. Returns the destination tx hash."""
        logger.info(
            "processing_borrow",
            event_id=event.id,
            token_id=event.token_id,
            amount=str(event.amount),
            recipient=event.dest_recipient,
            user=event.user,
        )

        token = self.config.resolve_token(event.token_id)
        await self.executor.preflight(token, event.dest_recipient, event.amount)
        tx_hash = await self.executor.submit_borrow(token, event.dest_recipient or "", event.amount)

        logger.info(
            "borrow_submitted",
            event_id=event.id,
            tx_hash=tx_hash,
            token=token,
            recipient=event.dest_recipient,
            amount=str(event.amount),
        )
        return tx_hash

    def _record_failure(self, event: BorrowRequested, error: RelayerError) -> None:
        self.state.borrows_failed += 1
        record = self.store.record_failure(
            event.key,
            event.to_dict(),
            str(error),
            permanent=isinstance(error, ValidationError),
            # Signer funding and RPC outages do not count toward max attempts.
            count_attempt=not isinstance(
                error, (InsufficientFundsError, DestinationUnavailableError)
            ),
            max_attempts=self.config.settings.max_execution_attempts,
        )

        if record.dead_lettered:
            logger.error(
                "borrow_dead_lettered",
                event_id=event.id,
                attempts=record.attempts,
                error=str(error),
            )
        else:
            logger.warning(
                "borrow_failed",
                event_id=event.id,
                attempts=record.attempts,
                error=str(error),
            )

    async def reconcile(self, limit: int = RECONCILE_BATCH) -> dict[str, str]:
        """
        Check receipts of submitted borrow transactions.

        Mined transactions become ``confirmed`` or ``reverted``. Reverted
        borrows are flagged only; they are never resubmitted automatically.
        """
        updated: dict[str, str] = {}
        with self.store.deferred():
            for record in self.store.pending_submissions(limit):
                try:
                    outcome = await self.executor.receipt_status(record.tx_hash)
                except Exception as e:
                    logger.warning("receipt_check_failed", key=record.key, error=str(e))
                    break

                if outcome is None:
                    continue

                status = STATUS_CONFIRMED if outcome else STATUS_REVERTED
                self.store.update_status(record.key, status)
                updated[record.key] = status
                if outcome:
                    logger.info("borrow_tx_confirmed", key=record.key, tx_hash=record.tx_hash)
                else:
                    logger.error("borrow_tx_reverted", key=record.key, tx_hash=record.tx_hash)

        if updated:
            await self._persist()
        return updated

    async def repay(self, token_id: str, sender: str, amount: int) -> str:
        """
        Submit a ``repay`` call on behalf of ``sender``.

        The signer balance minimum is not enforced; it only gates borrow
        replay.

        Raises:
            ValidationError: Unknown token-id, bad sender or amount, or token
                not allowed.
            ExecutionError: The destination call failed.
        """
        token = self.config.resolve_token(token_id)
        await self.executor.preflight(token, sender, amount, check_balance=False)
        tx_hash = await self.executor.submit_repay(token, sender, amount)
        logger.info(
            "repay_submitted", tx_hash=tx_hash, token=token, sender=sender, amount=str(amount)
        )
        return tx_hash

    async def preview(self) -> tuple[list[BorrowRequested], list[Deposited]]:
        """Finalized events not yet handled, without executing anything."""
        borrow_scan, deposit_scan = await self._read_all()
        borrows = [
            e for e in borrow_scan.events
            if isinstance(e, BorrowRequested) and not self.store.is_processed(e.key)
        ]
        deposits = [
            e for e in deposit_scan.events
            if isinstance(e, Deposited) and not self.store.is_processed(e.key)
        ]
        return borrows, deposits

    async def run(self) -> None:
        """Run the relayer continuously."""
        self.state.is_running = True
        interval = self.config.poll_interval_seconds

        logger.info(
            "relayer_starting",
            poll_interval_ms=self.config.settings.poll_interval_ms,
            confirmations=self.config.settings.stacks_confirmations,
        )

        while self.state.is_running:
            await self.poll_once()
            await self.reconcile()

            self.state.next_poll_at = datetime.now(timezone.utc) + timedelta(seconds=interval)
            await asyncio.sleep(interval)

    def stop(self) -> None:
        """Stop the relayer."""
        self.state.is_running = False
        logger.info("relayer_stopping")

    async def close(self) -> None:
        """Flush state and release network clients."""
        await self._persist()
        await self.stacks.close()
        await self.executor.close()
