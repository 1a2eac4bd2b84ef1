"""
Deal-Flow Sync Engine.
Pulls stage-change history from the CRM and keeps deal_flow_segments current.

Modes:
  incremental: deals updated in the CRM within a trailing window (cron, every few hours)
  full:        every deal (manual backfill)
  single:      one deal (CRM webhook)

Per deal: fetch history → normalize → upsert. A deal's segments are built in
memory before anything is written, and upserts are keyed by the CRM event id,
so a deal that fails half-way heals itself on the next attempt or run. One
deal failing never aborts the run; it ends up in SyncRun.failed_deals.
"""

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel, Field, model_validator

from crm_adapters import CRMAdapter
from flow.cache import MetricResultCache
from flow.errors import SyncError
from flow.models import FailedDeal, SyncRun, UpsertResult, utc_now
from flow.normalizer import normalize
from flow.retry import FixedRetryPolicy, RetryPolicy
from flow.segment_store import SegmentStore
from flow.sync_history import SyncHistoryStore
from sync_status import DealSyncState, SyncMode, SyncRunStatus

logger = logging.getLogger(__name__)

# Progress is logged at most this often (plus on the last batch)
PROGRESS_LOG_INTERVAL = 10.0  # seconds

# Persist intermediate counts every N batches
HISTORY_UPDATE_EVERY_BATCHES = 10

# Default incremental sync interval for the in-process loop (seconds)
DEFAULT_SYNC_INTERVAL = 6 * 3600


class SyncInProgressError(SyncError):
    """A full/incremental run is already active in this process."""


class SyncOptions(BaseModel):
    mode: str = SyncMode.INCREMENTAL
    batch_size: int = Field(default=40, ge=1, le=500)
    max_retries: int = Field(default=1, ge=0, le=10)
    concurrency: int = Field(default=5, ge=1, le=50)
    window_hours: float = Field(default=6, gt=0)
    deadline_seconds: Optional[float] = Field(default=None, gt=0)
    deal_ids: Optional[list[int]] = None

    @model_validator(mode="after")
    def _check_mode(self):
        if not SyncMode.is_valid(self.mode):
            raise ValueError(f"mode must be one of {sorted(SyncMode.ALL)}")
        if self.mode == SyncMode.SINGLE and not self.deal_ids:
            raise ValueError("single mode requires deal_ids")
        return self


@dataclass
class DealOutcome:
    deal_id: int
    ok: bool
    upsert: UpsertResult = field(default_factory=UpsertResult)
    error: Optional[str] = None
    attempts: int = 0


def _format_duration(seconds: float) -> str:
    seconds = int(seconds)
    minutes, hours = seconds // 60, seconds // 3600
    if hours > 0:
        return f"{hours}h {minutes % 60}m {seconds % 60}s"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


class DealFlowSyncEngine:
    """Runs one sync at a time for one CRM + segment store."""

    def __init__(
        self,
        adapter: CRMAdapter,
        store: SegmentStore,
        history: Optional[SyncHistoryStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
        cache: Optional[MetricResultCache] = None,
        progress_callback: Optional[Callable] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utc_now,
        sleep: Callable = asyncio.sleep,
    ):
        self.adapter = adapter
        self.store = store
        self.history = history
        self.retry_policy = retry_policy or FixedRetryPolicy()
        self.cache = cache
        self.progress_callback = progress_callback
        self._clock = clock
        self._now = now
        self._sleep = sleep
        self._last_progress_log = 0.0
        self._deal_states: dict[int, str] = {}

    async def sync_deal_flow(self, options: SyncOptions) -> SyncRun:
        """
        Run one sync. Always returns a SyncRun when deals could be enumerated,
        even if every deal failed. Raises SyncError only when the run cannot start.
        """
        started = self._clock()
        self._deal_states.clear()
        run = SyncRun(
            run_id=str(uuid.uuid4()),
            mode=options.mode,
            status=SyncRunStatus.RUNNING,
            started_at=self._now(),
        )
        await self._record(run)
        logger.info(
            f"Deal-flow sync started (mode={options.mode}, batch_size={options.batch_size}, "
            f"max_retries={options.max_retries}, run={run.run_id})"
        )

        try:
            deal_ids = await self._select_deals(options)
        except Exception as e:
            run.status = SyncRunStatus.FAILED
            run.error = f"Could not list deals to sync: {e}"
            run.completed_at = self._now()
            run.duration_ms = int((self._clock() - started) * 1000)
            await self._record(run)
            logger.error(f"Deal-flow sync failed to start (mode={options.mode}): {e}")
            raise SyncError(run.error) from e

        # Same deal listed twice (pagination shifting under us) → sync once
        deal_ids = list(dict.fromkeys(deal_ids))
        run.total_deals = len(deal_ids)
        await self._record(run)
        logger.info(f"Found {len(deal_ids)} deals to process")

        batches = [deal_ids[i:i + options.batch_size] for i in range(0, len(deal_ids), options.batch_size)]
        self._last_progress_log = started
        upserts = UpsertResult()

        for index, batch in enumerate(batches, start=1):
            if options.deadline_seconds and self._clock() - started >= options.deadline_seconds:
                run.timed_out = True
                logger.warning(
                    f"Deal-flow sync deadline ({options.deadline_seconds}s) reached after "
                    f"{run.processed_deals}/{run.total_deals} deals. Stopping."
                )
                break

            outcomes = await self._process_batch(batch, options)
            for outcome in outcomes:
                run.processed_deals += 1
                if outcome.ok:
                    run.successful_deals += 1
                    upserts = upserts + outcome.upsert
                else:
                    run.failed_deals.append(FailedDeal(deal_id=outcome.deal_id, error=outcome.error or "unknown error"))

            self._log_progress(index, len(batches), run, started)
            if index % HISTORY_UPDATE_EVERY_BATCHES == 0:
                await self._record(run)

        run.segments_inserted = upserts.inserted
        run.segments_updated = upserts.updated
        run.segments_skipped = upserts.skipped
        run.status = SyncRunStatus.COMPLETED
        run.completed_at = self._now()
        run.duration_ms = int((self._clock() - started) * 1000)
        await self._record(run)

        if self.cache is not None and (upserts.inserted or upserts.updated):
            self._bust_cache()

        logger.info(
            f"Deal-flow sync completed (mode={run.mode}): total={run.total_deals} "
            f"successful={run.successful_deals} ({run.success_rate}%) failed={len(run.failed_deals)} "
            f"segments +{upserts.inserted}/~{upserts.updated} duration={_format_duration(run.duration_ms / 1000)}"
        )
        return run

    async def _select_deals(self, options: SyncOptions) -> list[int]:
        if options.mode == SyncMode.SINGLE:
            return list(options.deal_ids or [])
        if options.mode == SyncMode.FULL:
            return await self.adapter.list_all_deal_ids()

        since = self._now() - timedelta(hours=options.window_hours)
        last_completed = await self._last_completed_started_at()
        if last_completed is not None and last_completed < since:
            # A cron tick was missed, cover the gap back to the last good run
            logger.info(f"Widening incremental window to last completed sync at {last_completed.isoformat()}")
            since = last_completed
        return await self.adapter.list_deals_updated_since(since)

    async def _process_batch(self, batch: list[int], options: SyncOptions) -> list[DealOutcome]:
        semaphore = asyncio.Semaphore(options.concurrency)

        async def _bounded(deal_id: int) -> DealOutcome:
            async with semaphore:
                return await self.sync_one_deal(deal_id, options.max_retries)

        return list(await asyncio.gather(*(_bounded(d) for d in batch)))

    async def sync_one_deal(self, deal_id: int, max_retries: int) -> DealOutcome:
        """fetch → normalize → upsert for one deal, retried up to max_retries times."""
        await self._notify(deal_id, DealSyncState.PENDING)
        attempts = max_retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                await self._notify(deal_id, DealSyncState.FETCHING)
                events = await self.adapter.fetch_stage_history(deal_id)

                await self._notify(deal_id, DealSyncState.NORMALIZING)
                segments = normalize(deal_id, events)

                await self._notify(deal_id, DealSyncState.UPSERTING)
                upsert = await self.store.upsert(segments)

                await self._notify(deal_id, DealSyncState.SUCCEEDED)
                return DealOutcome(deal_id=deal_id, ok=True, upsert=upsert, attempts=attempt)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                if attempt < attempts:
                    delay = self.retry_policy.delay_for(attempt)
                    logger.warning(
                        f"Deal {deal_id} sync attempt {attempt}/{attempts} failed: {e} "
                        f"(retrying in {delay:.1f}s)"
                    )
                    if delay > 0:
                        await self._sleep(delay)

        logger.error(f"Deal {deal_id} sync failed after {attempts} attempts: {last_error}")
        await self._notify(deal_id, DealSyncState.RETRY_EXHAUSTED)
        await self._notify(deal_id, DealSyncState.FAILED)
        return DealOutcome(deal_id=deal_id, ok=False, error=str(last_error), attempts=attempts)

    # ── bookkeeping (all non-fatal) ──────────────────────────────────

    def deal_state(self, deal_id: int) -> Optional[str]:
        """Last state reported for a deal in the current run."""
        return self._deal_states.get(deal_id)

    async def _notify(self, deal_id: int, state: str):
        current = self._deal_states.get(deal_id)
        if state != DealSyncState.PENDING and not DealSyncState.can_transition(current, state):
            logger.error(f"Illegal sync state change for deal {deal_id}: {current} → {state}")
            return
        self._deal_states[deal_id] = state
        if not self.progress_callback:
            return
        try:
            result = self.progress_callback(deal_id, state)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Sync progress callback failed (deal={deal_id}, state={state}): {e}")

    async def _record(self, run: SyncRun):
        if self.history is None:
            return
        try:
            await self.history.record(run)
        except Exception as e:
            logger.warning(f"Failed to record sync status (run={run.run_id}): {e}")

    async def _last_completed_started_at(self) -> Optional[datetime]:
        if self.history is None:
            return None
        try:
            return await self.history.last_completed_started_at()
        except Exception as e:
            logger.warning(f"Failed to read last sync timestamp: {e}")
            return None

    def _bust_cache(self):
        try:
            self.cache.bust()
        except Exception as e:
            logger.warning(f"Metric cache bust after sync failed: {e}")

    def _log_progress(self, batch_index: int, total_batches: int, run: SyncRun, started: float):
        now = self._clock()
        if now - self._last_progress_log < PROGRESS_LOG_INTERVAL and batch_index != total_batches:
            return
        elapsed = now - started
        eta = (elapsed / batch_index) * (total_batches - batch_index) if batch_index else 0
        logger.info(
            f"Progress: {batch_index}/{total_batches} batches ({batch_index / total_batches * 100:.1f}%), "
            f"processed {run.processed_deals}/{run.total_deals} deals, "
            f"elapsed {_format_duration(elapsed)}"
            + (f", ETA {_format_duration(eta)}" if eta > 0 else "")
        )
        self._last_progress_log = now


# ========================================
# Module-level sync management functions
# ========================================

# Active full/incremental runs: {"batch": asyncio.Task}
_active_syncs: dict[str, asyncio.Task] = {}

# Background incremental loop
_sync_loop: dict[str, asyncio.Task] = {}

BATCH_SYNC_KEY = "batch"


def _sync_key(mode: str) -> Optional[str]:
    # Single-deal webhook syncs are never blocked by a running backfill
    return None if mode == SyncMode.SINGLE else BATCH_SYNC_KEY


async def run_sync_exclusive(engine: DealFlowSyncEngine, options: SyncOptions) -> SyncRun:
    """
    Run a sync, refusing to start a second full/incremental run in this process.
    """
    key = _sync_key(options.mode)
    if key is None:
        return await engine.sync_deal_flow(options)

    existing = _active_syncs.get(key)
    if existing is not None and not existing.done():
        raise SyncInProgressError("A deal-flow sync is already running")

    _active_syncs[key] = asyncio.current_task()
    try:
        return await engine.sync_deal_flow(options)
    finally:
        _active_syncs.pop(key, None)


def is_sync_active() -> bool:
    return any(not task.done() for task in _active_syncs.values())


async def start_incremental_sync_loop(
    engine_factory: Callable[[], DealFlowSyncEngine],
    options: SyncOptions,
    interval: int = DEFAULT_SYNC_INTERVAL,
):
    """Start the in-process incremental sync loop. Replaces any running loop."""
    stop_sync_loop()

    async def _loop():
        while True:
            await asyncio.sleep(interval)
            try:
                await run_sync_exclusive(engine_factory(), options)
            except asyncio.CancelledError:
                logger.info("Incremental sync loop cancelled")
                break
            except SyncInProgressError:
                logger.info("Skipping scheduled incremental sync — another sync is running")
            except Exception as e:
                logger.error(f"Scheduled incremental sync error: {e}")
                # Keep looping on transient errors

    _sync_loop["incremental"] = asyncio.create_task(_loop())
    logger.info(f"Started incremental sync loop (interval={interval}s)")


def stop_sync_loop():
    task = _sync_loop.pop("incremental", None)
    if task is not None:
        task.cancel()
        logger.info("Stopped incremental sync loop")


def stop_all_syncs() -> list[str]:
    """Cancel the running batch sync (if any) and the background loop."""
    cancelled = []
    for key, task in list(_active_syncs.items()):
        if not task.done():
            task.cancel()
            cancelled.append(key)
        _active_syncs.pop(key, None)
    if "incremental" in _sync_loop:
        stop_sync_loop()
        cancelled.append("loop")
    if cancelled:
        logger.info(f"Cancelled syncs: {cancelled}")
    return cancelled


def get_active_syncs() -> dict:
    """Return info about active syncs (for the admin status endpoint)."""
    info = {
        key: {"running": not task.done(), "cancelled": task.cancelled()}
        for key, task in _active_syncs.items()
    }
    loop = _sync_loop.get("incremental")
    if loop is not None:
        info["incremental_loop"] = {"running": not loop.done(), "cancelled": loop.cancelled()}
    return info
