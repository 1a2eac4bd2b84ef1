"""
Sync run history: one row per sync run in `deal_flow_sync_status`.

Used by the admin status screen and by incremental sync to widen its window
back to the last completed run. Writes here are bookkeeping: the sync engine
treats any failure as non-fatal.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from sync_status import SyncMode, SyncRunStatus

from .models import FailedDeal, SyncRun, parse_iso, to_iso

logger = logging.getLogger(__name__)

SYNC_STATUS_TABLE = "deal_flow_sync_status"

# Runs that cover the whole deal population; single-deal webhook runs do not count
BATCH_MODES = (SyncMode.INCREMENTAL, SyncMode.FULL)


def _run_to_row(run: SyncRun) -> dict:
    return {
        "id": run.run_id,
        "sync_type": run.mode,
        "status": run.status,
        "started_at": to_iso(run.started_at),
        "completed_at": to_iso(run.completed_at),
        "total_deals": run.total_deals,
        "processed_deals": run.processed_deals,
        "successful_deals": run.successful_deals,
        "failed_deals": [f.model_dump() for f in run.failed_deals],
        "duration": run.duration_ms,
        "timed_out": run.timed_out,
        "segments_inserted": run.segments_inserted,
        "segments_updated": run.segments_updated,
        "segments_skipped": run.segments_skipped,
        "errors": [run.error] if run.error else [],
    }


def _row_to_run(row: dict) -> SyncRun:
    errors = row.get("errors") or []
    if not SyncRunStatus.is_valid(row.get("status") or ""):
        logger.warning(f"Sync run {row.get('id')} has unknown status {row.get('status')!r}")
    if not SyncMode.is_valid(row.get("sync_type") or ""):
        logger.warning(f"Sync run {row.get('id')} has unknown sync_type {row.get('sync_type')!r}")
    return SyncRun(
        run_id=row.get("id"),
        mode=row.get("sync_type") or "",
        status=row.get("status") or "",
        started_at=parse_iso(row.get("started_at")),
        completed_at=parse_iso(row.get("completed_at")),
        total_deals=row.get("total_deals") or 0,
        processed_deals=row.get("processed_deals") or 0,
        successful_deals=row.get("successful_deals") or 0,
        failed_deals=[FailedDeal(**f) for f in row.get("failed_deals") or []],
        duration_ms=row.get("duration") or 0,
        timed_out=bool(row.get("timed_out")),
        segments_inserted=row.get("segments_inserted") or 0,
        segments_updated=row.get("segments_updated") or 0,
        segments_skipped=row.get("segments_skipped") or 0,
        error=errors[0] if errors else None,
    )


class SyncHistoryStore(ABC):

    @abstractmethod
    async def record(self, run: SyncRun) -> None:
        """Insert or update the row for run.run_id."""

    @abstractmethod
    async def recent(self, limit: int = 10) -> list[SyncRun]:
        """Most recent runs first."""

    async def last_completed_started_at(self) -> Optional[datetime]:
        for run in await self.recent(limit=50):
            if run.status == SyncRunStatus.COMPLETED and run.mode in BATCH_MODES and run.started_at:
                return run.started_at
        return None


class InMemorySyncHistoryStore(SyncHistoryStore):

    def __init__(self):
        self._runs: dict[str, SyncRun] = {}

    async def record(self, run: SyncRun) -> None:
        if not run.run_id:
            run.run_id = str(uuid.uuid4())
        self._runs[run.run_id] = run.model_copy(deep=True)

    async def recent(self, limit: int = 10) -> list[SyncRun]:
        runs = sorted(
            self._runs.values(),
            key=lambda r: r.started_at.timestamp() if r.started_at else 0.0,
            reverse=True,
        )
        return runs[:limit]


class SupabaseSyncHistoryStore(SyncHistoryStore):

    def __init__(self, supabase, table_name: str = SYNC_STATUS_TABLE):
        self.supabase = supabase
        self.table_name = table_name

    async def record(self, run: SyncRun) -> None:
        if not run.run_id:
            run.run_id = str(uuid.uuid4())
        row = _run_to_row(run)
        await asyncio.to_thread(lambda: self.supabase.table(self.table_name).upsert(
            row, on_conflict="id"
        ).execute())

    async def recent(self, limit: int = 10) -> list[SyncRun]:
        result = await asyncio.to_thread(lambda: self.supabase.table(self.table_name).select(
            "*"
        ).order("started_at", desc=True).limit(limit).execute())
        return [_row_to_run(r) for r in result.data or []]

    async def last_completed_started_at(self) -> Optional[datetime]:
        result = await asyncio.to_thread(lambda: self.supabase.table(self.table_name).select(
            "started_at"
        ).eq("status", SyncRunStatus.COMPLETED).in_(
            "sync_type", list(BATCH_MODES)
        ).order(
            "started_at", desc=True
        ).limit(1).execute())
        if result.data:
            return parse_iso(result.data[0].get("started_at"))
        return None
