"""
Sync Status Canonicalisation Tests
====================================
Verifies that:
1. SyncMode / SyncRunStatus constants have the string values stored in
   deal_flow_sync_status and returned by the admin endpoints.
2. The per-deal state machine only allows the documented transitions.
3. The Supabase history store writes canonical values and reads rows back.

Run: pytest tests/test_sync_status.py -v
All tests must pass. A failure here means a status string drifted from what
the dashboard and existing database rows use.
"""

import pytest
import sys
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from flow.models import FailedDeal, SyncRun
from flow.sync_history import InMemorySyncHistoryStore, SupabaseSyncHistoryStore
from sync_status import DealSyncState, SyncMode, SyncRunStatus

T0 = datetime(2024, 6, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# 1. Constants
# ---------------------------------------------------------------------------

class TestSyncConstants:

    def test_run_status_values(self):
        assert SyncRunStatus.RUNNING == "running"
        assert SyncRunStatus.COMPLETED == "completed"
        assert SyncRunStatus.FAILED == "failed"
        assert SyncRunStatus.ALL == {"running", "completed", "failed"}

    def test_mode_values(self):
        assert SyncMode.ALL == {"incremental", "full", "single"}

    def test_is_valid(self):
        assert SyncMode.is_valid("full")
        assert not SyncMode.is_valid("FULL")
        assert SyncRunStatus.is_valid("completed")
        assert not SyncRunStatus.is_valid("complete")


# ---------------------------------------------------------------------------
# 2. Per-deal state machine
# ---------------------------------------------------------------------------

class TestDealSyncState:

    def test_happy_path(self):
        path = [
            DealSyncState.PENDING, DealSyncState.FETCHING, DealSyncState.NORMALIZING,
            DealSyncState.UPSERTING, DealSyncState.SUCCEEDED,
        ]
        for current, new in zip(path, path[1:]):
            assert DealSyncState.can_transition(current, new)

    @pytest.mark.parametrize("stage", [
        DealSyncState.FETCHING, DealSyncState.NORMALIZING, DealSyncState.UPSERTING,
    ])
    def test_any_working_state_can_retry_or_exhaust(self, stage):
        assert DealSyncState.can_transition(stage, DealSyncState.FETCHING)
        assert DealSyncState.can_transition(stage, DealSyncState.RETRY_EXHAUSTED)

    def test_exhausted_only_goes_to_failed(self):
        assert DealSyncState.can_transition(DealSyncState.RETRY_EXHAUSTED, DealSyncState.FAILED)
        assert not DealSyncState.can_transition(DealSyncState.RETRY_EXHAUSTED, DealSyncState.FETCHING)

    def test_terminal_states_are_final(self):
        for terminal in DealSyncState.TERMINAL:
            for state in DealSyncState.ALL:
                assert not DealSyncState.can_transition(terminal, state)

    def test_cannot_skip_steps(self):
        assert not DealSyncState.can_transition(DealSyncState.PENDING, DealSyncState.UPSERTING)
        assert not DealSyncState.can_transition(DealSyncState.FETCHING, DealSyncState.SUCCEEDED)


# ---------------------------------------------------------------------------
# 3. History stores
# ---------------------------------------------------------------------------

def _run(run_id, status, started, **kw):
    return SyncRun(run_id=run_id, mode=SyncMode.INCREMENTAL, status=status, started_at=started, **kw)


class TestInMemoryHistory:

    @pytest.mark.asyncio
    async def test_record_overwrites_by_run_id(self):
        store = InMemorySyncHistoryStore()
        run = _run("r1", SyncRunStatus.RUNNING, T0)
        await store.record(run)
        run.status = SyncRunStatus.COMPLETED
        await store.record(run)

        runs = await store.recent()
        assert len(runs) == 1
        assert runs[0].status == SyncRunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_run_id_assigned_when_missing(self):
        store = InMemorySyncHistoryStore()
        run = _run(None, SyncRunStatus.RUNNING, T0)
        await store.record(run)
        assert run.run_id

    @pytest.mark.asyncio
    async def test_recent_newest_first_and_last_completed(self):
        store = InMemorySyncHistoryStore()
        await store.record(_run("old", SyncRunStatus.COMPLETED, T0 - timedelta(days=2)))
        await store.record(_run("failed", SyncRunStatus.FAILED, T0 - timedelta(days=1)))
        await store.record(_run("now", SyncRunStatus.RUNNING, T0))

        assert [r.run_id for r in await store.recent()] == ["now", "failed", "old"]
        assert await store.last_completed_started_at() == T0 - timedelta(days=2)

    @pytest.mark.asyncio
    async def test_single_deal_runs_do_not_count_as_last_completed(self):
        store = InMemorySyncHistoryStore()
        await store.record(_run("batch", SyncRunStatus.COMPLETED, T0 - timedelta(days=2)))
        await store.record(SyncRun(
            run_id="webhook", mode=SyncMode.SINGLE, status=SyncRunStatus.COMPLETED, started_at=T0,
        ))
        assert await store.last_completed_started_at() == T0 - timedelta(days=2)


class _TableMock:
    def __init__(self, data, calls):
        self._data = data
        self._calls = calls

    def select(self, *a, **kw): return self
    def eq(self, *a, **kw):    return self
    def in_(self, *a, **kw):   return self
    def order(self, *a, **kw): return self
    def limit(self, *a, **kw): return self
    def upsert(self, row, **kw):
        self._calls.append((row, kw))
        return self
    def execute(self):
        r = MagicMock()
        r.data = self._data
        return r


def _mk_supabase(data):
    calls = []
    sb = MagicMock()
    sb.table = lambda name: _TableMock(data, calls)
    return sb, calls


class TestSupabaseHistory:

    @pytest.mark.asyncio
    async def test_record_writes_canonical_row(self):
        sb, calls = _mk_supabase([])
        run = _run(
            "r1", SyncRunStatus.COMPLETED, T0,
            total_deals=3, successful_deals=2,
            failed_deals=[FailedDeal(deal_id=2, error="API error: 500")],
            segments_inserted=6,
        )
        await SupabaseSyncHistoryStore(sb).record(run)

        row, kwargs = calls[0]
        assert kwargs == {"on_conflict": "id"}
        assert row["id"] == "r1"
        assert row["sync_type"] == "incremental"
        assert row["status"] == "completed"
        assert row["failed_deals"] == [{"deal_id": 2, "error": "API error: 500"}]
        assert row["segments_inserted"] == 6

    @pytest.mark.asyncio
    async def test_recent_parses_rows(self):
        sb, _ = _mk_supabase([{
            "id": "r1", "sync_type": "full", "status": "failed",
            "started_at": "2024-06-01T00:00:00+00:00", "completed_at": None,
            "total_deals": 0, "failed_deals": [], "duration": 12,
            "errors": ["Could not list deals to sync: 401"],
        }])
        runs = await SupabaseSyncHistoryStore(sb).recent()
        assert runs[0].mode == SyncMode.FULL
        assert runs[0].started_at == T0
        assert runs[0].error == "Could not list deals to sync: 401"

    @pytest.mark.asyncio
    async def test_last_completed_started_at(self):
        sb, _ = _mk_supabase([{"started_at": "2024-06-01T00:00:00Z"}])
        assert await SupabaseSyncHistoryStore(sb).last_completed_started_at() == T0

    @pytest.mark.asyncio
    async def test_non_canonical_row_values_logged(self, caplog):
        sb, _ = _mk_supabase([{
            "id": "legacy", "sync_type": "manual", "status": "done",
            "started_at": "2024-06-01T00:00:00+00:00",
        }])
        runs = await SupabaseSyncHistoryStore(sb).recent()

        assert runs[0].status == "done"
        assert "unknown status 'done'" in caplog.text
        assert "unknown sync_type 'manual'" in caplog.text
