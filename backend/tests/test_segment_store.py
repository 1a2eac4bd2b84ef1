"""
Segment Store Tests
===================
Upsert by source_event_id: new → inserted, open-and-changed → updated
(segment closed), anything else → skipped. Re-running the same payload
must never create duplicates.

Run: pytest tests/test_segment_store.py -v
"""

import pytest
import sys
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from flow.errors import StoreError
from flow.models import StageSegment
from flow.segment_store import InMemorySegmentStore, SupabaseSegmentStore

T0 = datetime(2024, 3, 1, tzinfo=timezone.utc)


def _seg(event_id, stage_id, entered, left=None, deal_id=1, pipeline_id=1):
    return StageSegment(
        deal_id=deal_id,
        pipeline_id=pipeline_id,
        stage_id=stage_id,
        stage_name=f"Stage {stage_id}",
        entered_at=entered,
        left_at=left,
        duration_seconds=int((left - entered).total_seconds()) if left else None,
        source_event_id=str(event_id),
    )


# ---------------------------------------------------------------------------
# Supabase mock helpers
# ---------------------------------------------------------------------------

class _TableMock:
    def __init__(self, data, writes, fail=False):
        self._data = data
        self._writes = writes
        self._fail = fail

    def select(self, *a, **kw): return self
    def eq(self, *a, **kw):    return self
    def in_(self, *a, **kw):   return self
    def gte(self, *a, **kw):   return self
    def order(self, *a, **kw): return self
    def range(self, *a, **kw): return self
    def upsert(self, rows, **kw):
        self._writes.append((rows, kw))
        return self
    def execute(self):
        if self._fail:
            raise RuntimeError("connection reset")
        r = MagicMock()
        r.data = self._data
        return r


def _mk_supabase(data, writes=None, fail=False):
    writes = writes if writes is not None else []
    sb = MagicMock()
    sb.table = lambda name: _TableMock(data, writes, fail)
    return sb, writes


# ---------------------------------------------------------------------------
# 1. In-memory upsert semantics
# ---------------------------------------------------------------------------

class TestInMemoryUpsert:

    @pytest.mark.asyncio
    async def test_insert_then_rerun_is_idempotent(self):
        store = InMemorySegmentStore()
        segments = [
            _seg(1, 10, T0, T0 + timedelta(days=1)),
            _seg(2, 20, T0 + timedelta(days=1)),
        ]
        first = await store.upsert(segments)
        second = await store.upsert(segments)

        assert (first.inserted, first.updated, first.skipped) == (2, 0, 0)
        assert (second.inserted, second.updated, second.skipped) == (0, 0, 2)
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_open_segment_closed_on_resync(self):
        store = InMemorySegmentStore()
        await store.upsert([_seg(1, 10, T0)])

        result = await store.upsert([
            _seg(1, 10, T0, T0 + timedelta(days=3)),
            _seg(2, 20, T0 + timedelta(days=3)),
        ])
        assert (result.inserted, result.updated, result.skipped) == (1, 1, 0)

        stored = await store.segments_for_deal(1)
        assert stored[0].left_at == T0 + timedelta(days=3)
        assert stored[0].duration_seconds == 3 * 86400
        assert stored[1].is_open

    @pytest.mark.asyncio
    async def test_closed_segment_never_rewritten(self):
        store = InMemorySegmentStore()
        await store.upsert([_seg(1, 10, T0, T0 + timedelta(days=1))])

        result = await store.upsert([_seg(1, 10, T0, T0 + timedelta(days=9))])
        assert result.skipped == 1
        stored = await store.segments_for_deal(1)
        assert stored[0].left_at == T0 + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_empty_upsert(self):
        result = await InMemorySegmentStore().upsert([])
        assert (result.inserted, result.updated, result.skipped) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_duplicate_ids_in_one_payload_counted_once(self):
        store = InMemorySegmentStore()
        result = await store.upsert([_seg(1, 10, T0), _seg(1, 10, T0)])
        assert result.inserted == 1
        assert len(store) == 1


class TestInMemoryQueries:

    @pytest.mark.asyncio
    async def test_segments_for_deal_ordered(self):
        store = InMemorySegmentStore()
        await store.upsert([
            _seg(2, 20, T0 + timedelta(days=2)),
            _seg(1, 10, T0, T0 + timedelta(days=2)),
            _seg(3, 10, T0, deal_id=2),
        ])
        stored = await store.segments_for_deal(1)
        assert [s.source_event_id for s in stored] == ["1", "2"]

    @pytest.mark.asyncio
    async def test_deal_ids_active_since(self):
        store = InMemorySegmentStore()
        await store.upsert([
            _seg(1, 10, T0 - timedelta(days=30), deal_id=1),
            _seg(2, 10, T0 - timedelta(days=2), deal_id=2),
            _seg(3, 10, T0 - timedelta(days=1), deal_id=3),
        ])
        assert await store.deal_ids_active_since(T0 - timedelta(days=7)) == [2, 3]
        assert await store.all_deal_ids() == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_segments_for_deals_groups_by_deal(self):
        store = InMemorySegmentStore()
        await store.upsert([_seg(1, 10, T0, deal_id=1), _seg(2, 10, T0, deal_id=2)])
        grouped = await store.segments_for_deals([1, 2, 3])
        assert [s.source_event_id for s in grouped[1]] == ["1"]
        assert grouped[3] == []


# ---------------------------------------------------------------------------
# 2. Supabase-backed store
# ---------------------------------------------------------------------------

class TestSupabaseSegmentStore:

    @pytest.mark.asyncio
    async def test_upsert_writes_only_new_and_closed_rows(self):
        existing_open = _seg(1, 10, T0).to_row()
        sb, writes = _mk_supabase([existing_open])
        store = SupabaseSegmentStore(sb)

        result = await store.upsert([
            _seg(1, 10, T0, T0 + timedelta(days=1)),
            _seg(2, 20, T0 + timedelta(days=1)),
        ])

        assert (result.inserted, result.updated, result.skipped) == (1, 1, 0)
        assert len(writes) == 1
        rows, kwargs = writes[0]
        assert kwargs == {"on_conflict": "source_event_id"}
        assert sorted(r["source_event_id"] for r in rows) == ["1", "2"]
        closed = next(r for r in rows if r["source_event_id"] == "1")
        assert closed["duration_seconds"] == 86400

    @pytest.mark.asyncio
    async def test_unchanged_rows_not_written(self):
        row = _seg(1, 10, T0, T0 + timedelta(days=1)).to_row()
        sb, writes = _mk_supabase([row])
        result = await SupabaseSegmentStore(sb).upsert([_seg(1, 10, T0, T0 + timedelta(days=1))])
        assert result.skipped == 1
        assert writes == []

    @pytest.mark.asyncio
    async def test_rows_parsed_into_segments(self):
        rows = [
            _seg(2, 20, T0 + timedelta(days=1)).to_row(),
            _seg(1, 10, T0, T0 + timedelta(days=1)).to_row(),
        ]
        sb, _ = _mk_supabase(rows)
        segments = await SupabaseSegmentStore(sb).segments_for_deal(1)
        assert [s.stage_id for s in segments] == [10, 20]
        assert segments[0].entered_at == T0

    @pytest.mark.asyncio
    async def test_deal_id_listing_deduplicates(self):
        sb, _ = _mk_supabase([{"deal_id": 5}, {"deal_id": 3}, {"deal_id": 5}])
        store = SupabaseSegmentStore(sb)
        assert await store.all_deal_ids() == [3, 5]
        assert await store.deal_ids_active_since(T0) == [3, 5]

    @pytest.mark.asyncio
    async def test_failures_wrapped_in_store_error(self):
        sb, _ = _mk_supabase([], fail=True)
        store = SupabaseSegmentStore(sb)
        with pytest.raises(StoreError):
            await store.upsert([_seg(1, 10, T0)])
        with pytest.raises(StoreError):
            await store.segments_for_deal(1)
