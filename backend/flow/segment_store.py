"""
Segment Store: persistent stage segments keyed by the CRM event id.

Upsert-by-source_event_id is the only deduplication mechanism in the system:
the sync engine may re-fetch overlapping windows freely. A segment that is
already stored is never re-inserted; the one allowed change is closing an
open segment (left_at / duration_seconds set) once the deal has moved on.

IMPORTANT: the supabase-py client is SYNCHRONOUS. Every .execute() goes
through `_db(fn)` so it runs in a worker thread, not on the event loop.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Iterable

from .errors import StoreError
from .models import StageSegment, UpsertResult, to_iso

logger = logging.getLogger(__name__)

SEGMENTS_TABLE = "deal_flow_segments"

# PostgREST caps responses at 1000 rows
PAGE_SIZE = 1000

# Keep `in.(...)` filters well under URL length limits
IN_FILTER_CHUNK = 200


async def _db(fn):
    """Run a synchronous Supabase call in a thread pool to avoid blocking the event loop."""
    return await asyncio.to_thread(fn)


def _chunks(items: list, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class SegmentStore(ABC):
    """Storage interface injected into the sync engine, matcher and aggregator."""

    async def upsert(self, segments: Iterable[StageSegment]) -> UpsertResult:
        segments = list(segments)
        if not segments:
            return UpsertResult()

        # Same event id twice in one payload: last one wins
        incoming = {s.source_event_id: s for s in segments}
        existing = await self._load_existing(list(incoming))

        to_write: list[StageSegment] = []
        inserted = updated = skipped = 0
        for event_id, segment in incoming.items():
            current = existing.get(event_id)
            if current is None:
                to_write.append(segment)
                inserted += 1
            elif current.is_open and current != segment:
                to_write.append(segment)
                updated += 1
            else:
                skipped += 1

        if to_write:
            await self._write(to_write)
        return UpsertResult(inserted=inserted, updated=updated, skipped=skipped)

    @abstractmethod
    async def _load_existing(self, source_event_ids: list[str]) -> dict[str, StageSegment]:
        """Return stored segments for the given event ids."""

    @abstractmethod
    async def _write(self, segments: list[StageSegment]) -> None:
        """Insert-or-replace segments by source_event_id."""

    @abstractmethod
    async def segments_for_deal(self, deal_id: int) -> list[StageSegment]:
        """All segments for one deal, ordered by entered_at."""

    async def segments_for_deals(self, deal_ids: Iterable[int]) -> dict[int, list[StageSegment]]:
        result = {}
        for deal_id in deal_ids:
            result[deal_id] = await self.segments_for_deal(deal_id)
        return result

    @abstractmethod
    async def deal_ids_active_since(self, since: datetime) -> list[int]:
        """Deals with at least one segment entered at or after `since`."""

    @abstractmethod
    async def all_deal_ids(self) -> list[int]:
        """Every deal id with stored segments."""


class InMemorySegmentStore(SegmentStore):
    """Dict-backed store for local development and tests."""

    def __init__(self):
        self._segments: dict[str, StageSegment] = {}

    async def _load_existing(self, source_event_ids: list[str]) -> dict[str, StageSegment]:
        return {i: self._segments[i] for i in source_event_ids if i in self._segments}

    async def _write(self, segments: list[StageSegment]) -> None:
        for s in segments:
            self._segments[s.source_event_id] = s

    async def segments_for_deal(self, deal_id: int) -> list[StageSegment]:
        rows = [s for s in self._segments.values() if s.deal_id == deal_id]
        return sorted(rows, key=lambda s: s.entered_at)

    async def deal_ids_active_since(self, since: datetime) -> list[int]:
        return sorted({s.deal_id for s in self._segments.values() if s.entered_at >= since})

    async def all_deal_ids(self) -> list[int]:
        return sorted({s.deal_id for s in self._segments.values()})

    def __len__(self) -> int:
        return len(self._segments)


class SupabaseSegmentStore(SegmentStore):
    """Segments in the `deal_flow_segments` table (unique source_event_id)."""

    def __init__(self, supabase, table_name: str = SEGMENTS_TABLE):
        self.supabase = supabase
        self.table_name = table_name

    def _table(self):
        return self.supabase.table(self.table_name)

    async def _fetch_all(self, build_query: Callable) -> list[dict]:
        """Page through a select with .range() until a short page comes back."""
        rows: list[dict] = []
        start = 0
        while True:
            result = await _db(
                lambda s=start: build_query().range(s, s + PAGE_SIZE - 1).execute()
            )
            page = result.data or []
            rows.extend(page)
            if len(page) < PAGE_SIZE:
                break
            start += PAGE_SIZE
        return rows

    async def _load_existing(self, source_event_ids: list[str]) -> dict[str, StageSegment]:
        found: dict[str, StageSegment] = {}
        try:
            for chunk in _chunks(source_event_ids, IN_FILTER_CHUNK):
                result = await _db(lambda c=chunk: self._table().select("*").in_(
                    "source_event_id", c
                ).execute())
                for row in result.data or []:
                    segment = StageSegment.from_row(row)
                    found[segment.source_event_id] = segment
        except Exception as e:
            raise StoreError(f"Failed to load existing segments: {e}") from e
        return found

    async def _write(self, segments: list[StageSegment]) -> None:
        rows = [s.to_row() for s in segments]
        try:
            await _db(lambda: self._table().upsert(
                rows, on_conflict="source_event_id"
            ).execute())
        except Exception as e:
            logger.error(f"Segment upsert failed ({len(rows)} rows): {e}")
            raise StoreError(f"Failed to upsert {len(rows)} segments: {e}") from e

    async def segments_for_deal(self, deal_id: int) -> list[StageSegment]:
        try:
            result = await _db(lambda: self._table().select("*").eq(
                "deal_id", deal_id
            ).order("entered_at").execute())
        except Exception as e:
            raise StoreError(f"Failed to read segments for deal {deal_id}: {e}") from e
        segments = [StageSegment.from_row(r) for r in result.data or []]
        return sorted(segments, key=lambda s: s.entered_at)

    async def segments_for_deals(self, deal_ids: Iterable[int]) -> dict[int, list[StageSegment]]:
        deal_ids = list(deal_ids)
        grouped: dict[int, list[StageSegment]] = {d: [] for d in deal_ids}
        try:
            for chunk in _chunks(deal_ids, IN_FILTER_CHUNK):
                rows = await self._fetch_all(
                    lambda c=chunk: self._table().select("*").in_("deal_id", c).order("entered_at")
                )
                for row in rows:
                    segment = StageSegment.from_row(row)
                    grouped.setdefault(segment.deal_id, []).append(segment)
        except Exception as e:
            raise StoreError(f"Failed to read segments for {len(deal_ids)} deals: {e}") from e
        for segments in grouped.values():
            segments.sort(key=lambda s: s.entered_at)
        return grouped

    async def deal_ids_active_since(self, since: datetime) -> list[int]:
        try:
            rows = await self._fetch_all(
                lambda: self._table().select("deal_id").gte("entered_at", to_iso(since))
            )
        except Exception as e:
            raise StoreError(f"Failed to list active deals: {e}") from e
        return sorted({int(r["deal_id"]) for r in rows})

    async def all_deal_ids(self) -> list[int]:
        try:
            rows = await self._fetch_all(lambda: self._table().select("deal_id"))
        except Exception as e:
            raise StoreError(f"Failed to list deals: {e}") from e
        return sorted({int(r["deal_id"]) for r in rows})
