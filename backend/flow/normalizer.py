"""
Event Normalizer: raw CRM activity for one deal → ordered stage segments.

Pure function, no I/O. The CRM does not guarantee ordering (or sub-second
ordering), so events are sorted here; Python's sort is stable, so events with
identical timestamps keep the order the CRM returned them in.
"""

import logging
import math
from typing import Iterable

from .models import RawStageChangeEvent, StageSegment

logger = logging.getLogger(__name__)


def normalize(deal_id: int, raw_events: Iterable[RawStageChangeEvent]) -> list[StageSegment]:
    stage_changes = [
        e for e in raw_events
        if e.is_stage_change and e.deal_id == deal_id
    ]
    stage_changes.sort(key=lambda e: e.occurred_at)

    segments: list[StageSegment] = []
    for i, event in enumerate(stage_changes):
        nxt = stage_changes[i + 1] if i + 1 < len(stage_changes) else None
        left_at = nxt.occurred_at if nxt else None
        duration = (
            math.floor((left_at - event.occurred_at).total_seconds())
            if left_at else None
        )
        segments.append(StageSegment(
            deal_id=deal_id,
            pipeline_id=event.pipeline_id,
            stage_id=event.stage_id,
            stage_name=event.stage_name,
            entered_at=event.occurred_at,
            left_at=left_at,
            duration_seconds=duration,
            source_event_id=event.source_event_id,
        ))

    if segments:
        logger.debug(f"Normalized deal {deal_id}: {len(segments)} segments")
    return segments
