"""
Stage-Pair Matcher.

Policy: the earliest occurrence of the start stage, then the earliest
occurrence of the end stage strictly after it. Deals can bounce back and
re-enter stages; this measures the first forward pass through the funnel.
A deal that never reaches the end stage yields None, not zero.

Stage ids are only unique inside a pipeline, so every comparison uses the
(pipeline_id, stage_id) pair.
"""

from typing import Iterable, Optional

from .models import DealMetricResult, MetricDefinition, StageSegment
from .segment_store import SegmentStore


def match_segments(
    deal_id: int,
    segments: Iterable[StageSegment],
    metric: MetricDefinition,
) -> Optional[DealMetricResult]:
    start_key = metric.start_stage.key()
    end_key = metric.end_stage.key()
    if metric.start_stage.stage_id == metric.end_stage.stage_id:
        raise ValueError(
            f"Metric '{metric.metric_key}' has identical start and end stage "
            f"{metric.start_stage.stage_id}"
        )

    ordered = sorted(
        (s for s in segments if s.deal_id == deal_id),
        key=lambda s: s.entered_at,
    )

    start = next((s for s in ordered if s.stage_key() == start_key), None)
    if start is None:
        return None

    end = next(
        (s for s in ordered
         if s.entered_at > start.entered_at and s.stage_key() == end_key),
        None,
    )
    if end is None:
        return None

    duration = int((end.entered_at - start.entered_at).total_seconds())
    if duration <= 0:
        return None

    return DealMetricResult(
        deal_id=deal_id,
        start_timestamp=start.entered_at,
        end_timestamp=end.entered_at,
        duration_seconds=duration,
    )


async def match_duration(
    store: SegmentStore, deal_id: int, metric: MetricDefinition
) -> Optional[DealMetricResult]:
    segments = await store.segments_for_deal(deal_id)
    return match_segments(deal_id, segments, metric)
