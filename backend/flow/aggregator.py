"""
Metric Aggregator
=================
compute_metric():        one metric → count / average / min / max in days.
compute_metric_detail(): same, plus the per-deal results behind it.
compute_all_metrics():   every given metric concurrently (flow-metrics listing).

Rounding is done in two steps and must stay that way: each deal's duration is
converted to days and rounded half-up to 2 decimals, the mean of those is
rounded to 2 decimals, and the displayed average is that mean rounded to a
whole day. Rounding is half-up, not Python's banker's rounding.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from .matcher import match_segments
from .models import DealMetricResult, MetricDefinition, MetricDetail, MetricSummary, Thresholds, utc_now
from .segment_store import SegmentStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
MAX_PERIOD_DAYS = 3650  # ten years; use "all" beyond that

# Period preset → days (None = all time)
PERIOD_DAYS: dict[str, Optional[int]] = {
    "7d": 7,
    "14d": 14,
    "1m": 30,
    "3m": 90,
    "all": None,
}
DEFAULT_PERIOD = "7d"


def parse_period(period: Optional[str]) -> Optional[int]:
    """'7d' / '1m' / 'all' / '45' → days. Raises ValueError for anything else."""
    if period is None or period == "":
        period = DEFAULT_PERIOD
    if period in PERIOD_DAYS:
        return PERIOD_DAYS[period]
    raw = period[:-1] if period.endswith("d") else period
    if raw.isdigit() and 0 < int(raw) <= MAX_PERIOD_DAYS:
        return int(raw)
    raise ValueError(f"Unsupported period: {period!r}")


def round_half_up(value: float, places: int = 0) -> float:
    factor = 10 ** places
    return math.floor(value * factor + 0.5) / factor


def seconds_to_days(duration_seconds: int) -> float:
    return round_half_up(duration_seconds / SECONDS_PER_DAY, 2)


def threshold_status(average_days: float, thresholds: Thresholds) -> Optional[str]:
    if thresholds.min_days is None and thresholds.max_days is None:
        return None
    if thresholds.min_days is not None and average_days < thresholds.min_days:
        return "below_min"
    if thresholds.max_days is not None and average_days > thresholds.max_days:
        return "above_max"
    return "within"


def summarize(
    metric: MetricDefinition,
    results: list[DealMetricResult],
    period_days: Optional[int] = None,
) -> MetricSummary:
    if not results:
        return MetricSummary(
            metric_key=metric.metric_key,
            display_title=metric.display_title,
            period_days=period_days,
        )

    days = [seconds_to_days(r.duration_seconds) for r in results]
    mean = round_half_up(sum(days) / len(days), 2)
    return MetricSummary(
        metric_key=metric.metric_key,
        display_title=metric.display_title,
        period_days=period_days,
        count=len(days),
        average_days=int(round_half_up(mean)),
        min_days=int(round_half_up(min(days))),
        max_days=int(round_half_up(max(days))),
        average_days_precise=mean,
        threshold_status=threshold_status(mean, metric.thresholds),
    )


async def _eligible_deal_ids(
    store: SegmentStore, period_days: Optional[int], now: Optional[datetime]
) -> list[int]:
    if period_days is None:
        return await store.all_deal_ids()
    since = (now or utc_now()) - timedelta(days=period_days)
    return await store.deal_ids_active_since(since)


async def _deal_results(
    store: SegmentStore,
    metric: MetricDefinition,
    period_days: Optional[int],
    now: Optional[datetime],
) -> list[DealMetricResult]:
    deal_ids = await _eligible_deal_ids(store, period_days, now)
    if not deal_ids:
        return []
    segments_by_deal = await store.segments_for_deals(deal_ids)

    results = []
    for deal_id in deal_ids:
        match = match_segments(deal_id, segments_by_deal.get(deal_id, []), metric)
        if match is not None:
            results.append(match)
    return results


async def compute_metric(
    store: SegmentStore,
    metric: MetricDefinition,
    period_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> MetricSummary:
    results = await _deal_results(store, metric, period_days, now)
    return summarize(metric, results, period_days)


async def compute_metric_detail(
    store: SegmentStore,
    metric: MetricDefinition,
    period_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> MetricDetail:
    results = await _deal_results(store, metric, period_days, now)
    deals = [
        {**r.to_dict(), "duration_days": seconds_to_days(r.duration_seconds)}
        for r in sorted(results, key=lambda r: r.end_timestamp, reverse=True)
    ]
    return MetricDetail(summary=summarize(metric, results, period_days), deals=deals)


async def compute_all_metrics(
    store: SegmentStore,
    metrics: list[MetricDefinition],
    period_days: Optional[int] = None,
    now: Optional[datetime] = None,
    compute=None,
) -> list[MetricSummary]:
    """
    Compute every metric concurrently. A metric that fails is logged and comes
    back as a zero-count summary carrying `error`; the others are unaffected.

    `compute` lets the caller put a cache in front: async fn(metric) → summary.
    """
    async def _one(metric: MetricDefinition) -> MetricSummary:
        try:
            if compute is not None:
                return await compute(metric)
            return await compute_metric(store, metric, period_days, now)
        except Exception as e:
            logger.error(
                "Metric computation failed (metric=%s, period_days=%s): %s",
                metric.metric_key, period_days, e,
            )
            return MetricSummary(
                metric_key=metric.metric_key,
                display_title=metric.display_title,
                period_days=period_days,
                error=str(e),
            )

    return list(await asyncio.gather(*(_one(m) for m in metrics)))
