"""
Metric Configuration Store.

Every create/update runs validate_metric_definition() first; a definition with
errors raises MetricValidationError and is never persisted. Cross-pipeline
metrics (start and end stage in different pipelines) are valid and only
produce a warning.

Writes bust the metric result cache for the affected key.
"""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from .cache import MetricResultCache
from .errors import DuplicateMetricError, MetricNotFoundError, MetricValidationError, StoreError
from .models import MetricDefinition

logger = logging.getLogger(__name__)

METRICS_TABLE = "flow_metrics_config"

METRIC_KEY_PATTERN = re.compile(r"^[a-z0-9-]+$")


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def validate_metric_definition(metric: MetricDefinition) -> ValidationResult:
    result = ValidationResult()

    if not metric.metric_key or not metric.metric_key.strip():
        result.errors.append("Metric key is required")
    elif not METRIC_KEY_PATTERN.match(metric.metric_key):
        result.errors.append(
            "Metric key must contain only lowercase letters, numbers, and hyphens"
        )

    if not metric.display_title or not metric.display_title.strip():
        result.errors.append("Display title is required")

    start, end = metric.start_stage, metric.end_stage
    if start.stage_id == end.stage_id:
        result.errors.append("Start and end stages cannot be the same stage")

    if start.pipeline_id != end.pipeline_id:
        start_name = start.pipeline_name or f"pipeline {start.pipeline_id}"
        end_name = end.pipeline_name or f"pipeline {end.pipeline_id}"
        result.warnings.append(
            f"This is a cross-pipeline metric ({start_name} → {end_name}). "
            "Ensure deal flow data captures transitions between pipelines."
        )

    min_days = metric.thresholds.min_days
    max_days = metric.thresholds.max_days
    if min_days is not None and max_days is not None and min_days > max_days:
        result.errors.append("Minimum days cannot be greater than maximum days")
    if min_days is not None and min_days < 0:
        result.errors.append("Minimum days cannot be negative")
    if max_days is not None and max_days < 0:
        result.errors.append("Maximum days cannot be negative")

    return result


def generate_metric_key(display_title: str) -> str:
    """'Lead → Won (EU)' → 'lead-won-eu'"""
    key = re.sub(r"[^a-z0-9]+", "-", display_title.lower())
    return key.strip("-")


def _sort_key(metric: MetricDefinition):
    return (metric.sort_order, metric.display_title)


class MetricConfigStore(ABC):

    def __init__(self, cache: Optional[MetricResultCache] = None):
        self.cache = cache

    # ── public operations ────────────────────────────────────────────

    async def create(self, metric: MetricDefinition) -> MetricDefinition:
        self._validate(metric)
        if await self._get(metric.metric_key) is not None:
            raise DuplicateMetricError(metric.metric_key)
        await self._insert(metric)
        logger.info(f"Created flow metric {metric.metric_key}")
        self._bust(metric.metric_key)
        return metric

    async def update(self, metric_key: str, metric: MetricDefinition) -> MetricDefinition:
        if metric.metric_key != metric_key:
            raise MetricValidationError(["Metric key cannot be changed"])
        self._validate(metric)
        if await self._get(metric_key) is None:
            raise MetricNotFoundError(metric_key)
        await self._replace(metric)
        logger.info(f"Updated flow metric {metric_key}")
        self._bust(metric_key)
        return metric

    async def delete(self, metric_key: str) -> None:
        if await self._get(metric_key) is None:
            raise MetricNotFoundError(metric_key)
        await self._remove(metric_key)
        logger.info(f"Deleted flow metric {metric_key}")
        self._bust(metric_key)

    async def get_by_key(self, metric_key: str) -> Optional[MetricDefinition]:
        return await self._get(metric_key)

    async def find_all(self) -> list[MetricDefinition]:
        return sorted(await self._list(), key=_sort_key)

    async def get_active(self) -> list[MetricDefinition]:
        return [m for m in await self.find_all() if m.is_active]

    async def update_comment(self, metric_key: str, comment: Optional[str]) -> MetricDefinition:
        current = await self._get(metric_key)
        if current is None:
            raise MetricNotFoundError(metric_key)
        updated = current.model_copy(update={"comment": comment or None})
        await self._replace(updated)
        self._bust(metric_key)
        return updated

    async def reorder(self, order: dict[str, int]) -> list[MetricDefinition]:
        """Apply {metric_key: sort_order}. Unknown keys raise before anything is written."""
        current = {m.metric_key: m for m in await self._list()}
        missing = [k for k in order if k not in current]
        if missing:
            raise MetricNotFoundError(", ".join(missing))
        for metric_key, sort_order in order.items():
            await self._replace(current[metric_key].model_copy(update={"sort_order": sort_order}))
        logger.info(f"Reordered {len(order)} flow metrics")
        self._bust()
        return await self.find_all()

    # ── helpers ──────────────────────────────────────────────────────

    def _validate(self, metric: MetricDefinition) -> None:
        result = validate_metric_definition(metric)
        if not result.valid:
            raise MetricValidationError(result.errors, result.warnings)

    def _bust(self, metric_key: Optional[str] = None) -> None:
        if self.cache is None:
            return
        try:
            self.cache.bust(metric_key)
        except Exception as e:
            logger.warning(f"Metric cache bust failed for {metric_key or 'all'}: {e}")

    # ── storage primitives ───────────────────────────────────────────

    @abstractmethod
    async def _get(self, metric_key: str) -> Optional[MetricDefinition]: ...

    @abstractmethod
    async def _list(self) -> list[MetricDefinition]: ...

    @abstractmethod
    async def _insert(self, metric: MetricDefinition) -> None: ...

    @abstractmethod
    async def _replace(self, metric: MetricDefinition) -> None: ...

    @abstractmethod
    async def _remove(self, metric_key: str) -> None: ...


class InMemoryMetricConfigStore(MetricConfigStore):

    def __init__(self, cache: Optional[MetricResultCache] = None):
        super().__init__(cache)
        self._metrics: dict[str, MetricDefinition] = {}

    async def _get(self, metric_key):
        return self._metrics.get(metric_key)

    async def _list(self):
        return list(self._metrics.values())

    async def _insert(self, metric):
        self._metrics[metric.metric_key] = metric

    async def _replace(self, metric):
        self._metrics[metric.metric_key] = metric

    async def _remove(self, metric_key):
        self._metrics.pop(metric_key, None)


class SupabaseMetricConfigStore(MetricConfigStore):
    """Definitions in `flow_metrics_config`; stages/thresholds live in the `config` JSONB column."""

    def __init__(self, supabase, cache: Optional[MetricResultCache] = None,
                 table_name: str = METRICS_TABLE):
        super().__init__(cache)
        self.supabase = supabase
        self.table_name = table_name

    async def _run(self, fn, action: str):
        try:
            return await asyncio.to_thread(fn)
        except Exception as e:
            logger.error(f"flow_metrics_config {action} failed: {e}")
            raise StoreError(f"Failed to {action} metric config: {e}") from e

    async def _get(self, metric_key):
        result = await self._run(lambda: self.supabase.table(self.table_name).select("*").eq(
            "metric_key", metric_key
        ).limit(1).execute(), "read")
        if result.data:
            return MetricDefinition.from_row(result.data[0])
        return None

    async def _list(self):
        result = await self._run(lambda: self.supabase.table(self.table_name).select("*").order(
            "sort_order"
        ).execute(), "list")
        return [MetricDefinition.from_row(r) for r in result.data or []]

    async def _insert(self, metric):
        await self._run(lambda: self.supabase.table(self.table_name).insert(
            metric.to_row()
        ).execute(), "create")

    async def _replace(self, metric):
        await self._run(lambda: self.supabase.table(self.table_name).update(
            metric.to_row()
        ).eq("metric_key", metric.metric_key).execute(), "update")

    async def _remove(self, metric_key):
        await self._run(lambda: self.supabase.table(self.table_name).delete().eq(
            "metric_key", metric_key
        ).execute(), "delete")
