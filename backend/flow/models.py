"""
Deal-flow data model
====================
StageSegment / RawStageChangeEvent / DealMetricResult are plain dataclasses.
Metric definitions and sync summaries are pydantic models; they cross the
HTTP boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

STAGE_CHANGE = "stage_change"


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------

def parse_iso(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or datetime) into an aware UTC datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RawStageChangeEvent:
    """One CRM activity record for a deal, already mapped out of CRM-specific JSON."""
    source_event_id: str
    deal_id: int
    pipeline_id: int
    stage_id: Optional[int]
    stage_name: str
    occurred_at: datetime
    event_type: str = STAGE_CHANGE

    @property
    def is_stage_change(self) -> bool:
        return self.event_type == STAGE_CHANGE and self.stage_id is not None


@dataclass(frozen=True)
class StageSegment:
    """One continuous occupancy of one pipeline stage by one deal."""
    deal_id: int
    pipeline_id: int
    stage_id: int
    stage_name: str
    entered_at: datetime
    left_at: Optional[datetime]
    duration_seconds: Optional[int]
    source_event_id: str

    @property
    def is_open(self) -> bool:
        return self.left_at is None

    def stage_key(self) -> tuple[int, int]:
        return (self.pipeline_id, self.stage_id)

    def to_row(self) -> dict:
        return {
            "source_event_id": self.source_event_id,
            "deal_id": self.deal_id,
            "pipeline_id": self.pipeline_id,
            "stage_id": self.stage_id,
            "stage_name": self.stage_name,
            "entered_at": to_iso(self.entered_at),
            "left_at": to_iso(self.left_at),
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_row(cls, row: dict) -> "StageSegment":
        duration = row.get("duration_seconds")
        return cls(
            deal_id=int(row["deal_id"]),
            pipeline_id=int(row["pipeline_id"]),
            stage_id=int(row["stage_id"]),
            stage_name=row.get("stage_name") or "",
            entered_at=parse_iso(row["entered_at"]),
            left_at=parse_iso(row.get("left_at")),
            duration_seconds=int(duration) if duration is not None else None,
            source_event_id=str(row["source_event_id"]),
        )


@dataclass(frozen=True)
class UpsertResult:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0

    def __add__(self, other: "UpsertResult") -> "UpsertResult":
        return UpsertResult(
            inserted=self.inserted + other.inserted,
            updated=self.updated + other.updated,
            skipped=self.skipped + other.skipped,
        )


@dataclass(frozen=True)
class DealMetricResult:
    deal_id: int
    start_timestamp: datetime
    end_timestamp: datetime
    duration_seconds: int

    def to_dict(self) -> dict:
        return {
            "deal_id": self.deal_id,
            "start_timestamp": to_iso(self.start_timestamp),
            "end_timestamp": to_iso(self.end_timestamp),
            "duration_seconds": self.duration_seconds,
        }


# ---------------------------------------------------------------------------
# Metric definitions
# ---------------------------------------------------------------------------

class StageRef(BaseModel):
    """A stage qualified by its pipeline. Stage ids are only unique within a pipeline."""
    stage_id: int
    pipeline_id: int
    stage_name: Optional[str] = None
    pipeline_name: Optional[str] = None

    def key(self) -> tuple[int, int]:
        return (self.pipeline_id, self.stage_id)


class Thresholds(BaseModel):
    min_days: Optional[float] = None
    max_days: Optional[float] = None


class MetricDefinition(BaseModel):
    metric_key: str
    display_title: str
    start_stage: StageRef
    end_stage: StageRef
    thresholds: Thresholds = Field(default_factory=Thresholds)
    comment: Optional[str] = None
    sort_order: int = 0
    is_active: bool = True

    @property
    def is_cross_pipeline(self) -> bool:
        return self.start_stage.pipeline_id != self.end_stage.pipeline_id

    def to_row(self) -> dict:
        return {
            "metric_key": self.metric_key,
            "display_title": self.display_title,
            "config": {
                "start_stage": self.start_stage.model_dump(),
                "end_stage": self.end_stage.model_dump(),
                "thresholds": self.thresholds.model_dump(),
                "comment": self.comment,
            },
            "sort_order": self.sort_order,
            "is_active": self.is_active,
        }

    @classmethod
    def from_row(cls, row: dict) -> "MetricDefinition":
        config = row.get("config") or {}
        return cls(
            metric_key=row["metric_key"],
            display_title=row["display_title"],
            start_stage=StageRef(**config["start_stage"]),
            end_stage=StageRef(**config["end_stage"]),
            thresholds=Thresholds(**(config.get("thresholds") or {})),
            comment=config.get("comment"),
            sort_order=row.get("sort_order") or 0,
            is_active=row.get("is_active", True),
        )


class MetricSummary(BaseModel):
    metric_key: str
    display_title: str = ""
    period_days: Optional[int] = None
    count: int = 0
    average_days: int = 0
    min_days: int = 0
    max_days: int = 0
    average_days_precise: float = 0.0
    threshold_status: Optional[str] = None
    error: Optional[str] = None


class MetricDetail(BaseModel):
    summary: MetricSummary
    deals: list[dict] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Sync runs
# ---------------------------------------------------------------------------

class FailedDeal(BaseModel):
    deal_id: int
    error: str


class SyncRun(BaseModel):
    run_id: Optional[str] = None
    mode: str
    status: str
    total_deals: int = 0
    processed_deals: int = 0
    successful_deals: int = 0
    failed_deals: list[FailedDeal] = Field(default_factory=list)
    duration_ms: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    timed_out: bool = False
    segments_inserted: int = 0
    segments_updated: int = 0
    segments_skipped: int = 0
    error: Optional[str] = None

    @property
    def success_rate(self) -> float:
        if not self.total_deals:
            return 0.0
        return round(self.successful_deals / self.total_deals * 100, 1)
