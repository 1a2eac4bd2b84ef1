# Deal-flow core: normalize CRM stage history into segments, match stage pairs,
# aggregate lead times. Storage is injected; nothing here reads the environment.

from .aggregator import compute_all_metrics, compute_metric, compute_metric_detail, parse_period  # noqa: F401
from .matcher import match_duration, match_segments  # noqa: F401
from .models import (  # noqa: F401
    DealMetricResult,
    MetricDefinition,
    MetricSummary,
    RawStageChangeEvent,
    StageRef,
    StageSegment,
    SyncRun,
    Thresholds,
)
from .normalizer import normalize  # noqa: F401
