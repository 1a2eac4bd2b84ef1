"""Exception types for the deal-flow core."""

from typing import Optional


class FlowError(Exception):
    """Base class for all deal-flow errors."""


class FetchError(FlowError):
    """CRM history could not be fetched for a deal. Transient; retried by the sync engine."""

    def __init__(self, message: str, deal_id: Optional[int] = None):
        super().__init__(message)
        self.deal_id = deal_id


class StoreError(FlowError):
    """A segment/config/history store operation failed."""


class SyncError(FlowError):
    """The sync run itself could not start (e.g. deal enumeration failed)."""


class MetricValidationError(FlowError):
    """A metric definition was rejected. Carries every error, not just the first."""

    def __init__(self, errors: list[str], warnings: Optional[list[str]] = None):
        super().__init__("; ".join(errors) or "Invalid metric definition")
        self.errors = list(errors)
        self.warnings = list(warnings or [])


class MetricNotFoundError(FlowError):
    def __init__(self, metric_key: str):
        super().__init__(f"Metric not found: {metric_key}")
        self.metric_key = metric_key


class DuplicateMetricError(FlowError):
    def __init__(self, metric_key: str):
        super().__init__(f"Metric key already exists: {metric_key}")
        self.metric_key = metric_key
