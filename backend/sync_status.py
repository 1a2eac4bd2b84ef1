"""
Canonical sync status values.

Single source of truth: import this everywhere status strings are written or compared.
Using plain class constants (not Python Enum) so the values serialize to bare strings
naturally for Supabase upserts and JSON responses without .value unwrapping.

Run state machine (deal_flow_sync_status.status):
    RUNNING → COMPLETED
            → FAILED        (orchestration could not start, e.g. deal listing failed)

Per-deal state machine (checked by the sync engine, reported through the
progress callback, not persisted):
    PENDING → FETCHING → NORMALIZING → UPSERTING → SUCCEEDED
                ↑__________________________________|  (retry on error)
    any of FETCHING/NORMALIZING/UPSERTING → RETRY_EXHAUSTED → FAILED
"""


class SyncMode:
    INCREMENTAL = "incremental"  # deals updated in the CRM within a trailing window
    FULL = "full"                # every deal
    SINGLE = "single"            # one deal, from the CRM webhook

    ALL = frozenset({INCREMENTAL, FULL, SINGLE})

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls.ALL


class SyncRunStatus:
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    ALL = frozenset({RUNNING, COMPLETED, FAILED})

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls.ALL


class DealSyncState:
    PENDING = "pending"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    UPSERTING = "upserting"
    SUCCEEDED = "succeeded"
    RETRY_EXHAUSTED = "retry_exhausted"
    FAILED = "failed"

    ALL = frozenset({PENDING, FETCHING, NORMALIZING, UPSERTING, SUCCEEDED, RETRY_EXHAUSTED, FAILED})

    TRANSITIONS = {
        PENDING: frozenset({FETCHING}),
        FETCHING: frozenset({NORMALIZING, FETCHING, RETRY_EXHAUSTED}),
        NORMALIZING: frozenset({UPSERTING, FETCHING, RETRY_EXHAUSTED}),
        UPSERTING: frozenset({SUCCEEDED, FETCHING, RETRY_EXHAUSTED}),
        RETRY_EXHAUSTED: frozenset({FAILED}),
        SUCCEEDED: frozenset(),
        FAILED: frozenset(),
    }

    TERMINAL = frozenset({SUCCEEDED, FAILED})

    @classmethod
    def can_transition(cls, current: str, new: str) -> bool:
        return new in cls.TRANSITIONS.get(current, frozenset())
