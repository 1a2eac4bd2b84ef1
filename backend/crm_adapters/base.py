"""
Abstract CRM Adapter base class.
All CRM-specific details live behind this abstraction.
The sync engine never sees CRM-specific field names or JSON shapes.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from flow.models import RawStageChangeEvent


class CRMAdapter(ABC):
    """One implementation per CRM. Provides normalized deal-history access."""

    @abstractmethod
    async def test_connection(self) -> dict:
        """Verify CRM credentials are valid. Returns {"ok": bool, "message": str}."""

    @abstractmethod
    async def fetch_stage_history(self, deal_id: int) -> list[RawStageChangeEvent]:
        """
        Fetch the raw change history of one deal.

        Returns every activity record, not only stage changes; filtering is
        the normalizer's job. Raises flow.errors.FetchError on failure.
        """

    @abstractmethod
    async def list_deals_updated_since(self, since: datetime) -> list[int]:
        """Ids of deals whose CRM-side update time is at or after `since`."""

    @abstractmethod
    async def list_all_deal_ids(self) -> list[int]:
        """Ids of every (non-deleted) deal."""
