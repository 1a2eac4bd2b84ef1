"""
Pipedrive CRM Adapter.
Wraps PipedriveCRMClient and maps /deals/{id}/flow items to RawStageChangeEvent.

Stage changes are `dealChange` items with data.field_key == "stage_id". The
flow items do not carry the pipeline of the stage, so it is reconstructed from
`pipeline_id` change items: the deal starts in the old_value of its earliest
pipeline change (or its current pipeline if it never moved), and each pipeline
change applies to stage changes at or after its timestamp.
"""

import logging
from datetime import datetime
from typing import Optional

import httpx

from flow.errors import FetchError
from flow.models import STAGE_CHANGE, RawStageChangeEvent, parse_iso
from pipedrive_crm import MAX_DEAL_PAGES, PipedriveAPIError

from .base import CRMAdapter

logger = logging.getLogger(__name__)

DEFAULT_PIPELINE_ID = 1


def parse_pipedrive_time(value) -> Optional[datetime]:
    """Pipedrive timestamps are UTC 'YYYY-MM-DD HH:MM:SS'."""
    if not value:
        return None
    return parse_iso(str(value).strip().replace(" ", "T", 1))


def _to_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class PipedriveAdapter(CRMAdapter):
    """Adapter for Pipedrive via API token."""

    def __init__(self, client):
        """
        Args:
            client: PipedriveCRMClient instance (from pipedrive_crm.py)
        """
        self.client = client

    async def test_connection(self) -> dict:
        return await self.client.test_connection()

    async def fetch_stage_history(self, deal_id: int) -> list[RawStageChangeEvent]:
        try:
            flow = await self.client.get_deal_flow(deal_id)
            deal = await self.client.get_deal(deal_id)
        except (PipedriveAPIError, httpx.HTTPError) as e:
            raise FetchError(f"Pipedrive flow fetch failed for deal {deal_id}: {e}", deal_id) from e

        current_pipeline = _to_int(deal.get("pipeline_id")) or DEFAULT_PIPELINE_ID
        return self.map_flow(deal_id, flow, current_pipeline)

    def map_flow(self, deal_id: int, flow: list[dict], current_pipeline_id: int) -> list[RawStageChangeEvent]:
        """Map raw flow items to events, in the order Pipedrive returned them."""
        parsed = []
        for item in flow:
            data = item.get("data") or {}
            occurred_at = parse_pipedrive_time(item.get("timestamp") or data.get("log_time"))
            if occurred_at is None:
                logger.warning(f"Skipping flow item without timestamp (deal={deal_id}, id={data.get('id')})")
                continue
            parsed.append((item.get("object"), data, occurred_at))

        pipeline_for = self._resolve_pipelines(parsed, current_pipeline_id)

        events = []
        for index, (obj, data, occurred_at) in enumerate(parsed):
            field_key = data.get("field_key")
            if obj == "dealChange" and field_key == "stage_id":
                stage_id = _to_int(data.get("new_value"))
                additional = data.get("additional_data") or {}
                events.append(RawStageChangeEvent(
                    source_event_id=str(data.get("id")),
                    deal_id=_to_int(data.get("item_id")) or deal_id,
                    pipeline_id=pipeline_for[index],
                    stage_id=stage_id,
                    stage_name=additional.get("new_value_formatted") or f"Stage {data.get('new_value')}",
                    occurred_at=occurred_at,
                    event_type=STAGE_CHANGE if stage_id is not None else "dealChange:stage_id:invalid",
                ))
            else:
                kind = f"{obj}:{field_key}" if field_key else str(obj)
                events.append(RawStageChangeEvent(
                    source_event_id=f"{obj}-{data.get('id')}",
                    deal_id=deal_id,
                    pipeline_id=pipeline_for[index],
                    stage_id=None,
                    stage_name="",
                    occurred_at=occurred_at,
                    event_type=kind,
                ))
        return events

    @staticmethod
    def _resolve_pipelines(parsed: list[tuple], current_pipeline_id: int) -> dict[int, int]:
        """Index into `parsed` → pipeline the deal was in when that item happened."""
        def is_pipeline_change(entry) -> bool:
            obj, data, _ = entry
            return obj == "dealChange" and data.get("field_key") == "pipeline_id"

        # Pipeline changes sort ahead of stage changes with the same timestamp
        order = sorted(
            range(len(parsed)),
            key=lambda i: (parsed[i][2], 0 if is_pipeline_change(parsed[i]) else 1),
        )

        first_change = next((parsed[i] for i in order if is_pipeline_change(parsed[i])), None)
        pipeline = current_pipeline_id
        if first_change is not None:
            pipeline = _to_int(first_change[1].get("old_value")) or current_pipeline_id

        resolved = {}
        for i in order:
            if is_pipeline_change(parsed[i]):
                pipeline = _to_int(parsed[i][1].get("new_value")) or pipeline
            resolved[i] = pipeline
        return resolved

    async def list_deals_updated_since(self, since: datetime) -> list[int]:
        deal_ids: list[int] = []
        start: Optional[int] = 0
        pages = 0
        try:
            while start is not None and pages < MAX_DEAL_PAGES:
                deals, start = await self.client.list_deals_page(start=start, sort="update_time DESC")
                pages += 1
                reached_older = False
                for deal in deals:
                    updated = parse_pipedrive_time(deal.get("update_time"))
                    if updated is not None and updated < since:
                        reached_older = True
                        break
                    deal_id = _to_int(deal.get("id"))
                    if deal_id is not None:
                        deal_ids.append(deal_id)
                if reached_older:
                    break
        except (PipedriveAPIError, httpx.HTTPError) as e:
            raise FetchError(f"Pipedrive deal listing failed: {e}") from e
        return deal_ids

    async def list_all_deal_ids(self) -> list[int]:
        deal_ids: list[int] = []
        start: Optional[int] = 0
        pages = 0
        try:
            while start is not None:
                if pages >= MAX_DEAL_PAGES:
                    logger.warning(f"Hit MAX_DEAL_PAGES ({MAX_DEAL_PAGES}) listing Pipedrive deals. Stopping pagination.")
                    break
                deals, start = await self.client.list_deals_page(start=start, sort="id ASC")
                pages += 1
                deal_ids.extend(d for d in (_to_int(x.get("id")) for x in deals) if d is not None)
        except (PipedriveAPIError, httpx.HTTPError) as e:
            raise FetchError(f"Pipedrive deal listing failed: {e}") from e
        return deal_ids
