"""
Pipedrive Adapter + Client Tests
================================
Covers:
1. Flow items → RawStageChangeEvent mapping.
2. Pipeline resolution from pipeline_id change items.
3. Deal listing (update_time window, full pagination).
4. HTTP client: retries on 429/5xx, success=false, flow pagination.

Run: pytest tests/test_pipedrive_adapter.py -v
"""

import pytest
import sys
import os
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import httpx

from crm_adapters import PipedriveAdapter, create_adapter
from crm_adapters.pipedrive_adapter import parse_pipedrive_time
from flow.errors import FetchError
from flow.normalizer import normalize
from pipedrive_crm import PipedriveAPIError, PipedriveCRMClient, PipedriveRateLimiter


def _stage_change(item_id, old, new, ts, deal_id=7, label=None):
    return {
        "object": "dealChange",
        "timestamp": ts,
        "data": {
            "id": item_id,
            "item_id": deal_id,
            "field_key": "stage_id",
            "old_value": str(old) if old is not None else None,
            "new_value": str(new),
            "log_time": ts,
            "additional_data": {"new_value_formatted": label or f"Stage {new}"},
        },
    }


def _pipeline_change(item_id, old, new, ts, deal_id=7):
    return {
        "object": "dealChange",
        "timestamp": ts,
        "data": {
            "id": item_id,
            "item_id": deal_id,
            "field_key": "pipeline_id",
            "old_value": str(old),
            "new_value": str(new),
            "log_time": ts,
        },
    }


def _mock_client(flow=None, deal=None, pages=None):
    client = MagicMock()
    client.get_deal_flow = AsyncMock(return_value=flow or [])
    client.get_deal = AsyncMock(return_value=deal or {"id": 7, "pipeline_id": 1})
    client.list_deals_page = AsyncMock(side_effect=pages or [([], None)])
    client.test_connection = AsyncMock(return_value={"ok": True})
    return client


# ---------------------------------------------------------------------------
# 1-2. Flow mapping
# ---------------------------------------------------------------------------

class TestFlowMapping:

    def test_parse_pipedrive_time(self):
        assert parse_pipedrive_time("2024-01-02 03:04:05") == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert parse_pipedrive_time(None) is None
        assert parse_pipedrive_time("garbage") is None

    def test_stage_changes_mapped(self):
        adapter = PipedriveAdapter(_mock_client())
        events = adapter.map_flow(7, [
            _stage_change(501, None, 10, "2024-01-01 09:00:00", label="Lead"),
            _stage_change(502, 10, 20, "2024-01-03 09:00:00", label="Qualified"),
        ], current_pipeline_id=1)

        assert [e.source_event_id for e in events] == ["501", "502"]
        assert [e.stage_id for e in events] == [10, 20]
        assert [e.stage_name for e in events] == ["Lead", "Qualified"]
        assert all(e.is_stage_change for e in events)
        assert all(e.pipeline_id == 1 for e in events)

    def test_other_activity_is_not_a_stage_change(self):
        adapter = PipedriveAdapter(_mock_client())
        events = adapter.map_flow(7, [
            {"object": "note", "timestamp": "2024-01-01 10:00:00", "data": {"id": 9}},
            {"object": "dealChange", "timestamp": "2024-01-01 11:00:00",
             "data": {"id": 10, "field_key": "value", "old_value": "1", "new_value": "2"}},
            _stage_change(501, None, 10, "2024-01-01 12:00:00"),
        ], current_pipeline_id=1)

        assert [e.is_stage_change for e in events] == [False, False, True]
        assert events[0].source_event_id == "note-9"
        assert events[1].event_type == "dealChange:value"

    def test_items_without_timestamp_skipped(self):
        adapter = PipedriveAdapter(_mock_client())
        item = _stage_change(501, None, 10, None)
        item["data"]["log_time"] = None
        assert adapter.map_flow(7, [item], current_pipeline_id=1) == []

    def test_pipeline_resolved_from_pipeline_changes(self):
        """Deal starts in pipeline 1, moves to pipeline 2 with its stage change."""
        adapter = PipedriveAdapter(_mock_client())
        events = adapter.map_flow(7, [
            _stage_change(501, None, 10, "2024-01-01 09:00:00"),
            _stage_change(502, 10, 20, "2024-01-02 09:00:00"),
            _stage_change(503, 20, 40, "2024-01-05 09:00:00"),
            _pipeline_change(900, 1, 2, "2024-01-05 09:00:00"),
        ], current_pipeline_id=2)

        stage_events = [e for e in events if e.is_stage_change]
        assert [(e.stage_id, e.pipeline_id) for e in stage_events] == [(10, 1), (20, 1), (40, 2)]

    def test_never_moved_uses_current_pipeline(self):
        adapter = PipedriveAdapter(_mock_client())
        events = adapter.map_flow(7, [_stage_change(501, None, 10, "2024-01-01 09:00:00")], current_pipeline_id=3)
        assert events[0].pipeline_id == 3

    def test_mapped_events_normalize_in_time_order(self):
        """Pipedrive returns newest first; normalize() restores chronological order."""
        adapter = PipedriveAdapter(_mock_client())
        events = adapter.map_flow(7, [
            _stage_change(502, 10, 20, "2024-01-06 09:00:00"),
            _stage_change(501, None, 10, "2024-01-01 09:00:00"),
        ], current_pipeline_id=1)
        segments = normalize(7, events)
        assert [s.stage_id for s in segments] == [10, 20]
        assert segments[0].duration_seconds == 432000


class TestFetchStageHistory:

    @pytest.mark.asyncio
    async def test_uses_deal_pipeline(self):
        client = _mock_client(
            flow=[_stage_change(501, None, 10, "2024-01-01 09:00:00")],
            deal={"id": 7, "pipeline_id": 4},
        )
        events = await PipedriveAdapter(client).fetch_stage_history(7)
        assert events[0].pipeline_id == 4
        client.get_deal_flow.assert_awaited_once_with(7)

    @pytest.mark.asyncio
    async def test_api_errors_become_fetch_errors(self):
        client = _mock_client()
        client.get_deal_flow = AsyncMock(side_effect=PipedriveAPIError("API error: 500", 500))
        with pytest.raises(FetchError) as exc:
            await PipedriveAdapter(client).fetch_stage_history(7)
        assert exc.value.deal_id == 7


# ---------------------------------------------------------------------------
# 3. Deal listing
# ---------------------------------------------------------------------------

class TestDealListing:

    @pytest.mark.asyncio
    async def test_updated_since_stops_at_first_older_deal(self):
        client = _mock_client(pages=[
            ([{"id": 3, "update_time": "2024-06-30 10:00:00"},
              {"id": 2, "update_time": "2024-06-30 08:00:00"}], 2),
            ([{"id": 1, "update_time": "2024-06-20 08:00:00"},
              {"id": 0, "update_time": "2024-06-19 08:00:00"}], 4),
        ])
        since = datetime(2024, 6, 29, tzinfo=timezone.utc)
        assert await PipedriveAdapter(client).list_deals_updated_since(since) == [3, 2]
        assert client.list_deals_page.await_count == 2

    @pytest.mark.asyncio
    async def test_all_deal_ids_walks_every_page(self):
        client = _mock_client(pages=[
            ([{"id": 1}, {"id": 2}], 2),
            ([{"id": 3}], None),
        ])
        assert await PipedriveAdapter(client).list_all_deal_ids() == [1, 2, 3]
        client.list_deals_page.assert_any_await(start=2, sort="id ASC")

    @pytest.mark.asyncio
    async def test_listing_errors_become_fetch_errors(self):
        client = _mock_client()
        client.list_deals_page = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(FetchError):
            await PipedriveAdapter(client).list_all_deal_ids()


class TestFactory:

    def test_create_pipedrive_adapter(self):
        adapter = create_adapter("pipedrive", {"api_token": "t0ken"})
        assert isinstance(adapter, PipedriveAdapter)
        assert adapter.client.base_url == "https://api.pipedrive.com/v1"

    def test_unknown_crm_rejected(self):
        with pytest.raises(ValueError):
            create_adapter("bitrix24", {})

    def test_missing_token_rejected(self):
        with pytest.raises(ValueError):
            create_adapter("pipedrive", {})


# ---------------------------------------------------------------------------
# 4. HTTP client
# ---------------------------------------------------------------------------

def _response(status, body=None, headers=None):
    return httpx.Response(
        status,
        json=body if body is not None else {},
        headers=headers,
        request=httpx.Request("GET", "https://api.pipedrive.com/v1/deals"),
    )


def _patched_http(responses):
    http = MagicMock()
    http.get = AsyncMock(side_effect=responses)
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=http)
    ctx.__aexit__ = AsyncMock(return_value=False)
    return patch("pipedrive_crm.httpx.AsyncClient", return_value=ctx), http


class TestPipedriveClient:

    def _client(self):
        return PipedriveCRMClient("t0ken", rate_limiter=PipedriveRateLimiter(max_requests=100))

    @pytest.mark.asyncio
    async def test_token_sent_as_query_param(self):
        patcher, http = _patched_http([_response(200, {"success": True, "data": {"id": 7}})])
        with patcher:
            deal = await self._client().get_deal(7)
        assert deal == {"id": 7}
        assert http.get.call_args.kwargs["params"]["api_token"] == "t0ken"

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        patcher, http = _patched_http([
            _response(503),
            _response(429, headers={"retry-after": "1"}),
            _response(200, {"success": True, "data": []}),
        ])
        with patcher, patch("pipedrive_crm.asyncio.sleep", new=AsyncMock()) as sleep:
            await self._client().get_deal_flow(7)
        assert http.get.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        patcher, http = _patched_http([_response(500)] * 4)
        with patcher, patch("pipedrive_crm.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(PipedriveAPIError) as exc:
                await self._client().get_deal(7)
        assert exc.value.status_code == 500
        assert http.get.await_count == 4

    @pytest.mark.asyncio
    async def test_client_errors_not_retried(self):
        patcher, http = _patched_http([_response(404)])
        with patcher:
            with pytest.raises(PipedriveAPIError):
                await self._client().get_deal(7)
        assert http.get.await_count == 1

    @pytest.mark.asyncio
    async def test_success_false_raises(self):
        patcher, _ = _patched_http([_response(200, {"success": False, "error": "Deal not found"})])
        with patcher:
            with pytest.raises(PipedriveAPIError, match="Deal not found"):
                await self._client().get_deal(7)

    @pytest.mark.asyncio
    async def test_flow_pagination(self):
        patcher, http = _patched_http([
            _response(200, {"success": True, "data": [{"id": 1}],
                            "additional_data": {"pagination": {"more_items_in_collection": True, "next_start": 100}}}),
            _response(200, {"success": True, "data": [{"id": 2}],
                            "additional_data": {"pagination": {"more_items_in_collection": False}}}),
        ])
        with patcher:
            items = await self._client().get_deal_flow(7)
        assert items == [{"id": 1}, {"id": 2}]
        assert http.get.call_args_list[1].kwargs["params"]["start"] == 100

    @pytest.mark.asyncio
    async def test_list_deals_page_next_start(self):
        patcher, _ = _patched_http([
            _response(200, {"success": True, "data": [{"id": 1}],
                            "additional_data": {"pagination": {"more_items_in_collection": True, "next_start": 500}}}),
        ])
        with patcher:
            deals, next_start = await self._client().list_deals_page()
        assert deals == [{"id": 1}]
        assert next_start == 500

    @pytest.mark.asyncio
    async def test_connection_reports_user(self):
        patcher, http = _patched_http([
            _response(200, {"success": True, "data": {"name": "Ana", "company_name": "Acme"}}),
        ])
        with patcher:
            result = await self._client().test_connection()
        assert result["ok"] is True
        assert result["company"] == "Acme"
        assert http.get.call_args.args[0].endswith("/users/me")

    @pytest.mark.asyncio
    async def test_connection_failure_is_not_raised(self):
        patcher, _ = _patched_http([_response(401)])
        with patcher:
            result = await self._client().test_connection()
        assert result == {"ok": False, "message": "API error: 401"}

    @pytest.mark.asyncio
    async def test_adapter_delegates_connection_check(self):
        client = _mock_client()
        assert await PipedriveAdapter(client).test_connection() == {"ok": True}
        client.test_connection.assert_awaited_once()
