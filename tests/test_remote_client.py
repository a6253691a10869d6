"""Tests for RemoteClient against a mocked HTTP transport."""

import json
from datetime import datetime, timezone

import httpx
import pytest
from sync_helpers import TOKEN, USER_ID

from workshop.storage import RemoteClient
from workshop.types import EntityType, MutationAction, MutationRecord, TransportError

BACKEND = "http://localhost:8000"


def _record(record_id, unit_id):
    return MutationRecord(
        id=record_id,
        entity_type=EntityType.UNIT,
        action=MutationAction.CREATE,
        payload={"id": unit_id, "owner_id": USER_ID, "name": unit_id},
        enqueued_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )


def _client(handler):
    return RemoteClient(BACKEND, transport=httpx.MockTransport(handler))


class TestPushBatch:
    @pytest.mark.asyncio
    async def test_posts_wire_records_with_bearer_token(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "data": {"processed": 2, "failed": []}})

        client = _client(handler)
        result = await client.push_batch([_record("r1", "u1"), _record("r2", "u2")], TOKEN)
        await client.aclose()

        assert seen["method"] == "POST"
        assert seen["path"] == "/sync"
        assert seen["auth"] == f"Bearer {TOKEN}"
        items = seen["body"]["items"]
        assert [i["id"] for i in items] == ["r1", "r2"]
        assert items[0]["entity_type"] == "unit"
        assert items[0]["enqueued_at"] == "2024-05-01T00:00:00+00:00"
        assert result.processed_count == 2
        assert result.failed == []

    @pytest.mark.asyncio
    async def test_maps_per_record_failures_back_to_records(self):
        def handler(request):
            items = json.loads(request.content)["items"]
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "data": {
                        "processed": 1,
                        "failed": [
                            {"item": items[1], "error": "Not authorized to modify this unit"},
                            {"item": {"id": "unknown"}, "error": "ignored"},
                        ],
                    },
                },
            )

        records = [_record("r1", "u1"), _record("r2", "u2")]
        client = _client(handler)
        result = await client.push_batch(records, TOKEN)
        await client.aclose()

        assert result.processed_count == 1
        assert len(result.failed) == 1
        assert result.failed[0].record is records[1]
        assert "Not authorized" in result.failed[0].error_message

    @pytest.mark.asyncio
    async def test_empty_batch_makes_no_request(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        client = _client(handler)
        result = await client.push_batch([], TOKEN)
        await client.aclose()

        assert calls == []
        assert result.processed_count == 0


class TestTransportErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response,status_code,fragment",
        [
            (httpx.Response(401, json={"detail": "expired"}), 401, "Authentication failed"),
            (httpx.Response(503, text="maintenance"), 503, "HTTP 503"),
            (httpx.Response(200, text="<html>"), 200, "Unreadable response body"),
            (httpx.Response(200, json={"success": False, "message": "nope"}), 200, "nope"),
            (httpx.Response(200, json=["not", "a", "dict"]), 200, "unknown error"),
        ],
    )
    async def test_bad_responses_raise_transport_error(self, response, status_code, fragment):
        client = _client(lambda request: response)

        with pytest.raises(TransportError) as exc_info:
            await client.push_batch([_record("r1", "u1")], TOKEN)
        await client.aclose()

        assert exc_info.value.status_code == status_code
        assert fragment in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_connection_error_raises_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = _client(handler)

        with pytest.raises(TransportError) as exc_info:
            await client.pull_entities(TOKEN, USER_ID)
        await client.aclose()

        assert exc_info.value.status_code is None
        assert "Connection failed" in str(exc_info.value)


class TestPullEntities:
    @pytest.mark.asyncio
    async def test_requests_owner_scope_and_page_size(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "data": {
                        "items": [{"id": "u1", "updated_at": "2024-05-01T12:00:00Z"}],
                        "total": 3,
                        "has_more": True,
                    },
                },
            )

        client = _client(handler)
        items = await client.pull_entities(TOKEN, USER_ID, page_size_hint=1)
        await client.aclose()

        assert seen["path"] == "/units"
        assert seen["params"] == {"owner_id": USER_ID, "limit": "1"}
        # Wire format is preserved; the engine normalizes timestamps
        assert items == [{"id": "u1", "updated_at": "2024-05-01T12:00:00Z"}]

    @pytest.mark.asyncio
    async def test_missing_data_yields_empty_list(self):
        client = _client(lambda request: httpx.Response(200, json={"success": True}))

        assert await client.pull_entities(TOKEN, USER_ID) == []
        await client.aclose()


class TestHealthAndConstruction:
    @pytest.mark.asyncio
    async def test_health_check(self):
        client = _client(lambda request: httpx.Response(200, json={"status": "healthy"}))
        health = await client.health_check()
        await client.aclose()

        assert health["healthy"] is True
        assert "latency_ms" in health

    @pytest.mark.asyncio
    async def test_health_check_reports_http_error(self):
        client = _client(lambda request: httpx.Response(500))
        health = await client.health_check()
        await client.aclose()

        assert health == {"healthy": False, "error": "HTTP 500"}

    @pytest.mark.parametrize(
        "url",
        ["http://sync.example.com", "ftp://localhost", "not-a-url", ""],
    )
    def test_rejects_unsafe_backend_url(self, url):
        with pytest.raises(ValueError):
            RemoteClient(url)

    def test_strips_trailing_slash(self):
        client = RemoteClient("https://sync.example.com/")
        assert client.backend_url == "https://sync.example.com"
