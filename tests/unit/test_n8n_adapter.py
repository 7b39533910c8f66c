"""Tests for the n8n public API adapter."""

from __future__ import annotations

import json

import pytest

from flowgate.errors import UnsupportedOperation, UpstreamMalformedResponse
from flowgate.platforms import N8nAdapter, WorkflowStatus


def _workflow(wf_id, active, **extra):
    return {"id": wf_id, "name": f"Workflow {wf_id}", "active": active, "nodes": [{}, {}], **extra}


class TestN8nListing:
    @pytest.mark.asyncio
    async def test_list_follows_cursor(self, gateway, upstream, make_connection):
        upstream.on(
            "GET", "/api/v1/workflows",
            (200, {"data": [_workflow("a", True)], "nextCursor": "page-2"}),
            (200, {"data": [_workflow("b", False)], "nextCursor": None}),
        )
        items = await N8nAdapter(gateway).list(make_connection())

        assert [(w.id, w.status) for w in items] == [
            ("a", WorkflowStatus.ACTIVE),
            ("b", WorkflowStatus.INACTIVE),
        ]
        assert items[0].node_count == 2
        assert len(upstream.requests) == 2
        assert "cursor" not in upstream.requests[0].url.params
        assert upstream.requests[1].url.params["cursor"] == "page-2"

    @pytest.mark.asyncio
    async def test_api_key_header(self, gateway, upstream, make_connection):
        upstream.on("GET", "/api/v1/workflows", (200, {"data": []}))
        await N8nAdapter(gateway).list(make_connection(base_url="https://n8n.example.com/"))

        request = upstream.requests[0]
        assert request.headers["X-N8N-API-KEY"] == "secret-key"
        assert str(request.url).startswith("https://n8n.example.com/api/v1/workflows")

    @pytest.mark.asyncio
    async def test_non_boolean_active_is_malformed(self, gateway, upstream, make_connection):
        upstream.on("GET", "/api/v1/workflows", (200, {"data": [_workflow("a", "yes")]}))
        with pytest.raises(UpstreamMalformedResponse):
            await N8nAdapter(gateway).list(make_connection())

    @pytest.mark.asyncio
    async def test_missing_data_is_malformed(self, gateway, upstream, make_connection):
        upstream.on("GET", "/api/v1/workflows", (200, {"workflows": []}))
        with pytest.raises(UpstreamMalformedResponse):
            await N8nAdapter(gateway).list(make_connection())


class TestN8nControl:
    @pytest.mark.asyncio
    async def test_activate_posts_to_activate(self, gateway, upstream, make_connection):
        upstream.on("POST", "/api/v1/workflows/7/activate", (200, _workflow("7", True)))
        state = await N8nAdapter(gateway).set_status(make_connection(), "7", WorkflowStatus.ACTIVE)
        assert state.status == WorkflowStatus.ACTIVE
        assert len(upstream.calls("POST", "/api/v1/workflows/7/activate")) == 1

    @pytest.mark.asyncio
    async def test_deactivate_posts_to_deactivate(self, gateway, upstream, make_connection):
        upstream.on("POST", "/api/v1/workflows/7/deactivate", (200, _workflow("7", False)))
        state = await N8nAdapter(gateway).set_status(make_connection(), "7", WorkflowStatus.INACTIVE)
        assert state.status == WorkflowStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_get(self, gateway, upstream, make_connection):
        upstream.on("GET", "/api/v1/workflows/7", (200, _workflow("7", False, updatedAt="2026-03-01T12:00:00.000Z")))
        state = await N8nAdapter(gateway).get(make_connection(), "7")
        assert state.status == WorkflowStatus.INACTIVE
        assert state.updated_at is not None and state.updated_at.tzinfo is not None


class TestN8nExecutions:
    @pytest.mark.asyncio
    async def test_list_executions(self, gateway, upstream, make_connection):
        upstream.on("GET", "/api/v1/executions", (200, {"data": [
            {"id": 1, "workflowId": "7", "finished": True, "startedAt": "2026-03-01T12:00:00Z"},
            {"id": 2, "workflowId": "7", "finished": False, "stoppedAt": "2026-03-01T12:01:00Z"},
            {"id": 3, "workflowId": "7", "status": "waiting"},
            {"id": 4, "workflowId": "7"},
        ]}))
        executions = await N8nAdapter(gateway).list_executions(make_connection(), "7", limit=5)

        assert [e.status for e in executions] == ["success", "error", "waiting", "running"]
        params = upstream.requests[0].url.params
        assert params["workflowId"] == "7"
        assert params["limit"] == "5"

    @pytest.mark.asyncio
    async def test_retry_execution(self, gateway, upstream, make_connection):
        upstream.on("POST", "/api/v1/executions/99/retry", (200, {"id": 100, "workflowId": "7", "status": "running"}))
        execution = await N8nAdapter(gateway).retry_execution(make_connection(), "99")
        assert execution.id == "100"
        assert execution.status == "running"

    @pytest.mark.asyncio
    async def test_push_workflow_sends_definition(self, gateway, upstream, make_connection):
        upstream.on("POST", "/api/v1/workflows", (200, _workflow("new", False)))
        definition = {"nodes": [{"name": "Start"}], "connections": {"Start": {}}, "pinData": {"ignored": 1}}

        state = await N8nAdapter(gateway).push_workflow(make_connection(), "Imported", definition)

        assert state.id == "new"
        sent = json.loads(upstream.requests[0].content)
        assert sent["name"] == "Imported"
        assert sent["nodes"] == [{"name": "Start"}]
        assert sent["settings"] == {}
        assert "pinData" not in sent


class TestAdapterDefaults:
    @pytest.mark.asyncio
    async def test_make_has_no_execution_history(self, gateway, make_connection):
        from flowgate.db.models import Platform
        from flowgate.platforms import MakeAdapter

        with pytest.raises(UnsupportedOperation):
            await MakeAdapter(gateway).list_executions(make_connection(Platform.MAKE), "1")
