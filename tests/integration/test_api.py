"""
Integration tests for the HTTP API.

The app is wired to the in-memory store through ``configure_services``
and exercised with an httpx client over the ASGI transport.
"""

from typing import AsyncGenerator
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio

from approval_engine.api.app import configure_services, create_app


TEMPLATE_BODY = {
    "name": "Policy Review",
    "trigger": "create",
    "subject_category": "policy",
    "created_by": "admin",
    "steps": [
        {"id": "a", "name": "Manager Review", "assignee_id": "alice", "order": 1},
        {"id": "b", "name": "Legal Approval", "assignee_type": "role", "assignee_id": "legal", "order": 2},
    ],
}


@pytest_asyncio.fixture
async def client(store, subjects, test_settings) -> AsyncGenerator[httpx.AsyncClient, None]:
    app = create_app(use_lifespan=False)
    configure_services(app, store, test_settings, subjects=subjects)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _create_template(client, body=None) -> dict:
    resp = await client.post("/v1/templates", json=body or TEMPLATE_BODY)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _start(client, template_id: str, subject_id: str = "doc-1") -> dict:
    resp = await client.post(
        "/v1/workflows",
        json={"template_id": template_id, "subject_id": subject_id, "initiated_by": "u1"},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _steps(client, instance_id: str) -> list[dict]:
    resp = await client.get(f"/v1/workflows/{instance_id}")
    assert resp.status_code == 200
    return resp.json()["steps"]


class TestTemplateRoutes:
    """Tests for /v1/templates."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, client):
        """Test creating and fetching a template."""
        created = await _create_template(client)

        resp = await client.get(f"/v1/templates/{created['id']}")

        assert resp.status_code == 200
        assert resp.json()["name"] == "Policy Review"
        assert [s["id"] for s in resp.json()["steps"]] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_invalid_definition(self, client):
        """Test invalid definitions return 422 with issue codes."""
        resp = await client.post("/v1/templates", json={**TEMPLATE_BODY, "steps": []})

        assert resp.status_code == 422
        body = resp.json()
        assert body["error"] == "VALIDATION_ERROR"
        assert body["retryable"] is False
        assert [i["code"] for i in body["details"]["issues"]] == ["EMPTY_STEPS"]

    @pytest.mark.asyncio
    async def test_missing_template(self, client):
        """Test unknown templates return 404."""
        resp = await client.get(f"/v1/templates/{uuid4()}")

        assert resp.status_code == 404
        assert resp.json()["error"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_deactivate_and_list(self, client):
        """Test deactivated templates drop out of the active listing."""
        created = await _create_template(client)

        resp = await client.post(f"/v1/templates/{created['id']}/deactivate")
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False

        active = await client.get("/v1/templates", params={"active_only": "true"})
        every = await client.get("/v1/templates")
        assert active.json() == []
        assert len(every.json()) == 1

        resp = await client.post(f"/v1/templates/{created['id']}/activate")
        assert resp.json()["is_active"] is True

    @pytest.mark.asyncio
    async def test_update_blocked_once_used(self, client):
        """Test replacing a referenced template returns 409."""
        created = await _create_template(client)
        await _start(client, created["id"])

        resp = await client.put(f"/v1/templates/{created['id']}", json=TEMPLATE_BODY)
        assert resp.status_code == 409
        assert resp.json()["error"] == "INVALID_STATE"

        resp = await client.delete(f"/v1/templates/{created['id']}")
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_delete(self, client):
        """Test deleting an unused template."""
        created = await _create_template(client)

        resp = await client.delete(f"/v1/templates/{created['id']}")

        assert resp.status_code == 204
        assert (await client.get(f"/v1/templates/{created['id']}")).status_code == 404


class TestWorkflowRoutes:
    """Tests for workflows, decisions and tasks."""

    @pytest.mark.asyncio
    async def test_full_approval(self, client):
        """Test approving both steps over HTTP completes the workflow."""
        template = await _create_template(client)
        instance = await _start(client, template["id"])
        assert instance["status"] == "IN_PROGRESS"

        for actor in ("alice", "legal-lead"):
            active = next(s for s in await _steps(client, instance["id"]) if s["status"] == "IN_PROGRESS")
            resp = await client.post(
                f"/v1/step-executions/{active['id']}/decision",
                json={"actor": actor, "decision": "approve"},
            )
            assert resp.status_code == 200, resp.text
            assert resp.json()["status"] == "COMPLETED"

        detail = (await client.get(f"/v1/workflows/{instance['id']}")).json()
        assert detail["instance"]["status"] == "COMPLETED"
        assert [s["decision"] for s in detail["steps"]] == ["approve", "approve"]

    @pytest.mark.asyncio
    async def test_decision_on_finished_step(self, client):
        """Test deciding a completed step returns 409."""
        template = await _create_template(client)
        instance = await _start(client, template["id"])
        step_a = (await _steps(client, instance["id"]))[0]
        url = f"/v1/step-executions/{step_a['id']}/decision"

        await client.post(url, json={"actor": "alice", "decision": "approve"})
        resp = await client.post(url, json={"actor": "alice", "decision": "reject"})

        assert resp.status_code == 409
        assert resp.json()["error"] == "INVALID_STATE"

    @pytest.mark.asyncio
    async def test_unknown_decision_value(self, client):
        """Test request bodies are validated."""
        template = await _create_template(client)
        instance = await _start(client, template["id"])
        step_a = (await _steps(client, instance["id"]))[0]

        resp = await client.post(
            f"/v1/step-executions/{step_a['id']}/decision",
            json={"actor": "alice", "decision": "maybe"},
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_request_changes_and_resubmit(self, client):
        """Test the revision loop over HTTP."""
        template = await _create_template(client)
        instance = await _start(client, template["id"])
        step_a = (await _steps(client, instance["id"]))[0]

        resp = await client.post(
            f"/v1/step-executions/{step_a['id']}/decision",
            json={"actor": "alice", "decision": "request_changes", "comments": "add annex"},
        )
        assert resp.json()["decision"] == "request_changes"
        assert resp.json()["revision_count"] == 1

        resp = await client.post(
            f"/v1/step-executions/{step_a['id']}/resubmit",
            json={"actor": "u1"},
        )
        assert resp.status_code == 200
        assert resp.json()["decision"] is None

    @pytest.mark.asyncio
    async def test_cancel(self, client):
        """Test cancellation with and without a body."""
        template = await _create_template(client)
        first = await _start(client, template["id"])
        second = await _start(client, template["id"], "doc-2")

        resp = await client.post(f"/v1/workflows/{first['id']}/cancel", json={"reason": "withdrawn"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "CANCELLED"
        assert resp.json()["cancellation_reason"] == "withdrawn"

        resp = await client.post(f"/v1/workflows/{second['id']}/cancel")
        assert resp.status_code == 200

        resp = await client.post(f"/v1/workflows/{first['id']}/cancel")
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_trigger(self, client):
        """Test triggers start matching templates."""
        template = await _create_template(client)

        resp = await client.post(
            "/v1/triggers",
            json={"trigger": "create", "subject_id": "doc-9", "subject_category": "policy"},
        )

        assert resp.status_code == 202
        assert [i["template_id"] for i in resp.json()] == [template["id"]]

        resp = await client.get("/v1/subjects/doc-9/workflows")
        assert len(resp.json()) == 1

    @pytest.mark.asyncio
    async def test_tasks(self, client):
        """Test pending tasks of an assignee."""
        template = await _create_template(client)
        instance = await _start(client, template["id"])

        resp = await client.get("/v1/tasks/alice")

        assert resp.status_code == 200
        tasks = resp.json()
        assert len(tasks) == 1
        assert tasks[0]["instance"]["id"] == instance["id"]
        assert tasks[0]["step"]["name"] == "Manager Review"
        assert (await client.get("/v1/tasks/nobody")).json() == []

    @pytest.mark.asyncio
    async def test_reconcile(self, client):
        """Test reconciling a healthy instance returns it unchanged."""
        template = await _create_template(client)
        instance = await _start(client, template["id"])

        resp = await client.post(f"/v1/workflows/{instance['id']}/reconcile")

        assert resp.status_code == 200
        assert resp.json()["current_step_execution_id"] == instance["current_step_execution_id"]


class TestSweepAndHealthRoutes:
    """Tests for on-demand sweeps and health."""

    @pytest.mark.asyncio
    async def test_auto_approval_sweep(self, client):
        """Test an on-demand auto-approval sweep reports its work."""
        body = {
            "name": "Auto",
            "trigger": "update",
            "steps": [
                {
                    "id": "auto",
                    "name": "Automatic",
                    "assignee_type": "system",
                    "order": 1,
                    "auto_approve": True,
                    "conditions": {"status": "draft"},
                }
            ],
        }
        template = await _create_template(client, body)
        instance = await _start(client, template["id"])

        resp = await client.post("/v1/sweeps/auto-approval")

        assert resp.status_code == 200
        assert len(resp.json()["acted"]) == 1
        detail = (await client.get(f"/v1/workflows/{instance['id']}")).json()
        assert detail["instance"]["status"] == "COMPLETED"

    @pytest.mark.asyncio
    async def test_timeout_sweep(self, client):
        """Test an on-demand timeout sweep with nothing overdue."""
        resp = await client.post("/v1/sweeps/timeouts")

        assert resp.status_code == 200
        assert resp.json()["examined"] == 0

    @pytest.mark.asyncio
    async def test_health(self, client):
        """Test health with the in-memory store and no Redis."""
        resp = await client.get("/v1/health")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["services"] == {"database": "memory", "redis": "disabled", "sweeps": "stopped"}
