"""API integration tests using httpx AsyncClient against the test database."""

import pytest

from tests.builders import ORG_ID, action, chain, scenario_a_graph, trigger, wait

API = "/api/v1"


async def _create_workflow(client, nodes, edges, activate=True, **extra):
    resp = await client.post(f"{API}/workflows/", json={
        "organization_id": ORG_ID,
        "name": "Onboarding",
        "nodes": nodes,
        "edges": edges,
        **extra,
    })
    assert resp.status_code == 201, resp.text
    workflow = resp.json()
    if activate:
        resp = await client.post(f"{API}/workflows/{workflow['id']}/activate")
        assert resp.status_code == 200, resp.text
        workflow = resp.json()
    return workflow


@pytest.mark.integration
class TestWorkflowEndpoints:
    async def test_create_and_get(self, client):
        workflow = await _create_workflow(client, *scenario_a_graph(), activate=False)
        assert workflow["status"] == "draft"
        assert workflow["version"] == 1

        resp = await client.get(f"{API}/workflows/{workflow['id']}")
        assert resp.status_code == 200
        assert resp.json()["name"] == "Onboarding"

    async def test_invalid_graph_rejected(self, client):
        resp = await client.post(f"{API}/workflows/", json={
            "organization_id": ORG_ID,
            "name": "Broken",
            "nodes": [trigger(), {"id": "m1", "type": "message", "config": {}}],
            "edges": [],
        })
        assert resp.status_code == 422

    async def test_activate_requires_reachable_graph(self, client):
        workflow = await _create_workflow(
            client, [trigger(), action("a1"), action("orphan")], chain("t1", "a1"), activate=False,
        )
        resp = await client.post(f"{API}/workflows/{workflow['id']}/activate")
        assert resp.status_code == 422
        assert "orphan" in resp.json()["detail"]

    async def test_lifecycle(self, client):
        workflow = await _create_workflow(client, [trigger(), action("a1")], chain("t1", "a1"), activate=False)

        resp = await client.post(f"{API}/workflows/{workflow['id']}/pause")
        assert resp.status_code == 409

        await client.post(f"{API}/workflows/{workflow['id']}/activate")
        resp = await client.post(f"{API}/workflows/{workflow['id']}/pause")
        assert resp.json()["status"] == "paused"

        resp = await client.post(f"{API}/workflows/{workflow['id']}/archive")
        assert resp.json()["status"] == "archived"

    async def test_update_definition_bumps_version(self, client):
        workflow = await _create_workflow(client, [trigger(), action("a1")], chain("t1", "a1"))
        nodes = [trigger(), action("a1"), action("a2")]
        resp = await client.put(
            f"{API}/workflows/{workflow['id']}/definition",
            json={"nodes": nodes, "edges": chain("t1", "a1", "a2")},
        )
        assert resp.status_code == 200
        assert resp.json()["version"] == 2

    async def test_missing_workflow(self, client):
        resp = await client.get(f"{API}/workflows/does-not-exist")
        assert resp.status_code == 404
        assert "not found" in resp.json()["detail"]


@pytest.mark.integration
class TestExecutionEndpoints:
    async def test_trigger_runs_journey(self, client):
        workflow = await _create_workflow(client, *scenario_a_graph())

        resp = await client.post(
            f"{API}/workflows/{workflow['id']}/executions",
            json={"contact_id": "c1", "payload": {"source": "signup"}},
        )

        assert resp.status_code == 201, resp.text
        body = resp.json()
        assert body["advance"]["outcome"] == "completed"
        execution_id = body["execution"]["id"]

        resp = await client.get(f"{API}/executions/{execution_id}")
        assert resp.status_code == 200
        execution = resp.json()
        assert execution["status"] == "completed"
        assert len(execution["execution_path"]) == 3
        assert execution["context"]["trigger"] == {"source": "signup"}
        assert [log["node_id"] for log in execution["logs"]] == ["t1", *execution["execution_path"]]
        assert execution["summary"]["total_nodes"] == 4
        assert execution["summary"]["completed"] == 4

        resp = await client.get(f"{API}/executions/{execution_id}/logs")
        assert resp.status_code == 200
        assert [log["status"] for log in resp.json()] == ["completed"] * 4

        resp = await client.get(f"{API}/workflows/{workflow['id']}/executions")
        assert resp.json()["total"] == 1

    async def test_trigger_inactive_workflow_conflicts(self, client):
        workflow = await _create_workflow(client, [trigger(), action("a1")], chain("t1", "a1"), activate=False)
        resp = await client.post(f"{API}/workflows/{workflow['id']}/executions", json={"contact_id": "c1"})
        assert resp.status_code == 409

    async def test_trigger_refuses_reentry(self, client):
        workflow = await _create_workflow(client, [trigger(), action("a1")], chain("t1", "a1"))
        url = f"{API}/workflows/{workflow['id']}/executions"
        assert (await client.post(url, json={"contact_id": "c1"})).status_code == 201

        resp = await client.post(url, json={"contact_id": "c1"})

        assert resp.status_code == 409
        assert "already entered" in resp.json()["detail"]

    async def test_cancel_and_resume(self, client):
        workflow = await _create_workflow(client, [trigger(), wait("w1"), action("a1")], chain("t1", "w1", "a1"))
        first = (await client.post(
            f"{API}/workflows/{workflow['id']}/executions", json={"contact_id": "c1"},
        )).json()
        second = (await client.post(
            f"{API}/workflows/{workflow['id']}/executions", json={"contact_id": "c2"},
        )).json()
        assert first["advance"]["outcome"] == "waiting"

        resp = await client.post(f"{API}/executions/{first['execution']['id']}/resume")
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "completed"

        resp = await client.post(f"{API}/executions/{first['execution']['id']}/resume")
        assert resp.status_code == 409

        resp = await client.post(
            f"{API}/executions/{second['execution']['id']}/cancel", json={"reason": "Unsubscribed"},
        )
        assert resp.json() == {"execution_id": second["execution"]["id"], "cancelled": True}
        execution = (await client.get(f"{API}/executions/{second['execution']['id']}")).json()
        assert execution["status"] == "cancelled"
        assert execution["error_message"] == "Unsubscribed"

    async def test_cancel_workflow(self, client):
        workflow = await _create_workflow(client, [trigger(), wait("w1"), action("a1")], chain("t1", "w1", "a1"))
        for contact_id in ("c1", "c2"):
            await client.post(f"{API}/workflows/{workflow['id']}/executions", json={"contact_id": contact_id})

        resp = await client.post(f"{API}/workflows/{workflow['id']}/cancel", json={})
        assert resp.json()["cancelled"] == 2

        listing = f"{API}/workflows/{workflow['id']}/executions"
        assert (await client.get(listing, params={"status": "cancelled"})).json()["total"] == 2
        assert (await client.get(listing, params={"status": "waiting"})).json()["total"] == 0
        resp = await client.get(listing, params={"contact_id": "c1", "per_page": 1})
        assert resp.json()["total"] == 1
        assert resp.json()["executions"][0]["contact_id"] == "c1"

    async def test_missing_execution(self, client):
        resp = await client.get(f"{API}/executions/does-not-exist")
        assert resp.status_code == 404


@pytest.mark.integration
class TestScheduleEndpoints:
    async def test_create_get_deactivate(self, client):
        workflow = await _create_workflow(client, [trigger(), action("a1")], chain("t1", "a1"))

        resp = await client.post(f"{API}/schedules/", json={
            "workflow_id": workflow["id"],
            "schedule_type": "cron",
            "schedule_config": {"cronExpression": "0 9 * * *", "contactIds": ["c1"]},
            "timezone": "America/New_York",
        })
        assert resp.status_code == 201, resp.text
        schedule = resp.json()
        assert schedule["is_active"] is True
        assert schedule["next_execution_at"].startswith("2026-03-02T14:00:00")

        resp = await client.get(f"{API}/schedules/{schedule['id']}")
        assert resp.json()["schedule_type"] == "cron"

        resp = await client.post(f"{API}/schedules/{schedule['id']}/deactivate")
        assert resp.json()["is_active"] is False

    async def test_invalid_config_rejected(self, client):
        workflow = await _create_workflow(client, [trigger(), action("a1")], chain("t1", "a1"))
        resp = await client.post(f"{API}/schedules/", json={
            "workflow_id": workflow["id"],
            "schedule_type": "recurring",
            "schedule_config": {"interval": 1, "unit": "fortnights"},
        })
        assert resp.status_code == 422

    async def test_unknown_workflow(self, client):
        resp = await client.post(f"{API}/schedules/", json={
            "workflow_id": "missing",
            "schedule_type": "once",
            "schedule_config": {"fireAt": "2026-04-01T09:00:00"},
        })
        assert resp.status_code == 404


@pytest.mark.integration
class TestTickAndHealth:
    async def test_tick_endpoint(self, client):
        resp = await client.post(f"{API}/tick/", params={"force_maintenance": True})
        assert resp.status_code == 200
        body = resp.json()
        assert set(body) == {"schedules", "retries", "waits", "maintenance"}
        assert body["maintenance"]["executions_deleted"] == 0

    async def test_health(self, client):
        resp = await client.get("/api/health/")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_health_status(self, client):
        resp = await client.get(f"{API}/health/status")
        assert resp.status_code == 200
        body = resp.json()
        assert body["database"] == "ok"
        assert body["executions"] == {}
