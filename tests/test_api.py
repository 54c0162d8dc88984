"""
Tests for the HTTP surface - identity, status codes and payload shapes.
"""
import pytest


# ============================================================================
# IDENTITY
# ============================================================================

class TestIdentity:

    @pytest.mark.asyncio
    async def test_health_is_open(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert "X-Request-Id" in response.headers

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method,path", [
        ("get", "/api/agent/autonomy"),
        ("get", "/api/agent/tasks"),
        ("get", "/api/agent/insights"),
        ("get", "/api/agent/proactive-actions"),
        ("post", "/api/agent/tasks/abc/approve"),
    ])
    async def test_missing_identity_is_401(self, client, method, path):
        response = await getattr(client, method)(path)
        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "auth_required"

    @pytest.mark.asyncio
    async def test_cookie_identity(self, client, user_id):
        response = await client.get("/api/agent/autonomy", cookies={"casa_uid": user_id})
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_bearer_identity(self, client, user_id):
        response = await client.get("/api/agent/autonomy", headers={"Authorization": f"Bearer {user_id}"})
        assert response.status_code == 200


# ============================================================================
# AUTONOMY
# ============================================================================

class TestAutonomyApi:

    @pytest.mark.asyncio
    async def test_defaults(self, owner_client):
        response = await owner_client.get("/api/agent/autonomy")
        data = response.json()
        assert data["preset"] == "balanced"
        assert data["matches_preset"] == "balanced"
        assert data["levels"]["financial"] == "L1"
        assert data["overridden"] == {}

    @pytest.mark.asyncio
    async def test_category_edit(self, owner_client):
        response = await owner_client.put("/api/agent/autonomy/categories/maintenance", json={"level": "L4"})
        assert response.status_code == 200
        data = response.json()
        assert data["preset"] == "custom"
        assert data["matches_preset"] == "custom"
        assert data["levels"]["maintenance"] == "L4"
        assert data["overridden"] == {"maintenance": "L4"}

    @pytest.mark.asyncio
    async def test_invalid_category_is_422(self, owner_client):
        response = await owner_client.put("/api/agent/autonomy/categories/spaceships", json={"level": "L1"})
        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "invalid_category"

    @pytest.mark.asyncio
    async def test_preset_switch(self, owner_client):
        await owner_client.put("/api/agent/autonomy/categories/maintenance", json={"level": 4})
        response = await owner_client.put("/api/agent/autonomy/preset", json={"preset": "hands_off"})
        data = response.json()
        assert data["preset"] == "hands_off"
        assert data["overridden"] == {}
        assert data["levels"] == data["preset_defaults"]

    @pytest.mark.asyncio
    async def test_invalid_preset_is_422(self, owner_client):
        response = await owner_client.put("/api/agent/autonomy/preset", json={"preset": "yolo"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_graduation_endpoints(self, owner_client):
        response = await owner_client.get("/api/agent/autonomy/graduation")
        assert response.json() == []
        response = await owner_client.post("/api/agent/autonomy/graduation/general/accept")
        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "not_eligible"


# ============================================================================
# TASKS
# ============================================================================

class TestTasksApi:

    @pytest.mark.asyncio
    async def test_checkpoint_approve_flow(self, owner_client):
        response = await owner_client.post("/api/agent/tasks", json={
            "title": "Lodge bond",
            "category": "compliance",
            "required_level": "L2",
            "tool_name": "lodge_bond",
            "steps": ["Lodge with authority"],
        })
        assert response.status_code == 201
        task = response.json()
        assert task["status"] == "pending_input"

        detail = (await owner_client.get(f"/api/agent/tasks/{task['id']}")).json()
        [action] = detail["pending_actions"]

        response = await owner_client.post(f"/api/agent/tasks/{task['id']}/approve", json={"action_id": action["id"]})
        assert response.status_code == 200
        assert response.json()["status"] == "in_progress"

        again = await owner_client.post(f"/api/agent/tasks/{task['id']}/approve")
        assert again.status_code == 409
        assert again.json()["detail"]["error"] == "illegal_transition"

    @pytest.mark.asyncio
    async def test_reject_without_body(self, owner_client, make_task):
        task = await make_task()
        response = await owner_client.post(f"/api/agent/tasks/{task.id}/reject")
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_pause_resume_and_agent_blocked(self, owner_client, make_task):
        task = await make_task(status="in_progress")
        paused = await owner_client.post(f"/api/agent/tasks/{task.id}/take-control")
        assert paused.json()["manual_override"] is True

        blocked = await owner_client.post(f"/api/agent/tasks/{task.id}/progress", json={"action": "Keep going"})
        assert blocked.status_code == 409
        assert blocked.json()["detail"]["error"] == "task_paused"

        resumed = await owner_client.post(f"/api/agent/tasks/{task.id}/resume")
        assert resumed.json()["manual_override"] is False
        assert resumed.json()["status"] == "in_progress"

        done = await owner_client.post(f"/api/agent/tasks/{task.id}/status", json={"status": "completed"})
        assert done.json()["status"] == "completed"

    @pytest.mark.asyncio
    async def test_unknown_task_is_404(self, owner_client):
        assert (await owner_client.get("/api/agent/tasks/missing")).status_code == 404
        assert (await owner_client.post("/api/agent/tasks/missing/resume")).status_code == 404

    @pytest.mark.asyncio
    async def test_list_and_sections(self, owner_client, make_task):
        await make_task(status="pending_input")
        await make_task(status="in_progress")

        listed = (await owner_client.get("/api/agent/tasks", params={"status": "in_progress"})).json()
        assert listed["total"] == 1

        sections = (await owner_client.get("/api/agent/tasks/sections")).json()
        assert sections["pending_count"] == 1

    @pytest.mark.asyncio
    async def test_bad_status_filter_is_422(self, owner_client):
        response = await owner_client.get("/api/agent/tasks", params={"status": "paused"})
        assert response.status_code == 422


# ============================================================================
# PROACTIVE ACTIONS & INSIGHTS
# ============================================================================

class TestFeedApi:

    @pytest.mark.asyncio
    async def test_record_then_read(self, owner_client):
        response = await owner_client.post("/api/agent/proactive-actions", json={
            "trigger_type": "lease_expiring",
            "action_taken": "Sent renewal offer",
        })
        assert response.status_code == 201

        actions = (await owner_client.get("/api/agent/proactive-actions")).json()["actions"]
        assert [a["action_taken"] for a in actions] == ["Sent renewal offer"]

        feed = (await owner_client.get("/api/agent/insights")).json()
        assert feed["degraded"] is False
        assert feed["insights"][0]["title"] == "Casa handled: Sent renewal offer"
        assert feed["insights"][0]["type"] == "success"


# ============================================================================
# STORE FAILURES
# ============================================================================

class TestStoreFailureApi:

    @pytest.mark.asyncio
    async def test_failed_read_is_503_with_driver_message(self, owner_client, drop_table):
        await drop_table("agent_tasks")
        response = await owner_client.get("/api/agent/tasks")
        assert response.status_code == 503
        detail = response.json()["detail"]
        assert detail["error"] == "store_failure"
        assert "agent_tasks" in detail["message"]

    @pytest.mark.asyncio
    async def test_failed_write_is_503(self, owner_client, drop_table):
        await drop_table("agent_proactive_actions")
        response = await owner_client.post("/api/agent/proactive-actions", json={
            "trigger_type": "rent_due",
            "action_taken": "Sent reminder",
        })
        assert response.status_code == 503
        assert response.json()["detail"]["error"] == "store_failure"
