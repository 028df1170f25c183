"""Tests for the FastAPI server."""

from __future__ import annotations

import inspect
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from orchestration.api.server import create_app, router
from orchestration.config import Settings
from orchestration.engine import OrchestratorService


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def client(project_dir: Path) -> AsyncIterator[AsyncClient]:
    service = OrchestratorService.in_memory(
        Settings(project_root=project_dir), revision_lookup=lambda root: None
    )
    transport = ASGITransport(app=create_app(service))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.mark.anyio
async def test_health(client: AsyncClient) -> None:
    response = await client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["version"] == "0.1.0"
    assert "uptime_seconds" in data


@pytest.mark.anyio
async def test_decompose_and_status(client: AsyncClient) -> None:
    response = await client.post(
        "/api/decompose",
        json={"task_type": "service_build", "parameters": {"serviceName": "X"}},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["subtask_count"] == 3
    assert data["estimated_total_time"] == 240000

    response = await client.get("/api/status")
    assert response.status_code == 200
    assert response.json()["execution_id"] == data["execution_id"]


@pytest.mark.anyio
async def test_decompose_requires_task_type(client: AsyncClient) -> None:
    response = await client.post("/api/decompose", json={"parameters": {}})
    assert response.status_code == 422
    data = response.json()
    assert data["error"] == "INVALID_UPDATE"
    assert data["details"]["missing"] == ["task_type"]


@pytest.mark.anyio
async def test_status_without_execution(client: AsyncClient) -> None:
    response = await client.get("/api/status")
    assert response.status_code == 404
    assert response.json()["error"] == "NO_ACTIVE_EXECUTION"


@pytest.mark.anyio
async def test_task_updates(client: AsyncClient) -> None:
    await client.post("/api/decompose", json={"task_type": "component_build"})

    response = await client.post("/api/tasks/t1", json={"status": "completed"})
    assert response.status_code == 200
    assert response.json()["execution_progress"] == 25

    response = await client.post("/api/tasks/t1", json={"progress": 250})
    assert response.status_code == 200
    assert response.json()["task"]["progress"] == 100

    response = await client.post("/api/tasks/t1", json={"status": "exploded"})
    assert response.status_code == 422

    response = await client.post("/api/tasks/t42", json={"progress": 10})
    assert response.status_code == 404


@pytest.mark.anyio
async def test_manager_progress(client: AsyncClient) -> None:
    await client.post("/api/decompose", json={"task_type": "component_build"})

    response = await client.post(
        "/api/managers/frontend-manager/progress",
        json={"updates": [{"task_id": "t1", "status": "completed"}]},
    )
    assert response.status_code == 200
    assert response.json()["manager_progress"] == 25

    response = await client.post("/api/managers/backend-manager/progress", json={"updates": []})
    assert response.status_code == 409
    assert response.json()["error"] == "MANAGER_MISMATCH"

    response = await client.post(
        "/api/managers/frontend-manager/progress", json={"updates": "t1"}
    )
    assert response.status_code == 422


@pytest.mark.anyio
async def test_reallocation(client: AsyncClient) -> None:
    await client.post("/api/decompose", json={"task_type": "bug_fix"})
    response = await client.get("/api/reallocation")
    assert response.status_code == 200
    assert response.json()["needs_reallocation"] is False


@pytest.mark.anyio
async def test_lock_lifecycle(client: AsyncClient) -> None:
    response = await client.post(
        "/api/locks", json={"agent": "agent-1", "domain": "services", "purpose": "schema"}
    )
    assert response.status_code == 200
    lock_id = response.json()["lock"]["id"]

    response = await client.post("/api/locks", json={"agent": "agent-2", "domain": "services"})
    assert response.status_code == 409
    data = response.json()
    assert data["error"] == "LOCK_HELD"
    assert data["details"]["held_by"] == "agent-1"

    response = await client.delete(f"/api/locks/{lock_id}", params={"agent": "agent-3"})
    assert response.status_code == 403
    assert response.json()["error"] == "NOT_LOCK_OWNER"

    response = await client.delete(f"/api/locks/{lock_id}", params={"agent": "agent-1"})
    assert response.status_code == 200

    response = await client.delete(f"/api/locks/{lock_id}", params={"agent": "agent-1"})
    assert response.status_code == 404

    response = await client.get("/api/locks")
    assert response.status_code == 200
    assert response.json()["locks"] == []


@pytest.mark.anyio
async def test_lock_requires_domain(client: AsyncClient) -> None:
    response = await client.post("/api/locks", json={"agent": "agent-1"})
    assert response.status_code == 422
    assert response.json()["details"]["missing"] == ["domain"]


@pytest.mark.anyio
async def test_conflicts(client: AsyncClient) -> None:
    await client.post("/api/locks", json={"agent": "agent-1", "domain": "components"})
    response = await client.post(
        "/api/conflicts", json={"task": {"type": "implement_component"}, "agent": "agent-2"}
    )
    assert response.status_code == 200
    data = response.json()
    assert data["can_proceed"] is True
    assert len(data["warnings"]) == 1


@pytest.mark.anyio
async def test_checkpoints(client: AsyncClient) -> None:
    response = await client.get("/api/checkpoints/last-validated")
    assert response.status_code == 404
    assert response.json()["error"] == "NO_VALIDATED_CHECKPOINT"

    response = await client.post(
        "/api/checkpoints", json={"agent": "lead", "ethical_clearance": True}
    )
    assert response.status_code == 200
    checkpoint_id = response.json()["checkpoint"]["id"]

    response = await client.get("/api/checkpoints")
    assert response.json()["count"] == 1

    response = await client.get("/api/checkpoints/last-validated")
    assert response.json()["checkpoint"]["id"] == checkpoint_id

    response = await client.get(f"/api/checkpoints/{checkpoint_id}")
    assert "file_hashes" in response.json()["checkpoint"]

    response = await client.get(f"/api/checkpoints/{checkpoint_id}/compare")
    assert response.json()["diff"]["has_changes"] is False

    response = await client.post(f"/api/checkpoints/{checkpoint_id}/rollback")
    assert response.json()["plan"]["requires_approval"] is True

    response = await client.delete(f"/api/checkpoints/{checkpoint_id}")
    assert response.status_code == 200

    response = await client.get(f"/api/checkpoints/{checkpoint_id}")
    assert response.status_code == 404


@pytest.mark.anyio
async def test_telemetry_and_report(client: AsyncClient) -> None:
    response = await client.post(
        "/api/telemetry",
        json={
            "execution_id": "exec-1",
            "task_type": "feature_development",
            "agent": "fullstack-manager",
            "success": True,
            "parallel_agents": 3,
        },
    )
    assert response.status_code == 200
    assert response.json()["record"]["efficiency_score"] == 1.4

    response = await client.post("/api/telemetry", json={"execution_id": "exec-2"})
    assert response.status_code == 422

    response = await client.get("/api/report")
    assert response.status_code == 200
    assert response.json()["report"]["executions"]["total"] == 1


@pytest.mark.anyio
async def test_learning_and_suggestions(client: AsyncClient) -> None:
    response = await client.post(
        "/api/learning",
        json={"type": "mood", "agent": "dev", "context": "ctx", "insight": "meh"},
    )
    assert response.status_code == 422
    assert response.json()["error"] == "INVALID_EVENT_TYPE"

    response = await client.post(
        "/api/learning",
        json={
            "type": "skill_gap",
            "agent": "backend-manager",
            "context": "service_build",
            "insight": "No agent knows gRPC",
        },
    )
    assert response.status_code == 200
    event_id = response.json()["event"]["id"]

    for validator in ("a", "b", "c"):
        response = await client.post(
            f"/api/learning/{event_id}/validate", json={"validator": validator}
        )
    assert response.json()["event"]["validated"] is True

    response = await client.post("/api/learning/learn-missing/validate", json={"validator": "a"})
    assert response.status_code == 404

    response = await client.post("/api/suggestions")
    assert response.status_code == 200
    generated = response.json()["suggestions"]
    assert generated[0]["priority"] == "high"

    response = await client.get("/api/suggestions")
    assert response.json()["suggestions"] == generated


@pytest.mark.anyio
async def test_flags_must_be_booleans(client: AsyncClient) -> None:
    response = await client.post(
        "/api/checkpoints", json={"agent": "lead", "ethical_clearance": "false"}
    )
    assert response.status_code == 422
    data = response.json()
    assert data["error"] == "INVALID_UPDATE"
    assert data["details"]["field"] == "ethical_clearance"

    response = await client.get("/api/checkpoints")
    assert response.json()["count"] == 0

    response = await client.post(
        "/api/learning",
        json={"type": "skill_gap", "agent": "dev", "context": "ctx", "insight": "gRPC"},
    )
    event_id = response.json()["event"]["id"]
    for agrees in ("yes", 0, None):
        response = await client.post(
            f"/api/learning/{event_id}/validate", json={"validator": "a", "agrees": agrees}
        )
        assert response.status_code == 422
        assert response.json()["details"]["field"] == "agrees"

    response = await client.post(
        f"/api/learning/{event_id}/validate", json={"validator": "a", "agrees": False}
    )
    assert response.status_code == 200
    assert response.json()["event"]["validations"][0]["agrees"] is False


@pytest.mark.anyio
async def test_manager_progress_rejects_bare_task_ids(client: AsyncClient) -> None:
    await client.post("/api/decompose", json={"task_type": "component_build"})
    response = await client.post(
        "/api/managers/frontend-manager/progress", json={"updates": ["t1"]}
    )
    assert response.status_code == 422
    assert response.json()["error"] == "INVALID_UPDATE"


def test_handlers_are_synchronous() -> None:
    """Store I/O is blocking, so route handlers run in the threadpool."""
    for route in router.routes:
        assert not inspect.iscoroutinefunction(route.endpoint), route.path
