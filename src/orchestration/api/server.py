"""FastAPI server for programmatic orchestration access."""

from __future__ import annotations

import time
from typing import Any

import click
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from orchestration import __version__
from orchestration.config import Settings
from orchestration.engine.orchestrator import OrchestratorService
from orchestration.errors import ErrorCode

HTTP_STATUS: dict[str, int] = {
    ErrorCode.CHECKPOINT_NOT_FOUND: 404,
    ErrorCode.NO_VALIDATED_CHECKPOINT: 404,
    ErrorCode.NO_ACTIVE_EXECUTION: 404,
    ErrorCode.TASK_NOT_FOUND: 404,
    ErrorCode.LOCK_NOT_FOUND: 404,
    ErrorCode.EVENT_NOT_FOUND: 404,
    ErrorCode.LOCK_HELD: 409,
    ErrorCode.MANAGER_MISMATCH: 409,
    ErrorCode.NOT_LOCK_OWNER: 403,
    ErrorCode.INVALID_EVENT_TYPE: 422,
    ErrorCode.INVALID_UPDATE: 422,
}


class ServiceError(Exception):
    """A failed service result on its way to an HTTP error response."""

    def __init__(self, result: dict[str, Any]) -> None:
        super().__init__(result.get("message", ""))
        self.result = result


def _unwrap(result: dict[str, Any]) -> dict[str, Any]:
    if not result.get("success"):
        raise ServiceError(result)
    return result


def _require(body: dict[str, Any], *keys: str) -> None:
    missing = [key for key in keys if body.get(key) in (None, "")]
    if missing:
        raise ServiceError(
            {
                "success": False,
                "error": ErrorCode.INVALID_UPDATE.value,
                "message": f"Missing required field(s): {', '.join(missing)}",
                "details": {"missing": missing},
            }
        )


def _flag(body: dict[str, Any], key: str, default: bool) -> bool:
    value = body.get(key, default)
    if not isinstance(value, bool):
        raise ServiceError(
            {
                "success": False,
                "error": ErrorCode.INVALID_UPDATE.value,
                "message": f"{key} must be true or false, got {value!r}",
                "details": {"field": key},
            }
        )
    return value


def get_service(request: Request) -> OrchestratorService:
    """Service attached to the app, built from settings on first use."""
    if request.app.state.service is None:
        request.app.state.service = OrchestratorService.from_settings(Settings.load())
    return request.app.state.service


router = APIRouter(prefix="/api")


@router.get("/health")
def health(request: Request) -> dict[str, Any]:
    """Health check."""
    uptime = time.monotonic() - request.app.state.started
    return {"status": "ok", "version": __version__, "uptime_seconds": round(uptime, 1)}


# -- Execution -------------------------------------------------------------


@router.post("/decompose")
def decompose(
    body: dict[str, Any], service: OrchestratorService = Depends(get_service)
) -> dict[str, Any]:
    """Decompose a work request into a new current execution."""
    _require(body, "task_type")
    return _unwrap(service.decompose(body))


@router.post("/tasks/{task_id}")
def update_task(
    task_id: str, body: dict[str, Any], service: OrchestratorService = Depends(get_service)
) -> dict[str, Any]:
    return _unwrap(service.update_task(task_id, body))


@router.post("/managers/{manager_id}/progress")
def manager_progress(
    manager_id: str, body: dict[str, Any], service: OrchestratorService = Depends(get_service)
) -> dict[str, Any]:
    """Apply a batch of worker updates reported by a manager."""
    _require(body, "updates")
    updates = body["updates"]
    if not isinstance(updates, list):
        raise ServiceError(
            {
                "success": False,
                "error": ErrorCode.INVALID_UPDATE.value,
                "message": "updates must be a list of worker updates",
                "details": {},
            }
        )
    return _unwrap(service.update_manager_progress(manager_id, updates))


@router.get("/status")
def status(service: OrchestratorService = Depends(get_service)) -> dict[str, Any]:
    return _unwrap(service.get_status())


@router.get("/reallocation")
def reallocation(service: OrchestratorService = Depends(get_service)) -> dict[str, Any]:
    return _unwrap(service.check_reallocation())


# -- Locks -----------------------------------------------------------------


@router.post("/locks")
def acquire_lock(
    body: dict[str, Any], service: OrchestratorService = Depends(get_service)
) -> dict[str, Any]:
    _require(body, "agent", "domain")
    return _unwrap(
        service.acquire_lock(
            body["agent"],
            body["domain"],
            body.get("purpose", ""),
            body.get("estimated_duration_ms"),
        )
    )


@router.delete("/locks/{lock_id}")
def release_lock(
    lock_id: str, agent: str, service: OrchestratorService = Depends(get_service)
) -> dict[str, Any]:
    return _unwrap(service.release_lock(lock_id, agent))


@router.get("/locks")
def list_locks(service: OrchestratorService = Depends(get_service)) -> dict[str, Any]:
    return _unwrap(service.list_locks())


@router.post("/conflicts")
def check_conflicts(
    body: dict[str, Any], service: OrchestratorService = Depends(get_service)
) -> dict[str, Any]:
    """Check a pending task's domains against active locks."""
    task = body.get("task", body)
    return _unwrap(service.check_conflicts(task, body.get("agent")))


# -- Checkpoints -----------------------------------------------------------


@router.post("/checkpoints")
def create_checkpoint(
    body: dict[str, Any], service: OrchestratorService = Depends(get_service)
) -> dict[str, Any]:
    _require(body, "agent")
    return _unwrap(
        service.create_checkpoint(
            body["agent"],
            body.get("trigger", "manual"),
            _flag(body, "ethical_clearance", False),
            body.get("description", ""),
        )
    )


@router.get("/checkpoints")
def list_checkpoints(service: OrchestratorService = Depends(get_service)) -> dict[str, Any]:
    return _unwrap(service.list_checkpoints())


@router.get("/checkpoints/last-validated")
def last_validated_checkpoint(
    service: OrchestratorService = Depends(get_service),
) -> dict[str, Any]:
    return _unwrap(service.get_last_validated_checkpoint())


@router.get("/checkpoints/{checkpoint_id}")
def get_checkpoint(
    checkpoint_id: str, service: OrchestratorService = Depends(get_service)
) -> dict[str, Any]:
    return _unwrap(service.get_checkpoint(checkpoint_id))


@router.get("/checkpoints/{checkpoint_id}/compare")
def compare_checkpoint(
    checkpoint_id: str, service: OrchestratorService = Depends(get_service)
) -> dict[str, Any]:
    return _unwrap(service.compare_with_checkpoint(checkpoint_id))


@router.post("/checkpoints/{checkpoint_id}/rollback")
def prepare_rollback(
    checkpoint_id: str, service: OrchestratorService = Depends(get_service)
) -> dict[str, Any]:
    """Plan a rollback. Nothing is restored; the plan requires approval."""
    return _unwrap(service.prepare_rollback(checkpoint_id))


@router.delete("/checkpoints/{checkpoint_id}")
def delete_checkpoint(
    checkpoint_id: str, service: OrchestratorService = Depends(get_service)
) -> dict[str, Any]:
    return _unwrap(service.delete_checkpoint(checkpoint_id))


# -- Telemetry and learning --------------------------------------------------


@router.post("/telemetry")
def record_metrics(
    body: dict[str, Any], service: OrchestratorService = Depends(get_service)
) -> dict[str, Any]:
    _require(body, "execution_id", "task_type", "agent")
    return _unwrap(service.record_execution_metrics(body))


@router.get("/suggestions")
def get_suggestions(service: OrchestratorService = Depends(get_service)) -> dict[str, Any]:
    return _unwrap(service.get_improvement_suggestions())


@router.post("/suggestions")
def generate_suggestions(
    service: OrchestratorService = Depends(get_service),
) -> dict[str, Any]:
    return _unwrap(service.generate_improvement_suggestions())


@router.get("/report")
def summary_report(service: OrchestratorService = Depends(get_service)) -> dict[str, Any]:
    return _unwrap(service.generate_summary_report())


@router.post("/learning")
def record_learning(
    body: dict[str, Any], service: OrchestratorService = Depends(get_service)
) -> dict[str, Any]:
    _require(body, "type", "agent", "context", "insight")
    return _unwrap(
        service.record_learning_event(
            body["type"],
            body["agent"],
            body["context"],
            body["insight"],
            body.get("confidence", 0.5),
            body.get("sample_size", 1),
        )
    )


@router.post("/learning/{event_id}/validate")
def validate_learning(
    event_id: str, body: dict[str, Any], service: OrchestratorService = Depends(get_service)
) -> dict[str, Any]:
    _require(body, "validator")
    return _unwrap(
        service.validate_learning_event(
            event_id, body["validator"], _flag(body, "agrees", True), body.get("notes", "")
        )
    )


async def _service_error(request: Request, exc: ServiceError) -> JSONResponse:
    result = exc.result
    return JSONResponse(status_code=HTTP_STATUS.get(result["error"], 400), content=result)


def create_app(service: OrchestratorService | None = None) -> FastAPI:
    """Build the API app; without a service one is created from settings on first request."""
    app = FastAPI(
        title="Orchestration Core API",
        version=__version__,
        description="Task decomposition, domain locking, checkpoints and telemetry",
    )
    app.state.service = service
    app.state.started = time.monotonic()
    app.include_router(router)
    app.add_exception_handler(ServiceError, _service_error)
    return app


app = create_app()


@click.command()
@click.option("--port", default=3850, help="Port to listen on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
def main(port: int, host: str) -> None:
    """Start the orchestration API server."""
    import uvicorn

    uvicorn.run(app, host=host, port=port)
