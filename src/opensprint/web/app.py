"""Status and control API for running orchestrators."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from opensprint.config import get_config
from opensprint.core import projects as projects_mod
from opensprint.core.orchestrator import OrchestratorService
from opensprint.db.engine import init_db


def _get_db(request: Request):
    return init_db(request.app.state.service.config.db_path)


def _service(request: Request) -> OrchestratorService:
    return request.app.state.service


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_projects(request: Request):
    db = _get_db(request)
    try:
        projects = projects_mod.list_projects(db)
        return JSONResponse([_project_dict(p) for p in projects])
    finally:
        db.close()


async def api_project_status(request: Request):
    project_id = request.path_params["project_id"]
    try:
        status = _service(request).get_status(project_id)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=404)
    return JSONResponse(status)


async def api_nudge(request: Request):
    project_id = request.path_params["project_id"]
    service = _service(request)
    try:
        if request.query_params.get("start") in ("1", "true"):
            service.ensure_running(project_id)
        service.nudge(project_id)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=404)
    return JSONResponse({"ok": True})


async def api_project_events(request: Request):
    project_id = request.path_params["project_id"]
    try:
        since_id = int(request.query_params.get("since", 0))
        limit = int(request.query_params.get("limit", 200))
    except ValueError:
        return JSONResponse({"error": "since and limit must be integers"}, status_code=400)
    events = _service(request).events.list_events(
        project_id,
        task_id=request.query_params.get("task"),
        since_id=since_id,
        limit=limit,
    )
    return JSONResponse([_event_dict(e) for e in events])


async def api_project_notifications(request: Request):
    project_id = request.path_params["project_id"]
    notifications = _service(request).notifications.list_notifications(
        project_id,
        status=request.query_params.get("status"),
        kind=request.query_params.get("kind"),
    )
    return JSONResponse([_notification_dict(n) for n in notifications])


async def api_resolve_notification(request: Request):
    notification_id = request.path_params["notification_id"]
    try:
        body = await request.json()
    except ValueError:
        body = {}
    service = _service(request)
    try:
        notification = service.notifications.resolve(
            notification_id,
            approved=bool(body.get("approved", True)),
            notes=body.get("notes"),
        )
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=404)
    if notification.kind == "api_blocked":
        service.nudge(notification.project_id)
    return JSONResponse(_notification_dict(notification))


# ── Serialization ─────────────────────────────────────────────────────────────


def _project_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "repo_path": p.repo_path,
        "default_branch": p.default_branch,
        "settings": p.settings.to_dict(),
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "task_id": e.task_id,
        "event": e.event,
        "data": e.data,
        "created_at": e.created_at.isoformat() if e.created_at else None,
    }


def _notification_dict(n) -> dict:
    return {
        "id": n.id,
        "project_id": n.project_id,
        "kind": n.kind,
        "source_id": n.source_id,
        "category": n.category,
        "message": n.message,
        "error_code": n.error_code,
        "status": n.status,
        "approved": n.approved,
        "notes": n.notes,
        "created_at": n.created_at.isoformat() if n.created_at else None,
        "resolved_at": n.resolved_at.isoformat() if n.resolved_at else None,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(service: OrchestratorService | None = None) -> Starlette:
    routes = [
        Route("/api/projects", api_list_projects),
        Route("/api/projects/{project_id}/status", api_project_status),
        Route("/api/projects/{project_id}/nudge", api_nudge, methods=["POST"]),
        Route("/api/projects/{project_id}/events", api_project_events),
        Route("/api/projects/{project_id}/notifications", api_project_notifications),
        Route(
            "/api/notifications/{notification_id:int}/resolve",
            api_resolve_notification,
            methods=["POST"],
        ),
    ]
    app = Starlette(routes=routes)
    app.state.service = service or OrchestratorService(get_config())
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787, projects: tuple[str, ...] = ()):
    service = OrchestratorService(get_config())
    for project_id in projects:
        service.ensure_running(project_id)
    app = create_app(service)
    try:
        uvicorn.run(app, host=host, port=port)
    finally:
        service.stop_all()
