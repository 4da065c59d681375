"""JSON API for the action queue, auto-approve rules and task dispatch."""

import json

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from action_governor.config import get_config
from action_governor.core import actions as actions_mod
from action_governor.core import retry as retry_mod
from action_governor.core import rules as rules_mod
from action_governor.core import stats as stats_mod
from action_governor.core import tasks as tasks_mod
from action_governor.core.dispatch import Dispatcher
from action_governor.core.outcomes import SqliteOutcomeReporter
from action_governor.db.engine import init_db
from action_governor.errors import (
    ExecutionError,
    GovernorError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from action_governor.integrations import slack as slack_mod
from action_governor.integrations.executors import build_dispatcher

_STATUS_CODES = {
    ValidationError: 400,
    PreconditionError: 400,
    NotFoundError: 404,
    InvalidTransitionError: 409,
    ExecutionError: 502,
}


def _get_db():
    config = get_config()
    return init_db(config.db_path)


def _dispatcher(request: Request) -> Dispatcher:
    dispatcher = request.app.state.dispatcher
    if dispatcher is None:
        dispatcher = build_dispatcher(get_config())
    return dispatcher


async def _json_body(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        raise ValidationError("Request body is not valid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _int_param(request: Request, name: str) -> int | None:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer") from None


async def governor_error(request: Request, exc: GovernorError):
    status = next(
        (code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 500
    )
    return JSONResponse({"error": str(exc)}, status_code=status)


# ── Action Queue ─────────────────────────────────────────────────────────────


async def api_list_actions(request: Request):
    params = request.query_params
    db = _get_db()
    try:
        actions = actions_mod.list_actions(
            db,
            status=params.get("status"),
            action_type=params.get("action_type"),
            risk_level=params.get("risk_level"),
            limit=_int_param(request, "limit"),
            offset=_int_param(request, "offset"),
        )
        return JSONResponse({"actions": [_action_dict(a) for a in actions]})
    finally:
        db.close()


async def api_create_action(request: Request):
    body = await _json_body(request)
    action = await run_in_threadpool(_create_and_notify, body)
    return JSONResponse(
        {
            "id": action.id,
            "status": action.status,
            "auto_approved": action.status == "auto_approved",
            "rule_id": action.rule_id,
        },
        status_code=201,
    )


def _create_and_notify(body: dict):
    config = get_config()
    db = _get_db()
    try:
        action = actions_mod.create_action(
            db,
            action_type=body.get("action_type"),
            action_data=body.get("action_data"),
            risk_level=body.get("risk_level"),
            context_data=body.get("context_data"),
            confidence=body.get("confidence"),
        )
    finally:
        db.close()
    slack_mod.notify_review_request(config.slack_bot_token, config.review_channel, action)
    return action


async def api_queue_stats(request: Request):
    db = _get_db()
    try:
        return JSONResponse(stats_mod.get_queue_stats(db))
    finally:
        db.close()


async def api_get_action(request: Request):
    action_id = request.path_params["action_id"]
    db = _get_db()
    try:
        action = actions_mod.get_action(db, action_id)
        if not action:
            return JSONResponse({"error": "Action not found"}, status_code=404)
        return JSONResponse({"action": _action_dict(action)})
    finally:
        db.close()


async def api_action_events(request: Request):
    action_id = request.path_params["action_id"]
    db = _get_db()
    try:
        if not actions_mod.get_action(db, action_id):
            return JSONResponse({"error": "Action not found"}, status_code=404)
        events = actions_mod.get_action_events(db, action_id)
        return JSONResponse({"events": [_event_dict(e) for e in events]})
    finally:
        db.close()


async def api_approve_action(request: Request):
    action_id = request.path_params["action_id"]
    body = await _json_body(request)
    execute = body.get("execute", True)
    dispatcher = _dispatcher(request) if execute else None
    return JSONResponse(await run_in_threadpool(_approve, action_id, execute, dispatcher))


def _approve(action_id: int, execute: bool, dispatcher: Dispatcher | None) -> dict:
    db = _get_db()
    try:
        action = actions_mod.approve_action(db, action_id)
        execution = None
        if execute:
            action, execution = actions_mod.execute_action(
                db, action_id, dispatcher, reporter=SqliteOutcomeReporter(db)
            )
        return {
            "success": True,
            "action": _action_dict(action),
            "execution": execution.to_dict() if execution else None,
        }
    finally:
        db.close()


async def api_deny_action(request: Request):
    action_id = request.path_params["action_id"]
    body = await _json_body(request)
    return JSONResponse(await run_in_threadpool(_deny, action_id, body.get("feedback")))


def _deny(action_id: int, feedback: str | None) -> dict:
    db = _get_db()
    try:
        action = actions_mod.deny_action(
            db, action_id, feedback, reporter=SqliteOutcomeReporter(db)
        )
        return {
            "success": True,
            "message": "Action denied",
            "action": _action_dict(action),
        }
    finally:
        db.close()


async def api_edit_action(request: Request):
    action_id = request.path_params["action_id"]
    body = await _json_body(request)
    execute = bool(body.get("execute", False))
    dispatcher = _dispatcher(request) if execute else None
    return JSONResponse(
        await run_in_threadpool(_edit, action_id, body.get("edited_data"), execute, dispatcher)
    )


def _edit(action_id: int, edited_data, execute: bool, dispatcher: Dispatcher | None) -> dict:
    db = _get_db()
    try:
        action, execution = actions_mod.edit_action(
            db,
            action_id,
            edited_data,
            execute=execute,
            dispatcher=dispatcher,
            reporter=SqliteOutcomeReporter(db),
        )
        return {
            "success": True,
            "edited": True,
            "action": _action_dict(action),
            "execution": execution.to_dict() if execution else None,
        }
    finally:
        db.close()


async def api_execute_action(request: Request):
    action_id = request.path_params["action_id"]
    action, execution = await run_in_threadpool(_execute, action_id, _dispatcher(request))
    return JSONResponse(
        {
            "success": execution.success,
            "action": _action_dict(action),
            "execution": execution.to_dict(),
        },
        status_code=200 if execution.success else 502,
    )


def _execute(action_id: int, dispatcher: Dispatcher):
    db = _get_db()
    try:
        return actions_mod.execute_action(
            db, action_id, dispatcher, reporter=SqliteOutcomeReporter(db)
        )
    finally:
        db.close()


# ── Auto-Approve Rules ───────────────────────────────────────────────────────


async def api_list_rules(request: Request):
    enabled_param = request.query_params.get("enabled")
    enabled = None if enabled_param is None else enabled_param.lower() == "true"
    db = _get_db()
    try:
        rules = rules_mod.list_rules(
            db, action_type=request.query_params.get("action_type"), enabled=enabled
        )
        return JSONResponse({"rules": [_rule_dict(r) for r in rules]})
    finally:
        db.close()


async def api_create_rule(request: Request):
    body = await _json_body(request)
    db = _get_db()
    try:
        rule = rules_mod.create_rule(
            db,
            action_type=body.get("action_type"),
            conditions=body.get("conditions"),
            description=body.get("description"),
            priority=body.get("priority", 3),
            enabled=body.get("enabled", True),
        )
        return JSONResponse(_rule_dict(rule), status_code=201)
    finally:
        db.close()


async def api_update_rule(request: Request):
    rule_id = request.path_params["rule_id"]
    body = await _json_body(request)
    updates = {}
    if "enabled" in body:
        updates["enabled"] = body["enabled"]
    if "success_rate" in body:
        try:
            updates["success_rate"] = float(body["success_rate"])
        except (TypeError, ValueError):
            raise ValidationError("success_rate must be a number") from None
    if "priority" in body:
        updates["priority"] = body["priority"]
    db = _get_db()
    try:
        rule = rules_mod.update_rule(db, rule_id, **updates)
        return JSONResponse({"success": True, "rule": _rule_dict(rule)})
    finally:
        db.close()


async def api_delete_rule(request: Request):
    rule_id = request.path_params["rule_id"]
    db = _get_db()
    try:
        if not rules_mod.delete_rule(db, rule_id):
            return JSONResponse({"error": "Rule not found"}, status_code=404)
        return JSONResponse({"success": True})
    finally:
        db.close()


# ── Agents & Tasks ───────────────────────────────────────────────────────────


async def api_list_agents(request: Request):
    db = _get_db()
    try:
        agents = tasks_mod.list_agents(db, workspace_id=request.query_params.get("workspace_id"))
        return JSONResponse({"agents": [_agent_dict(a) for a in agents]})
    finally:
        db.close()


async def api_create_agent(request: Request):
    body = await _json_body(request)
    db = _get_db()
    try:
        agent = tasks_mod.register_agent(
            db,
            body.get("name"),
            role=body.get("role", "worker"),
            workspace_id=body.get("workspace_id", "default"),
        )
        return JSONResponse(_agent_dict(agent), status_code=201)
    finally:
        db.close()


async def api_list_tasks(request: Request):
    params = request.query_params
    db = _get_db()
    try:
        tasks = tasks_mod.list_tasks(
            db, status=params.get("status"), workspace_id=params.get("workspace_id")
        )
        return JSONResponse({"tasks": [_task_dict(t) for t in tasks]})
    finally:
        db.close()


async def api_create_task(request: Request):
    body = await _json_body(request)
    db = _get_db()
    try:
        task = tasks_mod.create_task(
            db,
            body.get("title"),
            description=body.get("description", ""),
            workspace_id=body.get("workspace_id", "default"),
            assigned_agent_id=body.get("assigned_agent_id"),
        )
        return JSONResponse(_task_dict(task), status_code=201)
    finally:
        db.close()


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            return JSONResponse({"error": "Task not found"}, status_code=404)
        return JSONResponse(_task_dict(task))
    finally:
        db.close()


async def api_assign_task(request: Request):
    task_id = request.path_params["task_id"]
    body = await _json_body(request)
    if not body.get("agent_id"):
        raise ValidationError("agent_id is required")
    db = _get_db()
    try:
        task = tasks_mod.assign_agent(db, task_id, body["agent_id"])
        return JSONResponse(_task_dict(task))
    finally:
        db.close()


async def api_complete_planning(request: Request):
    task_id = request.path_params["task_id"]
    task, result = await run_in_threadpool(_complete_planning, task_id, _dispatcher(request))
    return JSONResponse({
        "task": _task_dict(task),
        "dispatch": result.to_dict() if result else None,
    })


def _complete_planning(task_id: str, dispatcher: Dispatcher):
    db = _get_db()
    try:
        return tasks_mod.complete_planning(db, task_id, dispatcher)
    finally:
        db.close()


async def api_retry_dispatch(request: Request):
    task_id = request.path_params["task_id"]
    result = await run_in_threadpool(_retry_dispatch, task_id, _dispatcher(request))
    if result.success:
        return JSONResponse({"success": True, "message": "Dispatch retry successful"})
    return JSONResponse(
        {"success": False, "error": "Dispatch retry failed", "details": result.error},
        status_code=502,
    )


def _retry_dispatch(task_id: str, dispatcher: Dispatcher):
    db = _get_db()
    try:
        return retry_mod.retry_dispatch(db, task_id, dispatcher)
    finally:
        db.close()


# ── Serialization ────────────────────────────────────────────────────────────


def _iso(dt):
    return dt.isoformat() if dt else None


def _action_dict(a) -> dict:
    return {
        "id": a.id,
        "action_type": a.action_type,
        "status": a.status,
        "risk_level": a.risk_level,
        "action_data": a.action_data,
        "context_data": a.context_data,
        "edited_data": a.edited_data,
        "confidence": a.confidence,
        "rule_id": a.rule_id,
        "user_feedback": a.user_feedback,
        "execution_error": a.execution_error,
        "reviewed_at": _iso(a.reviewed_at),
        "executed_at": _iso(a.executed_at),
        "created_at": _iso(a.created_at),
        "updated_at": _iso(a.updated_at),
    }


def _rule_dict(r) -> dict:
    return {
        "id": r.id,
        "action_type": r.action_type,
        "conditions": [
            {"field": c.field, "operator": c.operator, "value": c.value} for c in r.conditions
        ],
        "description": r.description or rules_mod.describe_rule(r),
        "enabled": r.enabled,
        "priority": r.priority,
        "trigger_count": r.trigger_count,
        "success_rate": r.success_rate,
        "created_at": _iso(r.created_at),
    }


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "description": t.description,
        "status": t.status,
        "assigned_agent_id": t.assigned_agent_id,
        "workspace_id": t.workspace_id,
        "planning_complete": t.planning_complete,
        "planning_dispatch_error": t.planning_dispatch_error,
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
    }


def _agent_dict(a) -> dict:
    return {
        "id": a.id,
        "name": a.name,
        "role": a.role,
        "workspace_id": a.workspace_id,
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": _iso(e.created_at),
    }


# ── App ──────────────────────────────────────────────────────────────────────


def create_app(dispatcher: Dispatcher | None = None) -> Starlette:
    routes = [
        Route("/api/queue", api_list_actions, methods=["GET"]),
        Route("/api/queue", api_create_action, methods=["POST"]),
        Route("/api/queue/stats", api_queue_stats, methods=["GET"]),
        Route("/api/queue/rules", api_list_rules, methods=["GET"]),
        Route("/api/queue/rules", api_create_rule, methods=["POST"]),
        Route("/api/queue/rules/{rule_id:int}", api_update_rule, methods=["PATCH"]),
        Route("/api/queue/rules/{rule_id:int}", api_delete_rule, methods=["DELETE"]),
        Route("/api/queue/{action_id:int}", api_get_action, methods=["GET"]),
        Route("/api/queue/{action_id:int}/events", api_action_events, methods=["GET"]),
        Route("/api/queue/{action_id:int}/approve", api_approve_action, methods=["POST"]),
        Route("/api/queue/{action_id:int}/deny", api_deny_action, methods=["POST"]),
        Route("/api/queue/{action_id:int}/edit", api_edit_action, methods=["POST"]),
        Route("/api/queue/{action_id:int}/execute", api_execute_action, methods=["POST"]),
        Route("/api/agents", api_list_agents, methods=["GET"]),
        Route("/api/agents", api_create_agent, methods=["POST"]),
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id}/assign", api_assign_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/planning/complete", api_complete_planning, methods=["POST"]),
        Route("/api/tasks/{task_id}/planning/retry-dispatch", api_retry_dispatch, methods=["POST"]),
    ]
    app = Starlette(routes=routes, exception_handlers={GovernorError: governor_error})
    app.state.dispatcher = dispatcher
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
