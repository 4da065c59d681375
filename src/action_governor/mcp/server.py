"""MCP server letting agents propose actions and follow their review."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from mcp.server.fastmcp import Context, FastMCP

from action_governor.config import Config, get_config
from action_governor.core import actions as actions_mod
from action_governor.core import retry as retry_mod
from action_governor.core import rules as rules_mod
from action_governor.core import tasks as tasks_mod
from action_governor.core.dispatch import Dispatcher
from action_governor.db.engine import init_db
from action_governor.errors import GovernorError
from action_governor.integrations import slack as slack_mod
from action_governor.integrations.executors import build_dispatcher


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    dispatcher: Dispatcher


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    try:
        yield AppContext(db=db, config=config, dispatcher=build_dispatcher(config))
    finally:
        db.close()


mcp = FastMCP("action-governor", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Action Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def propose_action(
    ctx: Context,
    action_type: str,
    action_data: dict[str, Any],
    risk_level: str,
    context_data: dict[str, Any] | None = None,
    confidence: float | None = None,
) -> dict:
    """Propose an action for human review.

    action_type: email_reply, imessage, slack_message, calendar_block,
    health_suggestion, trip_plan, task_create, reminder_create or notion_update.
    risk_level: low, medium or high. The action may be auto-approved by a rule;
    the returned status tells you whether it is still waiting for a human.
    """
    app = _ctx(ctx)
    try:
        action = actions_mod.create_action(
            app.db, action_type, action_data, risk_level,
            context_data=context_data, confidence=confidence,
        )
    except GovernorError as e:
        return {"error": str(e)}
    slack_mod.notify_review_request(
        app.config.slack_bot_token, app.config.review_channel, action
    )
    return {
        "id": action.id,
        "status": action.status,
        "auto_approved": action.status == "auto_approved",
        "rule_id": action.rule_id,
    }


@mcp.tool()
def get_action(ctx: Context, action_id: int) -> dict:
    """Get an action with its review decision, feedback and execution state."""
    app = _ctx(ctx)
    action = actions_mod.get_action(app.db, action_id)
    if not action:
        return {"error": f"Action not found: {action_id}"}
    return _action_to_dict(action)


@mcp.tool()
def list_actions(
    ctx: Context,
    status: str | None = None,
    action_type: str | None = None,
    limit: int = 50,
) -> list[dict]:
    """List queued actions, newest first. Status: pending, approved, denied, edited, auto_approved."""
    app = _ctx(ctx)
    try:
        actions = actions_mod.list_actions(
            app.db, status=status, action_type=action_type, limit=limit
        )
    except GovernorError as e:
        return [{"error": str(e)}]
    return [_action_to_dict(a) for a in actions]


@mcp.tool()
def list_rules(ctx: Context, action_type: str | None = None) -> list[dict]:
    """List enabled auto-approve rules in the order they are evaluated."""
    app = _ctx(ctx)
    rules = rules_mod.list_rules(app.db, action_type=action_type, enabled=True)
    return [
        {
            "id": r.id,
            "action_type": r.action_type,
            "description": r.description or rules_mod.describe_rule(r),
            "priority": r.priority,
            "trigger_count": r.trigger_count,
        }
        for r in rules
    ]


# ── Task Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def complete_task_planning(ctx: Context, task_id: str) -> dict:
    """Mark a task's planning as complete and dispatch it to its assigned agent."""
    app = _ctx(ctx)
    try:
        task, result = tasks_mod.complete_planning(app.db, task_id, app.dispatcher)
    except GovernorError as e:
        return {"error": str(e)}
    return {
        "task_id": task.id,
        "status": task.status,
        "dispatch": result.to_dict() if result else None,
        "planning_dispatch_error": task.planning_dispatch_error,
    }


@mcp.tool()
def retry_task_dispatch(ctx: Context, task_id: str) -> dict:
    """Retry dispatching a task whose earlier dispatch failed."""
    app = _ctx(ctx)
    try:
        result = retry_mod.retry_dispatch(app.db, task_id, app.dispatcher)
    except GovernorError as e:
        return {"error": str(e)}
    return result.to_dict()


def _action_to_dict(action) -> dict:
    return {
        "id": action.id,
        "action_type": action.action_type,
        "status": action.status,
        "risk_level": action.risk_level,
        "action_data": action.action_data,
        "edited_data": action.edited_data,
        "user_feedback": action.user_feedback,
        "execution_error": action.execution_error,
        "executed_at": action.executed_at.isoformat() if action.executed_at else None,
    }
