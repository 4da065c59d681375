"""Task and agent records, and the dispatch of tasks whose planning is done."""

import logging
import re
import sqlite3
from datetime import datetime

from action_governor.core.dispatch import DispatchResult, Dispatcher
from action_governor.db.models import Agent, Task
from action_governor.errors import NotFoundError, PreconditionError, ValidationError

logger = logging.getLogger(__name__)

NO_AGENT_ERROR = "no agent assigned"


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def _unique_id(db: sqlite3.Connection, table: str, base_slug: str) -> str:
    """Generate a unique ID from a slug, appending a number if needed."""
    base_slug = base_slug or table.rstrip("s")
    candidate = base_slug
    i = 2
    while db.execute(f"SELECT 1 FROM {table} WHERE id = ?", (candidate,)).fetchone():
        candidate = f"{base_slug}-{i}"
        i += 1
    return candidate


# ── Agents ───────────────────────────────────────────────────────────────────


def register_agent(
    db: sqlite3.Connection,
    name: str,
    role: str = "worker",
    workspace_id: str = "default",
) -> Agent:
    """Register an agent that tasks can be dispatched to."""
    if not name or not name.strip():
        raise ValidationError("Agent name is required")
    agent_id = _unique_id(db, "agents", slugify(name))
    db.execute(
        "INSERT INTO agents (id, name, role, workspace_id) VALUES (?, ?, ?, ?)",
        (agent_id, name.strip(), role, workspace_id),
    )
    db.commit()
    return get_agent(db, agent_id)


def get_agent(db: sqlite3.Connection, agent_id: str) -> Agent | None:
    row = db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


def list_agents(db: sqlite3.Connection, workspace_id: str | None = None) -> list[Agent]:
    query = "SELECT * FROM agents"
    params: list = []
    if workspace_id:
        query += " WHERE workspace_id = ?"
        params.append(workspace_id)
    query += " ORDER BY name"
    return [_row_to_agent(r) for r in db.execute(query, params).fetchall()]


# ── Tasks ────────────────────────────────────────────────────────────────────


def create_task(
    db: sqlite3.Connection,
    title: str,
    description: str = "",
    workspace_id: str = "default",
    assigned_agent_id: str | None = None,
) -> Task:
    """Create a new task in the planning state."""
    if not title or not title.strip():
        raise ValidationError("Task title is required")
    if assigned_agent_id and not get_agent(db, assigned_agent_id):
        raise NotFoundError(f"Agent not found: {assigned_agent_id}")

    task_id = _unique_id(db, "tasks", slugify(title))
    db.execute(
        """INSERT INTO tasks (id, title, description, workspace_id, assigned_agent_id)
           VALUES (?, ?, ?, ?, ?)""",
        (task_id, title.strip(), description, workspace_id, assigned_agent_id),
    )
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def list_tasks(
    db: sqlite3.Connection,
    status: str | None = None,
    workspace_id: str | None = None,
) -> list[Task]:
    """List tasks with optional filters."""
    query = "SELECT * FROM tasks WHERE 1=1"
    params: list = []

    if status:
        query += " AND status = ?"
        params.append(status)

    if workspace_id:
        query += " AND workspace_id = ?"
        params.append(workspace_id)

    query += " ORDER BY created_at ASC, id ASC"
    return [_row_to_task(r) for r in db.execute(query, params).fetchall()]


def assign_agent(db: sqlite3.Connection, task_id: str, agent_id: str) -> Task:
    """Assign a task to an agent."""
    if not get_task(db, task_id):
        raise NotFoundError(f"Task not found: {task_id}")
    if not get_agent(db, agent_id):
        raise NotFoundError(f"Agent not found: {agent_id}")
    db.execute(
        "UPDATE tasks SET assigned_agent_id = ?, updated_at = datetime('now') WHERE id = ?",
        (agent_id, task_id),
    )
    db.commit()
    return get_task(db, task_id)


def complete_planning(
    db: sqlite3.Connection,
    task_id: str,
    dispatcher: Dispatcher,
) -> tuple[Task, DispatchResult | None]:
    """Mark planning done and hand the task to its agent.

    Without an assigned agent the task is parked in ``pending_dispatch`` with
    an error explaining why, and no dispatch is attempted (the returned result
    is None). Once an agent is assigned, ``retry_dispatch`` picks it up.
    """
    task = get_task(db, task_id)
    if not task:
        raise NotFoundError(f"Task not found: {task_id}")
    if task.planning_complete:
        raise PreconditionError("planning is already complete")

    if not task.assigned_agent_id:
        with db:
            db.execute(
                """UPDATE tasks
                   SET planning_complete = 1,
                       status = 'pending_dispatch',
                       planning_dispatch_error = ?,
                       updated_at = datetime('now')
                   WHERE id = ?""",
                (NO_AGENT_ERROR, task_id),
            )
        logger.warning("Task '%s' finished planning with no agent assigned", task_id)
        return get_task(db, task_id), None

    with db:
        db.execute(
            "UPDATE tasks SET planning_complete = 1, updated_at = datetime('now') WHERE id = ?",
            (task_id,),
        )
    task = get_task(db, task_id)
    result = dispatcher.dispatch_task(task, get_agent(db, task.assigned_agent_id))
    return apply_dispatch_outcome(db, task_id, result), result


def apply_dispatch_outcome(
    db: sqlite3.Connection,
    task_id: str,
    result: DispatchResult,
) -> Task:
    """Write a dispatch result onto the task in a single statement.

    Success clears the error and moves the task to ``inbox``; failure stores
    the error and forces ``pending_dispatch``.
    """
    with db:
        if result.success:
            db.execute(
                """UPDATE tasks
                   SET status = 'inbox',
                       planning_dispatch_error = NULL,
                       updated_at = datetime('now')
                   WHERE id = ?""",
                (task_id,),
            )
        else:
            db.execute(
                """UPDATE tasks
                   SET planning_dispatch_error = ?,
                       status = 'pending_dispatch',
                       updated_at = datetime('now')
                   WHERE id = ?""",
                (result.error or "Dispatch failed", task_id),
            )
    return get_task(db, task_id)


def _row_to_agent(row: sqlite3.Row) -> Agent:
    return Agent(
        id=row["id"],
        name=row["name"],
        role=row["role"],
        workspace_id=row["workspace_id"],
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        title=row["title"],
        description=row["description"] or "",
        status=row["status"],
        assigned_agent_id=row["assigned_agent_id"],
        workspace_id=row["workspace_id"],
        planning_complete=bool(row["planning_complete"]),
        planning_dispatch_error=row["planning_dispatch_error"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
