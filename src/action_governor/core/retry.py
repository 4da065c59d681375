"""Retrying the dispatch of a planned task."""

import logging
import sqlite3

from action_governor.core.dispatch import DispatchResult, Dispatcher
from action_governor.core.tasks import apply_dispatch_outcome, get_agent, get_task
from action_governor.errors import NotFoundError, PreconditionError

logger = logging.getLogger(__name__)


def retry_dispatch(
    db: sqlite3.Connection,
    task_id: str,
    dispatcher: Dispatcher,
) -> DispatchResult:
    """Dispatch a task again after an earlier attempt failed.

    Preconditions are checked in order (task exists, planning complete, agent
    assigned) and raise before anything is written. A dispatch that reports
    failure is stored on the task together with ``pending_dispatch``; a
    success clears the error and moves the task to ``inbox``.

    An unexpected fault inside the retry itself is not part of that
    success/failure write: its message is stored on its own in
    ``planning_dispatch_error``, the status is left alone, and a failed
    result is returned.
    """
    task = get_task(db, task_id)
    if not task:
        raise NotFoundError(f"Task not found: {task_id}")
    if not task.planning_complete:
        raise PreconditionError("Cannot retry dispatch: planning is not complete")
    if not task.assigned_agent_id:
        raise PreconditionError("Cannot retry dispatch: no agent assigned")

    try:
        agent = get_agent(db, task.assigned_agent_id)
        result = dispatcher.dispatch_task(task, agent)
        apply_dispatch_outcome(db, task_id, result)
    except Exception as e:
        logger.exception("Failed to retry dispatch for task '%s'", task_id)
        message = f"Retry error: {e}"
        db.execute(
            """UPDATE tasks
               SET planning_dispatch_error = ?, updated_at = datetime('now')
               WHERE id = ?""",
            (message, task_id),
        )
        db.commit()
        return DispatchResult(success=False, error=message)

    if result.success:
        logger.info("Dispatch retry for task '%s' succeeded", task_id)
    else:
        logger.warning("Dispatch retry for task '%s' failed: %s", task_id, result.error)
    return result
