"""Dispatch of approved actions and planned tasks to their executors.

The dispatcher routes an action to the executor registered for its
``action_type`` (or a task to the task executor), bounds the call with a
timeout and folds every outcome into a ``DispatchResult``. It never retries;
retry policy lives in ``core.retry``.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Protocol

from action_governor.db.models import Action, Agent, Task
from action_governor.errors import ExecutionError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


@dataclass
class DispatchResult:
    success: bool
    error: str | None = None
    message: str | None = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"success": self.success}
        if self.error is not None:
            d["error"] = self.error
        if self.message is not None:
            d["message"] = self.message
        return d

    def raise_for_failure(self):
        """Raise ExecutionError if the dispatch did not succeed."""
        if not self.success:
            raise ExecutionError(self.error or "Dispatch failed")


class Executor(Protocol):
    """Performs the effect of one action type (send the email, create the event...)."""

    def execute(self, action: Action, payload: dict[str, Any]) -> DispatchResult | None:
        ...


class TaskExecutor(Protocol):
    """Hands a planned task over to its assigned agent."""

    def dispatch(self, task: Task, agent: Agent | None) -> DispatchResult | None:
        ...


class DispatchTimeout(Exception):
    """Raised when an executor does not answer within the dispatch timeout."""


def call_with_timeout(fn, timeout: float):
    """Run ``fn`` on a daemon thread and wait at most ``timeout`` seconds.

    A hung executor is abandoned rather than joined, so the caller is never
    blocked past the timeout.
    """
    outcome: dict[str, Any] = {}

    def target():
        try:
            outcome["value"] = fn()
        except Exception as e:  # re-raised on the calling thread
            outcome["error"] = e

    thread = threading.Thread(target=target, name="dispatch", daemon=True)
    thread.start()
    thread.join(timeout)
    if thread.is_alive():
        raise DispatchTimeout(f"timed out after {timeout:g}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("value")


class Dispatcher:
    def __init__(
        self,
        executors: dict[str, Executor] | None = None,
        task_executor: TaskExecutor | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._executors: dict[str, Executor] = dict(executors or {})
        self.task_executor = task_executor
        self.timeout = timeout

    def register(self, action_type: str, executor: Executor):
        self._executors[action_type] = executor

    def has_executor(self, action_type: str) -> bool:
        return action_type in self._executors

    def dispatch_action(self, action: Action) -> DispatchResult:
        """Run an action through the executor for its type."""
        executor = self._executors.get(action.action_type)
        if executor is None:
            result = DispatchResult(
                success=False,
                error=f"No executor available for action type '{action.action_type}'",
            )
        else:
            payload = action.payload
            result = self._invoke(
                f"{action.action_type} executor",
                lambda: executor.execute(action, payload),
            )
        self._log(f"action {action.id} ({action.action_type})", result)
        return result

    def dispatch_task(self, task: Task, agent: Agent | None = None) -> DispatchResult:
        """Hand a task to its assigned agent through the task executor."""
        if not task.assigned_agent_id:
            result = DispatchResult(success=False, error="No agent ID provided for dispatch")
        elif self.task_executor is None:
            result = DispatchResult(success=False, error="No task executor configured")
        else:
            executor = self.task_executor
            result = self._invoke("task dispatch", lambda: executor.dispatch(task, agent))
        self._log(f"task '{task.id}'", result)
        return result

    def _invoke(self, label: str, fn) -> DispatchResult:
        try:
            returned = call_with_timeout(fn, self.timeout)
        except DispatchTimeout as e:
            return DispatchResult(success=False, error=f"{label} {e}")
        except Exception as e:
            return DispatchResult(success=False, error=f"{label} failed: {e}")
        return _normalize(returned, label)

    def _log(self, subject: str, result: DispatchResult):
        if result.success:
            logger.info("Dispatched %s", subject)
        else:
            logger.warning("Dispatch of %s failed: %s", subject, result.error)


def _normalize(returned: Any, label: str) -> DispatchResult:
    if isinstance(returned, DispatchResult):
        if not returned.success and not returned.error:
            returned.error = f"{label} reported failure"
        return returned
    if returned is None or returned is True:
        return DispatchResult(success=True)
    if returned is False:
        return DispatchResult(success=False, error=f"{label} reported failure")
    return DispatchResult(success=True, message=str(returned))
