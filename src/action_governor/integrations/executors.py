"""HTTP-backed executors and the dispatcher factory."""

import logging
from typing import Any

import httpx

from action_governor.config import Config
from action_governor.core.dispatch import DispatchResult, Dispatcher
from action_governor.core.states import ActionType
from action_governor.db.models import Action, Agent, Task
from action_governor.integrations.slack import SlackMessageExecutor

logger = logging.getLogger(__name__)


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.text[:200] or response.reason_phrase


class WebhookExecutor:
    """Posts an action's payload to a webhook that performs it."""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def execute(self, action: Action, payload: dict[str, Any]) -> DispatchResult:
        body = {
            "action_id": action.id,
            "action_type": action.action_type,
            "payload": payload,
            "context": action.context_data,
        }
        try:
            response = httpx.post(self.url, json=body, timeout=self.timeout)
        except httpx.TimeoutException:
            return DispatchResult(success=False, error=f"Executor timed out after {self.timeout:g}s")
        except httpx.HTTPError as e:
            return DispatchResult(success=False, error=f"Executor unreachable: {e}")

        if response.status_code >= 400:
            return DispatchResult(
                success=False,
                error=f"Executor rejected action (HTTP {response.status_code}): {_error_text(response)}",
            )
        return DispatchResult(success=True, message=f"Delivered to {self.url}")


class AgentGatewayExecutor:
    """Hands tasks to agents through the agent gateway's dispatch endpoint."""

    def __init__(self, base_url: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def dispatch(self, task: Task, agent: Agent | None) -> DispatchResult:
        url = f"{self.base_url}/api/tasks/{task.id}/dispatch"
        body = {
            "task_id": task.id,
            "title": task.title,
            "agent_id": task.assigned_agent_id,
            "agent_name": agent.name if agent else "Unknown Agent",
            "workspace_id": task.workspace_id,
        }
        try:
            response = httpx.post(url, json=body, timeout=self.timeout)
        except httpx.TimeoutException:
            return DispatchResult(success=False, error=f"Dispatch timed out after {self.timeout:g}s")
        except httpx.HTTPError as e:
            return DispatchResult(success=False, error=f"Agent gateway unreachable: {e}")

        if response.is_success:
            return DispatchResult(success=True, message=f"Task dispatched to {body['agent_name']}")
        return DispatchResult(success=False, error=_error_text(response) or "Dispatch failed")


def build_dispatcher(config: Config) -> Dispatcher:
    """Wire up a Dispatcher from configuration."""
    dispatcher = Dispatcher(timeout=config.dispatch_timeout)
    known = {t.value for t in ActionType}

    for action_type, url in config.executor_urls.items():
        if action_type not in known:
            logger.warning("Ignoring executor URL for unknown action type %r", action_type)
            continue
        dispatcher.register(action_type, WebhookExecutor(url, timeout=config.dispatch_timeout))

    if config.slack_bot_token and not dispatcher.has_executor(ActionType.SLACK_MESSAGE.value):
        dispatcher.register(ActionType.SLACK_MESSAGE.value, SlackMessageExecutor(config.slack_bot_token))

    if config.agent_gateway_url:
        dispatcher.task_executor = AgentGatewayExecutor(
            config.agent_gateway_url, timeout=config.dispatch_timeout
        )

    return dispatcher
