"""Data models for the action governor."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class Action:
    id: int
    action_type: str
    action_data: dict[str, Any]
    risk_level: str
    status: str = "pending"
    context_data: dict[str, Any] | None = None
    edited_data: dict[str, Any] | None = None
    confidence: float | None = None
    rule_id: int | None = None
    user_feedback: str | None = None
    execution_error: str | None = None
    reviewed_at: datetime | None = None
    executed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def payload(self) -> dict[str, Any]:
        """The data an executor should act on: the human edit if there is one."""
        if self.edited_data is not None:
            return self.edited_data
        return self.action_data


@dataclass
class Condition:
    field: str
    operator: str
    value: Any


@dataclass
class AutoApproveRule:
    id: int
    action_type: str
    conditions: list[Condition] = field(default_factory=list)
    description: str | None = None
    enabled: bool = True
    priority: int = 3
    trigger_count: int = 0
    success_rate: float | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ActionEvent:
    id: int | None = None
    action_id: int = 0
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class ActionOutcome:
    id: int | None = None
    action_id: int = 0
    rule_id: int | None = None
    outcome: str = ""
    detail: Any = None
    created_at: datetime | None = None


@dataclass
class Agent:
    id: str
    name: str
    role: str = "worker"
    workspace_id: str = "default"
    created_at: datetime | None = None


@dataclass
class Task:
    id: str
    title: str
    description: str = ""
    status: str = "planning"
    assigned_agent_id: str | None = None
    workspace_id: str | None = "default"
    planning_complete: bool = False
    planning_dispatch_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
