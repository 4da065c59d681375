"""Action status state machine and the enumerations it is built on."""

from enum import Enum

from action_governor.errors import InvalidTransitionError, ValidationError


class ActionType(str, Enum):
    EMAIL_REPLY = "email_reply"
    IMESSAGE = "imessage"
    SLACK_MESSAGE = "slack_message"
    CALENDAR_BLOCK = "calendar_block"
    HEALTH_SUGGESTION = "health_suggestion"
    TRIP_PLAN = "trip_plan"
    TASK_CREATE = "task_create"
    REMINDER_CREATE = "reminder_create"
    NOTION_UPDATE = "notion_update"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ActionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EDITED = "edited"
    AUTO_APPROVED = "auto_approved"


class ReviewEvent(str, Enum):
    APPROVE = "approve"
    DENY = "deny"
    EDIT = "edit"
    AUTO_APPROVE = "auto_approve"


_TRANSITIONS = {
    (ActionStatus.PENDING, ReviewEvent.APPROVE): ActionStatus.APPROVED,
    (ActionStatus.PENDING, ReviewEvent.DENY): ActionStatus.DENIED,
    (ActionStatus.PENDING, ReviewEvent.EDIT): ActionStatus.EDITED,
    (ActionStatus.PENDING, ReviewEvent.AUTO_APPROVE): ActionStatus.AUTO_APPROVED,
}

# Statuses whose payload may be handed to an executor.
EXECUTABLE_STATUSES = frozenset(
    {ActionStatus.APPROVED, ActionStatus.AUTO_APPROVED, ActionStatus.EDITED}
)


def transition(current: ActionStatus | str, event: ReviewEvent | str) -> ActionStatus:
    """Return the status reached by applying ``event`` to ``current``.

    Every review decision is only legal from ``pending``; anything else raises
    InvalidTransitionError without touching storage.
    """
    current = ActionStatus(current)
    event = ReviewEvent(event)
    try:
        return _TRANSITIONS[(current, event)]
    except KeyError:
        raise InvalidTransitionError(
            f"Cannot {event.value.replace('_', '-')} action: already {current.value}"
        ) from None


def parse_action_type(value) -> ActionType:
    try:
        return ActionType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in ActionType)
        raise ValidationError(f"Unknown action_type: {value!r} (expected one of {allowed})") from None


def parse_risk_level(value) -> RiskLevel:
    try:
        return RiskLevel(value)
    except ValueError:
        raise ValidationError(f"Unknown risk_level: {value!r} (expected low, medium or high)") from None


def parse_status(value) -> ActionStatus:
    try:
        return ActionStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown status: {value!r}") from None
