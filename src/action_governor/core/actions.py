"""Action queue operations: proposal, auto-approval, human review and execution."""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any

from action_governor.core import rules as rules_mod
from action_governor.core.dispatch import DispatchResult, Dispatcher
from action_governor.core.outcomes import NullReporter, OutcomeReporter, diff_payload
from action_governor.core.states import (
    EXECUTABLE_STATUSES,
    ActionStatus,
    ReviewEvent,
    parse_action_type,
    parse_risk_level,
    parse_status,
    transition,
)
from action_governor.db.models import Action, ActionEvent
from action_governor.errors import InvalidTransitionError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_DENY_FEEDBACK = "Denied without feedback"


def create_action(
    db: sqlite3.Connection,
    action_type: str,
    action_data: dict[str, Any],
    risk_level: str,
    context_data: dict[str, Any] | None = None,
    confidence: float | None = None,
) -> Action:
    """Queue a proposed action, auto-approving it if an enabled rule matches.

    The rule lookup happens before the insert, so an auto-approved action is
    never visible as pending. The insert and the rule's trigger count bump
    are committed together.
    """
    missing = [
        name
        for name, value in (
            ("action_type", action_type),
            ("action_data", action_data),
            ("risk_level", risk_level),
        )
        if value is None or value == ""
    ]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    if not isinstance(action_data, dict):
        raise ValidationError("action_data must be an object")
    if context_data is not None and not isinstance(context_data, dict):
        raise ValidationError("context_data must be an object")
    if confidence is not None:
        try:
            confidence = float(confidence)
        except (TypeError, ValueError):
            raise ValidationError("confidence must be a number") from None
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError("confidence must be between 0 and 1")

    action_type = parse_action_type(action_type).value
    risk_level = parse_risk_level(risk_level).value

    rule = rules_mod.match_rule(db, action_type, action_data)
    status = ActionStatus.PENDING
    if rule is not None:
        status = transition(ActionStatus.PENDING, ReviewEvent.AUTO_APPROVE)

    with db:
        cur = db.execute(
            """INSERT INTO actions
                   (action_type, status, risk_level, action_data, context_data,
                    confidence, rule_id, reviewed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, CASE WHEN ? THEN datetime('now') END)""",
            (
                action_type,
                status.value,
                risk_level,
                json.dumps(action_data),
                json.dumps(context_data) if context_data is not None else None,
                confidence,
                rule.id if rule else None,
                rule is not None,
            ),
        )
        action_id = cur.lastrowid
        _log_event(db, action_id, "created", None, ActionStatus.PENDING.value)
        if rule is not None:
            rules_mod.increment_trigger_count(db, rule.id)
            _log_event(db, action_id, "status_changed", ActionStatus.PENDING.value, status.value)

    if rule is not None:
        logger.info("Action %s (%s) auto-approved by rule %s", action_id, action_type, rule.id)
    return get_action(db, action_id)


def get_action(db: sqlite3.Connection, action_id: int) -> Action | None:
    """Get an action by ID."""
    row = db.execute("SELECT * FROM actions WHERE id = ?", (action_id,)).fetchone()
    if not row:
        return None
    return _row_to_action(row)


def list_actions(
    db: sqlite3.Connection,
    status: str | None = None,
    action_type: str | None = None,
    risk_level: str | None = None,
    limit: int | None = None,
    offset: int | None = None,
) -> list[Action]:
    """List actions, newest first, with optional filters."""
    query = "SELECT * FROM actions WHERE 1=1"
    params: list = []

    if status:
        query += " AND status = ?"
        params.append(parse_status(status).value)

    if action_type:
        query += " AND action_type = ?"
        params.append(parse_action_type(action_type).value)

    if risk_level:
        query += " AND risk_level = ?"
        params.append(parse_risk_level(risk_level).value)

    query += " ORDER BY created_at DESC, id DESC"

    if limit is not None or offset is not None:
        if (limit is not None and limit < 0) or (offset is not None and offset < 0):
            raise ValidationError("limit and offset must not be negative")
        query += " LIMIT ? OFFSET ?"
        params.extend([limit if limit is not None else -1, offset or 0])

    rows = db.execute(query, params).fetchall()
    return [_row_to_action(r) for r in rows]


def approve_action(db: sqlite3.Connection, action_id: int) -> Action:
    """Approve a pending action."""
    return _review(db, action_id, ReviewEvent.APPROVE, {})


def deny_action(
    db: sqlite3.Connection,
    action_id: int,
    feedback: str | None = None,
    reporter: OutcomeReporter | None = None,
) -> Action:
    """Deny a pending action, keeping the reviewer's feedback."""
    feedback = (feedback or "").strip() or DEFAULT_DENY_FEEDBACK
    action = _review(db, action_id, ReviewEvent.DENY, {"user_feedback": feedback})
    _report(reporter, "record_denial", action, feedback)
    return action


def edit_action(
    db: sqlite3.Connection,
    action_id: int,
    edited_data: dict[str, Any],
    execute: bool = False,
    dispatcher: Dispatcher | None = None,
    reporter: OutcomeReporter | None = None,
) -> tuple[Action, DispatchResult | None]:
    """Replace a pending action's payload with a reviewer's edit.

    With ``execute`` the edited payload is dispatched straight away and the
    dispatch result is returned alongside the action.
    """
    if edited_data is None:
        raise ValidationError("Missing edited_data")
    if not isinstance(edited_data, dict):
        raise ValidationError("edited_data must be an object")
    if execute and dispatcher is None:
        raise ValidationError("execute requested but no dispatcher available")

    action = _review(
        db, action_id, ReviewEvent.EDIT, {"edited_data": json.dumps(edited_data)}
    )
    _report(reporter, "record_edit", action, diff_payload(action.action_data, edited_data))

    if not execute:
        return action, None
    return execute_action(db, action_id, dispatcher, reporter=reporter)


def execute_action(
    db: sqlite3.Connection,
    action_id: int,
    dispatcher: Dispatcher,
    reporter: OutcomeReporter | None = None,
) -> tuple[Action, DispatchResult]:
    """Dispatch a reviewed action and record the outcome on the action.

    The action is claimed (``executing_since``) with a compare-and-swap before
    the executor runs, so concurrent calls dispatch it at most once; the
    losers raise InvalidTransitionError. Success stamps ``executed_at`` through
    ``mark_executed``; failure keeps the error text on the action and releases
    the claim so the action can be executed again.
    """
    action = get_action(db, action_id)
    if not action:
        raise NotFoundError(f"Action not found: {action_id}")
    if ActionStatus(action.status) not in EXECUTABLE_STATUSES:
        raise InvalidTransitionError(f"Cannot execute action: status is {action.status}")

    _claim_execution(db, action_id)
    try:
        result = dispatcher.dispatch_action(action)
    except Exception:
        _release_execution(db, action_id)
        raise

    if result.success:
        action = mark_executed(db, action_id, result.message)
    else:
        with db:
            db.execute(
                """UPDATE actions
                   SET execution_error = ?,
                       executing_since = NULL,
                       updated_at = datetime('now')
                   WHERE id = ?""",
                (result.error, action_id),
            )
            _log_event(db, action_id, "execution_failed", None, result.error)
        action = get_action(db, action_id)

    _report(reporter, "record_execution", action, result)
    return action, result


def mark_executed(
    db: sqlite3.Connection,
    action_id: int,
    message: str | None = None,
) -> Action:
    """Stamp ``executed_at``. The first timestamp wins; later calls change nothing.

    The stamp also clears ``execution_error`` and any execution claim.
    """
    action = get_action(db, action_id)
    if not action:
        raise NotFoundError(f"Action not found: {action_id}")
    with db:
        cur = db.execute(
            """UPDATE actions
               SET executed_at = datetime('now'),
                   execution_error = NULL,
                   executing_since = NULL,
                   updated_at = datetime('now')
               WHERE id = ? AND executed_at IS NULL""",
            (action_id,),
        )
        if cur.rowcount:
            _log_event(db, action_id, "executed", None, message)
    return get_action(db, action_id)


def get_action_events(db: sqlite3.Connection, action_id: int) -> list[ActionEvent]:
    """Get the event history for an action."""
    rows = db.execute(
        "SELECT * FROM action_events WHERE action_id = ? ORDER BY id",
        (action_id,),
    ).fetchall()
    return [
        ActionEvent(
            id=r["id"],
            action_id=r["action_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _review(
    db: sqlite3.Connection,
    action_id: int,
    event: ReviewEvent,
    fields: dict[str, Any],
) -> Action:
    """Apply a review decision with a compare-and-swap on ``status = 'pending'``."""
    action = get_action(db, action_id)
    if not action:
        raise NotFoundError(f"Action not found: {action_id}")
    new_status = transition(action.status, event)

    set_parts = ["status = ?"] + [f"{k} = ?" for k in fields]
    set_parts += ["reviewed_at = datetime('now')", "updated_at = datetime('now')"]
    values = [new_status.value, *fields.values(), action_id, ActionStatus.PENDING.value]

    with db:
        cur = db.execute(
            f"UPDATE actions SET {', '.join(set_parts)} WHERE id = ? AND status = ?",
            values,
        )
        if cur.rowcount == 0:
            # Another reviewer got there between our read and our write.
            current = get_action(db, action_id)
            raise InvalidTransitionError(
                f"Cannot {event.value} action: already {current.status if current else 'removed'}"
            )
        _log_event(db, action_id, "status_changed", action.status, new_status.value)

    return get_action(db, action_id)


def _claim_execution(db: sqlite3.Connection, action_id: int):
    """Mark an action as being executed, or raise if it is executed or in flight."""
    with db:
        db.execute("BEGIN IMMEDIATE")
        cur = db.execute(
            """UPDATE actions
               SET executing_since = datetime('now'), updated_at = datetime('now')
               WHERE id = ? AND executed_at IS NULL AND executing_since IS NULL""",
            (action_id,),
        )
    if cur.rowcount == 0:
        current = get_action(db, action_id)
        if current and current.executed_at is not None:
            raise InvalidTransitionError("Cannot execute action: already executed")
        raise InvalidTransitionError("Cannot execute action: execution already in progress")


def _release_execution(db: sqlite3.Connection, action_id: int):
    with db:
        db.execute(
            "UPDATE actions SET executing_since = NULL, updated_at = datetime('now') WHERE id = ?",
            (action_id,),
        )


def _report(reporter: OutcomeReporter | None, method: str, action: Action, *args):
    reporter = reporter or NullReporter()
    try:
        getattr(reporter, method)(action, *args)
    except Exception:
        logger.exception("Outcome reporter failed on %s for action %s", method, action.id)


def _log_event(
    db: sqlite3.Connection,
    action_id: int,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO action_events (action_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (action_id, event_type, old_value, new_value),
    )


def _load_json(val: str | None) -> Any:
    if val is None:
        return None
    return json.loads(val)


def _row_to_action(row: sqlite3.Row) -> Action:
    return Action(
        id=row["id"],
        action_type=row["action_type"],
        status=row["status"],
        risk_level=row["risk_level"],
        action_data=_load_json(row["action_data"]) or {},
        context_data=_load_json(row["context_data"]),
        edited_data=_load_json(row["edited_data"]),
        confidence=row["confidence"],
        rule_id=row["rule_id"],
        user_feedback=row["user_feedback"],
        execution_error=row["execution_error"],
        reviewed_at=_parse_dt(row["reviewed_at"]),
        executed_at=_parse_dt(row["executed_at"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
