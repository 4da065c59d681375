"""Outcome signals: what happened to an action after its review decision.

The queue reports execution results, denials and edit diffs to an
``OutcomeReporter``. ``SqliteOutcomeReporter`` keeps them in the
``action_outcomes`` table and derives each rule's ``success_rate`` from the
executions of the actions it auto-approved.
"""

import json
import sqlite3
from datetime import datetime
from typing import Any, Protocol

from action_governor.core.dispatch import DispatchResult
from action_governor.db.models import Action, ActionOutcome


class OutcomeReporter(Protocol):
    def record_execution(self, action: Action, result: DispatchResult) -> None:
        ...

    def record_denial(self, action: Action, feedback: str) -> None:
        ...

    def record_edit(self, action: Action, diff: dict[str, Any]) -> None:
        ...


class NullReporter:
    """Reporter that discards every signal."""

    def record_execution(self, action: Action, result: DispatchResult) -> None:
        pass

    def record_denial(self, action: Action, feedback: str) -> None:
        pass

    def record_edit(self, action: Action, diff: dict[str, Any]) -> None:
        pass


class SqliteOutcomeReporter:
    def __init__(self, db: sqlite3.Connection):
        self.db = db

    def record_execution(self, action: Action, result: DispatchResult) -> None:
        if result.success:
            self._insert(action, "executed", {"message": result.message})
        else:
            self._insert(action, "execution_failed", {"error": result.error})
        if action.rule_id is not None:
            self._refresh_success_rate(action.rule_id)
        self.db.commit()

    def record_denial(self, action: Action, feedback: str) -> None:
        self._insert(action, "denied", {"feedback": feedback})
        self.db.commit()

    def record_edit(self, action: Action, diff: dict[str, Any]) -> None:
        self._insert(action, "edited", diff)
        self.db.commit()

    def _insert(self, action: Action, outcome: str, detail: Any):
        self.db.execute(
            "INSERT INTO action_outcomes (action_id, rule_id, outcome, detail) VALUES (?, ?, ?, ?)",
            (action.id, action.rule_id, outcome, json.dumps(detail)),
        )

    def _refresh_success_rate(self, rule_id: int):
        row = self.db.execute(
            """SELECT
                   SUM(CASE WHEN outcome = 'executed' THEN 1 ELSE 0 END) AS ok,
                   COUNT(*) AS total
               FROM action_outcomes
               WHERE rule_id = ? AND outcome IN ('executed', 'execution_failed')""",
            (rule_id,),
        ).fetchone()
        if not row["total"]:
            return
        self.db.execute(
            """UPDATE auto_approve_rules
               SET success_rate = ?, updated_at = datetime('now')
               WHERE id = ?""",
            (row["ok"] / row["total"], rule_id),
        )


def diff_payload(before: dict[str, Any], after: dict[str, Any]) -> dict[str, Any]:
    """Fields a reviewer changed, as ``{field: {"before": old, "after": new}}``."""
    diff = {}
    for key in sorted(set(before) | set(after)):
        old = before.get(key)
        new = after.get(key)
        if old != new:
            diff[key] = {"before": old, "after": new}
    return diff


def list_outcomes(
    db: sqlite3.Connection,
    action_id: int | None = None,
    rule_id: int | None = None,
) -> list[ActionOutcome]:
    """List recorded outcomes, oldest first."""
    query = "SELECT * FROM action_outcomes WHERE 1=1"
    params: list = []
    if action_id is not None:
        query += " AND action_id = ?"
        params.append(action_id)
    if rule_id is not None:
        query += " AND rule_id = ?"
        params.append(rule_id)
    query += " ORDER BY id"
    return [
        ActionOutcome(
            id=r["id"],
            action_id=r["action_id"],
            rule_id=r["rule_id"],
            outcome=r["outcome"],
            detail=json.loads(r["detail"]) if r["detail"] else None,
            created_at=datetime.fromisoformat(r["created_at"]) if r["created_at"] else None,
        )
        for r in db.execute(query, params).fetchall()
    ]
