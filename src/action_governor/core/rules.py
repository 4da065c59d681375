"""Auto-approve rules: storage and evaluation.

A rule applies to a single action type and holds an ordered list of
conditions. It matches an action only when every condition holds against the
action's data. Rules are tried in ``priority ASC, id ASC`` order and the first
match wins.
"""

import json
import logging
import re
import sqlite3
from datetime import datetime
from enum import Enum
from typing import Any

from action_governor.core.states import parse_action_type
from action_governor.db.models import AutoApproveRule, Condition
from action_governor.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_MISSING = object()


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    LT = "lt"
    GT = "gt"
    IN = "in"
    REGEX = "regex"

    @classmethod
    def _missing_(cls, value):
        if not isinstance(value, str):
            return None
        aliases = {
            "startsWith": cls.STARTS_WITH,
            "endsWith": cls.ENDS_WITH,
            "eq": cls.EQUALS,
            "ne": cls.NOT_EQUALS,
        }
        return aliases.get(value)


_OPERATOR_TEXT = {
    Operator.EQUALS: "=",
    Operator.NOT_EQUALS: "!=",
    Operator.CONTAINS: "contains",
    Operator.STARTS_WITH: "starts with",
    Operator.ENDS_WITH: "ends with",
    Operator.LT: "<",
    Operator.GT: ">",
    Operator.IN: "in",
    Operator.REGEX: "matches",
}

_NUMERIC_OPERATORS = (Operator.LT, Operator.GT)


class ConditionError(Exception):
    """Raised when a stored condition cannot be evaluated."""


# ── Evaluation ───────────────────────────────────────────────────────────────


def get_field(data: dict[str, Any], path: str) -> Any:
    """Look up a possibly dotted field path, returning _MISSING if absent."""
    current: Any = data
    for key in path.split("."):
        if not isinstance(current, dict) or key not in current:
            return _MISSING
        current = current[key]
    return current


def _as_number(value: Any) -> float:
    if isinstance(value, bool):
        raise ConditionError(f"Expected a number, got boolean {value!r}")
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConditionError(f"Expected a number, got {value!r}") from None


def _scalar_equal(a: Any, b: Any) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    return a == b


def evaluate_condition(condition: Condition, data: dict[str, Any]) -> bool:
    """Evaluate one condition against action data.

    A missing field never satisfies a condition. Raises ConditionError for a
    condition that cannot be evaluated at all (unknown operator, bad regex,
    non-numeric comparison).
    """
    try:
        op = Operator(condition.operator)
    except ValueError:
        raise ConditionError(f"Unknown operator: {condition.operator!r}") from None

    field_value = get_field(data, condition.field)
    if field_value is _MISSING or field_value is None:
        return False

    expected = condition.value

    if op is Operator.EQUALS:
        return _scalar_equal(field_value, expected)
    if op is Operator.NOT_EQUALS:
        return not _scalar_equal(field_value, expected)
    if op is Operator.CONTAINS:
        if isinstance(field_value, (list, tuple)):
            return any(_scalar_equal(item, expected) for item in field_value)
        return str(expected).lower() in str(field_value).lower()
    if op is Operator.STARTS_WITH:
        return str(field_value).lower().startswith(str(expected).lower())
    if op is Operator.ENDS_WITH:
        return str(field_value).lower().endswith(str(expected).lower())
    if op is Operator.LT:
        return _as_number(field_value) < _as_number(expected)
    if op is Operator.GT:
        return _as_number(field_value) > _as_number(expected)
    if op is Operator.IN:
        if isinstance(expected, (list, tuple)):
            return any(_scalar_equal(field_value, v) for v in expected)
        values = [v.strip() for v in str(expected).split(",")]
        return str(field_value) in values
    # Operator.REGEX
    try:
        return re.search(str(expected), str(field_value)) is not None
    except re.error as e:
        raise ConditionError(f"Invalid regex {expected!r}: {e}") from None


def rule_matches(rule: AutoApproveRule, data: dict[str, Any]) -> bool:
    """True when every condition of the rule holds. An empty rule never matches."""
    if not rule.conditions:
        return False
    return all(evaluate_condition(c, data) for c in rule.conditions)


def select_rule(
    rules: list[AutoApproveRule],
    action_type: str,
    action_data: dict[str, Any],
) -> AutoApproveRule | None:
    """Return the first enabled rule for ``action_type`` that matches, in list order.

    A rule that raises while being evaluated is skipped so that one broken
    rule cannot hold up the queue.
    """
    for rule in rules:
        if not rule.enabled or rule.action_type != action_type:
            continue
        try:
            if rule_matches(rule, action_data):
                return rule
        except ConditionError as e:
            logger.warning("Skipping auto-approve rule %s: %s", rule.id, e)
    return None


def match_rule(
    db: sqlite3.Connection,
    action_type: str,
    action_data: dict[str, Any],
) -> AutoApproveRule | None:
    """Find the auto-approve rule that applies to a proposed action, if any."""
    rules = list_rules(db, action_type=action_type, enabled=True)
    return select_rule(rules, action_type, action_data)


def describe_rule(rule: AutoApproveRule) -> str:
    """Plain-English summary, e.g. 'email reply where recipient contains "@corp.com"'."""
    head = rule.action_type.replace("_", " ")
    if not rule.conditions:
        return head
    parts = []
    for c in rule.conditions:
        try:
            op_text = _OPERATOR_TEXT[Operator(c.operator)]
        except ValueError:
            op_text = c.operator
        parts.append(f'{c.field.replace("_", " ")} {op_text} "{c.value}"')
    return f"{head} where {' AND '.join(parts)}"


# ── Validation ───────────────────────────────────────────────────────────────


def validate_conditions(conditions: Any) -> list[Condition]:
    """Check raw condition dicts and normalize them into Condition objects."""
    if not isinstance(conditions, list):
        raise ValidationError("conditions must be a list")
    if not conditions:
        raise ValidationError("At least one condition required")

    parsed = []
    for i, raw in enumerate(conditions):
        if isinstance(raw, Condition):
            raw = {"field": raw.field, "operator": raw.operator, "value": raw.value}
        if not isinstance(raw, dict):
            raise ValidationError(f"Condition {i} must be an object")
        field_name = raw.get("field")
        if not isinstance(field_name, str) or not field_name.strip():
            raise ValidationError(f"Condition {i} is missing a field name")
        op_name = raw.get("operator", raw.get("op"))
        try:
            op = Operator(op_name)
        except ValueError:
            raise ValidationError(f"Condition {i} has unknown operator: {op_name!r}") from None
        if "value" not in raw:
            raise ValidationError(f"Condition {i} is missing a value")
        value = raw["value"]
        if isinstance(value, dict):
            raise ValidationError(f"Condition {i} value must be a scalar or a list")
        if op in _NUMERIC_OPERATORS:
            try:
                _as_number(value)
            except ConditionError:
                raise ValidationError(f"Condition {i} needs a numeric value for '{op.value}'") from None
        if op is Operator.REGEX:
            try:
                re.compile(str(value))
            except re.error as e:
                raise ValidationError(f"Condition {i} has an invalid regex: {e}") from None
        parsed.append(Condition(field=field_name.strip(), operator=op.value, value=value))
    return parsed


# ── Storage ──────────────────────────────────────────────────────────────────


def create_rule(
    db: sqlite3.Connection,
    action_type: str,
    conditions: list,
    description: str | None = None,
    priority: int = 3,
    enabled: bool = True,
) -> AutoApproveRule:
    """Create a new auto-approve rule."""
    if not action_type:
        raise ValidationError("action_type is required")
    action_type = parse_action_type(action_type).value
    parsed = validate_conditions(conditions)
    priority = _parse_priority(priority)
    enabled = _parse_enabled(enabled)

    cur = db.execute(
        """INSERT INTO auto_approve_rules (action_type, conditions, description, enabled, priority)
           VALUES (?, ?, ?, ?, ?)""",
        (action_type, _dump_conditions(parsed), description, enabled, priority),
    )
    db.commit()
    return get_rule(db, cur.lastrowid)


def get_rule(db: sqlite3.Connection, rule_id: int) -> AutoApproveRule | None:
    """Get a rule by ID."""
    row = db.execute("SELECT * FROM auto_approve_rules WHERE id = ?", (rule_id,)).fetchone()
    if not row:
        return None
    return _row_to_rule(row)


def list_rules(
    db: sqlite3.Connection,
    action_type: str | None = None,
    enabled: bool | None = None,
) -> list[AutoApproveRule]:
    """List rules in evaluation order."""
    query = "SELECT * FROM auto_approve_rules WHERE 1=1"
    params: list = []

    if action_type:
        query += " AND action_type = ?"
        params.append(action_type)

    if enabled is not None:
        query += " AND enabled = ?"
        params.append(1 if enabled else 0)

    query += " ORDER BY priority ASC, id ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_rule(r) for r in rows]


def update_rule(
    db: sqlite3.Connection,
    rule_id: int,
    enabled: bool | None = None,
    success_rate: float | None = None,
    priority: int | None = None,
) -> AutoApproveRule:
    """Partially update a rule."""
    if get_rule(db, rule_id) is None:
        raise NotFoundError(f"Rule not found: {rule_id}")

    updates: dict[str, Any] = {}
    if enabled is not None:
        updates["enabled"] = _parse_enabled(enabled)
    if success_rate is not None:
        if not 0.0 <= success_rate <= 1.0:
            raise ValidationError("success_rate must be between 0 and 1")
        updates["success_rate"] = float(success_rate)
    if priority is not None:
        updates["priority"] = _parse_priority(priority)
    if not updates:
        return get_rule(db, rule_id)

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = datetime('now')")
    db.execute(
        f"UPDATE auto_approve_rules SET {', '.join(set_parts)} WHERE id = ?",
        list(updates.values()) + [rule_id],
    )
    db.commit()
    return get_rule(db, rule_id)


def delete_rule(db: sqlite3.Connection, rule_id: int) -> bool:
    """Delete a rule. Returns False if it did not exist."""
    cur = db.execute("DELETE FROM auto_approve_rules WHERE id = ?", (rule_id,))
    db.commit()
    return cur.rowcount > 0


def increment_trigger_count(db: sqlite3.Connection, rule_id: int):
    """Bump a rule's trigger counter. Runs inside the caller's transaction."""
    db.execute(
        """UPDATE auto_approve_rules
           SET trigger_count = trigger_count + 1, updated_at = datetime('now')
           WHERE id = ?""",
        (rule_id,),
    )


def _parse_priority(value: Any) -> int:
    """Coerce a priority to an int clamped to 0..6."""
    if isinstance(value, bool):
        raise ValidationError("priority must be an integer")
    try:
        priority = int(value)
    except (TypeError, ValueError):
        raise ValidationError("priority must be an integer") from None
    return max(0, min(6, priority))


def _parse_enabled(value: Any) -> int:
    if not isinstance(value, bool):
        raise ValidationError("enabled must be a boolean")
    return 1 if value else 0


def _dump_conditions(conditions: list[Condition]) -> str:
    return json.dumps(
        [{"field": c.field, "operator": c.operator, "value": c.value} for c in conditions]
    )


def _load_conditions(raw: str | None, rule_id: int) -> list[Condition]:
    try:
        items = json.loads(raw) if raw else []
        return [
            Condition(
                field=item["field"],
                operator=item.get("operator", item.get("op")),
                value=item.get("value"),
            )
            for item in items
        ]
    except (TypeError, ValueError, KeyError, AttributeError):
        logger.warning("Auto-approve rule %s has unreadable conditions", rule_id)
        return []


def _row_to_rule(row: sqlite3.Row) -> AutoApproveRule:
    return AutoApproveRule(
        id=row["id"],
        action_type=row["action_type"],
        conditions=_load_conditions(row["conditions"], row["id"]),
        description=row["description"],
        enabled=bool(row["enabled"]),
        priority=row["priority"] if row["priority"] is not None else 3,
        trigger_count=row["trigger_count"] or 0,
        success_rate=row["success_rate"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
