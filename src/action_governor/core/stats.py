"""Queue statistics for the review dashboard."""

import sqlite3

from action_governor.core.rules import describe_rule, list_rules
from action_governor.core.states import ActionStatus


def get_queue_stats(db: sqlite3.Connection) -> dict:
    """Counts by status, type and risk, plus approval rate and rule effectiveness."""
    counts = {s.value: 0 for s in ActionStatus}
    for row in db.execute("SELECT status, COUNT(*) AS n FROM actions GROUP BY status"):
        counts[row["status"]] = row["n"]

    by_type = {
        r["action_type"]: r["n"]
        for r in db.execute(
            "SELECT action_type, COUNT(*) AS n FROM actions GROUP BY action_type ORDER BY n DESC"
        )
    }
    by_risk = {
        r["risk_level"]: r["n"]
        for r in db.execute("SELECT risk_level, COUNT(*) AS n FROM actions GROUP BY risk_level")
    }

    executed = db.execute(
        "SELECT COUNT(*) AS n FROM actions WHERE executed_at IS NOT NULL"
    ).fetchone()["n"]
    failed = db.execute(
        "SELECT COUNT(*) AS n FROM actions WHERE execution_error IS NOT NULL"
    ).fetchone()["n"]
    avg_confidence = db.execute(
        "SELECT AVG(confidence) AS avg FROM actions WHERE confidence IS NOT NULL"
    ).fetchone()["avg"]

    approved = counts["approved"] + counts["auto_approved"] + counts["edited"]
    reviewed = approved + counts["denied"]
    approval_rate = approved / reviewed if reviewed else 0.0
    auto_approve_rate = counts["auto_approved"] / reviewed if reviewed else 0.0

    return {
        "total": sum(counts.values()),
        "by_status": counts,
        "by_type": by_type,
        "by_risk": by_risk,
        "executed": executed,
        "execution_failed": failed,
        "approval_rate": round(approval_rate, 4),
        "auto_approve_rate": round(auto_approve_rate, 4),
        "avg_confidence": avg_confidence,
        "rules": [
            {
                "rule_id": rule.id,
                "description": rule.description or describe_rule(rule),
                "enabled": rule.enabled,
                "trigger_count": rule.trigger_count,
                "success_rate": rule.success_rate,
            }
            for rule in sorted(list_rules(db), key=lambda r: r.trigger_count, reverse=True)
        ],
    }
