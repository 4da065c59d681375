"""Tests for outcome reporting and queue statistics."""

import tempfile
from pathlib import Path

import pytest

from action_governor.core import actions as actions_mod
from action_governor.core import rules as rules_mod
from action_governor.core import stats as stats_mod
from action_governor.core.dispatch import Dispatcher
from action_governor.core.outcomes import SqliteOutcomeReporter, diff_payload, list_outcomes
from action_governor.db.engine import init_db


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        conn = init_db(db_path)
        yield conn
        conn.close()


class Toggle:
    """Executor whose next answer can be flipped between calls."""

    def __init__(self):
        self.ok = True

    def execute(self, action, payload):
        return self.ok


class TestDiffPayload:
    def test_changed_added_removed(self):
        diff = diff_payload({"a": 1, "b": 2}, {"a": 1, "b": 3, "c": 4})
        assert diff == {
            "b": {"before": 2, "after": 3},
            "c": {"before": None, "after": 4},
        }

    def test_identical(self):
        assert diff_payload({"a": 1}, {"a": 1}) == {}


class TestSqliteOutcomeReporter:
    def test_success_rate_from_auto_approved_executions(self, db):
        rule = rules_mod.create_rule(
            db, "reminder_create", [{"field": "minutes", "operator": "lt", "value": 60}]
        )
        reporter = SqliteOutcomeReporter(db)
        toggle = Toggle()
        dispatcher = Dispatcher({"reminder_create": toggle})

        for ok in (True, True, False, True):
            toggle.ok = ok
            action = actions_mod.create_action(db, "reminder_create", {"minutes": 5}, "low")
            assert action.status == "auto_approved"
            actions_mod.execute_action(db, action.id, dispatcher, reporter=reporter)

        stored = rules_mod.get_rule(db, rule.id)
        assert stored.trigger_count == 4
        assert stored.success_rate == pytest.approx(0.75)
        outcomes = [o.outcome for o in list_outcomes(db, rule_id=rule.id)]
        assert outcomes == ["executed", "executed", "execution_failed", "executed"]

    def test_manual_review_does_not_touch_rules(self, db):
        reporter = SqliteOutcomeReporter(db)
        action = actions_mod.create_action(db, "email_reply", {"to": "ann"}, "low")
        actions_mod.deny_action(db, action.id, "wrong person", reporter=reporter)
        outcomes = list_outcomes(db, action_id=action.id)
        assert len(outcomes) == 1
        assert outcomes[0].outcome == "denied"
        assert outcomes[0].rule_id is None
        assert outcomes[0].detail == {"feedback": "wrong person"}

    def test_edit_records_diff(self, db):
        reporter = SqliteOutcomeReporter(db)
        action = actions_mod.create_action(db, "email_reply", {"to": "ann", "body": "hi"}, "low")
        actions_mod.edit_action(db, action.id, {"to": "ann", "body": "hello"}, reporter=reporter)
        outcome = list_outcomes(db, action_id=action.id)[0]
        assert outcome.outcome == "edited"
        assert outcome.detail == {"body": {"before": "hi", "after": "hello"}}


class TestQueueStats:
    def test_empty_queue(self, db):
        stats = stats_mod.get_queue_stats(db)
        assert stats["total"] == 0
        assert stats["approval_rate"] == 0.0
        assert stats["by_status"]["pending"] == 0
        assert stats["rules"] == []

    def test_counts_and_rates(self, db):
        rules_mod.create_rule(
            db, "calendar_block", [{"field": "duration", "operator": "lt", "value": 60}],
            description="Short focus blocks",
        )
        actions_mod.create_action(db, "calendar_block", {"duration": 30}, "low", confidence=0.9)
        a = actions_mod.create_action(db, "email_reply", {"to": "x"}, "medium", confidence=0.5)
        b = actions_mod.create_action(db, "email_reply", {"to": "y"}, "high")
        actions_mod.create_action(db, "email_reply", {"to": "z"}, "high")
        actions_mod.approve_action(db, a.id)
        actions_mod.deny_action(db, b.id)

        stats = stats_mod.get_queue_stats(db)
        assert stats["total"] == 4
        assert stats["by_status"] == {
            "pending": 1,
            "approved": 1,
            "denied": 1,
            "edited": 0,
            "auto_approved": 1,
        }
        assert stats["by_type"] == {"email_reply": 3, "calendar_block": 1}
        assert stats["by_risk"]["high"] == 2
        assert stats["approval_rate"] == pytest.approx(0.6667)
        assert stats["auto_approve_rate"] == pytest.approx(0.3333)
        assert stats["avg_confidence"] == pytest.approx(0.7)
        assert stats["rules"][0]["description"] == "Short focus blocks"
        assert stats["rules"][0]["trigger_count"] == 1
