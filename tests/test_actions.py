"""Tests for the action queue: proposal, review and execution."""

import tempfile
import threading
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from action_governor.core import actions as actions_mod
from action_governor.core import rules as rules_mod
from action_governor.core.dispatch import DispatchResult, Dispatcher
from action_governor.db.engine import init_db
from action_governor.errors import InvalidTransitionError, NotFoundError, ValidationError


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp) / "test.db"


@pytest.fixture
def db(db_path):
    """Create a temporary SQLite database for testing."""
    conn = init_db(db_path)
    yield conn
    conn.close()


class RecordingExecutor:
    def __init__(self, result=None):
        self.result = result
        self.calls = []

    def execute(self, action, payload):
        self.calls.append((action.id, payload))
        return self.result


class FailingExecutor:
    def execute(self, action, payload):
        raise ConnectionError("mail server down")


class SlowCountingExecutor:
    def __init__(self, delay=0.3):
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def execute(self, action, payload):
        with self._lock:
            self.calls += 1
        time.sleep(self.delay)
        return True


class RecordingReporter:
    def __init__(self):
        self.events = []

    def record_execution(self, action, result):
        self.events.append(("execution", action.id, result.success))

    def record_denial(self, action, feedback):
        self.events.append(("denial", action.id, feedback))

    def record_edit(self, action, diff):
        self.events.append(("edit", action.id, diff))


class BrokenReporter:
    def record_execution(self, action, result):
        raise RuntimeError("reporter down")

    def record_denial(self, action, feedback):
        raise RuntimeError("reporter down")

    def record_edit(self, action, diff):
        raise RuntimeError("reporter down")


def _email(db, **data):
    return actions_mod.create_action(db, "email_reply", data or {"to": "ann@corp.com"}, "low")


class TestCreateAction:
    def test_creates_pending_without_rules(self, db):
        action = _email(db, to="ann@corp.com", body="hi")
        assert action.id is not None
        assert action.status == "pending"
        assert action.rule_id is None
        assert action.reviewed_at is None
        assert action.action_data == {"to": "ann@corp.com", "body": "hi"}

    def test_missing_fields(self, db):
        with pytest.raises(ValidationError, match="Missing required fields: action_data, risk_level"):
            actions_mod.create_action(db, "email_reply", None, "")

    def test_empty_action_data_is_accepted(self, db):
        action = actions_mod.create_action(db, "health_suggestion", {}, "low")
        assert action.status == "pending"
        assert action.action_data == {}
        edited, _ = actions_mod.edit_action(db, action.id, {})
        assert edited.status == "edited"
        assert edited.edited_data == {}

    def test_unknown_action_type(self, db):
        with pytest.raises(ValidationError):
            actions_mod.create_action(db, "fax", {"to": "x"}, "low")

    def test_confidence_out_of_range(self, db):
        with pytest.raises(ValidationError):
            actions_mod.create_action(db, "email_reply", {"to": "x"}, "low", confidence=1.5)

    def test_auto_approved_when_rule_matches(self, db):
        rule = rules_mod.create_rule(
            db, "email_reply", [{"field": "amount", "operator": "lt", "value": 100}]
        )
        action = _email(db, amount=50)
        assert action.status == "auto_approved"
        assert action.rule_id == rule.id
        assert action.reviewed_at is not None
        assert rules_mod.get_rule(db, rule.id).trigger_count == 1

    def test_no_match_leaves_pending_and_count_unchanged(self, db):
        rule = rules_mod.create_rule(
            db, "email_reply", [{"field": "amount", "operator": "lt", "value": 100}]
        )
        action = _email(db, amount=150)
        assert action.status == "pending"
        assert rules_mod.get_rule(db, rule.id).trigger_count == 0

    def test_only_matching_rule_is_counted(self, db):
        first = rules_mod.create_rule(
            db, "email_reply", [{"field": "amount", "operator": "lt", "value": 100}], priority=1
        )
        second = rules_mod.create_rule(
            db, "email_reply", [{"field": "amount", "operator": "lt", "value": 1000}], priority=2
        )
        _email(db, amount=10)
        assert rules_mod.get_rule(db, first.id).trigger_count == 1
        assert rules_mod.get_rule(db, second.id).trigger_count == 0

    def test_events_recorded(self, db):
        rules_mod.create_rule(db, "email_reply", [{"field": "amount", "operator": "lt", "value": 100}])
        action = _email(db, amount=1)
        events = actions_mod.get_action_events(db, action.id)
        assert [e.event_type for e in events] == ["created", "status_changed"]
        assert events[1].new_value == "auto_approved"


class TestListActions:
    def test_newest_first_with_filters(self, db):
        a = _email(db, to="a")
        b = actions_mod.create_action(db, "imessage", {"to": "b"}, "high")
        c = _email(db, to="c")
        assert [x.id for x in actions_mod.list_actions(db)] == [c.id, b.id, a.id]
        assert [x.id for x in actions_mod.list_actions(db, action_type="email_reply")] == [c.id, a.id]
        assert [x.id for x in actions_mod.list_actions(db, risk_level="high")] == [b.id]

    def test_limit_and_offset(self, db):
        ids = [_email(db, n=i).id for i in range(5)]
        page = actions_mod.list_actions(db, limit=2, offset=1)
        assert [a.id for a in page] == [ids[3], ids[2]]

    def test_negative_limit_rejected(self, db):
        with pytest.raises(ValidationError):
            actions_mod.list_actions(db, limit=-1)

    def test_unknown_status_rejected(self, db):
        with pytest.raises(ValidationError):
            actions_mod.list_actions(db, status="maybe")


class TestReview:
    def test_approve(self, db):
        action = _email(db)
        approved = actions_mod.approve_action(db, action.id)
        assert approved.status == "approved"
        assert approved.reviewed_at is not None

    def test_second_review_rejected(self, db):
        action = _email(db)
        actions_mod.approve_action(db, action.id)
        with pytest.raises(InvalidTransitionError, match="already approved"):
            actions_mod.deny_action(db, action.id, "too late")
        assert actions_mod.get_action(db, action.id).status == "approved"

    def test_approve_missing_action(self, db):
        with pytest.raises(NotFoundError):
            actions_mod.approve_action(db, 404)

    def test_auto_approved_cannot_be_reviewed(self, db):
        rules_mod.create_rule(db, "email_reply", [{"field": "amount", "operator": "lt", "value": 100}])
        action = _email(db, amount=1)
        with pytest.raises(InvalidTransitionError):
            actions_mod.approve_action(db, action.id)

    def test_deny_keeps_feedback(self, db):
        action = _email(db)
        reporter = RecordingReporter()
        denied = actions_mod.deny_action(db, action.id, "wrong tone", reporter=reporter)
        assert denied.status == "denied"
        assert denied.user_feedback == "wrong tone"
        assert reporter.events == [("denial", action.id, "wrong tone")]

    def test_deny_default_feedback(self, db):
        action = _email(db)
        denied = actions_mod.deny_action(db, action.id, "   ")
        assert denied.user_feedback == "Denied without feedback"

    def test_edit_stores_payload_and_reports_diff(self, db):
        action = _email(db, to="ann", body="hi")
        reporter = RecordingReporter()
        edited, execution = actions_mod.edit_action(
            db, action.id, {"to": "ann", "body": "hello"}, reporter=reporter
        )
        assert execution is None
        assert edited.status == "edited"
        assert edited.action_data == {"to": "ann", "body": "hi"}
        assert edited.edited_data == {"to": "ann", "body": "hello"}
        assert edited.payload == {"to": "ann", "body": "hello"}
        assert reporter.events == [
            ("edit", action.id, {"body": {"before": "hi", "after": "hello"}})
        ]

    def test_lost_review_race_writes_nothing(self, db, db_path):
        action = _email(db)
        stale = actions_mod.get_action(db, action.id)
        other = init_db(db_path)
        try:
            actions_mod.approve_action(other, action.id)
        finally:
            other.close()

        real_get = actions_mod.get_action
        reads = iter([stale])
        with patch.object(
            actions_mod, "get_action", side_effect=lambda conn, i: next(reads, None) or real_get(conn, i)
        ):
            with pytest.raises(InvalidTransitionError, match="already approved"):
                actions_mod.deny_action(db, action.id, "too slow")

        stored = actions_mod.get_action(db, action.id)
        assert stored.status == "approved"
        assert stored.user_feedback is None
        events = [e.event_type for e in actions_mod.get_action_events(db, action.id)]
        assert events.count("status_changed") == 1

    def test_edit_requires_data(self, db):
        action = _email(db)
        with pytest.raises(ValidationError):
            actions_mod.edit_action(db, action.id, None)
        assert actions_mod.get_action(db, action.id).status == "pending"

    def test_edit_and_execute_dispatches_edited_payload(self, db):
        action = _email(db, to="ann", body="hi")
        executor = RecordingExecutor()
        dispatcher = Dispatcher({"email_reply": executor})
        edited, execution = actions_mod.edit_action(
            db, action.id, {"to": "bob", "body": "hi"}, execute=True, dispatcher=dispatcher
        )
        assert execution.success is True
        assert executor.calls == [(action.id, {"to": "bob", "body": "hi"})]
        assert edited.executed_at is not None

    def test_broken_reporter_does_not_fail_review(self, db):
        action = _email(db)
        denied = actions_mod.deny_action(db, action.id, "no", reporter=BrokenReporter())
        assert denied.status == "denied"


class TestExecution:
    def test_execute_approved(self, db):
        action = _email(db)
        actions_mod.approve_action(db, action.id)
        executor = RecordingExecutor(DispatchResult(success=True, message="sent"))
        executed, result = actions_mod.execute_action(
            db, action.id, Dispatcher({"email_reply": executor})
        )
        assert result.success is True
        assert result.message == "sent"
        assert executed.executed_at is not None
        assert executed.execution_error is None
        assert executor.calls == [(action.id, {"to": "ann@corp.com"})]

    def test_execute_pending_rejected(self, db):
        action = _email(db)
        with pytest.raises(InvalidTransitionError, match="status is pending"):
            actions_mod.execute_action(db, action.id, Dispatcher())

    def test_execute_denied_rejected(self, db):
        action = _email(db)
        actions_mod.deny_action(db, action.id)
        with pytest.raises(InvalidTransitionError):
            actions_mod.execute_action(db, action.id, Dispatcher())

    def test_execute_twice_rejected(self, db):
        action = _email(db)
        actions_mod.approve_action(db, action.id)
        dispatcher = Dispatcher({"email_reply": RecordingExecutor()})
        actions_mod.execute_action(db, action.id, dispatcher)
        with pytest.raises(InvalidTransitionError, match="already executed"):
            actions_mod.execute_action(db, action.id, dispatcher)

    def test_failure_is_persisted(self, db):
        action = _email(db)
        actions_mod.approve_action(db, action.id)
        reporter = RecordingReporter()
        failed, result = actions_mod.execute_action(
            db, action.id, Dispatcher({"email_reply": FailingExecutor()}), reporter=reporter
        )
        assert result.success is False
        assert "mail server down" in result.error
        stored = actions_mod.get_action(db, action.id)
        assert stored.executed_at is None
        assert "mail server down" in stored.execution_error
        assert stored.status == "approved"
        assert reporter.events == [("execution", action.id, False)]

    def test_concurrent_execute_dispatches_once(self, db, db_path):
        action = _email(db)
        actions_mod.approve_action(db, action.id)
        executor = SlowCountingExecutor()
        dispatcher = Dispatcher({"email_reply": executor})
        conns = [init_db(db_path) for _ in range(2)]
        barrier = threading.Barrier(2)
        results, errors = [], []

        def run(conn):
            barrier.wait()
            try:
                results.append(actions_mod.execute_action(conn, action.id, dispatcher))
            except InvalidTransitionError as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=(c,)) for c in conns]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)
        for c in conns:
            c.close()

        assert executor.calls == 1
        assert len(results) == 1
        assert len(errors) == 1
        stored = actions_mod.get_action(db, action.id)
        assert stored.executed_at is not None
        events = [e.event_type for e in actions_mod.get_action_events(db, action.id)]
        assert events.count("executed") == 1

    def test_in_flight_execution_rejected(self, db):
        action = _email(db)
        actions_mod.approve_action(db, action.id)
        db.execute(
            "UPDATE actions SET executing_since = datetime('now') WHERE id = ?", (action.id,)
        )
        db.commit()
        executor = RecordingExecutor()
        with pytest.raises(InvalidTransitionError, match="execution already in progress"):
            actions_mod.execute_action(db, action.id, Dispatcher({"email_reply": executor}))
        assert executor.calls == []

    def test_failure_releases_claim(self, db):
        action = _email(db)
        actions_mod.approve_action(db, action.id)
        actions_mod.execute_action(db, action.id, Dispatcher({"email_reply": FailingExecutor()}))
        row = db.execute(
            "SELECT executing_since FROM actions WHERE id = ?", (action.id,)
        ).fetchone()
        assert row["executing_since"] is None

    def test_success_logs_executor_message(self, db):
        action = _email(db)
        actions_mod.approve_action(db, action.id)
        executor = RecordingExecutor(DispatchResult(success=True, message="sent"))
        actions_mod.execute_action(db, action.id, Dispatcher({"email_reply": executor}))
        events = actions_mod.get_action_events(db, action.id)
        assert [(e.event_type, e.new_value) for e in events if e.event_type == "executed"] == [
            ("executed", "sent")
        ]

    def test_missing_executor_is_a_failure(self, db):
        action = _email(db)
        actions_mod.approve_action(db, action.id)
        _, result = actions_mod.execute_action(db, action.id, Dispatcher())
        assert result.success is False
        assert result.error == "No executor available for action type 'email_reply'"

    def test_retry_after_failure_clears_error(self, db):
        action = _email(db)
        actions_mod.approve_action(db, action.id)
        actions_mod.execute_action(db, action.id, Dispatcher({"email_reply": FailingExecutor()}))
        executed, result = actions_mod.execute_action(
            db, action.id, Dispatcher({"email_reply": RecordingExecutor()})
        )
        assert result.success is True
        assert executed.execution_error is None
        assert executed.executed_at is not None


class TestMarkExecuted:
    def test_first_write_wins(self, db):
        action = _email(db)
        first = actions_mod.mark_executed(db, action.id)
        assert first.executed_at is not None
        db.execute(
            "UPDATE actions SET executed_at = '2020-01-01 00:00:00' WHERE id = ?", (action.id,)
        )
        db.commit()
        second = actions_mod.mark_executed(db, action.id)
        assert second.executed_at.year == 2020
        events = [e.event_type for e in actions_mod.get_action_events(db, action.id)]
        assert events.count("executed") == 1

    def test_missing_action(self, db):
        with pytest.raises(NotFoundError):
            actions_mod.mark_executed(db, 12345)


class TestSchema:
    def test_init_db_is_repeatable(self, db, db_path):
        action = _email(db)
        again = init_db(db_path)
        try:
            columns = {r["name"] for r in again.execute("PRAGMA table_info(actions)")}
            assert {"executed_at", "execution_error", "executing_since"} <= columns
            assert actions_mod.get_action(again, action.id).status == "pending"
        finally:
            again.close()
