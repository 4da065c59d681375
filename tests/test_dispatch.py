"""Tests for dispatching actions and tasks to executors."""

import threading
import time

import pytest

from action_governor.core.dispatch import (
    DispatchResult,
    Dispatcher,
    DispatchTimeout,
    call_with_timeout,
)
from action_governor.db.models import Action, Agent, Task
from action_governor.errors import ExecutionError


def _action(action_type="email_reply", data=None, edited=None):
    return Action(
        id=1,
        action_type=action_type,
        action_data=data or {"to": "ann"},
        risk_level="low",
        status="approved",
        edited_data=edited,
    )


class ReturningExecutor:
    def __init__(self, value):
        self.value = value
        self.payloads = []

    def execute(self, action, payload):
        self.payloads.append(payload)
        return self.value


class SlowExecutor:
    def __init__(self, release: threading.Event):
        self.release = release

    def execute(self, action, payload):
        self.release.wait(5)
        return True


class RaisingExecutor:
    def execute(self, action, payload):
        raise ValueError("bad recipient")


class FakeTaskExecutor:
    def __init__(self, result=None):
        self.result = result
        self.calls = []

    def dispatch(self, task, agent):
        self.calls.append((task.id, agent.name if agent else None))
        return self.result


class TestCallWithTimeout:
    def test_returns_value(self):
        assert call_with_timeout(lambda: 42, 1.0) == 42

    def test_reraises_on_caller(self):
        def boom():
            raise KeyError("x")

        with pytest.raises(KeyError):
            call_with_timeout(boom, 1.0)

    def test_times_out(self):
        release = threading.Event()
        start = time.monotonic()
        with pytest.raises(DispatchTimeout, match="timed out after 0.1s"):
            call_with_timeout(lambda: release.wait(5), 0.1)
        assert time.monotonic() - start < 2
        release.set()


class TestDispatchAction:
    def test_no_executor(self):
        result = Dispatcher().dispatch_action(_action("trip_plan"))
        assert result.success is False
        assert result.error == "No executor available for action type 'trip_plan'"

    def test_edited_payload_is_sent(self):
        executor = ReturningExecutor(None)
        dispatcher = Dispatcher({"email_reply": executor})
        result = dispatcher.dispatch_action(_action(data={"to": "a"}, edited={"to": "b"}))
        assert result.success is True
        assert executor.payloads == [{"to": "b"}]

    @pytest.mark.parametrize(
        "returned,success,message",
        [
            (None, True, None),
            (True, True, None),
            ("queued as #7", True, "queued as #7"),
            (DispatchResult(success=True, message="ok"), True, "ok"),
        ],
    )
    def test_success_normalization(self, returned, success, message):
        result = Dispatcher({"email_reply": ReturningExecutor(returned)}).dispatch_action(_action())
        assert result.success is success
        assert result.message == message
        assert result.error is None

    def test_false_becomes_failure_with_error(self):
        result = Dispatcher({"email_reply": ReturningExecutor(False)}).dispatch_action(_action())
        assert result.success is False
        assert result.error == "email_reply executor reported failure"

    def test_failure_result_without_error_gets_one(self):
        executor = ReturningExecutor(DispatchResult(success=False))
        result = Dispatcher({"email_reply": executor}).dispatch_action(_action())
        assert result.success is False
        assert result.error

    def test_exception_becomes_failure(self):
        result = Dispatcher({"email_reply": RaisingExecutor()}).dispatch_action(_action())
        assert result.success is False
        assert result.error == "email_reply executor failed: bad recipient"

    def test_timeout_becomes_failure(self):
        release = threading.Event()
        dispatcher = Dispatcher({"email_reply": SlowExecutor(release)}, timeout=0.1)
        result = dispatcher.dispatch_action(_action())
        release.set()
        assert result.success is False
        assert result.error == "email_reply executor timed out after 0.1s"

    def test_register(self):
        dispatcher = Dispatcher()
        assert not dispatcher.has_executor("imessage")
        dispatcher.register("imessage", ReturningExecutor(True))
        assert dispatcher.has_executor("imessage")


class TestDispatchTask:
    def test_requires_agent(self):
        task = Task(id="t", title="T")
        result = Dispatcher(task_executor=FakeTaskExecutor()).dispatch_task(task)
        assert result == DispatchResult(success=False, error="No agent ID provided for dispatch")

    def test_requires_task_executor(self):
        task = Task(id="t", title="T", assigned_agent_id="ann")
        result = Dispatcher().dispatch_task(task)
        assert result.success is False
        assert result.error == "No task executor configured"

    def test_passes_agent(self):
        executor = FakeTaskExecutor(DispatchResult(success=True, message="sent"))
        task = Task(id="t", title="T", assigned_agent_id="ann")
        result = Dispatcher(task_executor=executor).dispatch_task(task, Agent(id="ann", name="Ann"))
        assert result.success is True
        assert executor.calls == [("t", "Ann")]


class TestDispatchResult:
    def test_to_dict_omits_empty_fields(self):
        assert DispatchResult(success=True).to_dict() == {"success": True}

    def test_raise_for_failure(self):
        DispatchResult(success=True).raise_for_failure()
        with pytest.raises(ExecutionError, match="gateway down"):
            DispatchResult(success=False, error="gateway down").raise_for_failure()
