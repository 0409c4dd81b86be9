"""Unit tests for the Task record and its lifecycle state machine."""

import pytest

from taskAgent.protocol.chunks import ToolProtocol
from taskAgent.runtime import TERMINAL_STATES, Task, TaskState
from taskAgent.runtime.task import VALID_TRANSITIONS
from taskAgent.tools import TodoItem
from taskAgent.utils.error_handler import InvalidTransitionError


@pytest.fixture
def task():
    return Task(task_id="t1", mode="code")


class TestTransitions:
    def test_happy_path(self, task):
        task.transition(TaskState.INITIALIZING)
        task.transition(TaskState.ACTIVE)
        task.transition(TaskState.PAUSED, "waiting on child")
        task.transition(TaskState.ACTIVE)
        previous = task.transition(TaskState.COMPLETED)

        assert previous == TaskState.ACTIVE
        assert task.is_terminal

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATES, key=lambda s: s.value))
    def test_terminal_states_are_final(self, terminal):
        assert VALID_TRANSITIONS[terminal] == frozenset()

    def test_invalid_edge_leaves_state(self, task):
        with pytest.raises(InvalidTransitionError):
            task.transition(TaskState.COMPLETED)

        assert task.state == TaskState.CREATED

    def test_abort_from_every_live_state(self):
        live = [s for s in TaskState if s not in TERMINAL_STATES]

        for state in live:
            assert TaskState.ABORTED in VALID_TRANSITIONS[state], state

    def test_suspended_task_reinitializes(self, task):
        task.transition(TaskState.ERROR_SUSPENDED)
        task.transition(TaskState.INITIALIZING)

        assert task.state == TaskState.INITIALIZING


class TestLockedFields:
    @pytest.mark.parametrize("name", ["task_id", "mode", "protocol", "parent_task_id", "root_task_id"])
    def test_cannot_reassign(self, task, name):
        with pytest.raises(AttributeError):
            setattr(task, name, "other")

    def test_mutable_fields(self, task):
        task.turns = 3
        task.result = "done"

        assert task.turns == 3

    def test_root_defaults(self):
        parent = Task(task_id="p", mode="code")
        child = Task(task_id="c", mode="ask", parent_task_id="p", root_task_id="p", depth=1)

        assert parent.root_task_id == "p"
        assert child.root_task_id == "p"
        assert child.is_child and not parent.is_child

    def test_protocol_is_coerced(self):
        assert Task(task_id="t", mode="code", protocol="xml").protocol == ToolProtocol.XML


class TestMetadata:
    def test_round_trip(self, task):
        task.todos.append(TodoItem(id="1", content="step", status="pending"))
        task.pending_child_id = "child"
        task.background_children["bg"] = "inv-1"
        task.turns = 4

        restored = Task.from_metadata(task.to_metadata())

        assert restored.todos == task.todos
        assert restored.pending_child_id == "child"
        assert restored.background_children == {"bg": "inv-1"}
        assert restored.turns == 4

    @pytest.mark.parametrize("state", [TaskState.ACTIVE, TaskState.PAUSED, TaskState.ERROR_SUSPENDED])
    def test_live_states_restart(self, task, state):
        data = {**task.to_metadata(), "state": state.value}

        assert Task.from_metadata(data).state == TaskState.CREATED

    def test_terminal_state_is_kept(self, task):
        data = {**task.to_metadata(), "state": TaskState.COMPLETED.value}

        assert Task.from_metadata(data).state == TaskState.COMPLETED
