"""Unit tests for SqliteTaskStore."""

import sqlite3

import pytest

from taskAgent.history import AssistantTurn, HistoryManager, ToolInvocation, ToolResult
from taskAgent.persistence import SqliteTaskStore
from taskAgent.utils.error_handler import TaskPersistenceError


@pytest.fixture
def store(tmp_path):
    return SqliteTaskStore(str(tmp_path / "nested" / "tasks.db"))


@pytest.fixture
def history():
    history = HistoryManager()
    history.append_user_message("<task>\nList the files\n</task>")
    history.commit_turn(
        AssistantTurn(text="Listing", invocations=[ToolInvocation(id="c1", name="list_files", is_partial=False)]),
        [ToolResult(invocation_id="c1", content="README.md")],
        approvals={"c1": "auto"},
    )
    return history


def metadata(state="active", **extra):
    return {"task_id": "t1", "state": state, "mode": "code", "parent_task_id": None, **extra}


class TestSqliteTaskStore:
    def test_creates_parent_directory(self, tmp_path, store):
        assert (tmp_path / "nested" / "tasks.db").exists()

    def test_save_and_load(self, store, history):
        store.save("t1", history.committed_display, history.context, metadata(usage={"requests": 1}))

        snapshot = store.load("t1")

        assert snapshot.task_id == "t1"
        assert [m.role for m in snapshot.display] == ["user", "assistant", "user"]
        assert snapshot.display[1].approvals == {"c1": "auto"}
        assert [m.display_index for m in snapshot.context] == [0, 1, 2]
        assert snapshot.metadata["usage"] == {"requests": 1}
        assert HistoryManager(display=snapshot.display, context=snapshot.context).turn_count == 1

    def test_save_overwrites(self, store, history):
        store.save("t1", history.committed_display[:1], history.context[:1], metadata())
        store.save("t1", history.committed_display, history.context, metadata(state="completed"))

        snapshot = store.load("t1")
        assert len(snapshot.display) == 3
        assert snapshot.metadata["state"] == "completed"

    def test_unknown_task(self, store):
        assert store.load("missing") is None

    def test_list_tasks(self, store, history):
        store.save("t1", history.committed_display, history.context, metadata())
        store.save("t2", history.committed_display, history.context, {**metadata(), "task_id": "t2", "parent_task_id": "t1"})

        summaries = {s.task_id: s for s in store.list_tasks()}

        assert set(summaries) == {"t1", "t2"}
        assert summaries["t2"].parent_task_id == "t1"
        assert summaries["t1"].message_count == 3
        assert summaries["t1"].state == "active"

    def test_delete(self, store, history):
        store.save("t1", history.committed_display, history.context, metadata())

        store.delete("t1")

        assert store.load("t1") is None

    def test_corrupt_row(self, store, history):
        store.save("t1", history.committed_display, history.context, metadata())
        conn = sqlite3.connect(store.db_path)
        with conn:
            conn.execute("UPDATE tasks SET display_json = 'not json' WHERE task_id = 't1'")
        conn.close()

        with pytest.raises(TaskPersistenceError, match="corrupt"):
            store.load("t1")

    def test_unwritable_location(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")

        with pytest.raises((TaskPersistenceError, OSError)):
            SqliteTaskStore(str(blocker / "tasks.db"))
