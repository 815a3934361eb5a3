"""
Tests for the workflow facade: transactions, rollback, events and the
invariants that must hold across arbitrary operation sequences.
"""
import logging
import random

import pytest

from pkg.workflow import Conflict, NotFound, WorkflowError
from pkg.workflow.errors import Forbidden, InvalidArgument

OWNER, MANAGER, MEMBER, OUTSIDER = "alice", "bob", "carol", "mallory"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Error taxonomy
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_error_kinds():
    assert NotFound("x").to_dict() == {"error": "x", "kind": "not_found"}
    assert Forbidden("x").kind == "forbidden"
    assert InvalidArgument("x").kind == "invalid_argument"
    assert Conflict("x").kind == "conflict"
    assert issubclass(Conflict, WorkflowError)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Transactions
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_failed_move_rolls_back(workflow, project, board, columns, task_ids, monkeypatch):
    """A crash halfway through a move leaves board and status untouched"""
    a = workflow.create_task(project, MEMBER, {"title": "A"})
    b = workflow.create_task(project, MEMBER, {"title": "B"})
    done = columns(board)["Done"]["id"]

    original = workflow.placement.renumber
    calls = []

    def renumber_then_fail(ctx, column_id):
        original(ctx, column_id)
        calls.append(column_id)
        if len(calls) == 1:
            raise RuntimeError("disk on fire")

    monkeypatch.setattr(workflow.placement, "renumber", renumber_then_fail)
    with pytest.raises(RuntimeError):
        workflow.move_task(a, MEMBER, {"column_id": done, "position": 1})
    monkeypatch.undo()

    assert task_ids(board, "To Do") == [a, b]
    assert task_ids(board, "Done") == []
    assert workflow.get_task(a, MEMBER)["status"] == "to_do"


def test_failed_create_rolls_back_task_row(workflow, project, board, monkeypatch):
    """If placement fails the task row disappears with it"""
    def boom(ctx, task):
        raise Conflict("placement refused")

    monkeypatch.setattr(workflow.placement, "place_new_task", boom)
    with pytest.raises(Conflict):
        workflow.create_task(project, MEMBER, {"title": "Ghost"})
    monkeypatch.undo()

    assert workflow.get_project_tasks(project, OWNER) == []


def test_failed_delete_board_keeps_placements(workflow, project, board, columns, task_ids, monkeypatch):
    other = workflow.create_board(project, OWNER, {"title": "Ops"})
    task_id = workflow.create_task(project, MEMBER, {"title": "A"})
    workflow.move_task(task_id, MEMBER, {"column_id": columns(other)["Done"]["id"], "position": 1})

    def boom(ctx, task_id, column_id):
        raise RuntimeError("interrupted")

    monkeypatch.setattr(workflow.placement, "append", boom)
    with pytest.raises(RuntimeError):
        workflow.delete_board(other, OWNER)
    monkeypatch.undo()

    assert task_ids(other, "Done") == [task_id]
    assert len(workflow.list_boards(project, OWNER)) == 2


def test_rejection_is_logged(workflow, project, caplog):
    with caplog.at_level(logging.WARNING, logger="pkg.workflow.workflow"):
        with pytest.raises(Forbidden):
            workflow.create_board(project, MEMBER, {"title": "Nope"})
    assert "create_board rejected" in caplog.text


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Events
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@pytest.fixture
def seen(workflow):
    events = []

    def record(event_type, **payload):
        events.append((event_type, payload))

    workflow.events.subscribe("*", record)
    return events


def test_events_published_after_commit(workflow, project, board, columns, seen):
    task_id = workflow.create_task(project, MEMBER, {"title": "A"})
    workflow.move_task(task_id, MEMBER, {"column_id": columns(board)["In Progress"]["id"], "position": 1})

    types = [t for t, _ in seen]
    assert types == ["task_created", "task_moved", "task_status_changed"]
    assert seen[2][1] == {
        "task_id": task_id, "project_id": project, "old_status": "to_do", "new_status": "in_progress",
    }


def test_status_update_events(workflow, project, board, seen):
    task_id = workflow.create_task(project, MEMBER, {"title": "A"})
    seen.clear()

    workflow.update_task(task_id, MEMBER, {"status": "done"})
    assert [t for t, _ in seen] == ["task_status_changed", "task_updated"]


def test_rejected_operation_publishes_nothing(workflow, project, board, seen):
    with pytest.raises(NotFound):
        workflow.create_task(project, OUTSIDER, {"title": "A"})
    assert seen == []


def test_typed_subscription(workflow, project, board):
    deleted = []
    workflow.events.subscribe("task_deleted", lambda event_type, **p: deleted.append(p["task_id"]))

    task_id = workflow.create_task(project, MEMBER, {"title": "A"})
    workflow.delete_task(task_id, MEMBER)
    assert deleted == [task_id]


def test_failing_subscriber_is_isolated(workflow, project, board, seen, caplog):
    """A broken subscriber never undoes the operation or starves others"""
    def broken(event_type, **payload):
        raise ValueError("subscriber bug")

    workflow.events.subscribe("task_created", broken)
    with caplog.at_level(logging.WARNING, logger="pkg.workflow.events"):
        task_id = workflow.create_task(project, MEMBER, {"title": "Still here"})

    assert workflow.get_task(task_id, MEMBER)["title"] == "Still here"
    assert [t for t, _ in seen] == ["task_created"]
    assert "subscriber bug" in caplog.text


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Projects
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_delete_project_cascades(workflow, project, board):
    a = workflow.create_task(project, MEMBER, {"title": "A"})
    b = workflow.create_task(project, MEMBER, {"title": "B"})
    workflow.add_dependency(a, MEMBER, {"depends_on_task_id": b})
    workflow.add_subtask(a, MEMBER, "Step")

    with pytest.raises(Forbidden):
        workflow.delete_project(project, MANAGER)
    workflow.delete_project(project, OWNER)

    for table in ("tasks", "kanban_boards", "kanban_columns", "kanban_tasks",
                  "task_dependencies", "subtasks", "project_members"):
        assert workflow.gateway.execute(f"SELECT COUNT(*) AS n FROM {table}")[0]["n"] == 0, table


def test_project_requires_title(workflow):
    with pytest.raises(InvalidArgument):
        workflow.create_project(OWNER, "")


def test_member_role_upsert(workflow, project):
    workflow.add_member(project, OWNER, MEMBER, "manager")
    # carol can now create boards
    workflow.create_board(project, MEMBER, {"title": "Carol's"})
    with pytest.raises(InvalidArgument):
        workflow.add_member(project, OWNER, "dave", "superuser")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Invariants under random operation sequences
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_random_operations_keep_invariants(workflow, project, board, assert_dense):
    """Density, single default board and at most one placement per task"""
    rng = random.Random(1234)
    second = workflow.create_board(project, OWNER, {"title": "Ops"})
    lane = workflow.create_column(second, OWNER, {"title": "Capped", "wip_limit": 2})
    statuses = ["backlog", "to_do", "in_progress", "in_review", "done", "cancelled"]
    tasks = []

    def all_columns():
        return [c["id"] for b_id in (board, second) for c in workflow.get_board(b_id, OWNER)["columns"]]

    for step in range(120):
        op = rng.choice(["create", "create", "move", "move", "status", "delete"])
        try:
            if op == "create" or not tasks:
                tasks.append(workflow.create_task(project, MEMBER, {"title": f"T{step}", "status": rng.choice(statuses)}))
            elif op == "move":
                workflow.move_task(rng.choice(tasks), MEMBER, {
                    "column_id": rng.choice(all_columns() + [lane]),
                    "position": rng.randint(1, 6),
                })
            elif op == "status":
                workflow.update_task(rng.choice(tasks), MEMBER, {"status": rng.choice(statuses)})
            else:
                victim = rng.choice(tasks)
                workflow.delete_task(victim, MEMBER)
                tasks.remove(victim)
        except Conflict as e:
            assert "WIP limit" in str(e)

        assert_dense()

    placements = workflow.gateway.execute("SELECT task_id FROM kanban_tasks")
    assert sorted(r["task_id"] for r in placements) == sorted(tasks)
    defaults = [b for b in workflow.list_boards(project, OWNER) if b["is_default"]]
    assert len(defaults) == 1
    capped = workflow.gateway.execute("SELECT COUNT(*) AS n FROM kanban_tasks WHERE column_id = ?", (lane,))
    assert capped[0]["n"] <= 2


def test_move_status_agrees_with_column_role(workflow, project, board, columns):
    """After a move into a role column the task's status is that role"""
    rng = random.Random(99)
    cols = list(columns(board).values())
    tasks = [workflow.create_task(project, MEMBER, {"title": f"T{i}"}) for i in range(5)]

    for _ in range(30):
        column = rng.choice(cols)
        task_id = rng.choice(tasks)
        workflow.move_task(task_id, MEMBER, {"column_id": column["id"], "position": rng.randint(1, 4)})
        assert workflow.get_task(task_id, MEMBER)["status"] == column["role"]
