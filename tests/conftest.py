"""Shared fixtures for the workflow engine tests."""

import sys
from pathlib import Path

import pytest

# Ensure the repository root is importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from pkg.workflow import SQLiteGateway, Workflow  # noqa: E402

OWNER = "alice"
MANAGER = "bob"
MEMBER = "carol"
OUTSIDER = "mallory"


@pytest.fixture
def workflow(tmp_path):
    """Workflow over a fresh file-backed database."""
    return Workflow(SQLiteGateway(str(tmp_path / "workflow.db")))


@pytest.fixture
def project(workflow):
    """Project owned by alice, with bob as manager and carol as member."""
    project_id = workflow.create_project(OWNER, "Launch", "Seed round launch")
    workflow.add_member(project_id, OWNER, MANAGER, "manager")
    workflow.add_member(project_id, OWNER, MEMBER, "member")
    return project_id


@pytest.fixture
def board(workflow, project):
    """The project's first (and therefore default) board."""
    return workflow.create_board(project, OWNER, {"title": "Main"})


@pytest.fixture
def columns(workflow):
    """columns(board_id) → {title: column dict with its ordered tasks}."""
    def _columns(board_id, caller=OWNER):
        return {c["title"]: c for c in workflow.get_board(board_id, caller)["columns"]}
    return _columns


@pytest.fixture
def task_ids(columns):
    """task_ids(board_id, title) → ids in the column, in position order."""
    def _task_ids(board_id, title):
        return [t["id"] for t in columns(board_id)[title]["tasks"]]
    return _task_ids


@pytest.fixture
def assert_dense(workflow):
    """Check both density invariants across the whole database."""
    def _check():
        by_column = {}
        for row in workflow.gateway.execute("SELECT column_id, position FROM kanban_tasks"):
            by_column.setdefault(row["column_id"], []).append(row["position"])
        for column_id, positions in by_column.items():
            assert sorted(positions) == list(range(1, len(positions) + 1)), f"column {column_id}: {positions}"

        by_board = {}
        for row in workflow.gateway.execute("SELECT board_id, position FROM kanban_columns"):
            by_board.setdefault(row["board_id"], []).append(row["position"])
        for board_id, positions in by_board.items():
            assert sorted(positions) == list(range(1, len(positions) + 1)), f"board {board_id}: {positions}"
    return _check
