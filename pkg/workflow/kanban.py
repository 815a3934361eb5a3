"""
Kanban structure: boards and their ordered columns.

Structural invariants kept here:
  - exactly one default board per project once the project has a board
  - column positions on a board are exactly 1..M
  - the only board / the default board / the only column cannot be deleted
Placements riding on a removed board or column are migrated before the
structure disappears (see PlacementSync for the per-column ordering).
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

from .context import WorkflowContext
from .errors import Conflict, InvalidArgument, NotFound
from .placement import PlacementSync
from .projects import ProjectDirectory
from .schema import DEFAULT_COLUMNS, Board, ColumnRole, Task, TaskStatus
from .tasks import subtask_counts

logger = logging.getLogger(__name__)


def _validate_wip_limit(value: Any) -> Optional[int]:
    """None or 0 means unlimited; anything else must be a positive integer."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidArgument("WIP limit must be a positive integer")
    try:
        limit = int(value)
    except (TypeError, ValueError):
        raise InvalidArgument("WIP limit must be a positive integer")
    if limit == 0:
        return None
    if limit < 0:
        raise InvalidArgument("WIP limit must be a positive integer")
    return limit


class KanbanStructure:
    """Boards, columns and redistribution on structural deletes."""

    def __init__(self, projects: ProjectDirectory, placement: PlacementSync):
        self.projects = projects
        self.placement = placement

    # ── Boards ───────────────────────────────────────────────────────────────

    def get_board_row(self, ctx: WorkflowContext, board_id: int) -> Board:
        row = ctx.tx.one("SELECT * FROM kanban_boards WHERE id = ?", (board_id,))
        if not row:
            raise NotFound("Kanban board not found")
        return Board.from_row(row)

    def _board_count(self, ctx: WorkflowContext, project_id: int) -> int:
        return ctx.tx.scalar("SELECT COUNT(*) FROM kanban_boards WHERE project_id = ?", (project_id,)) or 0

    def _clear_default(self, ctx: WorkflowContext, project_id: int, keep_board_id: Optional[int] = None) -> None:
        if keep_board_id is None:
            ctx.tx.execute("UPDATE kanban_boards SET is_default = 0 WHERE project_id = ?", (project_id,))
        else:
            ctx.tx.execute(
                "UPDATE kanban_boards SET is_default = 0 WHERE project_id = ? AND id != ?",
                (project_id, keep_board_id),
            )

    def create_board(self, ctx: WorkflowContext, project_id: int, title: str,
                     description: str = "", is_default: bool = False) -> int:
        """Create a board seeded with the five standard columns."""
        self.projects.get_project(ctx, project_id)
        self.projects.require_manager(ctx, project_id, "You do not have permission to create boards")
        if not title or not str(title).strip():
            raise InvalidArgument("Board title is required")

        # A project's first board is its default whatever the caller asked for
        is_default = bool(is_default) or self._board_count(ctx, project_id) == 0
        if is_default:
            self._clear_default(ctx, project_id)

        board_id = ctx.tx.insert(
            "INSERT INTO kanban_boards (project_id, title, description, is_default) VALUES (?, ?, ?, ?)",
            (project_id, str(title).strip(), description or "", 1 if is_default else 0),
        )
        for position, (column_title, role) in enumerate(DEFAULT_COLUMNS, start=1):
            ctx.tx.insert(
                "INSERT INTO kanban_columns (board_id, title, position, role) VALUES (?, ?, ?, ?)",
                (board_id, column_title, position, role.value),
            )
        ctx.emit("board_created", board_id=board_id, project_id=project_id)
        logger.info(f"Created board {board_id} on project {project_id} (default={is_default})")
        return board_id

    def update_board(self, ctx: WorkflowContext, board_id: int, fields: Dict[str, Any]) -> None:
        board = self.get_board_row(ctx, board_id)
        self.projects.require_manager(ctx, board.project_id, "You do not have permission to update this board")

        title = fields.get("title", board.title)
        if not title or not str(title).strip():
            raise InvalidArgument("Board title is required")
        description = fields.get("description", board.description)

        is_default = board.is_default
        if fields.get("is_default") is not None:
            wanted = bool(fields["is_default"])
            if board.is_default and not wanted:
                raise Conflict("Cannot unset the default kanban board. Set another board as default first.")
            if wanted and not board.is_default:
                self._clear_default(ctx, board.project_id, keep_board_id=board_id)
            is_default = wanted

        ctx.tx.execute(
            "UPDATE kanban_boards SET title = ?, description = ?, is_default = ? WHERE id = ?",
            (str(title).strip(), description or "", 1 if is_default else 0, board_id),
        )

    def delete_board(self, ctx: WorkflowContext, board_id: int) -> int:
        """
        Delete a non-default board, migrating its placements first.

        Each task lands on the project's default board in the column whose
        role matches its status, else that board's first column, appended at
        the end. Returns the number of migrated placements.
        """
        board = self.get_board_row(ctx, board_id)
        self.projects.require_manager(ctx, board.project_id, "You do not have permission to delete this board")

        if self._board_count(ctx, board.project_id) <= 1:
            raise Conflict("Cannot delete the only kanban board for this project")
        if board.is_default:
            raise Conflict("Cannot delete the default kanban board. Set another board as default first.")

        riding = ctx.tx.execute(
            """
            SELECT kt.id, kt.task_id, t.status
            FROM kanban_tasks kt
            JOIN kanban_columns kc ON kt.column_id = kc.id
            JOIN tasks t ON kt.task_id = t.id
            WHERE kc.board_id = ?
            ORDER BY kc.position, kt.position
            """,
            (board_id,),
        )
        target_board_id = ctx.tx.scalar(
            "SELECT id FROM kanban_boards WHERE project_id = ? AND id != ? ORDER BY is_default DESC, id LIMIT 1",
            (board.project_id, board_id),
        )

        migrated = 0
        for row in riding:
            ctx.tx.execute("DELETE FROM kanban_tasks WHERE id = ?", (row["id"],))
            column = self.placement.column_for_status(ctx, target_board_id, TaskStatus(row["status"]))
            if column is not None:
                self.placement.append(ctx, row["task_id"], column.id)
                migrated += 1

        ctx.tx.execute("DELETE FROM kanban_boards WHERE id = ?", (board_id,))
        ctx.emit("board_deleted", board_id=board_id, project_id=board.project_id, migrated=migrated)
        logger.info(f"Deleted board {board_id}; migrated {migrated} task(s) to board {target_board_id}")
        return migrated

    def get_board(self, ctx: WorkflowContext, board_id: int) -> Dict[str, Any]:
        """Board with ordered columns, each with its ordered tasks."""
        board = self.get_board_row(ctx, board_id)
        self.projects.require_member(ctx, board.project_id, "You do not have access to this board")

        rows = ctx.tx.execute(
            """
            SELECT t.*, kt.column_id, kt.position AS board_position
            FROM kanban_tasks kt
            JOIN kanban_columns kc ON kt.column_id = kc.id
            JOIN tasks t ON kt.task_id = t.id
            WHERE kc.board_id = ?
            ORDER BY kt.column_id, kt.position
            """,
            (board_id,),
        )
        counts = subtask_counts(ctx, [r["id"] for r in rows])
        by_column: Dict[int, List[Dict[str, Any]]] = {}
        for row in rows:
            item = Task.from_row(row).to_dict()
            item["position"] = row["board_position"]
            item["subtask_count"] = counts.get(row["id"], {"total": 0, "completed": 0})
            by_column.setdefault(row["column_id"], []).append(item)

        data = board.to_dict()
        data["columns"] = []
        for column in self.placement.board_columns(ctx, board_id):
            col = column.to_dict()
            col["tasks"] = by_column.get(column.id, [])
            data["columns"].append(col)
        return data

    def list_boards(self, ctx: WorkflowContext, project_id: int) -> List[Dict[str, Any]]:
        self.projects.require_member(ctx, project_id)
        rows = ctx.tx.execute(
            """
            SELECT kb.*,
                   (SELECT COUNT(*) FROM kanban_columns kc WHERE kc.board_id = kb.id) AS column_count,
                   (SELECT COUNT(*) FROM kanban_tasks kt
                      JOIN kanban_columns kc ON kt.column_id = kc.id
                     WHERE kc.board_id = kb.id) AS task_count
            FROM kanban_boards kb
            WHERE kb.project_id = ?
            ORDER BY kb.is_default DESC, kb.title
            """,
            (project_id,),
        )
        boards = []
        for row in rows:
            item = Board.from_row(row).to_dict()
            item["column_count"] = row["column_count"]
            item["task_count"] = row["task_count"]
            boards.append(item)
        return boards

    # ── Columns ──────────────────────────────────────────────────────────────

    def _renumber_columns(self, ctx: WorkflowContext, board_id: int, ordered_ids: Sequence[int]) -> None:
        """Assign positions 1..M in the given order (two-phase for UNIQUE(board_id, position))."""
        ctx.tx.execute("UPDATE kanban_columns SET position = -id WHERE board_id = ?", (board_id,))
        for position, column_id in enumerate(ordered_ids, start=1):
            ctx.tx.execute("UPDATE kanban_columns SET position = ? WHERE id = ?", (position, column_id))

    def create_column(self, ctx: WorkflowContext, board_id: int, title: str, description: str = "",
                      position: Optional[int] = None, wip_limit: Optional[int] = None,
                      role: Any = None) -> int:
        board = self.get_board_row(ctx, board_id)
        self.projects.require_manager(ctx, board.project_id, "You do not have permission to update this board")
        if not title or not str(title).strip():
            raise InvalidArgument("Column title is required")
        wip_limit = _validate_wip_limit(wip_limit)
        column_role = ColumnRole.parse(role)

        existing = [c.id for c in self.placement.board_columns(ctx, board_id)]
        end = len(existing) + 1
        if position is None:
            position = end
        else:
            try:
                position = int(position)
            except (TypeError, ValueError):
                raise InvalidArgument("Column position must be an integer")
            position = max(1, min(position, end))

        # Park existing columns on negative positions so the new one can take its slot
        ctx.tx.execute("UPDATE kanban_columns SET position = -id WHERE board_id = ?", (board_id,))
        column_id = ctx.tx.insert(
            """
            INSERT INTO kanban_columns (board_id, title, description, position, wip_limit, role)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (board_id, str(title).strip(), description or "", position, wip_limit, column_role.value),
        )
        ordered = list(existing)
        ordered.insert(position - 1, column_id)
        self._renumber_columns(ctx, board_id, ordered)
        logger.info(f"Created column {column_id} on board {board_id} at position {position}")
        return column_id

    def update_column(self, ctx: WorkflowContext, column_id: int, fields: Dict[str, Any]) -> None:
        column = self.placement.get_column(ctx, column_id)
        board = self.get_board_row(ctx, column.board_id)
        self.projects.require_manager(ctx, board.project_id, "You do not have permission to update this column")

        title = fields.get("title", column.title)
        if not title or not str(title).strip():
            raise InvalidArgument("Column title is required")
        description = fields.get("description", column.description)
        wip_limit = _validate_wip_limit(fields["wip_limit"]) if "wip_limit" in fields else column.wip_limit
        role = ColumnRole.parse(fields["role"]) if "role" in fields else column.role

        ctx.tx.execute(
            "UPDATE kanban_columns SET title = ?, description = ?, wip_limit = ?, role = ? WHERE id = ?",
            (str(title).strip(), description or "", wip_limit, role.value, column_id),
        )

    def delete_column(self, ctx: WorkflowContext, column_id: int) -> int:
        """
        Delete a column, appending its placements (in order) to the first
        remaining column on the board, then close the gap in column positions.
        Returns the number of migrated placements.
        """
        column = self.placement.get_column(ctx, column_id)
        board = self.get_board_row(ctx, column.board_id)
        self.projects.require_manager(ctx, board.project_id, "You do not have permission to delete this column")

        remaining = [c for c in self.placement.board_columns(ctx, board.id) if c.id != column_id]
        if not remaining:
            raise Conflict("Cannot delete the only column in a board")
        target = remaining[0]

        task_ids = self.placement.column_task_ids(ctx, column_id)
        ctx.tx.execute("DELETE FROM kanban_tasks WHERE column_id = ?", (column_id,))
        for task_id in task_ids:
            self.placement.append(ctx, task_id, target.id)
        self.placement.renumber(ctx, target.id)

        ctx.tx.execute("DELETE FROM kanban_columns WHERE id = ?", (column_id,))
        self._renumber_columns(ctx, board.id, [c.id for c in remaining])
        ctx.emit("column_deleted", column_id=column_id, board_id=board.id, migrated=len(task_ids))
        logger.info(f"Deleted column {column_id}; moved {len(task_ids)} task(s) to column {target.id}")
        return len(task_ids)

    def reorder_columns(self, ctx: WorkflowContext, board_id: int, column_ids: Sequence[Any]) -> None:
        """Accepts only a permutation of the board's current columns."""
        board = self.get_board_row(ctx, board_id)
        self.projects.require_member(ctx, board.project_id, "You do not have access to this board")

        invalid = InvalidArgument("Invalid column order. All columns must be included exactly once.")
        if not column_ids or isinstance(column_ids, (str, bytes)):
            raise invalid
        try:
            wanted = [int(c) for c in column_ids]
        except (TypeError, ValueError):
            raise invalid

        current = {c.id for c in self.placement.board_columns(ctx, board_id)}
        if len(wanted) != len(set(wanted)) or set(wanted) != current:
            raise invalid

        self._renumber_columns(ctx, board_id, wanted)
