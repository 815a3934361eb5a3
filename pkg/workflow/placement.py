"""
Placement synchronizer: keeps task status and kanban placement consistent.

Status ⇄ column mapping goes through ``Column.role``:

    task created        → default board, column whose role matches the status
                          (else the board's first column), appended at the end
    status updated      → same board, column whose role matches the new status,
                          appended at the end; no matching column → unchanged
    task moved (C, P)   → WIP check, remove, shift, insert, re-derive status
                          from C's role, renumber C

Every operation leaves each column it touched with positions exactly 1..N.
Placement rows carry UNIQUE(column_id, position), so shifts and renumbers go
through negative positions first to avoid transient collisions.
"""
import logging
from typing import List, Optional

from .context import WorkflowContext
from .errors import Conflict, InvalidArgument, NotFound
from .gateway import utc_now
from .schema import Column, ColumnRole, Placement, Task, TaskStatus

logger = logging.getLogger(__name__)


class PlacementSync:
    """Maps tasks onto columns and maintains dense positions."""

    # ── Lookups ──────────────────────────────────────────────────────────────

    def get_placement(self, ctx: WorkflowContext, task_id: int) -> Optional[Placement]:
        row = ctx.tx.one(
            """
            SELECT kt.*, kc.board_id
            FROM kanban_tasks kt
            JOIN kanban_columns kc ON kt.column_id = kc.id
            WHERE kt.task_id = ?
            """,
            (task_id,),
        )
        return Placement.from_row(row) if row else None

    def get_column(self, ctx: WorkflowContext, column_id: int) -> Column:
        row = ctx.tx.one("SELECT * FROM kanban_columns WHERE id = ?", (column_id,))
        if not row:
            raise NotFound("Kanban column not found")
        return Column.from_row(row)

    def board_columns(self, ctx: WorkflowContext, board_id: int) -> List[Column]:
        rows = ctx.tx.execute(
            "SELECT * FROM kanban_columns WHERE board_id = ? ORDER BY position, id",
            (board_id,),
        )
        return [Column.from_row(r) for r in rows]

    def column_for_role(self, ctx: WorkflowContext, board_id: int, role: ColumnRole) -> Optional[Column]:
        """Leftmost column on the board carrying ``role``."""
        if role is ColumnRole.NONE:
            return None
        row = ctx.tx.one(
            "SELECT * FROM kanban_columns WHERE board_id = ? AND role = ? ORDER BY position, id LIMIT 1",
            (board_id, role.value),
        )
        return Column.from_row(row) if row else None

    def first_column(self, ctx: WorkflowContext, board_id: int) -> Optional[Column]:
        row = ctx.tx.one(
            "SELECT * FROM kanban_columns WHERE board_id = ? ORDER BY position, id LIMIT 1",
            (board_id,),
        )
        return Column.from_row(row) if row else None

    def column_for_status(self, ctx: WorkflowContext, board_id: int, status: TaskStatus) -> Optional[Column]:
        """Column matching the status, falling back to the first column."""
        column = self.column_for_role(ctx, board_id, ColumnRole.for_status(status))
        return column or self.first_column(ctx, board_id)

    def default_board_id(self, ctx: WorkflowContext, project_id: int) -> Optional[int]:
        return ctx.tx.scalar(
            "SELECT id FROM kanban_boards WHERE project_id = ? AND is_default = 1 ORDER BY id LIMIT 1",
            (project_id,),
        )

    def column_count(self, ctx: WorkflowContext, column_id: int) -> int:
        return ctx.tx.scalar("SELECT COUNT(*) FROM kanban_tasks WHERE column_id = ?", (column_id,)) or 0

    def column_task_ids(self, ctx: WorkflowContext, column_id: int) -> List[int]:
        rows = ctx.tx.execute(
            "SELECT task_id FROM kanban_tasks WHERE column_id = ? ORDER BY position, id",
            (column_id,),
        )
        return [r["task_id"] for r in rows]

    # ── Primitives ───────────────────────────────────────────────────────────

    def renumber(self, ctx: WorkflowContext, column_id: int) -> None:
        """Rewrite the column's positions to exactly 1..N, keeping order."""
        rows = ctx.tx.execute(
            "SELECT id FROM kanban_tasks WHERE column_id = ? ORDER BY position, id",
            (column_id,),
        )
        ctx.tx.execute("UPDATE kanban_tasks SET position = -position WHERE column_id = ?", (column_id,))
        for index, row in enumerate(rows, start=1):
            ctx.tx.execute("UPDATE kanban_tasks SET position = ? WHERE id = ?", (index, row["id"]))
        logger.debug(f"Renumbered column {column_id} ({len(rows)} placements)")

    def append(self, ctx: WorkflowContext, task_id: int, column_id: int) -> int:
        """Place the task at the end of the column. Returns its position."""
        max_position = ctx.tx.scalar(
            "SELECT MAX(position) FROM kanban_tasks WHERE column_id = ?", (column_id,)
        )
        position = (max_position or 0) + 1
        ctx.tx.insert(
            "INSERT INTO kanban_tasks (column_id, task_id, position) VALUES (?, ?, ?)",
            (column_id, task_id, position),
        )
        return position

    def remove(self, ctx: WorkflowContext, task_id: int) -> Optional[Placement]:
        """Drop the task's placement and compact the column it left."""
        current = self.get_placement(ctx, task_id)
        if current is None:
            return None
        ctx.tx.execute("DELETE FROM kanban_tasks WHERE id = ?", (current.id,))
        self.renumber(ctx, current.column_id)
        return current

    def _open_slot(self, ctx: WorkflowContext, column_id: int, position: int) -> None:
        """Shift every placement at ``position`` or later down by one."""
        ctx.tx.execute(
            "UPDATE kanban_tasks SET position = -(position + 1) WHERE column_id = ? AND position >= ?",
            (column_id, position),
        )
        ctx.tx.execute(
            "UPDATE kanban_tasks SET position = -position WHERE column_id = ? AND position < 0",
            (column_id,),
        )

    # ── Transitions ──────────────────────────────────────────────────────────

    def place_new_task(self, ctx: WorkflowContext, task: Task) -> Optional[Placement]:
        """Put a freshly created task on the project's default board."""
        board_id = self.default_board_id(ctx, task.project_id)
        if board_id is None:
            return None
        column = self.column_for_status(ctx, board_id, task.status)
        if column is None:
            return None
        self.append(ctx, task.id, column.id)
        return self.get_placement(ctx, task.id)

    def sync_status(self, ctx: WorkflowContext, task_id: int, status: TaskStatus) -> Optional[Placement]:
        """
        Follow a direct status change on the task's current board.

        Returns the new placement, or None when nothing moved (no placement,
        already in a matching column, or the board has no matching column).
        """
        current = self.get_placement(ctx, task_id)
        if current is None:
            return None
        column = self.get_column(ctx, current.column_id)
        if column.role.status == status:
            return None
        target = self.column_for_role(ctx, current.board_id, ColumnRole.for_status(status))
        if target is None:
            logger.debug(f"Board {current.board_id} has no {status.value} column; task {task_id} stays put")
            return None
        self.remove(ctx, task_id)
        self.append(ctx, task_id, target.id)
        return self.get_placement(ctx, task_id)

    def move(self, ctx: WorkflowContext, task: Task, column: Column, position: int) -> Optional[TaskStatus]:
        """
        Move ``task`` to ``column`` at ``position`` (1-based).

        ``position`` is read against the column as it stands before the move:
        moving down within a column lands the task just ahead of the card
        that held ``position``. Returns the new status if the column's role
        changed it, otherwise None.
        """
        try:
            position = int(position)
        except (TypeError, ValueError):
            raise InvalidArgument("Column ID and position are required")
        if position < 1:
            raise InvalidArgument("Position must be 1 or greater")

        current = self.get_placement(ctx, task.id)
        moving_in = current is None or current.column_id != column.id
        if column.wip_limit is not None and moving_in:
            if self.column_count(ctx, column.id) >= column.wip_limit:
                raise Conflict(f"Cannot move task to this column. WIP limit of {column.wip_limit} reached.")

        if current is not None:
            ctx.tx.execute("DELETE FROM kanban_tasks WHERE id = ?", (current.id,))
            self.renumber(ctx, current.column_id)
            if current.column_id == column.id and current.position < position:
                position -= 1

        position = min(position, self.column_count(ctx, column.id) + 1)
        self._open_slot(ctx, column.id, position)
        ctx.tx.insert(
            "INSERT INTO kanban_tasks (column_id, task_id, position) VALUES (?, ?, ?)",
            (column.id, task.id, position),
        )

        new_status = column.role.status
        changed = None
        if new_status is not None and new_status != task.status:
            ctx.tx.execute(
                "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ?",
                (new_status.value, utc_now(), task.id),
            )
            changed = new_status

        self.renumber(ctx, column.id)
        return changed
