"""
Workflow facade: the entry points controllers call.

Every public operation runs inside exactly one gateway transaction. The
sub-managers share a WorkflowContext for that transaction; if anything
raises, every partial write (placements, renumbering, cascades) rolls back
and the caller sees the WorkflowError that was raised. Events queued during the
operation are published only after commit.
"""
import logging
from contextlib import contextmanager
from dataclasses import asdict
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .config import WorkflowConfig
from .context import WorkflowContext
from .dependencies import DependencyGraph
from .errors import InvalidArgument, NotFound, WorkflowError
from .events import WorkflowEventBus
from .gateway import SQLiteGateway
from .kanban import KanbanStructure
from .placement import PlacementSync
from .projects import ProjectDirectory
from .schema import MemberRole
from .tasks import TaskStore

logger = logging.getLogger(__name__)


class Workflow:
    """Composes the task, kanban, placement and dependency managers."""

    def __init__(self, gateway: SQLiteGateway, events: Optional[WorkflowEventBus] = None):
        self.gateway = gateway
        self.events = events or WorkflowEventBus()
        self.projects = ProjectDirectory()
        self.placement = PlacementSync()
        self.tasks = TaskStore(self.projects, self.placement)
        self.kanban = KanbanStructure(self.projects, self.placement)
        self.dependencies = DependencyGraph(self.projects)

    @classmethod
    def from_config(cls, config: WorkflowConfig) -> "Workflow":
        return cls(SQLiteGateway(config.db_path, busy_timeout_ms=config.busy_timeout_ms))

    @contextmanager
    def _operation(self, name: str, caller: Optional[str], write: bool = True) -> Iterator[WorkflowContext]:
        """One transaction per operation; publish queued events after commit."""
        try:
            with self.gateway.transaction(write) as tx:
                ctx = WorkflowContext(tx, caller)
                yield ctx
        except WorkflowError as e:
            logger.warning(f"{name} rejected for {caller}: {e.kind}: {e.message}")
            raise
        for event_type, payload in ctx.events:
            self.events.publish(event_type, **payload)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Projects
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def create_project(self, caller: str, title: str, description: str = "") -> int:
        with self._operation("create_project", caller) as ctx:
            return self.projects.create_project(ctx, title, description)

    def delete_project(self, project_id: int, caller: str) -> None:
        with self._operation("delete_project", caller) as ctx:
            self.projects.delete_project(ctx, project_id)

    def add_member(self, project_id: int, caller: str, user_id: str, role: Any = MemberRole.MEMBER) -> None:
        with self._operation("add_member", caller) as ctx:
            self.projects.add_member(ctx, project_id, user_id, role)

    def remove_member(self, project_id: int, caller: str, user_id: str) -> None:
        with self._operation("remove_member", caller) as ctx:
            self.projects.remove_member(ctx, project_id, user_id)

    def list_members(self, project_id: int, caller: str) -> List[Dict[str, Any]]:
        with self._operation("list_members", caller, write=False) as ctx:
            return self.projects.list_members(ctx, project_id)

    def add_milestone(self, project_id: int, caller: str, title: str,
                      description: str = "", due_date: Optional[str] = None) -> int:
        with self._operation("add_milestone", caller) as ctx:
            return self.projects.add_milestone(ctx, project_id, title, description, due_date)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Tasks
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def create_task(self, project_id: int, caller: str, fields: Dict[str, Any]) -> int:
        with self._operation("create_task", caller) as ctx:
            return self.tasks.create(ctx, project_id, fields).id

    def update_task(self, task_id: int, caller: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        with self._operation("update_task", caller) as ctx:
            _, after = self.tasks.update(ctx, task_id, fields)
            return after.to_dict()

    def delete_task(self, task_id: int, caller: str) -> None:
        with self._operation("delete_task", caller) as ctx:
            self.tasks.delete(ctx, task_id)

    def get_task(self, task_id: int, caller: str) -> Dict[str, Any]:
        with self._operation("get_task", caller, write=False) as ctx:
            return self.tasks.get_accessible(ctx, task_id).to_dict()

    def get_task_details(self, task_id: int, caller: str) -> Dict[str, Any]:
        with self._operation("get_task_details", caller, write=False) as ctx:
            data = self.tasks.details(ctx, task_id)
            data["prerequisites"] = self.dependencies.prerequisites(ctx, task_id)
            data["dependents"] = self.dependencies.dependents(ctx, task_id)
            return data

    def get_project_tasks(self, project_id: int, caller: str,
                          filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        with self._operation("get_project_tasks", caller, write=False) as ctx:
            return self.tasks.list_project_tasks(ctx, project_id, filters)

    def get_task_status_counts(self, project_id: int, caller: str) -> Dict[str, int]:
        with self._operation("get_task_status_counts", caller, write=False) as ctx:
            return self.tasks.status_counts(ctx, project_id)

    # ── Satellites ──

    def add_subtask(self, task_id: int, caller: str, title: str, description: str = "") -> int:
        with self._operation("add_subtask", caller) as ctx:
            return self.tasks.add_subtask(ctx, task_id, title, description)

    def update_subtask(self, subtask_id: int, caller: str, fields: Dict[str, Any]) -> None:
        with self._operation("update_subtask", caller) as ctx:
            self.tasks.update_subtask(ctx, subtask_id, fields)

    def delete_subtask(self, subtask_id: int, caller: str) -> None:
        with self._operation("delete_subtask", caller) as ctx:
            self.tasks.delete_subtask(ctx, subtask_id)

    def add_comment(self, task_id: int, caller: str, comment: str) -> Dict[str, Any]:
        with self._operation("add_comment", caller) as ctx:
            return self.tasks.add_comment(ctx, task_id, comment)

    def delete_comment(self, comment_id: int, caller: str) -> None:
        with self._operation("delete_comment", caller) as ctx:
            self.tasks.delete_comment(ctx, comment_id)

    def start_time_tracking(self, task_id: int, caller: str, description: str = "",
                            is_billable: bool = True) -> Dict[str, Any]:
        with self._operation("start_time_tracking", caller) as ctx:
            entry = self.tasks.start_time_tracking(ctx, task_id, description, is_billable)
            return asdict(entry)

    def stop_time_tracking(self, entry_id: int, caller: str) -> Dict[str, Any]:
        with self._operation("stop_time_tracking", caller) as ctx:
            entry = self.tasks.stop_time_tracking(ctx, entry_id)
            return asdict(entry)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Boards and columns
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def create_board(self, project_id: int, caller: str, fields: Dict[str, Any]) -> int:
        with self._operation("create_board", caller) as ctx:
            return self.kanban.create_board(
                ctx, project_id, fields.get("title"), fields.get("description", ""),
                bool(fields.get("is_default", False)),
            )

    def update_board(self, board_id: int, caller: str, fields: Dict[str, Any]) -> None:
        with self._operation("update_board", caller) as ctx:
            self.kanban.update_board(ctx, board_id, fields)

    def delete_board(self, board_id: int, caller: str) -> None:
        with self._operation("delete_board", caller) as ctx:
            self.kanban.delete_board(ctx, board_id)

    def get_board(self, board_id: int, caller: str) -> Dict[str, Any]:
        with self._operation("get_board", caller, write=False) as ctx:
            return self.kanban.get_board(ctx, board_id)

    def list_boards(self, project_id: int, caller: str) -> List[Dict[str, Any]]:
        with self._operation("list_boards", caller, write=False) as ctx:
            return self.kanban.list_boards(ctx, project_id)

    def create_column(self, board_id: int, caller: str, fields: Dict[str, Any]) -> int:
        with self._operation("create_column", caller) as ctx:
            return self.kanban.create_column(
                ctx, board_id, fields.get("title"), fields.get("description", ""),
                position=fields.get("position"), wip_limit=fields.get("wip_limit"),
                role=fields.get("role"),
            )

    def update_column(self, column_id: int, caller: str, fields: Dict[str, Any]) -> None:
        with self._operation("update_column", caller) as ctx:
            self.kanban.update_column(ctx, column_id, fields)

    def delete_column(self, column_id: int, caller: str) -> None:
        with self._operation("delete_column", caller) as ctx:
            self.kanban.delete_column(ctx, column_id)

    def reorder_columns(self, board_id: int, caller: str, column_ids: Sequence[Any]) -> None:
        with self._operation("reorder_columns", caller) as ctx:
            self.kanban.reorder_columns(ctx, board_id, column_ids)

    def move_task(self, task_id: int, caller: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Move a task to (column_id, position) and re-derive its status."""
        with self._operation("move_task", caller) as ctx:
            column_id = fields.get("column_id")
            position = fields.get("position")
            if column_id is None or position is None:
                raise InvalidArgument("Column ID and position are required")
            task = self.tasks.get_accessible(ctx, task_id, "Task not found or you do not have access to it")
            column = self.placement.get_column(ctx, column_id)
            board = self.kanban.get_board_row(ctx, column.board_id)
            if board.project_id != task.project_id:
                raise NotFound("Kanban column not found or does not belong to the task's project")

            new_status = self.placement.move(ctx, task, column, position)
            placement = self.placement.get_placement(ctx, task_id)
            ctx.emit("task_moved", task_id=task_id, project_id=task.project_id,
                     board_id=board.id, column_id=column.id, position=placement.position)
            if new_status is not None:
                ctx.emit("task_status_changed", task_id=task_id, project_id=task.project_id,
                         old_status=task.status.value, new_status=new_status.value)
            logger.info(f"Moved task {task_id} to column {column.id} at position {placement.position}")
            return {
                "task_id": task_id,
                "column_id": column.id,
                "position": placement.position,
                "status": (new_status or task.status).value,
            }

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Dependencies
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def add_dependency(self, task_id: int, caller: str, fields: Dict[str, Any]) -> int:
        with self._operation("add_dependency", caller) as ctx:
            edge = self.dependencies.add(
                ctx, task_id, fields.get("depends_on_task_id"),
                fields.get("dependency_type") or "finish_to_start",
            )
            return edge.id

    def remove_dependency(self, dependency_id: int, caller: str) -> None:
        with self._operation("remove_dependency", caller) as ctx:
            self.dependencies.remove(ctx, dependency_id)

    def get_dependencies(self, task_id: int, caller: str) -> Dict[str, List[Dict[str, Any]]]:
        with self._operation("get_dependencies", caller, write=False) as ctx:
            self.tasks.get_accessible(ctx, task_id)
            return {
                "prerequisites": self.dependencies.prerequisites(ctx, task_id),
                "dependents": self.dependencies.dependents(ctx, task_id),
            }
