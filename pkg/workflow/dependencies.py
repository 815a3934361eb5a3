"""
Dependency graph: directed "task depends on prerequisite" edges between
tasks of one project. The edge set is kept acyclic.
"""
import logging
from collections import deque
from typing import Any, Dict, List

from .context import WorkflowContext
from .errors import Conflict, InvalidArgument, NotFound
from .gateway import utc_now
from .projects import ProjectDirectory
from .schema import Dependency, DependencyType, Task

logger = logging.getLogger(__name__)


class DependencyGraph:
    """Adds, removes and lists dependency edges."""

    def __init__(self, projects: ProjectDirectory):
        self.projects = projects

    def _task(self, ctx: WorkflowContext, task_id: Any) -> Task:
        row = ctx.tx.one("SELECT * FROM tasks WHERE id = ?", (task_id,))
        if not row:
            raise NotFound("Task not found")
        return Task.from_row(row)

    def reaches(self, ctx: WorkflowContext, start_id: int, target_id: int) -> bool:
        """
        True if ``target_id`` is reachable from ``start_id`` by following
        prerequisite edges. Iterative BFS with a visited set, so it terminates
        on any graph shape.
        """
        visited = set()
        queue = deque([start_id])
        while queue:
            current = queue.popleft()
            if current == target_id:
                return True
            if current in visited:
                continue
            visited.add(current)
            rows = ctx.tx.execute(
                "SELECT depends_on_task_id FROM task_dependencies WHERE task_id = ?",
                (current,),
            )
            queue.extend(r["depends_on_task_id"] for r in rows if r["depends_on_task_id"] not in visited)
        return False

    def add(self, ctx: WorkflowContext, task_id: int, depends_on_task_id: Any,
            dependency_type: Any = DependencyType.FINISH_TO_START) -> Dependency:
        if not depends_on_task_id:
            raise InvalidArgument("Dependent task ID is required")
        task = self._task(ctx, task_id)
        self.projects.require_member(ctx, task.project_id, "You do not have access to this task")
        prerequisite = self._task(ctx, depends_on_task_id)
        if prerequisite.project_id != task.project_id:
            raise NotFound("Dependent task not found or does not belong to the same project")
        if prerequisite.id == task.id:
            raise InvalidArgument("A task cannot depend on itself")
        dep_type = DependencyType.parse(dependency_type or DependencyType.FINISH_TO_START)

        existing = ctx.tx.one(
            "SELECT id FROM task_dependencies WHERE task_id = ? AND depends_on_task_id = ?",
            (task.id, prerequisite.id),
        )
        if existing:
            raise Conflict("This dependency already exists")

        # task → prerequisite closes a cycle iff prerequisite already leads back to task
        if self.reaches(ctx, prerequisite.id, task.id):
            raise Conflict("This dependency would create a circular reference")

        edge_id = ctx.tx.insert(
            """
            INSERT INTO task_dependencies (task_id, depends_on_task_id, dependency_type, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (task.id, prerequisite.id, dep_type.value, utc_now()),
        )
        ctx.emit("dependency_added", dependency_id=edge_id, task_id=task.id,
                 depends_on_task_id=prerequisite.id, project_id=task.project_id)
        logger.info(f"Task {task.id} now depends on task {prerequisite.id} ({dep_type.value})")
        return Dependency.from_row(ctx.tx.one("SELECT * FROM task_dependencies WHERE id = ?", (edge_id,)))

    def remove(self, ctx: WorkflowContext, dependency_id: int) -> None:
        row = ctx.tx.one(
            """
            SELECT td.id, t.project_id
            FROM task_dependencies td
            JOIN tasks t ON td.task_id = t.id
            WHERE td.id = ?
            """,
            (dependency_id,),
        )
        if not row:
            raise NotFound("Dependency not found")
        self.projects.require_member(ctx, row["project_id"], "Dependency not found")
        ctx.tx.execute("DELETE FROM task_dependencies WHERE id = ?", (dependency_id,))

    def prerequisites(self, ctx: WorkflowContext, task_id: int) -> List[Dict[str, Any]]:
        """Direct prerequisites of the task, with their title and status."""
        return ctx.tx.execute(
            """
            SELECT td.*, t.title AS depends_on_title, t.status AS depends_on_status
            FROM task_dependencies td
            JOIN tasks t ON td.depends_on_task_id = t.id
            WHERE td.task_id = ?
            ORDER BY td.id
            """,
            (task_id,),
        )

    def dependents(self, ctx: WorkflowContext, task_id: int) -> List[Dict[str, Any]]:
        """Tasks naming this task as a prerequisite, with their title and status."""
        return ctx.tx.execute(
            """
            SELECT td.*, t.title AS task_title, t.status AS task_status
            FROM task_dependencies td
            JOIN tasks t ON td.task_id = t.id
            WHERE td.depends_on_task_id = ?
            ORDER BY td.id
            """,
            (task_id,),
        )
