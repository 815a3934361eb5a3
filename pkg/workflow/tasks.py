"""
Task store: task records and their satellites (subtasks, comments, time entries).

Creating a task and changing its status both call into PlacementSync inside
the caller's transaction, so the board never lags behind the task record.
"""
import json
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .context import WorkflowContext
from .errors import Conflict, Forbidden, InvalidArgument, NotFound
from .gateway import utc_now
from .placement import PlacementSync
from .projects import ProjectDirectory
from .schema import Task, TaskPriority, TaskStatus, Subtask, TimeEntry

logger = logging.getLogger(__name__)

# Fields a caller may set on create/update
TASK_FIELDS = (
    "title", "description", "status", "priority", "start_date", "due_date",
    "completed_date", "estimated_hours", "assignee_id", "milestone_id", "tags",
)

SORTABLE_FIELDS = ("title", "status", "priority", "due_date", "created_at")

PRIORITY_RANK = "CASE t.priority WHEN 'urgent' THEN 4 WHEN 'high' THEN 3 WHEN 'medium' THEN 2 ELSE 1 END"


def subtask_counts(ctx: WorkflowContext, task_ids: Iterable[int]) -> Dict[int, Dict[str, int]]:
    """{task_id: {"total": n, "completed": m}} for the given tasks."""
    ids = list(task_ids)
    if not ids:
        return {}
    marks = ",".join("?" for _ in ids)
    rows = ctx.tx.execute(
        f"""
        SELECT task_id, COUNT(*) AS total, SUM(CASE WHEN is_completed = 1 THEN 1 ELSE 0 END) AS completed
        FROM subtasks WHERE task_id IN ({marks}) GROUP BY task_id
        """,
        ids,
    )
    return {r["task_id"]: {"total": r["total"], "completed": r["completed"] or 0} for r in rows}


def _normalize_tags(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        raise InvalidArgument("Tags must be a list of strings")
    return [str(t).strip() for t in value if str(t).strip()]


def _normalize_date(value: Any, name: str) -> Optional[str]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value)[:10]).isoformat()
    except ValueError:
        raise InvalidArgument(f"Invalid {name}: {value}")


def _normalize_hours(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        hours = float(value)
    except (TypeError, ValueError):
        raise InvalidArgument(f"Invalid estimated hours: {value}")
    if hours < 0:
        raise InvalidArgument("Estimated hours cannot be negative")
    return hours


def _parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)


class TaskStore:
    """CRUD for tasks plus subtasks, comments and time tracking."""

    def __init__(self, projects: ProjectDirectory, placement: PlacementSync):
        self.projects = projects
        self.placement = placement

    # ── Lookups ──────────────────────────────────────────────────────────────

    def get(self, ctx: WorkflowContext, task_id: int) -> Task:
        row = ctx.tx.one("SELECT * FROM tasks WHERE id = ?", (task_id,))
        if not row:
            raise NotFound("Task not found")
        return Task.from_row(row)

    def get_accessible(self, ctx: WorkflowContext, task_id: int,
                       message: str = "You do not have access to this task") -> Task:
        task = self.get(ctx, task_id)
        self.projects.require_member(ctx, task.project_id, message)
        return task

    def _check_references(self, ctx: WorkflowContext, project_id: int, values: Dict[str, Any]) -> None:
        if values.get("milestone_id"):
            self.projects.require_milestone(ctx, project_id, values["milestone_id"])
        if values.get("assignee_id") and not self.projects.is_member(ctx, project_id, values["assignee_id"]):
            raise NotFound("Assignee is not a member of this project")

    def _clean(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and normalize whichever task fields are present."""
        values: Dict[str, Any] = {}
        for key in TASK_FIELDS:
            if key not in fields:
                continue
            value = fields[key]
            if key == "title":
                if not value or not str(value).strip():
                    raise InvalidArgument("Task title is required")
                value = str(value).strip()
            elif key == "description":
                value = value or ""
            elif key == "status":
                value = TaskStatus.parse(value)
            elif key == "priority":
                value = TaskPriority.parse(value)
            elif key in ("start_date", "due_date", "completed_date"):
                value = _normalize_date(value, key.replace("_", " "))
            elif key == "estimated_hours":
                value = _normalize_hours(value)
            elif key == "tags":
                value = _normalize_tags(value)
            elif key in ("assignee_id", "milestone_id"):
                value = value or None
            values[key] = value
        return values

    # ── Tasks ────────────────────────────────────────────────────────────────

    def create(self, ctx: WorkflowContext, project_id: int, fields: Dict[str, Any]) -> Task:
        if not project_id or not fields.get("title"):
            raise InvalidArgument("Project ID and task title are required")
        values = self._clean(fields)
        self.projects.require_member(ctx, project_id)
        self._check_references(ctx, project_id, values)

        now = utc_now()
        task_id = ctx.tx.insert(
            """
            INSERT INTO tasks
            (project_id, milestone_id, creator_id, assignee_id, title, description,
             status, priority, start_date, due_date, completed_date, estimated_hours,
             tags, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                project_id,
                values.get("milestone_id"),
                ctx.caller,
                values.get("assignee_id"),
                values["title"],
                values.get("description", ""),
                values.get("status", TaskStatus.TO_DO).value,
                values.get("priority", TaskPriority.MEDIUM).value,
                values.get("start_date"),
                values.get("due_date"),
                values.get("completed_date"),
                values.get("estimated_hours"),
                json.dumps(values.get("tags", [])),
                now,
                now,
            ),
        )
        task = self.get(ctx, task_id)
        placement = self.placement.place_new_task(ctx, task)
        ctx.emit("task_created", task_id=task_id, project_id=project_id,
                 column_id=placement.column_id if placement else None)
        logger.info(f"Created task {task_id} in project {project_id} ({task.status.value})")
        return task

    def update(self, ctx: WorkflowContext, task_id: int, fields: Dict[str, Any]) -> Tuple[Task, Task]:
        """Partial update. Returns (before, after)."""
        before = self.get_accessible(ctx, task_id, "You do not have access to update this task")
        values = self._clean(fields)
        self._check_references(ctx, before.project_id, values)

        if values:
            assignments = []
            params: List[Any] = []
            for key, value in values.items():
                if isinstance(value, (TaskStatus, TaskPriority)):
                    value = value.value
                elif key == "tags":
                    value = json.dumps(value)
                assignments.append(f"{key} = ?")
                params.append(value)
            assignments.append("updated_at = ?")
            params.extend([utc_now(), task_id])
            ctx.tx.execute(f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?", params)

        after = self.get(ctx, task_id)
        if after.status != before.status:
            self.placement.sync_status(ctx, task_id, after.status)
            ctx.emit("task_status_changed", task_id=task_id, project_id=after.project_id,
                     old_status=before.status.value, new_status=after.status.value)
        ctx.emit("task_updated", task_id=task_id, project_id=after.project_id, fields=sorted(values))
        return before, after

    def delete(self, ctx: WorkflowContext, task_id: int) -> None:
        """Creator, assignee, project owner or an owner/manager member may delete."""
        task = self.get(ctx, task_id)
        project = self.projects.get_project(ctx, task.project_id)
        role = self.projects.member_role(ctx, task.project_id, ctx.caller)
        allowed = (
            ctx.caller is not None
            and (
                task.creator_id == ctx.caller
                or task.assignee_id == ctx.caller
                or project["owner_id"] == ctx.caller
                or (role is not None and role.can_manage)
            )
        )
        if not allowed:
            if role is None:
                raise NotFound("Task not found")
            raise Forbidden("You do not have permission to delete this task")

        self.placement.remove(ctx, task_id)
        # Subtasks, comments, time entries and dependency edges cascade
        ctx.tx.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        ctx.emit("task_deleted", task_id=task_id, project_id=task.project_id)
        logger.info(f"Deleted task {task_id}")

    def details(self, ctx: WorkflowContext, task_id: int) -> Dict[str, Any]:
        task = self.get_accessible(ctx, task_id)
        data = task.to_dict()
        data["subtasks"] = ctx.tx.execute("SELECT * FROM subtasks WHERE task_id = ? ORDER BY id", (task_id,))
        data["comments"] = ctx.tx.execute(
            "SELECT * FROM task_comments WHERE task_id = ? ORDER BY created_at DESC, id DESC", (task_id,)
        )
        entries = ctx.tx.execute(
            "SELECT * FROM time_entries WHERE task_id = ? ORDER BY start_time DESC, id DESC", (task_id,)
        )
        data["time_entries"] = entries
        data["total_time_spent"] = sum(e["duration"] or 0 for e in entries)
        placement = self.placement.get_placement(ctx, task_id)
        data["placement"] = (
            {"board_id": placement.board_id, "column_id": placement.column_id, "position": placement.position}
            if placement else None
        )
        return data

    def list_project_tasks(self, ctx: WorkflowContext, project_id: int,
                           filters: Optional[Dict[str, Any]] = None,
                           today: Optional[date] = None) -> List[Dict[str, Any]]:
        """Project tasks with filtering, sorting and pagination."""
        self.projects.require_member(ctx, project_id)
        filters = filters or {}
        today = today or datetime.now(timezone.utc).date()

        sql = """
            SELECT t.*, m.title AS milestone_title
            FROM tasks t
            LEFT JOIN project_milestones m ON t.milestone_id = m.id
            WHERE t.project_id = ?
        """
        params: List[Any] = [project_id]

        if filters.get("status"):
            sql += " AND t.status = ?"
            params.append(TaskStatus.parse(filters["status"]).value)
        if filters.get("priority"):
            sql += " AND t.priority = ?"
            params.append(TaskPriority.parse(filters["priority"]).value)
        if filters.get("assignee_id"):
            if filters["assignee_id"] == "unassigned":
                sql += " AND t.assignee_id IS NULL"
            else:
                sql += " AND t.assignee_id = ?"
                params.append(filters["assignee_id"])
        if filters.get("milestone_id"):
            if filters["milestone_id"] == "without_milestone":
                sql += " AND t.milestone_id IS NULL"
            else:
                sql += " AND t.milestone_id = ?"
                params.append(filters["milestone_id"])
        if filters.get("search"):
            sql += " AND (t.title LIKE ? OR t.description LIKE ?)"
            term = f"%{filters['search']}%"
            params.extend([term, term])
        if filters.get("due_date"):
            bucket = filters["due_date"]
            day = today.isoformat()
            week = (today + timedelta(days=7)).isoformat()
            if bucket == "overdue":
                sql += " AND t.due_date < ? AND t.status != 'done'"
                params.append(day)
            elif bucket == "today":
                sql += " AND t.due_date = ?"
                params.append(day)
            elif bucket == "upcoming":
                sql += " AND t.due_date > ? AND t.due_date <= ?"
                params.extend([day, week])
            elif bucket == "future":
                sql += " AND t.due_date > ?"
                params.append(week)
            elif bucket == "no_date":
                sql += " AND t.due_date IS NULL"
            else:
                raise InvalidArgument(f"Invalid due date filter: {bucket}")
        if filters.get("tag"):
            sql += " AND EXISTS (SELECT 1 FROM json_each(t.tags) WHERE json_each.value = ?)"
            params.append(filters["tag"])

        sql += " ORDER BY " + self._order_by(filters.get("sort"))

        if filters.get("limit") is not None:
            try:
                limit = int(filters["limit"]) or 50
                offset = int(filters.get("offset") or 0)
            except (TypeError, ValueError):
                raise InvalidArgument("Limit and offset must be integers")
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])

        rows = ctx.tx.execute(sql, params)
        counts = subtask_counts(ctx, [r["id"] for r in rows])
        tasks = []
        for row in rows:
            item = Task.from_row(row).to_dict()
            item["milestone_title"] = row.get("milestone_title")
            item["subtask_count"] = counts.get(row["id"], {"total": 0, "completed": 0})
            tasks.append(item)
        return tasks

    @staticmethod
    def _order_by(sort: Optional[str]) -> str:
        default = f"t.due_date IS NULL, t.due_date ASC, {PRIORITY_RANK} DESC, t.title ASC"
        if not sort:
            return default
        field, _, direction = str(sort).rpartition("_")
        if direction.lower() not in ("asc", "desc"):
            field, direction = str(sort), "asc"
        if field not in SORTABLE_FIELDS:
            return default
        column = PRIORITY_RANK if field == "priority" else f"t.{field}"
        return f"{column} {direction.upper()}, t.id ASC"

    def status_counts(self, ctx: WorkflowContext, project_id: int) -> Dict[str, int]:
        self.projects.require_member(ctx, project_id)
        counts = {status.value: 0 for status in TaskStatus}
        counts["total"] = 0
        rows = ctx.tx.execute(
            "SELECT status, COUNT(*) AS count FROM tasks WHERE project_id = ? GROUP BY status",
            (project_id,),
        )
        for row in rows:
            counts[row["status"]] = row["count"]
            counts["total"] += row["count"]
        return counts

    # ── Subtasks ─────────────────────────────────────────────────────────────

    def _get_subtask(self, ctx: WorkflowContext, subtask_id: int) -> Tuple[Subtask, int]:
        row = ctx.tx.one(
            "SELECT s.*, t.project_id FROM subtasks s JOIN tasks t ON s.task_id = t.id WHERE s.id = ?",
            (subtask_id,),
        )
        if not row:
            raise NotFound("Subtask not found")
        self.projects.require_member(ctx, row["project_id"], "You do not have access to this subtask")
        return Subtask.from_row(row), row["project_id"]

    def add_subtask(self, ctx: WorkflowContext, task_id: int, title: str, description: str = "") -> int:
        self.get_accessible(ctx, task_id)
        if not title or not str(title).strip():
            raise InvalidArgument("Subtask title is required")
        return ctx.tx.insert(
            "INSERT INTO subtasks (task_id, title, description) VALUES (?, ?, ?)",
            (task_id, str(title).strip(), description or ""),
        )

    def update_subtask(self, ctx: WorkflowContext, subtask_id: int, fields: Dict[str, Any]) -> None:
        subtask, _ = self._get_subtask(ctx, subtask_id)
        title = fields.get("title", subtask.title)
        if not title or not str(title).strip():
            raise InvalidArgument("Subtask title is required")
        description = fields.get("description", subtask.description)
        completed = fields.get("is_completed")
        completed = subtask.is_completed if completed is None else bool(completed)
        ctx.tx.execute(
            "UPDATE subtasks SET title = ?, description = ?, is_completed = ? WHERE id = ?",
            (str(title).strip(), description or "", 1 if completed else 0, subtask_id),
        )

    def delete_subtask(self, ctx: WorkflowContext, subtask_id: int) -> None:
        self._get_subtask(ctx, subtask_id)
        ctx.tx.execute("DELETE FROM subtasks WHERE id = ?", (subtask_id,))

    # ── Comments ─────────────────────────────────────────────────────────────

    def add_comment(self, ctx: WorkflowContext, task_id: int, comment: str) -> Dict[str, Any]:
        self.get_accessible(ctx, task_id)
        if not comment or not str(comment).strip():
            raise InvalidArgument("Comment text is required")
        comment_id = ctx.tx.insert(
            "INSERT INTO task_comments (task_id, user_id, comment, created_at) VALUES (?, ?, ?, ?)",
            (task_id, ctx.caller, str(comment).strip(), utc_now()),
        )
        return ctx.tx.one("SELECT * FROM task_comments WHERE id = ?", (comment_id,))

    def delete_comment(self, ctx: WorkflowContext, comment_id: int) -> None:
        """Authors may delete their own comments; owners and managers any."""
        row = ctx.tx.one(
            "SELECT c.*, t.project_id FROM task_comments c JOIN tasks t ON c.task_id = t.id WHERE c.id = ?",
            (comment_id,),
        )
        if not row:
            raise NotFound("Comment not found")
        role = self.projects.require_member(ctx, row["project_id"], "Comment not found")
        if row["user_id"] != ctx.caller and not role.can_manage:
            raise Forbidden("You do not have permission to delete this comment")
        ctx.tx.execute("DELETE FROM task_comments WHERE id = ?", (comment_id,))

    # ── Time tracking ────────────────────────────────────────────────────────

    def start_time_tracking(self, ctx: WorkflowContext, task_id: int, description: str = "",
                            is_billable: bool = True) -> TimeEntry:
        self.get_accessible(ctx, task_id)
        active = ctx.tx.one(
            "SELECT id FROM time_entries WHERE task_id = ? AND user_id = ? AND end_time IS NULL",
            (task_id, ctx.caller),
        )
        if active:
            raise Conflict("You already have an active time entry for this task")
        entry_id = ctx.tx.insert(
            "INSERT INTO time_entries (task_id, user_id, description, start_time, is_billable) VALUES (?, ?, ?, ?, ?)",
            (task_id, ctx.caller, description or "", utc_now(), 1 if is_billable else 0),
        )
        return TimeEntry.from_row(ctx.tx.one("SELECT * FROM time_entries WHERE id = ?", (entry_id,)))

    def stop_time_tracking(self, ctx: WorkflowContext, entry_id: int) -> TimeEntry:
        row = ctx.tx.one("SELECT * FROM time_entries WHERE id = ?", (entry_id,))
        if not row:
            raise NotFound("Time entry not found")
        entry = TimeEntry.from_row(row)
        if entry.user_id != ctx.caller:
            raise Forbidden("You do not have permission to stop this time entry")
        if not entry.is_active:
            raise Conflict("This time entry is already stopped")

        end = utc_now()
        duration = int((_parse_timestamp(end) - _parse_timestamp(entry.start_time)).total_seconds())
        ctx.tx.execute(
            "UPDATE time_entries SET end_time = ?, duration = ? WHERE id = ?",
            (end, max(duration, 0), entry_id),
        )
        return TimeEntry.from_row(ctx.tx.one("SELECT * FROM time_entries WHERE id = ?", (entry_id,)))
