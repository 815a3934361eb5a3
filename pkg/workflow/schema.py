"""
Workflow schema: task records, kanban structure, placements and dependency edges.

Task lifecycle:
  backlog → to_do → in_progress → in_review → done   (or cancelled at any point)

Status is free to move in any direction; the kanban board mirrors it through
each column's semantic role (see ColumnRole). Rows come back from the
gateway as plain dicts and are hydrated with ``from_row``.
"""
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Tuple
import json

from .errors import InvalidArgument


class TaskStatus(Enum):
    """Valid task statuses."""
    BACKLOG = "backlog"
    TO_DO = "to_do"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    DONE = "done"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: Any) -> "TaskStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidArgument(f"Invalid task status: {value}")


class TaskPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @classmethod
    def parse(cls, value: Any) -> "TaskPriority":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidArgument(f"Invalid task priority: {value}")


class DependencyType(Enum):
    FINISH_TO_START = "finish_to_start"
    START_TO_START = "start_to_start"
    FINISH_TO_FINISH = "finish_to_finish"
    START_TO_FINISH = "start_to_finish"

    @classmethod
    def parse(cls, value: Any) -> "DependencyType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidArgument(f"Invalid dependency type: {value}")


class MemberRole(Enum):
    """Project membership roles. Owners and managers may restructure boards."""
    OWNER = "owner"
    MANAGER = "manager"
    MEMBER = "member"
    VIEWER = "viewer"

    @classmethod
    def parse(cls, value: Any) -> "MemberRole":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidArgument(f"Invalid member role: {value}")

    @property
    def can_manage(self) -> bool:
        return self in (MemberRole.OWNER, MemberRole.MANAGER)


class ColumnRole(Enum):
    """
    Semantic role of a kanban column.

    A column with a status role holds tasks in that status; NONE columns are
    free lanes that neither drive nor receive status changes.
    """
    BACKLOG = "backlog"
    TO_DO = "to_do"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    DONE = "done"
    CANCELLED = "cancelled"
    NONE = "none"

    @classmethod
    def parse(cls, value: Any) -> "ColumnRole":
        if value is None:
            return cls.NONE
        if isinstance(value, cls):
            return value
        if isinstance(value, TaskStatus):
            return cls(value.value)
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidArgument(f"Invalid column role: {value}")

    @classmethod
    def for_status(cls, status: TaskStatus) -> "ColumnRole":
        return cls(status.value)

    @property
    def status(self) -> Optional[TaskStatus]:
        """The task status this role implies, or None for free lanes."""
        if self is ColumnRole.NONE:
            return None
        return TaskStatus(self.value)


# Seeded onto every new board, in position order.
DEFAULT_COLUMNS: Tuple[Tuple[str, ColumnRole], ...] = (
    ("Backlog", ColumnRole.BACKLOG),
    ("To Do", ColumnRole.TO_DO),
    ("In Progress", ColumnRole.IN_PROGRESS),
    ("In Review", ColumnRole.IN_REVIEW),
    ("Done", ColumnRole.DONE),
)


def _load_tags(raw: Any) -> List[str]:
    if not raw:
        return []
    if isinstance(raw, list):
        return raw
    try:
        tags = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return []
    return tags if isinstance(tags, list) else []


@dataclass
class Task:
    """Core task record."""

    id: int
    project_id: int
    title: str
    creator_id: str
    description: str = ""
    status: TaskStatus = TaskStatus.TO_DO
    priority: TaskPriority = TaskPriority.MEDIUM
    assignee_id: Optional[str] = None
    milestone_id: Optional[int] = None

    # Scheduling (ISO dates)
    start_date: Optional[str] = None
    due_date: Optional[str] = None
    completed_date: Optional[str] = None
    estimated_hours: Optional[float] = None

    tags: List[str] = field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "creator_id": self.creator_id,
            "assignee_id": self.assignee_id,
            "milestone_id": self.milestone_id,
            "start_date": self.start_date,
            "due_date": self.due_date,
            "completed_date": self.completed_date,
            "estimated_hours": self.estimated_hours,
            "tags": list(self.tags),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Task":
        return cls(
            id=row["id"],
            project_id=row["project_id"],
            title=row["title"],
            creator_id=row["creator_id"],
            description=row.get("description") or "",
            status=TaskStatus(row.get("status") or "to_do"),
            priority=TaskPriority(row.get("priority") or "medium"),
            assignee_id=row.get("assignee_id"),
            milestone_id=row.get("milestone_id"),
            start_date=row.get("start_date"),
            due_date=row.get("due_date"),
            completed_date=row.get("completed_date"),
            estimated_hours=row.get("estimated_hours"),
            tags=_load_tags(row.get("tags")),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


@dataclass
class Board:
    id: int
    project_id: int
    title: str
    description: str = ""
    is_default: bool = False
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "description": self.description,
            "is_default": self.is_default,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Board":
        return cls(
            id=row["id"],
            project_id=row["project_id"],
            title=row["title"],
            description=row.get("description") or "",
            is_default=bool(row.get("is_default")),
            created_at=row.get("created_at"),
        )


@dataclass
class Column:
    id: int
    board_id: int
    title: str
    position: int
    description: str = ""
    wip_limit: Optional[int] = None
    role: ColumnRole = ColumnRole.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "board_id": self.board_id,
            "title": self.title,
            "description": self.description,
            "position": self.position,
            "wip_limit": self.wip_limit,
            "role": self.role.value,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Column":
        return cls(
            id=row["id"],
            board_id=row["board_id"],
            title=row["title"],
            position=row["position"],
            description=row.get("description") or "",
            wip_limit=row.get("wip_limit"),
            role=ColumnRole.parse(row.get("role")),
        )


@dataclass
class Placement:
    """Pins one task to one column at one position."""
    id: int
    column_id: int
    task_id: int
    position: int
    board_id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Placement":
        return cls(
            id=row["id"],
            column_id=row["column_id"],
            task_id=row["task_id"],
            position=row["position"],
            board_id=row.get("board_id"),
        )


@dataclass
class Dependency:
    """Directed edge: ``task_id`` depends on ``depends_on_task_id``."""
    id: int
    task_id: int
    depends_on_task_id: int
    dependency_type: DependencyType = DependencyType.FINISH_TO_START
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "depends_on_task_id": self.depends_on_task_id,
            "dependency_type": self.dependency_type.value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Dependency":
        return cls(
            id=row["id"],
            task_id=row["task_id"],
            depends_on_task_id=row["depends_on_task_id"],
            dependency_type=DependencyType(row.get("dependency_type") or "finish_to_start"),
            created_at=row.get("created_at"),
        )


@dataclass
class Subtask:
    id: int
    task_id: int
    title: str
    description: str = ""
    is_completed: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Subtask":
        return cls(
            id=row["id"],
            task_id=row["task_id"],
            title=row["title"],
            description=row.get("description") or "",
            is_completed=bool(row.get("is_completed")),
        )


@dataclass
class TimeEntry:
    id: int
    task_id: int
    user_id: str
    start_time: str
    description: str = ""
    end_time: Optional[str] = None
    duration: Optional[int] = None  # seconds
    is_billable: bool = True

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TimeEntry":
        return cls(
            id=row["id"],
            task_id=row["task_id"],
            user_id=row["user_id"],
            start_time=row["start_time"],
            description=row.get("description") or "",
            end_time=row.get("end_time"),
            duration=row.get("duration"),
            is_billable=bool(row.get("is_billable", 1)),
        )
