# Workflow engine: project tasks, kanban boards and task dependencies
#
# Components:
#   schema.py       - Data model (Task, Board, Column, Placement, Dependency, ColumnRole)
#   errors.py       - Error taxonomy (NotFound, Forbidden, InvalidArgument, Conflict)
#   gateway.py      - SQLite persistence gateway and transactions
#   context.py      - Transaction-scoped context shared by the managers
#   projects.py     - Projects, members, milestones and access checks
#   tasks.py        - Task store with subtasks, comments and time tracking
#   dependencies.py - Acyclic task dependency graph
#   kanban.py       - Boards and columns
#   placement.py    - Status/column synchronization and position ordering
#   workflow.py     - Facade: one transaction per operation
#   events.py       - Post-commit event bus
#   config.py       - YAML/env configuration and logging setup

from .errors import Conflict, Forbidden, InvalidArgument, NotFound, WorkflowError
from .gateway import SQLiteGateway
from .workflow import Workflow

__all__ = [
    "Conflict",
    "Forbidden",
    "InvalidArgument",
    "NotFound",
    "SQLiteGateway",
    "Workflow",
    "WorkflowError",
]
