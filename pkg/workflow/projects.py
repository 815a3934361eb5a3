"""
Project directory: projects, memberships and milestones.

This is the slice of project management the workflow engine leans on for
access control. Membership failures surface as NotFound (the project is not
in the caller's accessible set); role failures surface as Forbidden.
"""
import logging
from typing import Any, Dict, List, Optional

from .context import WorkflowContext
from .errors import Forbidden, InvalidArgument, NotFound
from .schema import MemberRole

logger = logging.getLogger(__name__)


class ProjectDirectory:
    """Projects, members and milestones."""

    # ── Access checks ────────────────────────────────────────────────────────

    def get_project(self, ctx: WorkflowContext, project_id: int) -> Dict[str, Any]:
        row = ctx.tx.one("SELECT * FROM projects WHERE id = ?", (project_id,))
        if not row:
            raise NotFound("Project not found")
        return row

    def member_role(self, ctx: WorkflowContext, project_id: int, user_id: Optional[str]) -> Optional[MemberRole]:
        if not user_id:
            return None
        row = ctx.tx.one(
            "SELECT role FROM project_members WHERE project_id = ? AND user_id = ?",
            (project_id, user_id),
        )
        return MemberRole(row["role"]) if row else None

    def is_member(self, ctx: WorkflowContext, project_id: int, user_id: Optional[str]) -> bool:
        return self.member_role(ctx, project_id, user_id) is not None

    def require_member(self, ctx: WorkflowContext, project_id: int,
                       message: str = "Project not found or you do not have access to it") -> MemberRole:
        """Raise NotFound unless the caller belongs to the project."""
        role = self.member_role(ctx, project_id, ctx.caller)
        if role is None:
            raise NotFound(message)
        return role

    def require_manager(self, ctx: WorkflowContext, project_id: int,
                        message: str = "You do not have permission to manage this project") -> MemberRole:
        """Raise NotFound for non-members, Forbidden for members below manager."""
        role = self.require_member(ctx, project_id)
        if not role.can_manage:
            raise Forbidden(message)
        return role

    # ── Projects ─────────────────────────────────────────────────────────────

    def create_project(self, ctx: WorkflowContext, title: str, description: str = "") -> int:
        if not ctx.caller:
            raise InvalidArgument("Project owner is required")
        if not title or not str(title).strip():
            raise InvalidArgument("Project title is required")
        project_id = ctx.tx.insert(
            "INSERT INTO projects (owner_id, title, description) VALUES (?, ?, ?)",
            (ctx.caller, title.strip(), description or ""),
        )
        ctx.tx.execute(
            "INSERT INTO project_members (project_id, user_id, role) VALUES (?, ?, ?)",
            (project_id, ctx.caller, MemberRole.OWNER.value),
        )
        logger.info(f"Created project {project_id} for {ctx.caller}")
        return project_id

    def delete_project(self, ctx: WorkflowContext, project_id: int) -> None:
        """Owner only. Boards, columns, placements, tasks and edges cascade."""
        project = self.get_project(ctx, project_id)
        self.require_member(ctx, project_id)
        if project["owner_id"] != ctx.caller:
            raise Forbidden("Only the project owner can delete the project")
        ctx.tx.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        logger.info(f"Deleted project {project_id}")

    # ── Members ──────────────────────────────────────────────────────────────

    def add_member(self, ctx: WorkflowContext, project_id: int, user_id: str,
                   role: Any = MemberRole.MEMBER) -> None:
        self.get_project(ctx, project_id)
        self.require_manager(ctx, project_id, "You do not have permission to add members")
        if not user_id:
            raise InvalidArgument("User ID is required")
        member_role = MemberRole.parse(role)
        ctx.tx.execute(
            """
            INSERT INTO project_members (project_id, user_id, role) VALUES (?, ?, ?)
            ON CONFLICT(project_id, user_id) DO UPDATE SET role = excluded.role
            """,
            (project_id, user_id, member_role.value),
        )

    def remove_member(self, ctx: WorkflowContext, project_id: int, user_id: str) -> None:
        project = self.get_project(ctx, project_id)
        self.require_manager(ctx, project_id, "You do not have permission to remove members")
        if user_id == project["owner_id"]:
            raise Forbidden("The project owner cannot be removed")
        ctx.tx.execute(
            "DELETE FROM project_members WHERE project_id = ? AND user_id = ?",
            (project_id, user_id),
        )
        # Former members can no longer hold assignments
        ctx.tx.execute(
            "UPDATE tasks SET assignee_id = NULL WHERE project_id = ? AND assignee_id = ?",
            (project_id, user_id),
        )

    def list_members(self, ctx: WorkflowContext, project_id: int) -> List[Dict[str, Any]]:
        self.require_member(ctx, project_id)
        return ctx.tx.execute(
            "SELECT user_id, role, joined_at FROM project_members WHERE project_id = ? ORDER BY id",
            (project_id,),
        )

    # ── Milestones ───────────────────────────────────────────────────────────

    def add_milestone(self, ctx: WorkflowContext, project_id: int, title: str,
                      description: str = "", due_date: Optional[str] = None) -> int:
        self.require_manager(ctx, project_id, "You do not have permission to add milestones")
        if not title:
            raise InvalidArgument("Milestone title is required")
        return ctx.tx.insert(
            "INSERT INTO project_milestones (project_id, title, description, due_date) VALUES (?, ?, ?, ?)",
            (project_id, title, description or "", due_date),
        )

    def require_milestone(self, ctx: WorkflowContext, project_id: int, milestone_id: int) -> None:
        row = ctx.tx.one(
            "SELECT id FROM project_milestones WHERE id = ? AND project_id = ?",
            (milestone_id, project_id),
        )
        if not row:
            raise NotFound("Milestone not found or does not belong to this project")
