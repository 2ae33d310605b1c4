"""
Workspace Data Access Object (DAO).

WHAT: DAO for workspaces plus the aggregate queries behind usage figures.

WHY: Usage is counted per user (across owned workspaces) for some limits and
per workspace for others. Both shapes share the same queries, parameterized
by a list of workspace ids, so they cannot drift apart.

HOW: Aggregates run in the database (COUNT / SUM) rather than loading rows.
"""

from typing import List, Sequence

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.dao.base import BaseDAO
from entitlement_engine.models.base import utc_now
from entitlement_engine.models.workspace import (
    Workspace,
    WorkspaceMember,
    WorkspaceTier,
    Project,
    ProjectFile,
)


class WorkspaceDAO(BaseDAO[Workspace]):
    """Data Access Object for Workspace model and its usage aggregates."""

    def __init__(self, session: AsyncSession):
        super().__init__(Workspace, session)

    async def list_for_owner(self, owner_id: int) -> List[Workspace]:
        """Get all workspaces owned by a user."""
        return await self.get_all(limit=None, owner_id=owner_id)

    async def set_tier_for_owner(self, owner_id: int, tier: WorkspaceTier) -> int:
        """
        Apply a tier to every workspace a user owns.

        WHY: The tier is a per-workspace denormalization of the owner's
        subscription, so a subscription change fans out to all of them.

        Returns:
            Number of workspaces updated
        """
        result = await self.session.execute(
            update(Workspace)
            .where(Workspace.owner_id == owner_id)
            .values(subscription_tier=tier, updated_at=utc_now())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    async def count_projects(self, workspace_ids: Sequence[int]) -> int:
        """Count projects across the given workspaces."""
        if not workspace_ids:
            return 0
        result = await self.session.execute(
            select(func.count(Project.id)).where(Project.workspace_id.in_(workspace_ids))
        )
        return int(result.scalar_one())

    async def count_files(self, workspace_ids: Sequence[int]) -> int:
        """Count files across all projects of the given workspaces."""
        if not workspace_ids:
            return 0
        result = await self.session.execute(
            select(func.count(ProjectFile.id))
            .join(Project, ProjectFile.project_id == Project.id)
            .where(Project.workspace_id.in_(workspace_ids))
        )
        return int(result.scalar_one())

    async def sum_file_bytes(self, workspace_ids: Sequence[int]) -> int:
        """Sum stored file sizes across the given workspaces."""
        if not workspace_ids:
            return 0
        result = await self.session.execute(
            select(func.coalesce(func.sum(ProjectFile.size_bytes), 0))
            .join(Project, ProjectFile.project_id == Project.id)
            .where(Project.workspace_id.in_(workspace_ids))
        )
        return int(result.scalar_one())

    async def count_members(self, workspace_ids: Sequence[int]) -> int:
        """
        Count distinct members across the given workspaces.

        WHY: A collaborator in two of a user's workspaces occupies one seat.
        """
        if not workspace_ids:
            return 0
        result = await self.session.execute(
            select(func.count(func.distinct(WorkspaceMember.user_id))).where(
                WorkspaceMember.workspace_id.in_(workspace_ids)
            )
        )
        return int(result.scalar_one())
