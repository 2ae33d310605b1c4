"""
Usage aggregation for limit enforcement.

WHAT: Computes how much of each limited feature a user or a workspace is
currently consuming.

WHY: Limits have two scopes. "workspaces" is per user (it counts every
workspace the user owns); projects, files and members are per workspace.
Checking a per-workspace limit against per-user totals would lock out a
user with two half-full workspaces, so callers pick the scope explicitly.

HOW: Both scopes reduce to "aggregate over this list of workspace ids" in
WorkspaceDAO. Storage is the sum of recorded file sizes, in GB.
"""

from dataclasses import dataclass, asdict
from typing import List

from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.core.exceptions import WorkspaceNotFoundError
from entitlement_engine.dao.workspace import WorkspaceDAO
from entitlement_engine.services.plan_catalog import Feature


BYTES_PER_GB = 1024 ** 3


@dataclass(frozen=True)
class UsageSnapshot:
    """Point-in-time usage figures for one scope."""

    workspaces: int
    projects: int
    files: int
    team_members: int
    storage_gb: float

    def for_feature(self, feature: Feature) -> float:
        """
        Usage figure that a feature's limit is compared against.

        file_size_mb is a per-upload limit with no running total; callers
        pass the upload size directly, so it reads as zero here.
        """
        if feature == Feature.WORKSPACES:
            return self.workspaces
        if feature == Feature.PROJECTS_PER_WORKSPACE:
            return self.projects
        if feature == Feature.FILES_PER_PROJECT:
            return self.files
        if feature == Feature.TEAM_MEMBERS:
            return self.team_members
        if feature == Feature.STORAGE_GB:
            return self.storage_gb
        return 0

    def to_dict(self) -> dict:
        return asdict(self)


class UsageService:
    """
    Aggregates usage per user or per workspace.

    Example:
        usage = await UsageService(db).calculate_workspace_usage(workspace_id)
        usage.projects
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.workspace_dao = WorkspaceDAO(db)

    async def calculate_user_usage(self, user_id: int) -> UsageSnapshot:
        """
        Usage across every workspace the user owns.

        Args:
            user_id: Owner whose workspaces are counted

        Returns:
            UsageSnapshot; all zeros for a user with no workspaces
        """
        workspaces = await self.workspace_dao.list_for_owner(user_id)
        return await self._aggregate([workspace.id for workspace in workspaces])

    async def calculate_workspace_usage(self, workspace_id: int) -> UsageSnapshot:
        """
        Usage within a single workspace.

        Raises:
            WorkspaceNotFoundError: If the workspace doesn't exist
        """
        workspace = await self.workspace_dao.get_by_id(workspace_id)
        if workspace is None:
            raise WorkspaceNotFoundError(workspace_id=workspace_id)
        return await self._aggregate([workspace.id])

    async def _aggregate(self, workspace_ids: List[int]) -> UsageSnapshot:
        storage_bytes = await self.workspace_dao.sum_file_bytes(workspace_ids)
        return UsageSnapshot(
            workspaces=len(workspace_ids),
            projects=await self.workspace_dao.count_projects(workspace_ids),
            files=await self.workspace_dao.count_files(workspace_ids),
            team_members=await self.workspace_dao.count_members(workspace_ids),
            storage_gb=round(storage_bytes / BYTES_PER_GB, 3),
        )
