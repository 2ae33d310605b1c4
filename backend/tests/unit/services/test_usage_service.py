"""
Unit tests for UsageService.

WHY: Verifies that per-user and per-workspace scopes count separately,
so a user with two half-full workspaces isn't judged on their totals.
"""

import pytest

from entitlement_engine.core.exceptions import WorkspaceNotFoundError
from entitlement_engine.services.plan_catalog import Feature
from entitlement_engine.services.usage_service import BYTES_PER_GB, UsageService
from tests.factories import ProjectFactory, UserFactory, WorkspaceFactory


class TestUsageService:
    """Tests for usage aggregation."""

    @pytest.mark.asyncio
    async def test_empty_user(self, db_session):
        """Test that a user without workspaces has zero usage."""
        user = await UserFactory.create(db_session)

        usage = await UsageService(db_session).calculate_user_usage(user.id)

        assert usage.workspaces == 0
        assert usage.projects == 0
        assert usage.storage_gb == 0

    @pytest.mark.asyncio
    async def test_user_and_workspace_scopes(self, db_session):
        """Test that user usage sums workspaces and workspace usage does not."""
        owner = await UserFactory.create(db_session)
        first = await WorkspaceFactory.create(db_session, owner=owner, name="First")
        second = await WorkspaceFactory.create(db_session, owner=owner, name="Second")
        project = await ProjectFactory.create(db_session, workspace=first)
        await ProjectFactory.create(db_session, workspace=second)
        await ProjectFactory.add_file(db_session, project, size_bytes=BYTES_PER_GB // 2)

        service = UsageService(db_session)
        user_usage = await service.calculate_user_usage(owner.id)
        workspace_usage = await service.calculate_workspace_usage(second.id)

        assert user_usage.workspaces == 2
        assert user_usage.projects == 2
        assert user_usage.files == 1
        assert user_usage.storage_gb == 0.5
        assert workspace_usage.workspaces == 1
        assert workspace_usage.projects == 1
        assert workspace_usage.files == 0

    @pytest.mark.asyncio
    async def test_members_counted_once(self, db_session):
        """Test that a collaborator in two workspaces occupies one seat."""
        owner = await UserFactory.create(db_session)
        collaborator = await UserFactory.create(db_session)
        first = await WorkspaceFactory.create(db_session, owner=owner)
        second = await WorkspaceFactory.create(db_session, owner=owner)
        await WorkspaceFactory.add_member(db_session, first, collaborator)
        await WorkspaceFactory.add_member(db_session, second, collaborator)

        usage = await UsageService(db_session).calculate_user_usage(owner.id)

        assert usage.team_members == 1

    @pytest.mark.asyncio
    async def test_for_feature(self, db_session):
        """Test that each feature reads its own figure."""
        owner = await UserFactory.create(db_session)
        workspace = await WorkspaceFactory.create(db_session, owner=owner)
        await ProjectFactory.create(db_session, workspace=workspace)

        usage = await UsageService(db_session).calculate_workspace_usage(workspace.id)

        assert usage.for_feature(Feature.PROJECTS_PER_WORKSPACE) == 1
        assert usage.for_feature(Feature.WORKSPACES) == 1
        assert usage.for_feature(Feature.FILE_SIZE_MB) == 0
        assert usage.to_dict()["projects"] == 1

    @pytest.mark.asyncio
    async def test_missing_workspace(self, db_session):
        """Test that an unknown workspace raises."""
        with pytest.raises(WorkspaceNotFoundError):
            await UsageService(db_session).calculate_workspace_usage(99999)
