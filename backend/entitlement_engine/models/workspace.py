"""
Workspace, membership, project and file models.

WHY: These are the resources that plan limits are counted against.
Workspaces also carry the coarse subscription tier written by the
reconciler, so per-request checks don't need to join subscriptions.
"""

import enum

from sqlalchemy import (
    BigInteger,
    Column,
    Enum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)

from entitlement_engine.models.base import Base, TimestampMixin, PrimaryKeyMixin


class WorkspaceTier(str, enum.Enum):
    """Coarse entitlement tier applied to every workspace a user owns."""

    FREE = "free"
    PRO = "pro"


class Workspace(Base, PrimaryKeyMixin, TimestampMixin):
    """Top-level container owned by a single user."""

    __tablename__ = "workspaces"

    name = Column(String(255), nullable=False)
    owner_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    subscription_tier = Column(
        Enum(WorkspaceTier),
        nullable=False,
        default=WorkspaceTier.FREE,
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Workspace(id={self.id}, owner_id={self.owner_id}, tier={self.subscription_tier.value})>"


class WorkspaceMember(Base, PrimaryKeyMixin, TimestampMixin):
    """Membership of a user in a workspace (the owner is not a member row)."""

    __tablename__ = "workspace_members"

    workspace_id = Column(
        Integer,
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_workspace_member"),
    )


class Project(Base, PrimaryKeyMixin, TimestampMixin):
    """Project inside a workspace."""

    __tablename__ = "projects"

    workspace_id = Column(
        Integer,
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=False)


class ProjectFile(Base, PrimaryKeyMixin, TimestampMixin):
    """Uploaded file; size_bytes feeds the storage usage figure."""

    __tablename__ = "project_files"

    project_id = Column(
        Integer,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=False)
    size_bytes = Column(BigInteger, nullable=False, default=0)
