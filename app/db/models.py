"""
SQLAlchemy models for the deployment status store.

`deployments.status` is written as `queued` by the upstream job creator and
as `building`/`success`/`failed` only by the build pipeline. `projects` is
owned by the external project API and only read here.
"""
from sqlalchemy import Column, ForeignKey, Index, Integer, Text

from app.db.database import Base


class Project(Base):
    """Build settings of a project (read only)."""
    __tablename__ = "projects"

    id = Column(Text, primary_key=True, index=True)
    name = Column(Text, nullable=True)
    build_command = Column(Text, nullable=True)
    output_directory = Column(Text, nullable=True)
    package_manager = Column(Text, nullable=True)  # npm, yarn, pnpm or null for detection


class Deployment(Base):
    """Lifecycle record of one deployment."""
    __tablename__ = "deployments"

    id = Column(Text, primary_key=True, index=True)  # deployment_id
    project_id = Column(Text, nullable=True, index=True)
    status = Column(Text, nullable=False, index=True)  # queued, building, success, failed
    phase = Column(Text, nullable=True)  # cloning, installing, ... (current or last)
    failed_phase = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(Text, nullable=False)  # ISO timestamps
    start_time = Column(Text, nullable=True)
    end_time = Column(Text, nullable=True)
    updated_at = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    # Build context
    framework = Column(Text, nullable=True)
    package_manager = Column(Text, nullable=True)
    commit_sha = Column(Text, nullable=True)

    # Published artifact
    file_count = Column(Integer, nullable=True)
    total_size = Column(Integer, nullable=True)
    deployment_url = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_deployments_project_created", "project_id", "created_at"),
    )


class BuildLog(Base):
    """Short log entries for a deployment. Never holds full process output."""
    __tablename__ = "build_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    deployment_id = Column(Text, ForeignKey("deployments.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(Text, nullable=True)
    log_type = Column(Text, nullable=False)  # info, error, output
    phase = Column(Text, nullable=True)
    message = Column(Text, nullable=False)
    created_at = Column(Text, nullable=False)
