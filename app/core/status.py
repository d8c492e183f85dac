"""
Status Tracker - the only writer of building/success/failed.

Each hook is one conditional UPDATE committed atomically. Once a deployment
is terminal (success or failed) every further hook is rejected, so a job can
never un-terminate. Logs only deployment_id, status, phase, duration.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.db.database import SessionLocal
from app.db.models import BuildLog, Deployment, Project
from app.schemas.deployment import (
    BuildLogResponse,
    DeploymentStatus,
    DeploymentStatusResponse,
    Phase,
)

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (DeploymentStatus.SUCCESS.value, DeploymentStatus.FAILED.value)

# Longest message stored in a single build-log row
MAX_LOG_MESSAGE_CHARS = 16_000


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _elapsed_ms(start_time: Optional[str], end: str) -> Optional[int]:
    if not start_time:
        return None
    started = datetime.fromisoformat(start_time)
    return int((datetime.fromisoformat(end) - started).total_seconds() * 1000)


def _model_to_status(model: Deployment, logs: list[BuildLog]) -> DeploymentStatusResponse:
    """Convert SQLAlchemy model to the read-only status view."""
    return DeploymentStatusResponse(
        deployment_id=model.id,
        project_id=model.project_id,
        status=DeploymentStatus(model.status),
        phase=model.phase,
        failed_phase=model.failed_phase,
        error_message=model.error_message,
        start_time=model.start_time,
        end_time=model.end_time,
        duration_ms=model.duration_ms,
        framework=model.framework,
        package_manager=model.package_manager,
        commit_sha=model.commit_sha,
        file_count=model.file_count,
        total_size=model.total_size,
        deployment_url=model.deployment_url,
        logs=[
            BuildLogResponse(
                log_type=log.log_type,
                phase=log.phase,
                message=log.message,
                created_at=log.created_at,
            )
            for log in logs
        ],
    )


class StatusTracker:
    """Persists deployment phase transitions and terminal outcome."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or SessionLocal

    def _update_if_active(self, db: Session, deployment_id: str, values: dict) -> bool:
        count = (
            db.query(Deployment)
            .filter(Deployment.id == deployment_id, Deployment.status.notin_(TERMINAL_STATUSES))
            .update(values, synchronize_session=False)
        )
        return count > 0

    def _reject(self, db: Session, deployment_id: str, hook: str) -> None:
        current = db.query(Deployment.status).filter(Deployment.id == deployment_id).scalar()
        logger.warning(
            f"status_update_rejected deployment_id={deployment_id} hook={hook} current_status={current}"
        )

    def mark_building(self, deployment_id: str, project_id: Optional[str] = None) -> bool:
        """
        queued -> building. Creates the record if the upstream creator has not.

        Returns False if the deployment is already terminal.
        """
        now = _now()
        values = {
            "status": DeploymentStatus.BUILDING.value,
            "phase": Phase.QUEUED.value,
            "start_time": now,
            "updated_at": now,
            "end_time": None,
            "error_message": None,
            "failed_phase": None,
        }
        if project_id:
            values["project_id"] = project_id

        db = self._session_factory()
        try:
            for _attempt in range(2):
                try:
                    if self._update_if_active(db, deployment_id, values):
                        db.commit()
                        break
                    if db.get(Deployment, deployment_id) is not None:
                        self._reject(db, deployment_id, "mark_building")
                        db.rollback()
                        return False
                    db.add(Deployment(id=deployment_id, created_at=now, **values))
                    db.commit()
                    logger.warning(f"deployment_record_created deployment_id={deployment_id}")
                    break
                except IntegrityError:
                    # Record inserted concurrently; retry as an update
                    db.rollback()
            else:
                return False
        finally:
            db.close()

        logger.info(f"deployment_status deployment_id={deployment_id} status=building")
        return True

    def mark_phase(self, deployment_id: str, phase: Phase) -> bool:
        """Record the fine-grained phase of a building deployment."""
        db = self._session_factory()
        try:
            updated = self._update_if_active(
                db, deployment_id, {"phase": phase.value, "updated_at": _now()}
            )
            if not updated:
                self._reject(db, deployment_id, "mark_phase")
            db.commit()
            return updated
        finally:
            db.close()

    def record_context(
        self,
        deployment_id: str,
        framework: Optional[str] = None,
        package_manager: Optional[str] = None,
        commit_sha: Optional[str] = None,
    ) -> bool:
        """Store what the fetcher detected about the checkout."""
        values = {"updated_at": _now()}
        if framework is not None:
            values["framework"] = framework
        if package_manager is not None:
            values["package_manager"] = package_manager
        if commit_sha is not None:
            values["commit_sha"] = commit_sha

        db = self._session_factory()
        try:
            updated = self._update_if_active(db, deployment_id, values)
            db.commit()
            return updated
        finally:
            db.close()

    def mark_success(
        self,
        deployment_id: str,
        duration_ms: int,
        file_count: int,
        total_size: int,
        deployment_url: Optional[str] = None,
    ) -> bool:
        """building -> success. Returns False if already terminal."""
        now = _now()
        db = self._session_factory()
        try:
            updated = self._update_if_active(
                db,
                deployment_id,
                {
                    "status": DeploymentStatus.SUCCESS.value,
                    "end_time": now,
                    "updated_at": now,
                    "duration_ms": duration_ms,
                    "file_count": file_count,
                    "total_size": total_size,
                    "deployment_url": deployment_url,
                },
            )
            if not updated:
                self._reject(db, deployment_id, "mark_success")
                db.rollback()
                return False

            project_id = db.query(Deployment.project_id).filter(Deployment.id == deployment_id).scalar()
            db.add(BuildLog(
                deployment_id=deployment_id,
                project_id=project_id,
                log_type="info",
                phase=Phase.UPLOADING.value,
                message=f"Deployed {file_count} files ({total_size} bytes)",
                created_at=now,
            ))
            db.commit()
        finally:
            db.close()

        logger.info(
            f"deployment_status deployment_id={deployment_id} status=success duration_ms={duration_ms}"
        )
        return True

    def mark_failed(
        self,
        deployment_id: str,
        phase: Phase,
        error: str,
        duration_ms: Optional[int] = None,
        diagnostics: Optional[list[str]] = None,
        project_id: Optional[str] = None,
    ) -> bool:
        """
        Any non-terminal state -> failed.

        Creates a failed record when none exists, so a job that never reached
        mark_building (e.g. an unparseable message) is still terminal.
        The diagnostic tail is stored as one `output` build-log row.
        """
        now = _now()
        error = error or "Unknown error"
        values = {
            "status": DeploymentStatus.FAILED.value,
            "phase": phase.value,
            "failed_phase": phase.value,
            "error_message": error,
            "end_time": now,
            "updated_at": now,
        }
        if duration_ms is not None:
            values["duration_ms"] = duration_ms

        db = self._session_factory()
        try:
            if self._update_if_active(db, deployment_id, values):
                existing = db.get(Deployment, deployment_id)
                project_id = project_id or existing.project_id
                if duration_ms is None:
                    duration_ms = _elapsed_ms(existing.start_time, now)
                    existing.duration_ms = duration_ms
            elif db.get(Deployment, deployment_id) is not None:
                self._reject(db, deployment_id, "mark_failed")
                db.rollback()
                return False
            else:
                db.add(Deployment(id=deployment_id, project_id=project_id, created_at=now, **values))

            db.add(BuildLog(
                deployment_id=deployment_id,
                project_id=project_id,
                log_type="error",
                phase=phase.value,
                message=error[:MAX_LOG_MESSAGE_CHARS],
                created_at=now,
            ))
            if diagnostics:
                db.add(BuildLog(
                    deployment_id=deployment_id,
                    project_id=project_id,
                    log_type="output",
                    phase=phase.value,
                    message="\n".join(diagnostics)[-MAX_LOG_MESSAGE_CHARS:],
                    created_at=now,
                ))
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning(f"status_update_conflict deployment_id={deployment_id} hook=mark_failed")
            return False
        finally:
            db.close()

        logger.info(
            f"deployment_status deployment_id={deployment_id} status=failed "
            f"phase={phase.value} duration_ms={duration_ms}"
        )
        return True

    def get(self, deployment_id: str) -> Optional[DeploymentStatusResponse]:
        """Status record with its build logs, or None."""
        db = self._session_factory()
        try:
            model = db.get(Deployment, deployment_id)
            if model is None:
                return None
            logs = (
                db.query(BuildLog)
                .filter(BuildLog.deployment_id == deployment_id)
                .order_by(BuildLog.id)
                .all()
            )
            return _model_to_status(model, logs)
        finally:
            db.close()

    def get_logs(self, deployment_id: str) -> list[BuildLogResponse]:
        status = self.get(deployment_id)
        return status.logs if status else []

    def get_project_settings(self, project_id: str) -> Optional[Project]:
        """Project build settings written by the project API, if any."""
        db = self._session_factory()
        try:
            project = db.get(Project, project_id)
            if project is not None:
                db.expunge(project)
            return project
        finally:
            db.close()
