"""
Pipeline Driver - runs one deployment job from checkout to publication.

Phases run strictly in order:
    cloning -> installing -> building -> verifying -> optimizing -> uploading

The first failing phase short-circuits to `failed`. Whatever happens, the
job's workspace is removed before `run` returns.
"""
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.core.assets import AssetReport, build_manifest
from app.core.config import BuildConfig
from app.core.errors import OutputEmpty, PipelineError
from app.core.executor import install_dependencies, run_build
from app.core.fetcher import clone_repository, detect_framework, detect_package_manager
from app.core.metrics import metrics
from app.core.status import StatusTracker
from app.core.storage import ArtifactUploader, UploadResult
from app.core.verifier import VerifiedOutput, verify_output
from app.core.workspace import WorkspaceManager
from app.schemas.deployment import (
    DeploymentJob,
    Framework,
    PackageManager,
    Phase,
    PhaseStatus,
)

logger = logging.getLogger(__name__)

SOURCE_DIR_NAME = "source"

OUTCOME_SUCCESS = "success"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class PhaseResult:
    """Record of one executed phase."""
    phase: Phase
    status: PhaseStatus = PhaseStatus.OK
    started_at: str = field(default_factory=_now)
    ended_at: Optional[str] = None
    diagnostics: list[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class BuildContext:
    """Mutable per-job state, owned by exactly one worker thread."""
    job: DeploymentJob
    workspace: Path
    build_command: str
    output_directory: str
    package_manager: Optional[PackageManager] = None
    framework: Framework = Framework.UNKNOWN
    commit_sha: str = ""
    phase: Phase = Phase.QUEUED
    workspace_created: bool = False
    results: list[PhaseResult] = field(default_factory=list)

    @property
    def source_dir(self) -> Path:
        return self.workspace / SOURCE_DIR_NAME


@dataclass
class PipelineOutcome:
    deployment_id: str
    status: str
    duration_ms: int = 0
    failed_phase: Optional[Phase] = None
    error: Optional[str] = None
    file_count: int = 0
    total_size: int = 0
    deployment_url: Optional[str] = None
    phases: list[PhaseResult] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == OUTCOME_SUCCESS


def _package_manager_or_none(value: Optional[str]) -> Optional[PackageManager]:
    if not value:
        return None
    try:
        return PackageManager(value.strip().lower())
    except ValueError:
        return None


class PipelineDriver:
    """Sequences the build phases for one job and records the outcome."""

    def __init__(
        self,
        config: BuildConfig,
        tracker: StatusTracker,
        uploader: ArtifactUploader,
        workspaces: Optional[WorkspaceManager] = None,
    ):
        self._config = config
        self._tracker = tracker
        self._uploader = uploader
        self._workspaces = workspaces or WorkspaceManager(config.build_dir)

    @property
    def workspaces(self) -> WorkspaceManager:
        return self._workspaces

    def run(self, job: DeploymentJob) -> PipelineOutcome:
        """
        Build and publish `job`. Never raises for a failed build.

        Redelivery of a job that is already terminal is skipped without
        touching the workspace or the artifact store.
        """
        deployment_id = job.deployment_id
        started = time.monotonic()

        if not self._tracker.mark_building(deployment_id, job.project_id):
            metrics.inc("builds_skipped_total")
            logger.warning(
                f"build_skipped deployment_id={deployment_id} reason=already_terminal",
                extra={"deployment_id": deployment_id},
            )
            return PipelineOutcome(deployment_id=deployment_id, status=OUTCOME_SKIPPED)

        metrics.inc("builds_in_progress")
        logger.info(
            f"build_start deployment_id={deployment_id} project_id={job.project_id} branch={job.git_branch}",
            extra={"deployment_id": deployment_id, "project_id": job.project_id},
        )

        ctx = BuildContext(
            job=job,
            workspace=self._workspaces.path_for(deployment_id),
            build_command=self._config.default_build_command,
            output_directory=self._config.default_output_directory,
        )
        try:
            verified, upload = self._execute(ctx)
            outcome = self._succeed(ctx, verified, upload, started)
        except PipelineError as e:
            phase = Phase(e.phase) if e.phase else ctx.phase
            outcome = self._fail(ctx, phase, e.message, e.diagnostics, started)
        except Exception as e:
            logger.exception(
                f"build_error deployment_id={deployment_id} phase={ctx.phase.value}",
                extra={"deployment_id": deployment_id, "phase": ctx.phase.value},
            )
            outcome = self._fail(
                ctx, ctx.phase, f"Unexpected error during {ctx.phase.value}: {type(e).__name__}", [], started
            )
        finally:
            try:
                self._cleanup(ctx)
            finally:
                metrics.dec("builds_in_progress")

        return outcome

    @contextmanager
    def _phase(self, ctx: BuildContext, phase: Phase) -> Iterator[PhaseResult]:
        """Stamp `phase` onto the context, status record and any error raised."""
        ctx.phase = phase
        result = PhaseResult(phase=phase)
        ctx.results.append(result)
        phase_started = time.monotonic()
        try:
            self._tracker.mark_phase(ctx.job.deployment_id, phase)
            yield result
        except PipelineError as e:
            if e.phase is None:
                e.phase = phase.value
            result.status = PhaseStatus.FAILED
            result.error = e.message
            result.diagnostics = e.diagnostics
            raise
        except Exception as e:
            result.status = PhaseStatus.FAILED
            result.error = f"{type(e).__name__}: {e}"
            raise
        finally:
            result.ended_at = _now()
            duration_ms = int((time.monotonic() - phase_started) * 1000)
            logger.info(
                f"phase_done deployment_id={ctx.job.deployment_id} phase={phase.value} "
                f"status={result.status.value} duration_ms={duration_ms}",
                extra={"deployment_id": ctx.job.deployment_id, "phase": phase.value, "duration_ms": duration_ms},
            )

    def _execute(self, ctx: BuildContext) -> tuple[VerifiedOutput, UploadResult]:
        config = self._config
        job = ctx.job

        with self._phase(ctx, Phase.CLONING):
            self._resolve_settings(ctx)
            self._workspaces.create_workspace(job.deployment_id)
            ctx.workspace_created = True
            fetched = clone_repository(
                job.git_repo_url,
                job.git_branch,
                ctx.source_dir,
                commit_sha=job.git_commit_sha,
                depth=config.git_clone_depth,
                timeout=config.clone_timeout_s,
                max_output_bytes=config.clone_max_output_bytes,
                tail_lines=config.diagnostic_tail_lines,
            )
            ctx.commit_sha = fetched.commit_sha
            ctx.framework = detect_framework(ctx.source_dir)
            if ctx.package_manager is None:
                ctx.package_manager = detect_package_manager(
                    ctx.source_dir, PackageManager(config.default_package_manager)
                )
            self._tracker.record_context(
                job.deployment_id,
                framework=ctx.framework.value,
                package_manager=ctx.package_manager.value,
                commit_sha=ctx.commit_sha,
            )

        with self._phase(ctx, Phase.INSTALLING) as result:
            step = install_dependencies(
                ctx.source_dir,
                ctx.package_manager,
                timeout=config.install_timeout_s,
                max_output_bytes=config.install_max_output_bytes,
                tail_lines=config.diagnostic_tail_lines,
            )
            if step.skipped:
                result.status = PhaseStatus.SKIPPED

        with self._phase(ctx, Phase.BUILDING):
            run_build(
                ctx.source_dir,
                ctx.build_command,
                timeout=config.build_timeout_s,
                max_output_bytes=config.build_max_output_bytes,
                tail_lines=config.diagnostic_tail_lines,
            )

        with self._phase(ctx, Phase.VERIFYING):
            verified = verify_output(ctx.source_dir, ctx.output_directory)

        with self._phase(ctx, Phase.OPTIMIZING) as result:
            report: AssetReport = build_manifest(verified.path)
            if report.partial:
                result.diagnostics = report.warnings[-config.diagnostic_tail_lines:]
            if not report.manifest:
                raise OutputEmpty(
                    f"No readable files in output directory: {ctx.output_directory}",
                    diagnostics=result.diagnostics,
                )

        with self._phase(ctx, Phase.UPLOADING) as result:
            upload = self._uploader.upload_deployment(
                verified.path, report.manifest, job.project_id, job.deployment_id
            )
            if upload.skipped:
                result.diagnostics = [f"not uploaded: {path}" for path in upload.skipped]

        return verified, upload

    def _resolve_settings(self, ctx: BuildContext) -> None:
        """Job override -> project record -> configured default."""
        job = ctx.job
        project = self._tracker.get_project_settings(job.project_id)

        ctx.build_command = (
            job.build_command
            or (project.build_command if project else None)
            or self._config.default_build_command
        )
        ctx.output_directory = (
            job.output_directory
            or (project.output_directory if project else None)
            or self._config.default_output_directory
        )
        # None means detect from the lock file after cloning
        ctx.package_manager = job.package_manager or _package_manager_or_none(
            project.package_manager if project else None
        )

    def _succeed(
        self,
        ctx: BuildContext,
        verified: VerifiedOutput,
        upload: UploadResult,
        started: float,
    ) -> PipelineOutcome:
        job = ctx.job
        duration_ms = int((time.monotonic() - started) * 1000)
        deployment_url = self._config.deployment_url(job.project_id)

        accepted = self._tracker.mark_success(
            job.deployment_id,
            duration_ms=duration_ms,
            file_count=upload.file_count,
            total_size=upload.total_size,
            deployment_url=deployment_url,
        )
        if not accepted:
            metrics.inc("builds_skipped_total")
            return PipelineOutcome(
                deployment_id=job.deployment_id,
                status=OUTCOME_SKIPPED,
                duration_ms=duration_ms,
                error="Status update rejected: deployment already terminal",
                phases=ctx.results,
            )

        metrics.inc("builds_succeeded_total")
        logger.info(
            f"build_success deployment_id={job.deployment_id} files={upload.file_count} "
            f"verified_files={verified.file_count} duration_ms={duration_ms}",
            extra={"deployment_id": job.deployment_id, "duration_ms": duration_ms},
        )
        return PipelineOutcome(
            deployment_id=job.deployment_id,
            status=OUTCOME_SUCCESS,
            duration_ms=duration_ms,
            file_count=upload.file_count,
            total_size=upload.total_size,
            deployment_url=deployment_url,
            phases=ctx.results,
        )

    def _fail(
        self,
        ctx: BuildContext,
        phase: Phase,
        error: str,
        diagnostics: list[str],
        started: float,
    ) -> PipelineOutcome:
        job = ctx.job
        duration_ms = int((time.monotonic() - started) * 1000)
        metrics.inc("builds_failed_total")
        logger.error(
            f"build_failed deployment_id={job.deployment_id} phase={phase.value} "
            f"duration_ms={duration_ms} error={error}",
            extra={"deployment_id": job.deployment_id, "phase": phase.value, "duration_ms": duration_ms},
        )

        try:
            self._tracker.mark_failed(
                job.deployment_id,
                phase,
                error,
                duration_ms=duration_ms,
                diagnostics=diagnostics,
            )
        except SQLAlchemyError as e:
            logger.error(
                f"status_record_failed deployment_id={job.deployment_id} error={type(e).__name__}",
                extra={"deployment_id": job.deployment_id},
            )

        return PipelineOutcome(
            deployment_id=job.deployment_id,
            status=OUTCOME_FAILED,
            duration_ms=duration_ms,
            failed_phase=phase,
            error=error,
            phases=ctx.results,
        )

    def _cleanup(self, ctx: BuildContext) -> None:
        # A conflicting directory belongs to someone else
        if not ctx.workspace_created:
            return
        try:
            self._workspaces.cleanup_workspace(ctx.job.deployment_id)
        except Exception as e:
            metrics.inc("workspace_cleanup_failures_total")
            logger.error(
                f"workspace_cleanup_failed deployment_id={ctx.job.deployment_id} error={type(e).__name__}",
                extra={"deployment_id": ctx.job.deployment_id},
            )
