"""
Error taxonomy for the build pipeline.

Every PipelineError is scoped to one phase of one job: it terminates the
current deployment and never the worker pool. The driver stamps the phase
onto errors raised by components that do not know it themselves.
"""
from typing import Optional


class PipelineError(Exception):
    """Base error for a failed pipeline phase."""

    def __init__(
        self,
        message: str,
        phase: Optional[str] = None,
        diagnostics: Optional[list[str]] = None,
    ):
        self.message = message
        self.phase = phase
        self.diagnostics = list(diagnostics or [])
        super().__init__(message)


class PhaseTimeoutError(PipelineError):
    """A phase exceeded its wall-clock budget and its process was killed."""
    pass


class WorkspaceConflict(PipelineError):
    """Target working directory already exists."""
    pass


class CloneError(PipelineError):
    """Repository could not be fetched."""
    pass


class CloneTimeoutError(CloneError, PhaseTimeoutError):
    pass


class InstallError(PipelineError):
    """Dependency installation failed."""
    pass


class InstallTimeoutError(InstallError, PhaseTimeoutError):
    pass


class BuildError(PipelineError):
    """Build command failed."""
    pass


class BuildTimeoutError(BuildError, PhaseTimeoutError):
    pass


class OutputTooLarge(PipelineError):
    """Process output exceeded the phase buffer cap."""
    pass


class InvalidOutputPath(PipelineError):
    """Declared output directory escapes the working directory."""
    pass


class OutputMissing(PipelineError):
    """Declared output directory does not exist."""
    pass


class OutputEmpty(PipelineError):
    """Declared output directory has nothing to deploy."""
    pass


class UploadError(PipelineError):
    """Object storage rejected or failed the upload."""
    pass


class InvalidJobError(Exception):
    """Queue message could not be parsed into a deployment job."""

    def __init__(self, message: str, deployment_id: Optional[str] = None):
        self.message = message
        self.deployment_id = deployment_id
        super().__init__(message)


class QueueError(Exception):
    """Queue backend unavailable."""
    pass
