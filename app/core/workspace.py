"""
Per-deployment working directories.

Each job gets `{BUILD_DIR}/{deployment_id}`, created exclusively and removed
unconditionally when the job's worker finishes.
"""
import logging
import os
import shutil
import stat
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from app.core.errors import WorkspaceConflict
from app.core.metrics import metrics

logger = logging.getLogger(__name__)

# Leftovers older than this are removed by the startup sweep
ORPHAN_RETENTION_HOURS = 0


class WorkspaceManager:
    """Manages isolated workspaces for build jobs."""

    def __init__(self, base_dir: Path):
        self._base_dir = Path(base_dir)
        self._base_dir.mkdir(parents=True, exist_ok=True)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def path_for(self, deployment_id: str) -> Path:
        return self._base_dir / deployment_id

    def create_workspace(self, deployment_id: str) -> Path:
        """
        Create the working directory for a job.

        Raises:
            WorkspaceConflict: If the directory already exists
        """
        workspace = self.path_for(deployment_id)
        try:
            workspace.mkdir(parents=False, exist_ok=False)
        except FileExistsError:
            raise WorkspaceConflict(f"Working directory already exists: {workspace.name}")
        logger.info(f"workspace_created deployment_id={deployment_id}")
        return workspace

    def get_workspace(self, deployment_id: str) -> Optional[Path]:
        """Get workspace path if it exists."""
        workspace = self.path_for(deployment_id)
        if workspace.exists():
            return workspace
        return None

    def cleanup_workspace(self, deployment_id: str) -> bool:
        """
        Remove the workspace for a job.

        Returns True if a directory was removed. Raises OSError if the
        directory is still present after removal was attempted.
        """
        workspace = self.path_for(deployment_id)
        if not workspace.exists() and not workspace.is_symlink():
            return False

        if workspace.is_symlink() or workspace.is_file():
            workspace.unlink()
        else:
            shutil.rmtree(workspace, onexc=_make_writable_and_retry)

        if workspace.exists():
            raise OSError(f"workspace still present after cleanup: {workspace}")

        metrics.inc("workspaces_cleaned_total")
        logger.info(f"workspace_cleaned deployment_id={deployment_id}")
        return True

    def cleanup_orphaned_workspaces(self, older_than_hours: int = ORPHAN_RETENTION_HOURS) -> int:
        """Remove workspaces left behind by a crashed process. Run at startup."""
        try:
            cutoff = datetime.now(timezone.utc) - timedelta(hours=older_than_hours)
            deleted = 0

            for item in self._base_dir.iterdir():
                mtime = datetime.fromtimestamp(item.lstat().st_mtime, tz=timezone.utc)
                if mtime > cutoff:
                    continue
                try:
                    if item.is_dir() and not item.is_symlink():
                        shutil.rmtree(item, onexc=_make_writable_and_retry)
                    else:
                        item.unlink(missing_ok=True)
                except OSError as e:
                    logger.warning(f"orphan_cleanup_failed name={item.name} error={type(e).__name__}")
                    continue
                deleted += 1

            if deleted > 0:
                logger.info(f"cleanup_orphaned_workspaces deleted={deleted}")
            return deleted
        except OSError as e:
            logger.warning(f"cleanup_orphaned_workspaces_failed error={type(e).__name__}")
            return 0


def _make_writable_and_retry(func, path, exc) -> None:
    """
    rmtree error hook: build tools leave read-only files and directories behind.

    A directory rmtree could not open or list is made accessible and removed
    with a fresh rmtree; anything else is retried with the failing call.
    """
    if isinstance(exc, FileNotFoundError):
        return
    parent = os.path.dirname(path)
    os.chmod(parent, os.stat(parent).st_mode | stat.S_IRWXU)
    if not os.path.islink(path):
        os.chmod(path, os.lstat(path).st_mode | stat.S_IRWXU)

    if func in (os.rmdir, os.unlink, os.remove):
        func(path)
    elif os.path.isdir(path) and not os.path.islink(path):
        # os.open / os.scandir failures: the directory itself was unreadable
        shutil.rmtree(path, onexc=_make_writable_and_retry)
    else:
        os.unlink(path)
