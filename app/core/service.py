"""
Build Service - wires the queue, worker pool, pipeline and status store.

Lifecycle:
    start(): create tables, sweep orphaned workspaces, start the dispatcher
    stop():  stop consuming, give running builds SHUTDOWN_GRACE_S to finish
"""
import logging
from typing import Optional

from app.core.config import BuildConfig, get_build_config
from app.core.errors import UploadError
from app.core.pipeline import PipelineDriver
from app.core.pool import JobDispatcher, JobSource, WorkerPool
from app.core.queue import RedisJobQueue
from app.core.status import StatusTracker
from app.core.storage import ArtifactUploader, create_minio_client
from app.core.workspace import WorkspaceManager
from app.db.database import init_db

logger = logging.getLogger(__name__)


class BuildService:
    """Owns every long-lived component of the build worker."""

    def __init__(
        self,
        config: Optional[BuildConfig] = None,
        job_queue: Optional[JobSource] = None,
        tracker: Optional[StatusTracker] = None,
        uploader: Optional[ArtifactUploader] = None,
    ):
        self.config = config or get_build_config()
        self.job_queue = job_queue or RedisJobQueue.from_url(self.config.redis_url, self.config.queue_name)
        self.tracker = tracker or StatusTracker()
        self.uploader = uploader or ArtifactUploader(
            create_minio_client(self.config), self.config.minio_bucket_name
        )
        self.workspaces = WorkspaceManager(self.config.build_dir)
        self.driver = PipelineDriver(self.config, self.tracker, self.uploader, self.workspaces)
        self.pool = WorkerPool(self.driver.run, self.config.max_concurrent_builds)
        self.dispatcher = JobDispatcher(
            self.job_queue,
            self.pool,
            self.tracker,
            poll_timeout=self.config.queue_poll_timeout_s,
            error_backoff=self.config.queue_error_backoff_s,
        )
        self._started = False

    @property
    def running(self) -> bool:
        return self._started and self.dispatcher.running

    def start(self, create_tables: bool = True) -> None:
        if self._started:
            return
        if create_tables:
            init_db()

        # Nothing can be running yet, so every leftover is an orphan
        self.workspaces.cleanup_orphaned_workspaces()

        try:
            self.uploader.ensure_bucket()
        except UploadError as e:
            # Uploads re-check the bucket; storage may come up later
            logger.warning(f"storage_unavailable error={e.message}")

        self.dispatcher.start()
        self._started = True
        logger.info(
            f"build_service_started capacity={self.config.max_concurrent_builds} "
            f"queue={self.config.queue_name}"
        )

    def stop(self) -> None:
        if not self._started:
            return
        logger.info(f"build_service_stopping active={self.pool.active_count}")
        self.dispatcher.stop(timeout=self.config.queue_poll_timeout_s + 5)
        drained = self.pool.shutdown(wait=True, timeout=self.config.shutdown_grace_s)
        close = getattr(self.job_queue, "close", None)
        if close is not None:
            close()
        self._started = False
        logger.info(f"build_service_stopped drained={drained}")

    def health(self) -> dict:
        return {
            "worker_running": self.running,
            "capacity": self.pool.capacity,
            "active_builds": self.pool.active_count,
        }
