"""
Build service configuration from environment variables.
All settings are optional with safe defaults.
"""
import os
from dataclasses import dataclass
from pathlib import Path

MB = 1024 * 1024


@dataclass(frozen=True)
class BuildConfig:
    """Build service configuration (immutable)."""
    # Worker pool
    max_concurrent_builds: int = 2
    build_dir: Path = Path("/tmp/builds")

    # Per-phase wall-clock timeouts (seconds)
    clone_timeout_s: int = 300
    install_timeout_s: int = 600
    build_timeout_s: int = 1800
    upload_timeout_s: int = 60

    # Per-phase output caps (bytes of combined stdout/stderr)
    clone_max_output_bytes: int = 10 * MB
    install_max_output_bytes: int = 50 * MB
    build_max_output_bytes: int = 100 * MB

    # Lines of process output kept for diagnostics
    diagnostic_tail_lines: int = 50

    git_clone_depth: int = 1
    default_package_manager: str = "npm"
    default_build_command: str = "npm run build"
    default_output_directory: str = "dist"

    # Queue
    redis_url: str = "redis://localhost:6379/0"
    queue_name: str = "deployment:queue"
    queue_poll_timeout_s: int = 2
    queue_error_backoff_s: int = 5

    # Status store
    database_url: str = "sqlite:///data/deployments.db"

    # Object storage (never logged)
    minio_endpoint: str = "minio"
    minio_port: int = 9000
    minio_use_ssl: bool = False
    minio_access_key: str = "minioadmin"
    minio_secret_key: str = "minioadmin"
    minio_bucket_name: str = "vercel-deployments"

    root_domain: str = "vercel-clone.local"
    shutdown_grace_s: int = 30
    log_level: str = "INFO"
    worker_enabled: bool = True

    @property
    def minio_address(self) -> str:
        """host:port as expected by the MinIO client."""
        return f"{self.minio_endpoint}:{self.minio_port}"

    def deployment_url(self, project_id: str) -> str:
        return f"{project_id}.{self.root_domain}"


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "")
    if not raw:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def get_build_config() -> BuildConfig:
    """Load build configuration from environment."""
    package_manager = os.getenv("DEFAULT_PACKAGE_MANAGER", "npm").lower()
    if package_manager not in ("npm", "yarn", "pnpm"):
        package_manager = "npm"

    return BuildConfig(
        max_concurrent_builds=_env_int("MAX_CONCURRENT_BUILDS", 2, minimum=1),
        build_dir=Path(os.getenv("BUILD_DIR", "/tmp/builds")),
        clone_timeout_s=_env_int("CLONE_TIMEOUT_S", 300, minimum=1),
        install_timeout_s=_env_int("INSTALL_TIMEOUT_S", 600, minimum=1),
        build_timeout_s=_env_int("BUILD_TIMEOUT_S", 1800, minimum=1),
        upload_timeout_s=_env_int("UPLOAD_TIMEOUT_S", 60, minimum=1),
        clone_max_output_bytes=_env_int("CLONE_MAX_OUTPUT_BYTES", 10 * MB, minimum=1),
        install_max_output_bytes=_env_int("INSTALL_MAX_OUTPUT_BYTES", 50 * MB, minimum=1),
        build_max_output_bytes=_env_int("BUILD_MAX_OUTPUT_BYTES", 100 * MB, minimum=1),
        diagnostic_tail_lines=_env_int("DIAGNOSTIC_TAIL_LINES", 50, minimum=1),
        git_clone_depth=_env_int("GIT_CLONE_DEPTH", 1, minimum=1),
        default_package_manager=package_manager,
        default_build_command=os.getenv("DEFAULT_BUILD_COMMAND", "npm run build"),
        default_output_directory=os.getenv("DEFAULT_OUTPUT_DIRECTORY", "dist"),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        queue_name=os.getenv("QUEUE_NAME", "deployment:queue"),
        queue_poll_timeout_s=_env_int("QUEUE_POLL_TIMEOUT_S", 2, minimum=1),
        queue_error_backoff_s=_env_int("QUEUE_ERROR_BACKOFF_S", 5),
        database_url=os.getenv("DATABASE_URL", "sqlite:///data/deployments.db"),
        minio_endpoint=os.getenv("MINIO_ENDPOINT", "minio"),
        minio_port=_env_int("MINIO_PORT", 9000, minimum=1),
        minio_use_ssl=_env_flag("MINIO_USE_SSL"),
        minio_access_key=os.getenv("MINIO_ACCESS_KEY", "minioadmin"),
        minio_secret_key=os.getenv("MINIO_SECRET_KEY", "minioadmin"),
        minio_bucket_name=os.getenv("MINIO_BUCKET_NAME", "vercel-deployments"),
        root_domain=os.getenv("ROOT_DOMAIN", "vercel-clone.local"),
        shutdown_grace_s=_env_int("SHUTDOWN_GRACE_S", 30),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        worker_enabled=_env_flag("BUILD_WORKER_ENABLED", True),
    )
