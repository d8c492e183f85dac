"""
Pydantic schemas for deployment jobs and status records.
"""
import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Used as directory names and object-key segments
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")
COMMIT_SHA_PATTERN = re.compile(r"^[0-9a-fA-F]{7,40}$")


class DeploymentStatus(str, Enum):
    """Persisted deployment lifecycle status."""
    QUEUED = "queued"
    BUILDING = "building"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentStatus.SUCCESS, DeploymentStatus.FAILED)


class Phase(str, Enum):
    """Pipeline phase, in execution order."""
    QUEUED = "queued"
    CLONING = "cloning"
    INSTALLING = "installing"
    BUILDING = "building"
    VERIFYING = "verifying"
    OPTIMIZING = "optimizing"
    UPLOADING = "uploading"


class PhaseStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"


class PackageManager(str, Enum):
    """Supported package managers."""
    NPM = "npm"
    YARN = "yarn"
    PNPM = "pnpm"


class Framework(str, Enum):
    """Detected front-end framework (advisory only)."""
    NEXT = "next"
    NUXT = "nuxt"
    GATSBY = "gatsby"
    SVELTEKIT = "sveltekit"
    SVELTE = "svelte"
    ASTRO = "astro"
    ANGULAR = "angular"
    VUE = "vue"
    REACT = "react"
    VITE = "vite"
    UNKNOWN = "unknown"


class DeploymentJob(BaseModel):
    """
    One request to build and publish a specific commit of a project.

    Received as JSON from the deployment queue. `deployment_id` is the
    idempotency key.
    """
    model_config = ConfigDict(frozen=True, extra="ignore")

    deployment_id: str
    project_id: str
    git_repo_url: str = Field(..., min_length=1, max_length=2048)
    git_branch: str = Field(..., min_length=1, max_length=255)
    git_commit_sha: str = ""

    # Optional per-job overrides of the project configuration
    build_command: Optional[str] = Field(default=None, max_length=1024)
    output_directory: Optional[str] = Field(default=None, max_length=255)
    package_manager: Optional[PackageManager] = None

    @field_validator("deployment_id", "project_id")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        v = v.strip()
        if not IDENTIFIER_PATTERN.match(v):
            raise ValueError(
                "must start with a letter or digit and contain only "
                "letters, digits, '.', '_' or '-' (max 128 chars)"
            )
        return v

    @field_validator("git_branch")
    @classmethod
    def validate_branch(cls, v: str) -> str:
        v = v.strip()
        if not v or v.startswith("-") or any(ch.isspace() for ch in v):
            raise ValueError("invalid branch name")
        return v

    @field_validator("git_commit_sha", mode="before")
    @classmethod
    def validate_commit_sha(cls, v: Optional[str]) -> str:
        v = (v or "").strip()
        if v and not COMMIT_SHA_PATTERN.match(v):
            raise ValueError("commit sha must be 7-40 hex characters")
        return v

    @field_validator("build_command", "output_directory")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()


class BuildLogResponse(BaseModel):
    log_type: str
    phase: Optional[str] = None
    message: str
    created_at: str


class DeploymentStatusResponse(BaseModel):
    """Read-only view of a deployment status record."""
    deployment_id: str
    project_id: Optional[str] = None
    status: DeploymentStatus
    phase: Optional[str] = None
    failed_phase: Optional[str] = None
    error_message: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_ms: Optional[int] = None
    framework: Optional[str] = None
    package_manager: Optional[str] = None
    commit_sha: Optional[str] = None
    file_count: Optional[int] = None
    total_size: Optional[int] = None
    deployment_url: Optional[str] = None
    logs: list[BuildLogResponse] = Field(default_factory=list)
