"""
Tests for configuration loading and the job schema.
"""
from pathlib import Path

import pytest
from pydantic import ValidationError

from app.core.config import MB, get_build_config
from app.schemas.deployment import DeploymentJob, DeploymentStatus, PackageManager


class TestBuildConfig:
    """Tests for get_build_config."""

    def test_defaults(self, monkeypatch):
        for name in ("MAX_CONCURRENT_BUILDS", "BUILD_DIR", "BUILD_TIMEOUT_S", "QUEUE_NAME", "BUILD_WORKER_ENABLED"):
            monkeypatch.delenv(name, raising=False)

        config = get_build_config()

        assert config.max_concurrent_builds == 2
        assert config.build_dir == Path("/tmp/builds")
        assert config.build_timeout_s == 1800
        assert config.build_max_output_bytes == 100 * MB
        assert config.queue_name == "deployment:queue"
        assert config.worker_enabled is True

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("MAX_CONCURRENT_BUILDS", "4")
        monkeypatch.setenv("BUILD_DIR", "/var/builds")
        monkeypatch.setenv("MINIO_USE_SSL", "true")
        monkeypatch.setenv("DEFAULT_PACKAGE_MANAGER", "PNPM")

        config = get_build_config()

        assert config.max_concurrent_builds == 4
        assert config.build_dir == Path("/var/builds")
        assert config.minio_use_ssl is True
        assert config.default_package_manager == "pnpm"

    @pytest.mark.parametrize("value", ["abc", "0", "-3"])
    def test_invalid_numbers_fall_back(self, monkeypatch, value):
        monkeypatch.setenv("MAX_CONCURRENT_BUILDS", value)
        assert get_build_config().max_concurrent_builds == 2

    def test_unknown_package_manager_falls_back(self, monkeypatch):
        monkeypatch.setenv("DEFAULT_PACKAGE_MANAGER", "bun")
        assert get_build_config().default_package_manager == "npm"

    def test_deployment_url(self, monkeypatch):
        monkeypatch.setenv("ROOT_DOMAIN", "apps.example.com")
        assert get_build_config().deployment_url("blog") == "blog.apps.example.com"

    def test_config_is_immutable(self):
        config = get_build_config()
        with pytest.raises(AttributeError):
            config.max_concurrent_builds = 10


class TestDeploymentJob:
    """Tests for the queue message schema."""

    def test_optional_fields(self):
        job = DeploymentJob(
            deployment_id="dep-1",
            project_id="proj",
            git_repo_url="https://example.com/r.git",
            git_branch="main",
            build_command="  ",
            package_manager="yarn",
            unknown_field="ignored",
        )

        assert job.git_commit_sha == ""
        assert job.build_command is None
        assert job.package_manager == PackageManager.YARN

    def test_job_is_frozen(self):
        job = DeploymentJob(deployment_id="d", project_id="p", git_repo_url="u", git_branch="main")
        with pytest.raises(ValidationError):
            job.git_branch = "other"

    def test_null_commit_sha(self):
        job = DeploymentJob(deployment_id="d", project_id="p", git_repo_url="u", git_branch="main",
                            git_commit_sha=None)
        assert job.git_commit_sha == ""

    def test_terminal_statuses(self):
        assert DeploymentStatus.SUCCESS.is_terminal
        assert DeploymentStatus.FAILED.is_terminal
        assert not DeploymentStatus.BUILDING.is_terminal
