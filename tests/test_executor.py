"""
Tests for dependency installation and the build step.
"""
import pytest

from app.core import executor
from app.core.errors import BuildError, BuildTimeoutError, InstallError, OutputTooLarge, PhaseTimeoutError
from app.core.executor import install_command, install_dependencies, parse_build_command, run_build
from app.schemas.deployment import PackageManager


class TestInstallCommand:
    """Tests for install command selection."""

    def test_frozen_install_with_lockfile(self, tmp_path):
        (tmp_path / "package-lock.json").write_text("{}")
        assert install_command(tmp_path, PackageManager.NPM) == ["npm", "ci", "--prefer-offline", "--no-audit"]

    def test_plain_install_without_lockfile(self, tmp_path):
        assert install_command(tmp_path, PackageManager.YARN) == ["yarn", "install"]

    def test_pnpm_frozen(self, tmp_path):
        (tmp_path / "pnpm-lock.yaml").write_text("")
        assert install_command(tmp_path, PackageManager.PNPM)[-1] == "--frozen-lockfile"


class TestInstallDependencies:
    """Tests for install_dependencies."""

    def test_skipped_without_package_json(self, tmp_path):
        """Test static sites without a manifest skip installation."""
        outcome = install_dependencies(tmp_path, PackageManager.NPM, timeout=10, max_output_bytes=1024)

        assert outcome.skipped
        assert outcome.command == []

    def test_install_success(self, tmp_path, monkeypatch):
        (tmp_path / "package.json").write_text("{}")
        monkeypatch.setitem(executor.INSTALL_COMMANDS, PackageManager.NPM, ("sh", "-c", "echo installed"))

        outcome = install_dependencies(tmp_path, PackageManager.NPM, timeout=10, max_output_bytes=1024)

        assert not outcome.skipped
        assert outcome.diagnostics == ["installed"]

    def test_install_failure(self, tmp_path, monkeypatch):
        """Test a failing install carries its output tail."""
        (tmp_path / "package.json").write_text("{}")
        monkeypatch.setitem(
            executor.INSTALL_COMMANDS, PackageManager.NPM, ("sh", "-c", "echo 'E404 not found' >&2; exit 1")
        )

        with pytest.raises(InstallError) as exc:
            install_dependencies(tmp_path, PackageManager.NPM, timeout=10, max_output_bytes=1024)

        assert "E404 not found" in exc.value.diagnostics
        assert exc.value.diagnostics[-1] == "[exit code 1]"
        assert not isinstance(exc.value, PhaseTimeoutError)

    def test_install_timeout(self, tmp_path, monkeypatch):
        (tmp_path / "package.json").write_text("{}")
        monkeypatch.setitem(executor.INSTALL_COMMANDS, PackageManager.NPM, ("sleep", "30"))

        with pytest.raises(PhaseTimeoutError):
            install_dependencies(tmp_path, PackageManager.NPM, timeout=1, max_output_bytes=1024)

    def test_install_env_keeps_dev_dependencies(self):
        env = executor.production_env(install=True)
        assert env["NPM_CONFIG_PRODUCTION"] == "false"
        assert env["NODE_ENV"] == "production"


class TestRunBuild:
    """Tests for run_build."""

    def test_build_success(self, tmp_path):
        outcome = run_build(tmp_path, "sh -c 'mkdir -p dist && echo ok > dist/index.html'", timeout=10,
                            max_output_bytes=1024)

        assert outcome.result.ok
        assert (tmp_path / "dist" / "index.html").exists()

    def test_build_failure(self, tmp_path):
        """Test a non-zero exit keeps the tail of the build output."""
        with pytest.raises(BuildError) as exc:
            run_build(tmp_path, "sh -c 'echo compiling; echo SyntaxError >&2; exit 2'", timeout=10,
                      max_output_bytes=1024)

        assert "exited with code 2" in exc.value.message
        assert exc.value.diagnostics[-2:] == ["SyntaxError", "[exit code 2]"]

    def test_silent_build_failure_has_diagnostics(self, tmp_path):
        """Test a build that prints nothing still reports how it ended."""
        with pytest.raises(BuildError) as exc:
            run_build(tmp_path, "sh -c 'exit 3'", timeout=10, max_output_bytes=1024)

        assert exc.value.diagnostics == ["[exit code 3]"]

    def test_build_timeout(self, tmp_path):
        with pytest.raises(BuildTimeoutError) as exc:
            run_build(tmp_path, "sleep 30", timeout=1, max_output_bytes=1024)
        assert exc.value.message == "Build timed out after 1s"
        assert exc.value.diagnostics[-1] == "[killed after 1s timeout]"

    def test_build_output_too_large(self, tmp_path):
        with pytest.raises(OutputTooLarge):
            run_build(tmp_path, "sh -c 'yes build-output'", timeout=30, max_output_bytes=2048)

    def test_build_command_not_run_in_shell(self, tmp_path):
        """Test shell metacharacters are passed as plain arguments."""
        outcome = run_build(tmp_path, "echo hello; touch injected", timeout=10, max_output_bytes=1024)

        assert outcome.diagnostics == ["hello; touch injected"]
        assert not (tmp_path / "injected").exists()

    @pytest.mark.parametrize("command", ["", "   ", "sh -c 'unterminated"])
    def test_invalid_build_command(self, command):
        with pytest.raises(BuildError):
            parse_build_command(command)
