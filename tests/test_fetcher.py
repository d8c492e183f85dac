"""
Tests for the repository fetcher and project detection.
"""
import json
from types import SimpleNamespace

import pytest

from app.core import fetcher
from app.core.errors import CloneError, CloneTimeoutError, PhaseTimeoutError, WorkspaceConflict
from app.core.fetcher import (
    clone_repository,
    detect_framework,
    detect_package_manager,
    has_lockfile,
    validate_repo_url,
)
from app.core.process import CommandResult
from app.schemas.deployment import Framework, PackageManager


# =============================================================================
# URL Validation Tests
# =============================================================================

class TestValidateRepoUrl:
    """Tests for repository URL validation."""

    @pytest.mark.parametrize("url", [
        "https://github.com/owner/repo.git",
        "ssh://git@github.com/owner/repo.git",
        "git@github.com:owner/repo.git",
        "file:///srv/git/repo",
    ])
    def test_accepts_supported_urls(self, url):
        assert validate_repo_url(url) == url

    def test_rejects_option_like_url(self):
        """Test values that git would parse as an option."""
        with pytest.raises(CloneError):
            validate_repo_url("--upload-pack=touch /tmp/pwned")

    def test_rejects_unknown_scheme(self):
        with pytest.raises(CloneError) as exc:
            validate_repo_url("ftp://example.com/repo.git")
        assert "scheme" in exc.value.message

    def test_rejects_empty_url(self):
        with pytest.raises(CloneError):
            validate_repo_url("  ")


# =============================================================================
# Clone Tests
# =============================================================================

class TestCloneRepository:
    """Tests for shallow clones of local repositories."""

    def test_clone_branch(self, make_repo, tmp_path):
        """Test cloning returns the resolved HEAD."""
        url, sha = make_repo({"index.html": "<h1>hi</h1>"})
        target = tmp_path / "work" / "source"

        result = clone_repository(url, "main", target)

        assert result.commit_sha == sha
        assert (target / "index.html").read_text() == "<h1>hi</h1>"

    def test_clone_matching_commit(self, make_repo, tmp_path):
        """Test a requested commit equal to the branch tip needs no extra fetch."""
        url, sha = make_repo({"a.txt": "a"})

        result = clone_repository(url, "main", tmp_path / "source", commit_sha=sha[:12])

        assert result.commit_sha == sha

    def test_missing_branch(self, make_repo, tmp_path):
        """Test a nonexistent branch fails with git's output attached."""
        url, _ = make_repo({"a.txt": "a"})

        with pytest.raises(CloneError) as exc:
            clone_repository(url, "does-not-exist", tmp_path / "source")

        assert exc.value.message.startswith("Failed to clone repository")
        assert exc.value.diagnostics

    def test_nonexistent_repository(self, tmp_path):
        """Test a repository that does not exist."""
        url = (tmp_path / "nowhere").as_uri()

        with pytest.raises(CloneError) as exc:
            clone_repository(url, "main", tmp_path / "source")

        assert not isinstance(exc.value, PhaseTimeoutError)

    def test_missing_commit(self, make_repo, tmp_path):
        """Test a commit that is not in the repository."""
        url, _ = make_repo({"a.txt": "a"})

        with pytest.raises(CloneError):
            clone_repository(url, "main", tmp_path / "source", commit_sha="0" * 40)

    def test_earlier_commit_by_full_sha(self, make_history_repo, tmp_path):
        url, (first, _second) = make_history_repo([{"a.txt": "one"}, {"a.txt": "two"}])
        target = tmp_path / "source"

        result = clone_repository(url, "main", target, commit_sha=first)

        assert result.commit_sha == first
        assert (target / "a.txt").read_text() == "one"

    def test_earlier_commit_by_abbreviated_sha(self, make_history_repo, tmp_path):
        """Test a short sha that is not the branch tip is resolved from history."""
        url, (first, _second, _third) = make_history_repo(
            [{"a.txt": "one"}, {"a.txt": "two"}, {"a.txt": "three"}]
        )
        target = tmp_path / "source"

        result = clone_repository(url, "main", target, commit_sha=first[:7])

        assert result.commit_sha == first
        assert (target / "a.txt").read_text() == "one"

    def test_unknown_abbreviated_sha(self, make_history_repo, tmp_path):
        url, _ = make_history_repo([{"a.txt": "one"}, {"a.txt": "two"}])

        with pytest.raises(CloneError) as exc:
            clone_repository(url, "main", tmp_path / "source", commit_sha="0000000")

        assert exc.value.message == "Commit 0000000 not found on branch main"
        assert exc.value.diagnostics

    def test_existing_target_rejected(self, make_repo, tmp_path):
        """Test a checkout never reuses an existing directory."""
        url, _ = make_repo({"a.txt": "a"})
        target = tmp_path / "source"
        target.mkdir()

        with pytest.raises(WorkspaceConflict):
            clone_repository(url, "main", target)


# =============================================================================
# Clone Budget Tests
# =============================================================================

class FakeGit:
    """Stands in for git; every call advances a fake clock by `step` seconds."""

    def __init__(self, clock, step, head, commit=None):
        self.clock = clock
        self.step = step
        self.head = head
        self.commit = commit
        self.calls = []

    def __call__(self, args, cwd, timeout, max_output_bytes, tail_lines):
        self.calls.append((args[0], timeout))
        self.clock.now += self.step
        if args[0] == "checkout":
            self.head = self.commit
        output = [self.head] if args[0] == "rev-parse" else []
        return CommandResult(command=["git", *args], exit_code=0, output_tail=output)


@pytest.fixture
def clock(monkeypatch):
    fake = SimpleNamespace(now=1000.0)
    monkeypatch.setattr(fetcher, "time", SimpleNamespace(monotonic=lambda: fake.now))
    return fake


class TestCloneBudget:
    """The clone timeout is shared by every git call."""

    def test_each_call_gets_what_is_left(self, clock, monkeypatch, tmp_path):
        git = FakeGit(clock, step=10, head="a" * 40, commit="b" * 40)
        monkeypatch.setattr(fetcher, "_git", git)

        result = clone_repository("https://example.com/r.git", "main", tmp_path / "source",
                                  commit_sha="b" * 40, timeout=100)

        assert result.commit_sha == "b" * 40
        assert git.calls == [
            ("clone", 100),
            ("rev-parse", 90),
            ("fetch", 80),
            ("checkout", 70),
            ("rev-parse", 60),
        ]

    def test_exhausted_budget_times_out(self, clock, monkeypatch, tmp_path):
        git = FakeGit(clock, step=60, head="a" * 40, commit="b" * 40)
        monkeypatch.setattr(fetcher, "_git", git)

        with pytest.raises(CloneTimeoutError) as exc:
            clone_repository("https://example.com/r.git", "main", tmp_path / "source",
                             commit_sha="b" * 40, timeout=100)

        assert [name for name, _ in git.calls] == ["clone", "rev-parse"]
        assert exc.value.diagnostics


# =============================================================================
# Detection Tests
# =============================================================================

class TestDetection:
    """Tests for framework and package manager detection."""

    def test_detect_next_before_react(self, tmp_path):
        (tmp_path / "package.json").write_text(json.dumps({
            "dependencies": {"react": "18.0.0", "next": "14.0.0"},
        }))
        assert detect_framework(tmp_path) == Framework.NEXT

    def test_detect_from_dev_dependencies(self, tmp_path):
        (tmp_path / "package.json").write_text(json.dumps({"devDependencies": {"vite": "5.0.0"}}))
        assert detect_framework(tmp_path) == Framework.VITE

    def test_detect_from_config_file(self, tmp_path):
        (tmp_path / "angular.json").write_text("{}")
        assert detect_framework(tmp_path) == Framework.ANGULAR

    def test_invalid_package_json_is_unknown(self, tmp_path):
        """Test detection never fails the build."""
        (tmp_path / "package.json").write_text("{not json")
        assert detect_framework(tmp_path) == Framework.UNKNOWN

    @pytest.mark.parametrize("lockfile,expected", [
        ("pnpm-lock.yaml", PackageManager.PNPM),
        ("yarn.lock", PackageManager.YARN),
        ("package-lock.json", PackageManager.NPM),
    ])
    def test_package_manager_from_lockfile(self, tmp_path, lockfile, expected):
        (tmp_path / lockfile).write_text("")
        assert detect_package_manager(tmp_path, PackageManager.NPM) == expected
        assert has_lockfile(tmp_path, expected)

    def test_package_manager_fallback(self, tmp_path):
        assert detect_package_manager(tmp_path, PackageManager.YARN) == PackageManager.YARN
        assert not has_lockfile(tmp_path, PackageManager.YARN)
