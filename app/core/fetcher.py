"""
Repository Fetcher - shallow, branch-scoped git checkout plus project detection.

Security:
- git runs without a shell and without interactive prompts
- URL schemes are restricted; option-like values are rejected
- Target directory must not exist (no reuse of another job's checkout)
"""
import json
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from app.core.errors import CloneError, CloneTimeoutError, OutputTooLarge, WorkspaceConflict
from app.core.process import CommandResult, run_command, sanitize_env
from app.schemas.deployment import Framework, PackageManager

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = {"https", "http", "ssh", "git", "file"}

# scp-like syntax: user@host:owner/repo.git
SCP_LIKE_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+@[A-Za-z0-9_.-]+:[^\s]+$")

FULL_SHA_LENGTH = 40
# Depth git treats as the whole history
FULL_HISTORY_DEPTH = 2147483647

# Lock file -> package manager, in priority order
LOCKFILES: list[tuple[str, PackageManager]] = [
    ("pnpm-lock.yaml", PackageManager.PNPM),
    ("yarn.lock", PackageManager.YARN),
    ("package-lock.json", PackageManager.NPM),
    ("npm-shrinkwrap.json", PackageManager.NPM),
]

# Dependency name -> framework, most specific first (next before react, ...)
FRAMEWORK_DEPENDENCIES: list[tuple[str, Framework]] = [
    ("next", Framework.NEXT),
    ("nuxt", Framework.NUXT),
    ("gatsby", Framework.GATSBY),
    ("@sveltejs/kit", Framework.SVELTEKIT),
    ("astro", Framework.ASTRO),
    ("@angular/core", Framework.ANGULAR),
    ("svelte", Framework.SVELTE),
    ("vue", Framework.VUE),
    ("react", Framework.REACT),
    ("vite", Framework.VITE),
]

# Signature config files, used when package.json names nothing we know
FRAMEWORK_FILES: list[tuple[str, Framework]] = [
    ("next.config.js", Framework.NEXT),
    ("next.config.mjs", Framework.NEXT),
    ("next.config.ts", Framework.NEXT),
    ("nuxt.config.js", Framework.NUXT),
    ("nuxt.config.ts", Framework.NUXT),
    ("gatsby-config.js", Framework.GATSBY),
    ("gatsby-config.ts", Framework.GATSBY),
    ("svelte.config.js", Framework.SVELTEKIT),
    ("astro.config.mjs", Framework.ASTRO),
    ("angular.json", Framework.ANGULAR),
    ("vite.config.js", Framework.VITE),
    ("vite.config.ts", Framework.VITE),
]


@dataclass
class FetchResult:
    """Checked-out source tree."""
    path: Path
    commit_sha: str
    branch: str


def validate_repo_url(url: str) -> str:
    """
    Validate a repository URL before handing it to git.

    Raises:
        CloneError: If the URL is empty, option-like or uses another scheme
    """
    url = (url or "").strip()
    if not url:
        raise CloneError("Repository URL is required")
    if url.startswith("-"):
        raise CloneError("Invalid repository URL")
    if any(ch.isspace() for ch in url):
        raise CloneError("Repository URL must not contain whitespace")

    if SCP_LIKE_PATTERN.match(url):
        return url

    parsed = urlparse(url)
    if parsed.scheme not in ALLOWED_SCHEMES:
        raise CloneError(
            f"Unsupported repository URL scheme: {parsed.scheme or 'none'}. "
            f"Allowed: {', '.join(sorted(ALLOWED_SCHEMES))}"
        )
    if parsed.scheme != "file" and not parsed.netloc:
        raise CloneError("Repository URL must include a host")
    return url


def _git(args: list[str], cwd: Path, timeout: float, max_output_bytes: int, tail_lines: int) -> CommandResult:
    return run_command(
        ["git", *args],
        cwd=cwd,
        timeout=timeout,
        max_output_bytes=max_output_bytes,
        tail_lines=tail_lines,
        env=sanitize_env({"GIT_LFS_SKIP_SMUDGE": "1"}),
    )


def _raise_for_git(result: CommandResult, action: str) -> None:
    if result.timed_out:
        raise CloneTimeoutError(
            f"git {action} timed out after {result.duration_ms}ms",
            diagnostics=result.diagnostics,
        )
    if result.output_exceeded:
        raise OutputTooLarge(
            f"git {action} output exceeded {result.output_bytes} bytes",
            diagnostics=result.diagnostics,
        )
    if result.exit_code != 0:
        last_line = next((line for line in reversed(result.output_tail) if line.strip()), "")
        detail = f": {last_line.strip()}" if last_line else ""
        raise CloneError(
            f"Failed to clone repository (git {action} exited with {result.exit_code}){detail}",
            diagnostics=result.diagnostics,
        )


def _remaining(deadline: float, timeout: float, action: str) -> float:
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise CloneTimeoutError(
            f"git {action} timed out after {timeout:g}s",
            diagnostics=[f"[clone budget of {timeout:g}s exhausted before git {action}]"],
        )
    return remaining


def clone_repository(
    repo_url: str,
    branch: str,
    target: Path,
    commit_sha: str = "",
    depth: int = 1,
    timeout: float = 300,
    max_output_bytes: int = 10 * 1024 * 1024,
    tail_lines: int = 50,
) -> FetchResult:
    """
    Shallow-clone one branch into `target` and check out the requested commit.

    The timeout is a budget for the whole fetch: every git call gets whatever
    is left of it. A full 40-character sha is fetched directly; an abbreviated
    one is resolved against the branch history.

    Raises:
        WorkspaceConflict: If target already exists
        CloneError: On network/auth failure, missing branch or commit
        CloneTimeoutError: If git exceeds the budget
    """
    repo_url = validate_repo_url(repo_url)
    target = Path(target)
    if target.exists():
        raise WorkspaceConflict(f"Clone target already exists: {target.name}")
    target.parent.mkdir(parents=True, exist_ok=True)

    deadline = time.monotonic() + timeout

    def git(args: list[str], cwd: Path, action: str) -> CommandResult:
        result = _git(
            args,
            cwd=cwd,
            timeout=_remaining(deadline, timeout, action),
            max_output_bytes=max_output_bytes,
            tail_lines=tail_lines,
        )
        _raise_for_git(result, action)
        return result

    logger.info(f"clone_start branch={branch} depth={depth}")

    git(
        [
            "clone",
            "--depth", str(depth),
            "--single-branch",
            "--no-tags",
            "--branch", branch,
            "--",
            repo_url,
            str(target),
        ],
        target.parent,
        "clone",
    )
    head = _last_line(git(["rev-parse", "HEAD"], target, "rev-parse"))

    if commit_sha and not head.lower().startswith(commit_sha.lower()):
        if len(commit_sha) == FULL_SHA_LENGTH:
            git(["fetch", "--depth", str(depth), "--no-tags", "origin", commit_sha], target, "fetch")
            revision = "FETCH_HEAD"
        else:
            # Servers only hand out objects by full name
            git(["fetch", f"--depth={FULL_HISTORY_DEPTH}", "--no-tags", "origin", branch], target, "fetch")
            resolved = _git(
                ["rev-parse", "--verify", "--quiet", f"{commit_sha}^{{commit}}"],
                cwd=target,
                timeout=_remaining(deadline, timeout, "rev-parse"),
                max_output_bytes=max_output_bytes,
                tail_lines=tail_lines,
            )
            if resolved.timed_out:
                _raise_for_git(resolved, "rev-parse")
            revision = _last_line(resolved) if resolved.ok else ""
            if not revision:
                raise CloneError(
                    f"Commit {commit_sha} not found on branch {branch}",
                    diagnostics=resolved.diagnostics,
                )
        git(["checkout", "--detach", "--quiet", revision], target, "checkout")
        head = _last_line(git(["rev-parse", "HEAD"], target, "rev-parse"))
        if not head.lower().startswith(commit_sha.lower()):
            raise CloneError(
                f"Commit {commit_sha} not found on branch {branch}",
                diagnostics=[f"[checked out {head or 'nothing'}]"],
            )

    logger.info(f"clone_done branch={branch} commit={head[:12]}")
    return FetchResult(path=target, commit_sha=head, branch=branch)


def _last_line(result: CommandResult) -> str:
    lines = [line.strip() for line in result.output_tail if line.strip()]
    return lines[-1] if lines else ""


def _read_package_json(repo: Path) -> Optional[dict]:
    package_json = repo / "package.json"
    if not package_json.is_file():
        return None
    try:
        data = json.loads(package_json.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"package_json_unreadable error={type(e).__name__}")
        return None
    return data if isinstance(data, dict) else None


def detect_framework(repo: Path) -> Framework:
    """
    Detect the front-end framework from package.json and config files.

    Best effort: anything unreadable or unrecognised yields UNKNOWN.
    """
    package = _read_package_json(repo)
    if package is not None:
        dependencies: dict = {}
        for key in ("dependencies", "devDependencies"):
            section = package.get(key)
            if isinstance(section, dict):
                dependencies.update(section)
        for name, framework in FRAMEWORK_DEPENDENCIES:
            if name in dependencies:
                return framework

    for filename, framework in FRAMEWORK_FILES:
        if (repo / filename).is_file():
            return framework

    return Framework.UNKNOWN


def detect_package_manager(repo: Path, default: PackageManager = PackageManager.NPM) -> PackageManager:
    """Pick the package manager whose lock file is present."""
    for filename, manager in LOCKFILES:
        if (repo / filename).is_file():
            return manager
    return default


def has_lockfile(repo: Path, manager: PackageManager) -> bool:
    return any((repo / filename).is_file() for filename, pm in LOCKFILES if pm == manager)


def has_package_manifest(repo: Path) -> bool:
    return (repo / "package.json").is_file()
