"""
Build Executor - dependency installation and the project's build command.

Install commands come from a closed table keyed by package manager; no
string interpolation. The build command is supplied by the project, split
with shlex and executed without a shell.
"""
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from app.core.errors import (
    BuildError,
    BuildTimeoutError,
    InstallError,
    InstallTimeoutError,
    OutputTooLarge,
)
from app.core.fetcher import has_lockfile, has_package_manifest
from app.core.process import CommandResult, run_command, sanitize_env
from app.schemas.deployment import PackageManager

logger = logging.getLogger(__name__)

# Used when the package manager's lock file is present
FROZEN_INSTALL_COMMANDS: dict[PackageManager, tuple[str, ...]] = {
    PackageManager.NPM: ("npm", "ci", "--prefer-offline", "--no-audit"),
    PackageManager.YARN: ("yarn", "install", "--frozen-lockfile"),
    PackageManager.PNPM: ("pnpm", "install", "--frozen-lockfile"),
}

# Fallback when there is no lock file to honour
INSTALL_COMMANDS: dict[PackageManager, tuple[str, ...]] = {
    PackageManager.NPM: ("npm", "install", "--prefer-offline", "--no-audit", "--no-fund"),
    PackageManager.YARN: ("yarn", "install"),
    PackageManager.PNPM: ("pnpm", "install"),
}


@dataclass
class StepOutcome:
    """Result of one executor phase."""
    command: list[str]
    skipped: bool = False
    result: Optional[CommandResult] = None

    @property
    def diagnostics(self) -> list[str]:
        return self.result.diagnostics if self.result else []


def production_env(install: bool = False) -> dict[str, str]:
    """Environment for install/build processes."""
    extra = {
        "NODE_ENV": "production",
        "CI": "true",
        "NEXT_TELEMETRY_DISABLED": "1",
    }
    if install:
        # Build tooling usually lives in devDependencies
        extra["NPM_CONFIG_PRODUCTION"] = "false"
        extra["YARN_PRODUCTION"] = "false"
    return sanitize_env(extra)


def install_command(source_dir: Path, package_manager: PackageManager) -> list[str]:
    """Select the fixed install command for a package manager."""
    if has_lockfile(source_dir, package_manager):
        return list(FROZEN_INSTALL_COMMANDS[package_manager])
    return list(INSTALL_COMMANDS[package_manager])


def parse_build_command(build_command: str) -> list[str]:
    """
    Split a build command string into arguments.

    Raises:
        BuildError: If the command is empty or not parseable
    """
    try:
        args = shlex.split(build_command or "")
    except ValueError as e:
        raise BuildError(f"Invalid build command: {e}")
    if not args:
        raise BuildError("Build command is empty")
    return args


def install_dependencies(
    source_dir: Path,
    package_manager: PackageManager,
    timeout: float,
    max_output_bytes: int,
    tail_lines: int = 50,
) -> StepOutcome:
    """
    Install project dependencies.

    Skipped when the checkout has no package.json.

    Raises:
        InstallError: On non-zero exit
        InstallTimeoutError: If the install exceeds its timeout
        OutputTooLarge: If output exceeds the install buffer cap
    """
    if not has_package_manifest(source_dir):
        logger.info("install_skipped reason=no_package_json")
        return StepOutcome(command=[], skipped=True)

    cmd = install_command(source_dir, package_manager)
    logger.info(f"install_start package_manager={package_manager.value} cmd={' '.join(cmd)}")

    result = run_command(
        cmd,
        cwd=source_dir,
        timeout=timeout,
        max_output_bytes=max_output_bytes,
        tail_lines=tail_lines,
        env=production_env(install=True),
    )

    if result.timed_out:
        raise InstallTimeoutError(
            f"Dependency installation timed out after {timeout}s",
            diagnostics=result.diagnostics,
        )
    if result.output_exceeded:
        raise OutputTooLarge(
            f"Dependency installation output exceeded {max_output_bytes} bytes",
            diagnostics=result.diagnostics,
        )
    if result.exit_code != 0:
        raise InstallError(
            f"Failed to install dependencies: {cmd[0]} exited with code {result.exit_code}",
            diagnostics=result.diagnostics,
        )

    logger.info(f"install_done duration_ms={result.duration_ms}")
    return StepOutcome(command=cmd, result=result)


def run_build(
    source_dir: Path,
    build_command: str,
    timeout: float,
    max_output_bytes: int,
    tail_lines: int = 50,
) -> StepOutcome:
    """
    Run the project's build command.

    Raises:
        BuildError: On non-zero exit or an unparseable command
        BuildTimeoutError: If the build exceeds its timeout
        OutputTooLarge: If output exceeds the build buffer cap
    """
    cmd = parse_build_command(build_command)
    logger.info(f"build_start cmd={cmd[0]}")

    result = run_command(
        cmd,
        cwd=source_dir,
        timeout=timeout,
        max_output_bytes=max_output_bytes,
        tail_lines=tail_lines,
        env=production_env(),
    )

    if result.timed_out:
        raise BuildTimeoutError(
            f"Build timed out after {timeout}s",
            diagnostics=result.diagnostics,
        )
    if result.output_exceeded:
        raise OutputTooLarge(
            f"Build output exceeded {max_output_bytes} bytes",
            diagnostics=result.diagnostics,
        )
    if result.exit_code != 0:
        raise BuildError(
            f"Build failed: {cmd[0]} exited with code {result.exit_code}",
            diagnostics=result.diagnostics,
        )

    logger.info(f"build_done duration_ms={result.duration_ms}")
    return StepOutcome(command=cmd, result=result)
