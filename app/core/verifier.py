"""
Output Verifier - confirm the declared output directory is deployable.
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from app.core.errors import InvalidOutputPath, OutputEmpty, OutputMissing

logger = logging.getLogger(__name__)


@dataclass
class VerifiedOutput:
    path: Path
    file_count: int


def _is_safe_path(path: str) -> bool:
    """Check if a path is safe (no traversal, not absolute)."""
    normalized = os.path.normpath(path)
    if os.path.isabs(normalized) or PurePosixPath(path).is_absolute():
        return False
    if ".." in normalized.split(os.sep):
        return False
    return True


def resolve_output_dir(source_dir: Path, output_directory: str) -> Path:
    """
    Resolve `output_directory` inside `source_dir`.

    Symlinks are resolved before the containment check, so a link pointing
    outside the checkout is rejected too.

    Raises:
        InvalidOutputPath: If the path is empty, absolute or escapes
    """
    output_directory = (output_directory or "").strip()
    if not output_directory:
        raise InvalidOutputPath("Output directory is required")
    if not _is_safe_path(output_directory):
        raise InvalidOutputPath(f"Output directory must be a relative path inside the project: {output_directory}")

    root = Path(source_dir).resolve()
    resolved = (root / output_directory).resolve()
    if resolved != root and root not in resolved.parents:
        raise InvalidOutputPath(f"Output directory resolves outside the project: {output_directory}")
    return resolved


def count_files(directory: Path) -> int:
    """Recursive count of regular files (symlinks are not followed)."""
    total = 0
    for dirpath, _dirnames, filenames in os.walk(directory):
        for name in filenames:
            full_path = os.path.join(dirpath, name)
            if os.path.isfile(full_path) and not os.path.islink(full_path):
                total += 1
    return total


def verify_output(source_dir: Path, output_directory: str) -> VerifiedOutput:
    """
    Verify build output exists and has files to deploy.

    Raises:
        InvalidOutputPath: Path traversal or absolute path
        OutputMissing: Directory does not exist (or is not a directory)
        OutputEmpty: Directory has no entries, or no regular files beneath it
    """
    path = resolve_output_dir(source_dir, output_directory)

    if not path.exists():
        raise OutputMissing(f"Output directory not found: {output_directory}")
    if not path.is_dir():
        raise OutputMissing(f"Output path is not a directory: {output_directory}")

    if not any(path.iterdir()):
        raise OutputEmpty(f"Output directory is empty: {output_directory}")

    file_count = count_files(path)
    if file_count == 0:
        raise OutputEmpty(f"Output directory contains no files: {output_directory}")

    logger.info(f"output_verified file_count={file_count}")
    return VerifiedOutput(path=path, file_count=file_count)
