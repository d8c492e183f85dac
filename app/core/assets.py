"""
Asset Processor - content-hash manifest for a verified output tree.

The hash is a function of file bytes only; paths, mtimes and traversal order
never influence it. Individual files that cannot be read are skipped with a
warning instead of failing the deployment.
"""
import hashlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 1024 * 1024
SHORT_HASH_LENGTH = 8

# Files counted in the optimisation report (size only, never rewritten)
OPTIMIZABLE_EXTENSIONS = (".js", ".mjs", ".css", ".html")


def hash_file(path: Path) -> str:
    """SHA-256 hex digest of a file's contents."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass
class ArtifactManifest:
    """relative POSIX path -> content hash."""
    entries: dict[str, str] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, relative_path: str) -> bool:
        return relative_path in self.entries


@dataclass
class AssetReport:
    """Outcome of the optimizing phase."""
    manifest: ArtifactManifest
    processed: int = 0
    skipped: int = 0
    total_bytes: int = 0
    optimizable_files: int = 0
    optimizable_bytes: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return self.skipped > 0


def build_manifest(output_dir: Path) -> AssetReport:
    """
    Walk `output_dir` and hash every regular file.

    Never raises for individual entries: unreadable files, symlinks and
    unreadable directories are recorded as skipped with a warning.
    """
    output_dir = Path(output_dir)
    report = AssetReport(manifest=ArtifactManifest())

    def on_walk_error(error: OSError) -> None:
        report.skipped += 1
        report.warnings.append(f"unreadable directory {error.filename}: {error.strerror}")

    for dirpath, _dirnames, filenames in os.walk(output_dir, onerror=on_walk_error):
        for name in filenames:
            full_path = Path(dirpath) / name
            relative_path = full_path.relative_to(output_dir).as_posix()

            if full_path.is_symlink() or not full_path.is_file():
                report.skipped += 1
                report.warnings.append(f"skipped non-regular file {relative_path}")
                continue

            try:
                content_hash = hash_file(full_path)
                size = full_path.stat().st_size
            except OSError as e:
                report.skipped += 1
                report.warnings.append(f"could not hash {relative_path}: {e.strerror or type(e).__name__}")
                continue

            report.manifest.entries[relative_path] = content_hash
            report.processed += 1
            report.total_bytes += size
            if name.lower().endswith(OPTIMIZABLE_EXTENSIONS):
                report.optimizable_files += 1
                report.optimizable_bytes += size

    for warning in report.warnings:
        logger.warning(f"asset_skipped detail={warning}")

    logger.info(
        f"manifest_built processed={report.processed} skipped={report.skipped} "
        f"total_bytes={report.total_bytes} optimizable_files={report.optimizable_files}"
    )
    return report
