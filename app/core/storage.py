"""
Artifact Uploader - publish a verified output tree to S3-compatible storage.

Objects are written at `{project_id}/{deployment_id}/{relative_path}` with a
Content-Type derived from the extension and a Cache-Control policy keyed off
the content hash. A failed upload removes what it already wrote, so a
partial deployment is never reported as published.
"""
import logging
import mimetypes
import os
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Optional

import urllib3
from minio import Minio
from minio.error import MinioException

from app.core.assets import SHORT_HASH_LENGTH, ArtifactManifest
from app.core.config import BuildConfig
from app.core.errors import UploadError
from app.core.metrics import metrics

logger = logging.getLogger(__name__)

# Web asset types, checked before the platform mimetypes table
MIME_TYPES = {
    ".html": "text/html",
    ".htm": "text/html",
    ".css": "text/css",
    ".js": "application/javascript",
    ".mjs": "application/javascript",
    ".json": "application/json",
    ".map": "application/json",
    ".webmanifest": "application/manifest+json",
    ".txt": "text/plain",
    ".xml": "application/xml",
    ".svg": "image/svg+xml",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".avif": "image/avif",
    ".ico": "image/x-icon",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".ttf": "font/ttf",
    ".otf": "font/otf",
    ".eot": "application/vnd.ms-fontobject",
    ".wasm": "application/wasm",
}
TEXT_MIME_PREFIXES = ("text/", "application/javascript", "application/json", "application/xml", "image/svg+xml")

CACHE_IMMUTABLE = "public, max-age=31536000, immutable"
CACHE_REVALIDATE = "public, max-age=0, must-revalidate"
CACHE_DEFAULT = "public, max-age=3600"

# Bundler fingerprints: app.3f9a2c1b.js, index-BxY3kz9a.css, chunk.4e5f6a7b8c.js
FINGERPRINT_PATTERN = re.compile(r"[.\-_](?=[A-Za-z0-9]*\d)[A-Za-z0-9]{8,}\.[A-Za-z0-9]+$")


@dataclass
class UploadResult:
    file_count: int
    total_size: int
    keys: list[str]
    skipped: list[str] = field(default_factory=list)


def get_mime_type(filename: str) -> str:
    """Content-Type for a file name."""
    ext = PurePosixPath(filename).suffix.lower()
    mime_type = MIME_TYPES.get(ext) or mimetypes.guess_type(filename)[0] or "application/octet-stream"
    if mime_type.startswith(TEXT_MIME_PREFIXES) and "charset" not in mime_type:
        mime_type = f"{mime_type}; charset=utf-8"
    return mime_type


def is_fingerprinted(filename: str, content_hash: Optional[str] = None) -> bool:
    """True if the file name changes whenever its content changes."""
    name = PurePosixPath(filename).name
    if content_hash and content_hash[:SHORT_HASH_LENGTH].lower() in name.lower():
        return True
    return bool(FINGERPRINT_PATTERN.search(name))


def get_cache_control(relative_path: str, content_hash: Optional[str] = None) -> str:
    """
    Cache-Control policy for an uploaded object.

    Content-hashed assets never change under the same name and can be cached
    forever; HTML and extensionless entry points must be revalidated so a new
    deployment is picked up immediately.
    """
    name = PurePosixPath(relative_path).name
    suffix = PurePosixPath(name).suffix.lower()
    if suffix in (".html", ".htm") or not suffix:
        return CACHE_REVALIDATE
    if content_hash and is_fingerprinted(name, content_hash):
        return CACHE_IMMUTABLE
    return CACHE_DEFAULT


def object_key(project_id: str, deployment_id: str, relative_path: str) -> str:
    return f"{project_id}/{deployment_id}/{relative_path}"


def create_minio_client(config: BuildConfig) -> Minio:
    """MinIO client with a bounded, thread-safe connection pool."""
    http_client = urllib3.PoolManager(
        timeout=urllib3.Timeout(connect=10, read=config.upload_timeout_s),
        maxsize=max(config.max_concurrent_builds * 2, 10),
        retries=urllib3.Retry(total=0, raise_on_status=False),
    )
    return Minio(
        config.minio_address,
        access_key=config.minio_access_key,
        secret_key=config.minio_secret_key,
        secure=config.minio_use_ssl,
        http_client=http_client,
    )


# Errors the storage client and its transport raise for connectivity,
# permission and I/O problems
STORAGE_ERRORS = (MinioException, urllib3.exceptions.HTTPError, OSError, ValueError)


def _describe(error: Exception) -> str:
    # OSError text carries local file paths
    if isinstance(error, OSError) and error.strerror:
        return f"{type(error).__name__}: {error.strerror}"
    return f"{type(error).__name__}: {error}"


class ArtifactUploader:
    """Uploads deployment artifacts to an S3-compatible bucket."""

    def __init__(self, client: Minio, bucket_name: str):
        self._client = client
        self._bucket_name = bucket_name

    @property
    def bucket_name(self) -> str:
        return self._bucket_name

    def ensure_bucket(self) -> None:
        """Create the bucket if it does not exist."""
        try:
            if not self._client.bucket_exists(bucket_name=self._bucket_name):
                self._client.make_bucket(bucket_name=self._bucket_name)
                logger.info(f"bucket_created bucket={self._bucket_name}")
        except STORAGE_ERRORS as e:
            raise UploadError(f"Storage unavailable: {_describe(e)}")

    def upload_deployment(
        self,
        output_dir: Path,
        manifest: ArtifactManifest,
        project_id: str,
        deployment_id: str,
    ) -> UploadResult:
        """
        Upload every file recorded in `manifest`.

        Files the asset processor skipped are not in the manifest and are not
        published. A listed file that can no longer be opened is skipped and
        reported in the result.

        Raises:
            UploadError: On any storage failure; objects already written for
                this deployment are removed first
        """
        self.ensure_bucket()
        output_dir = Path(output_dir)

        logger.info(
            f"upload_start project_id={project_id} deployment_id={deployment_id} files={len(manifest)}"
        )

        uploaded: list[str] = []
        skipped: list[str] = []
        total_size = 0

        try:
            for relative_path, content_hash in sorted(manifest.entries.items()):
                key = object_key(project_id, deployment_id, relative_path)
                try:
                    f = open(output_dir / relative_path, "rb")
                except OSError as e:
                    skipped.append(relative_path)
                    logger.warning(
                        f"upload_file_skipped deployment_id={deployment_id} path={relative_path} "
                        f"error={e.strerror or type(e).__name__}"
                    )
                    continue

                with f:
                    size = os.fstat(f.fileno()).st_size
                    self._client.put_object(
                        bucket_name=self._bucket_name,
                        object_name=key,
                        data=f,
                        length=size,
                        content_type=get_mime_type(relative_path),
                        metadata={
                            "Cache-Control": get_cache_control(relative_path, content_hash),
                            "content-sha256": content_hash,
                        },
                    )
                uploaded.append(key)
                total_size += size
                logger.debug(f"object_uploaded key={key} size={size}")
        except STORAGE_ERRORS as e:
            logger.error(
                f"upload_failed deployment_id={deployment_id} uploaded={len(uploaded)} "
                f"error={type(e).__name__}"
            )
            self._rollback(uploaded, deployment_id)
            raise UploadError(f"Failed to upload deployment: {_describe(e)}")

        metrics.inc("files_uploaded_total", len(uploaded))
        metrics.inc("bytes_uploaded_total", total_size)
        logger.info(
            f"upload_done deployment_id={deployment_id} file_count={len(uploaded)} "
            f"total_size={total_size} skipped={len(skipped)}"
        )
        return UploadResult(file_count=len(uploaded), total_size=total_size, keys=uploaded, skipped=skipped)

    def _rollback(self, keys: list[str], deployment_id: str) -> None:
        """Best effort removal of a partial upload."""
        if not keys:
            return
        deleted = self._delete_keys(keys)
        logger.info(f"upload_rolled_back deployment_id={deployment_id} deleted={deleted} total={len(keys)}")

    def _delete_keys(self, keys: list[str]) -> int:
        deleted = 0
        for key in keys:
            try:
                self._client.remove_object(bucket_name=self._bucket_name, object_name=key)
                deleted += 1
            except STORAGE_ERRORS as e:
                logger.warning(f"object_delete_failed key={key} error={type(e).__name__}")
        return deleted

    def delete_deployment(self, project_id: str, deployment_id: str) -> int:
        """Delete every object of a deployment. Returns the count removed."""
        prefix = f"{project_id}/{deployment_id}/"
        try:
            keys = [
                obj.object_name
                for obj in self._client.list_objects(
                    bucket_name=self._bucket_name, prefix=prefix, recursive=True
                )
            ]
            if not keys:
                return 0
            deleted = self._delete_keys(keys)
        except STORAGE_ERRORS as e:
            raise UploadError(f"Failed to delete deployment: {_describe(e)}")

        logger.info(f"deployment_deleted deployment_id={deployment_id} count={deleted}")
        return deleted
