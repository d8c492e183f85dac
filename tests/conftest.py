"""
Pytest configuration and fixtures.
"""
import os
import subprocess
import sys
import tempfile
import threading
from types import SimpleNamespace

# Set test environment before importing app
_TEST_ROOT = tempfile.mkdtemp(prefix="build-service-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_ROOT}/deployments.db"
os.environ["BUILD_DIR"] = os.path.join(_TEST_ROOT, "builds")
os.environ["BUILD_WORKER_ENABLED"] = "false"

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.config import BuildConfig
from app.core.metrics import metrics
from app.core.status import StatusTracker
from app.core.storage import ArtifactUploader
from app.db.database import create_db_engine, create_session_factory, init_db

GIT_IDENTITY = ["-c", "user.name=Build Tests", "-c", "user.email=tests@example.com"]

BUILD_SCRIPT = """\
mkdir -p dist/assets
echo '<h1>hello</h1>' > dist/index.html
echo 'body { color: red; }' > dist/assets/app.3f9a2c1b.css
echo 'console.log(1)' > dist/assets/main.js
echo 'build finished'
"""


@pytest.fixture(autouse=True)
def reset_metrics():
    """Counters are process-global."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def session_factory(tmp_path):
    """Per-test SQLite status store."""
    engine = create_db_engine(f"sqlite:///{tmp_path}/status.db")
    init_db(bind=engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def tracker(session_factory):
    return StatusTracker(session_factory)


@pytest.fixture
def build_config(tmp_path):
    """Config with short timeouts and a private build directory."""
    return BuildConfig(
        build_dir=tmp_path / "builds",
        clone_timeout_s=60,
        install_timeout_s=60,
        build_timeout_s=60,
        diagnostic_tail_lines=20,
        default_build_command="sh build.sh",
        default_output_directory="dist",
        queue_poll_timeout_s=1,
        queue_error_backoff_s=0,
        root_domain="example.test",
    )


def _git(args, cwd):
    subprocess.run(["git", *GIT_IDENTITY, *args], cwd=cwd, check=True, capture_output=True)


def _commit(repo, files: dict, message: str) -> str:
    for relative_path, content in files.items():
        path = repo / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    _git(["add", "-A"], repo)
    _git(["commit", "-q", "-m", message], repo)
    return subprocess.run(
        ["git", "rev-parse", "HEAD"], cwd=repo, check=True, capture_output=True, text=True
    ).stdout.strip()


@pytest.fixture
def make_history_repo(tmp_path):
    """
    Factory for local git repositories with several commits.

    Each dict in `commits` is written and committed in order. Returns
    (file:// url, [sha of every commit, oldest first]).
    """
    counter = {"n": 0}

    def _make(commits: list, branch: str = "main"):
        counter["n"] += 1
        repo = tmp_path / f"origin-{counter['n']}"
        repo.mkdir()
        _git(["init", "-q"], repo)
        _git(["symbolic-ref", "HEAD", f"refs/heads/{branch}"], repo)
        shas = [_commit(repo, files, f"commit {i}") for i, files in enumerate(commits, 1)]
        return repo.as_uri(), shas

    return _make


@pytest.fixture
def make_repo(make_history_repo):
    """Returns (file:// url, head sha) for a repo whose single commit holds `files`."""

    def _make(files: dict, branch: str = "main"):
        url, shas = make_history_repo([files], branch)
        return url, shas[-1]

    return _make


@pytest.fixture
def static_site_repo(make_repo):
    """Repo whose `sh build.sh` writes a small site into dist/."""
    return make_repo({"build.sh": BUILD_SCRIPT, "README.md": "# site\n"})


class FakeMinioClient:
    """Records what the uploader sends to object storage."""

    def __init__(self, fail_on_put: int = 0):
        self.buckets: set[str] = set()
        self.objects: dict[str, dict] = {}
        self.removed: list[str] = []
        self.put_calls = 0
        self.fail_on_put = fail_on_put
        self._lock = threading.Lock()

    def bucket_exists(self, bucket_name):
        return bucket_name in self.buckets

    def make_bucket(self, bucket_name):
        self.buckets.add(bucket_name)

    def put_object(self, bucket_name, object_name, data, length, content_type="application/octet-stream",
                   metadata=None):
        with self._lock:
            self.put_calls += 1
            call = self.put_calls
        if self.fail_on_put and call >= self.fail_on_put:
            raise ConnectionResetError("connection reset by peer")
        body = data.read(length)
        with self._lock:
            self.objects[object_name] = {
                "bucket": bucket_name,
                "data": body,
                "content_type": content_type,
                "metadata": dict(metadata or {}),
            }

    def remove_object(self, bucket_name, object_name):
        with self._lock:
            self.objects.pop(object_name, None)
            self.removed.append(object_name)

    def list_objects(self, bucket_name, prefix=None, recursive=False):
        with self._lock:
            keys = sorted(self.objects)
        for key in keys:
            if prefix is None or key.startswith(prefix):
                yield SimpleNamespace(object_name=key)


@pytest.fixture
def minio_factory():
    return FakeMinioClient


@pytest.fixture
def fake_minio():
    return FakeMinioClient()


@pytest.fixture
def uploader(fake_minio):
    return ArtifactUploader(fake_minio, "deployments")
