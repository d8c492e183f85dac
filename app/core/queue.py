"""
Deployment job queue.

Producers LPUSH JSON messages onto a Redis list; the dispatcher BRPOPs them,
so delivery is FIFO and at-least-once. InMemoryJobQueue has the same surface
for local runs and tests.
"""
import json
import queue
from typing import Optional, Union

import redis
from pydantic import ValidationError

from app.core.errors import InvalidJobError, QueueError
from app.schemas.deployment import IDENTIFIER_PATTERN, DeploymentJob

# Characters of an unparseable message kept in logs
PREVIEW_CHARS = 200


def preview(raw: Union[str, bytes]) -> str:
    """Truncated, single-line rendering of a raw message for logs."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    text = " ".join(raw.split())
    if len(text) > PREVIEW_CHARS:
        return text[:PREVIEW_CHARS] + "..."
    return text


def _recover_deployment_id(raw: Union[str, bytes]) -> Optional[str]:
    try:
        data = json.loads(raw)
    except (ValueError, TypeError):
        return None
    if not isinstance(data, dict):
        return None
    candidate = data.get("deployment_id")
    if not isinstance(candidate, str) or not candidate.strip():
        return None
    candidate = candidate.strip()
    # Only ids that are usable as a status key are recovered
    if not IDENTIFIER_PATTERN.match(candidate):
        return None
    return candidate


def parse_job(raw: Union[str, bytes]) -> DeploymentJob:
    """
    Parse a queue message into a DeploymentJob.

    Raises:
        InvalidJobError: With the deployment_id when it can still be recovered
    """
    try:
        return DeploymentJob.model_validate_json(raw)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) or "message" for err in e.errors()})
        raise InvalidJobError(
            f"Invalid deployment job: {', '.join(fields)}",
            deployment_id=_recover_deployment_id(raw),
        )


class RedisJobQueue:
    """FIFO job queue backed by a Redis list."""

    def __init__(self, client: redis.Redis, name: str = "deployment:queue"):
        self._client = client
        self._name = name

    @classmethod
    def from_url(cls, url: str, name: str = "deployment:queue") -> "RedisJobQueue":
        client = redis.Redis.from_url(url, socket_connect_timeout=5, health_check_interval=30)
        return cls(client, name)

    @property
    def name(self) -> str:
        return self._name

    def push(self, message: Union[str, bytes]) -> None:
        try:
            self._client.lpush(self._name, message)
        except redis.RedisError as e:
            raise QueueError(f"Queue unavailable: {type(e).__name__}: {e}")

    def pop(self, timeout: float) -> Optional[bytes]:
        """Next raw message, or None if nothing arrived within `timeout`."""
        try:
            item = self._client.brpop([self._name], timeout=max(int(timeout), 1))
        except redis.RedisError as e:
            raise QueueError(f"Queue unavailable: {type(e).__name__}: {e}")
        if item is None:
            return None
        _key, message = item
        return message

    def __len__(self) -> int:
        try:
            return self._client.llen(self._name)
        except redis.RedisError as e:
            raise QueueError(f"Queue unavailable: {type(e).__name__}: {e}")

    def close(self) -> None:
        self._client.close()


class InMemoryJobQueue:
    """Process-local queue with the RedisJobQueue interface."""

    def __init__(self):
        self._queue: "queue.Queue[Union[str, bytes]]" = queue.Queue()

    def push(self, message: Union[str, bytes]) -> None:
        self._queue.put(message)

    def pop(self, timeout: float) -> Optional[Union[str, bytes]]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def __len__(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        pass
