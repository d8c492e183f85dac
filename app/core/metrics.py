"""
Simple in-memory metrics for Prometheus exposition.
Thread-safe counters shared by every build worker.
"""
import threading
from typing import Dict

# name -> (type, help)
METRIC_HELP: Dict[str, tuple[str, str]] = {
    "jobs_received_total": ("counter", "Jobs removed from the deployment queue"),
    "jobs_rejected_total": ("counter", "Queue messages that could not be parsed"),
    "jobs_duplicate_total": ("counter", "Redelivered jobs rejected while still in flight"),
    "builds_succeeded_total": ("counter", "Deployments that finished with status success"),
    "builds_failed_total": ("counter", "Deployments that finished with status failed"),
    "builds_skipped_total": ("counter", "Redelivered deployments already in a terminal state"),
    "builds_in_progress": ("gauge", "Deployments currently being built"),
    "workspaces_cleaned_total": ("counter", "Working directories removed after a build"),
    "workspace_cleanup_failures_total": ("counter", "Working directories that could not be removed"),
    "files_uploaded_total": ("counter", "Files published to object storage"),
    "bytes_uploaded_total": ("counter", "Bytes published to object storage"),
    "requests_total": ("counter", "HTTP requests served by the operational API"),
}


class Metrics:
    """Thread-safe metrics collection."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {name: 0 for name in METRIC_HELP}

    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter."""
        with self._lock:
            if name not in self._counters:
                self._counters[name] = 0
            self._counters[name] += value

    def dec(self, name: str, value: int = 1) -> None:
        """Decrement a gauge."""
        self.inc(name, -value)

    def get(self, name: str) -> int:
        """Get a counter value."""
        with self._lock:
            return self._counters.get(name, 0)

    def get_all(self) -> Dict[str, int]:
        """Get all counter values."""
        with self._lock:
            return self._counters.copy()

    def reset(self) -> None:
        with self._lock:
            self._counters = {name: 0 for name in METRIC_HELP}

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        for name, value in sorted(self.get_all().items()):
            metric_type, help_text = METRIC_HELP.get(name, ("counter", name))
            lines.append(f"# HELP build_{name} {help_text}")
            lines.append(f"# TYPE build_{name} {metric_type}")
            lines.append(f"build_{name} {value}")

        return "\n".join(lines) + "\n"


# Global metrics instance
metrics = Metrics()
