from collections import Counter
from threading import Lock


COUNTERS = (
    "jobs_queued_total",
    "jobs_ignored_total",
    "jobs_cancelled_total",
    "jobs_failed_total",
    "vms_created_total",
    "vm_create_failures_total",
    "vms_deleted_total",
    "vm_delete_failures_total",
)


class Metrics:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Counter[str] = Counter({key: 0 for key in COUNTERS})

    def inc(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[key] += amount

    def get(self, key: str) -> int:
        with self._lock:
            return self._counters[key]

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)


metrics = Metrics()
