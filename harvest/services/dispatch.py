import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

from harvest.metrics import metrics
from harvest.schemas import JobCancelled, JobQueued
from harvest.services.provisioning import VMManager


logger = logging.getLogger(__name__)


class JobDispatcher:
    """Runs each inbound job event as its own task.

    Tasks are not ordered relative to each other. Per-job consistency comes
    from the VM table, not from dispatch order.
    """

    def __init__(self, manager: VMManager):
        self.manager = manager
        self._tasks: set[asyncio.Task] = set()

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def job_queued(self, event: JobQueued) -> asyncio.Task:
        metrics.inc("jobs_queued_total")
        return self._spawn(self._run_job(event), f"job-{event.id}")

    def job_cancelled(self, event: JobCancelled) -> asyncio.Task:
        metrics.inc("jobs_cancelled_total")
        return self._spawn(self._cancel_job(event), f"cancel-{event.id}")

    async def _run_job(self, event: JobQueued) -> None:
        try:
            await self.manager.start_job(
                event.id, event.labels, event.installation_token, event.clone_url
            )
        except Exception:  # noqa: BLE001
            metrics.inc("jobs_failed_total")
            logger.exception("job lifecycle failed job_id=%s", event.id)

    async def _cancel_job(self, event: JobCancelled) -> None:
        try:
            await self.manager.delete_if_present(event.id)
        except Exception:  # noqa: BLE001
            logger.exception("vm deletion after cancellation failed job_id=%s", event.id)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for in-flight tasks. Returns False if some are still running at timeout."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(list(self._tasks), timeout=remaining)
        return True
