"""
Process-wide registry of active analysis runs
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from core.exceptions import JobActiveError
import logging

logger = logging.getLogger(__name__)


@dataclass
class ActiveRun:
    job_id: str
    kind: str
    task: Optional[asyncio.Task] = None
    abort: Optional[Callable[[], None]] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class JobRegistry:
    """
    Tracks which jobs have a run in progress.

    At most one run (primary, streaming or re-analysis) may mutate a job at a
    time; a second claim on the same job id raises JobActiveError. Runs for
    different jobs are independent. The registry is created once per process
    and injected into whatever starts runs; ``shutdown()`` cancels everything
    still running when the process stops.
    """

    def __init__(self):
        self._runs: Dict[str, ActiveRun] = {}

    def is_active(self, job_id: str) -> bool:
        return job_id in self._runs

    def active_job_ids(self) -> List[str]:
        return list(self._runs)

    def get(self, job_id: str) -> Optional[ActiveRun]:
        return self._runs.get(job_id)

    def ensure_inactive(self, job_id: str):
        run = self._runs.get(job_id)
        if run is not None:
            raise JobActiveError(
                f"Job {job_id} already has an active {run.kind} run",
                context={"job_id": job_id, "active_kind": run.kind}
            )

    def register(
        self,
        job_id: str,
        kind: str,
        task: Optional[asyncio.Task] = None,
        abort: Optional[Callable[[], None]] = None,
    ) -> ActiveRun:
        self.ensure_inactive(job_id)
        run = ActiveRun(job_id=job_id, kind=kind, task=task, abort=abort)
        self._runs[job_id] = run
        if task is not None:
            task.add_done_callback(lambda _t: self.unregister(job_id, run))
        logger.debug(f"Registered {kind} run for job {job_id}")
        return run

    def attach_task(self, job_id: str, task: asyncio.Task):
        run = self._runs[job_id]
        run.task = task
        task.add_done_callback(lambda _t: self.unregister(job_id, run))

    def unregister(self, job_id: str, run: Optional[ActiveRun] = None):
        current = self._runs.get(job_id)
        if current is not None and (run is None or current is run):
            del self._runs[job_id]
            logger.debug(f"Unregistered {current.kind} run for job {job_id}")

    @asynccontextmanager
    async def claim(self, job_id: str, kind: str):
        """Hold a job for the duration of an inline operation"""
        run = self.register(job_id, kind)
        try:
            yield run
        finally:
            self.unregister(job_id, run)

    def abort(self, job_id: str) -> bool:
        """Signal an active run to stop; returns False when nothing is running"""
        run = self._runs.get(job_id)
        if run is None or run.abort is None:
            return False
        logger.info(f"Abort requested for job {job_id}")
        run.abort()
        return True

    async def wait(self, job_id: str):
        run = self._runs.get(job_id)
        if run is not None and run.task is not None:
            await asyncio.gather(run.task, return_exceptions=True)

    async def shutdown(self):
        runs = list(self._runs.values())
        if not runs:
            return
        logger.info(f"Cancelling {len(runs)} active runs")
        for run in runs:
            if run.abort is not None:
                run.abort()
            if run.task is not None and not run.task.done():
                run.task.cancel()
        tasks = [run.task for run in runs if run.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._runs.clear()
