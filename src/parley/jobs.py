"""Background jobs for parley.

Long-running room operations (conversation deletion, export) run as detached
asyncio tasks tracked by a ``JobManager``. A job reports progress as
``done``/``total`` and is cancelled cooperatively: ``cancel()`` only sets a
flag, and the worker calls ``job.raise_if_cancelled()`` between batches, so a
batch that has started always commits or rolls back as a whole.

Jobs live in memory for the lifetime of the process.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from .errors import JobNotFound, ParleyError
from .models import Clock, new_id, to_timestamp, utcnow

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


FINISHED = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED})


class JobCancelled(Exception):
    """Raised inside a job's worker when cancellation was requested."""


@dataclass
class Job:
    job_id: str
    kind: str
    room_id: str
    actor_id: str
    created_at: str
    status: str = JobStatus.PENDING
    done: int = 0
    total: int = 0
    result: Any = None
    error: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    cancel_requested: bool = False

    @property
    def finished(self) -> bool:
        return self.status in FINISHED

    def raise_if_cancelled(self) -> None:
        if self.cancel_requested:
            raise JobCancelled(self.job_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind,
            "room_id": self.room_id,
            "actor_id": self.actor_id,
            "status": str(JobStatus(self.status).value),
            "progress": {"done": self.done, "total": self.total},
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


JobWorker = Callable[[Job], Awaitable[Any]]


class JobManager:
    """Registry and runner for background jobs."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self.clock = clock
        self._jobs: dict[str, Job] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def _now(self) -> str:
        return to_timestamp(self.clock())

    def start(self, kind: str, room_id: str, actor_id: str, worker: JobWorker) -> Job:
        """Start ``worker(job)`` as a detached task and return the job."""
        job = Job(job_id=new_id(), kind=kind, room_id=room_id, actor_id=actor_id, created_at=self._now())
        self._jobs[job.job_id] = job
        self._tasks[job.job_id] = asyncio.create_task(
            self._run(job, worker), name=f"parley-job-{kind}-{job.job_id}"
        )
        logger.info(f"Started job {job.job_id} ({kind}) for room {room_id} by {actor_id}")
        return job

    def get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound()
        return job

    def list(self, room_id: str | None = None) -> list[Job]:
        return [j for j in self._jobs.values() if room_id is None or j.room_id == room_id]

    def cancel(self, job_id: str) -> Job:
        """Request cancellation. The worker stops at its next batch boundary."""
        job = self.get(job_id)
        if not job.finished:
            job.cancel_requested = True
            logger.info(f"Cancellation requested for job {job_id}")
        return job

    async def wait(self, job_id: str, timeout: float | None = None) -> Job:
        """Wait for a job to finish and return it."""
        job = self.get(job_id)
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return job

    async def aclose(self) -> None:
        """Cancel unfinished jobs and wait for their workers to stop."""
        for job in self._jobs.values():
            if not job.finished:
                job.cancel_requested = True
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, job: Job, worker: JobWorker) -> None:
        job.status = JobStatus.RUNNING
        job.started_at = self._now()
        try:
            job.raise_if_cancelled()
            job.result = await worker(job)
            job.status = JobStatus.COMPLETED
        except JobCancelled:
            job.status = JobStatus.CANCELLED
            logger.info(f"Job {job.job_id} cancelled at {job.done}/{job.total}")
        except ParleyError as e:
            job.status = JobStatus.FAILED
            job.error = f"{e.code}: {e}"
            logger.warning(f"Job {job.job_id} failed: {job.error}")
        except Exception as e:
            job.status = JobStatus.FAILED
            job.error = f"{type(e).__name__}: {e}"
            logger.exception(f"Job {job.job_id} crashed")
        finally:
            job.finished_at = self._now()
            self._tasks.pop(job.job_id, None)
