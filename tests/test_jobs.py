"""Tests for background jobs."""

import asyncio

import pytest

from parley.errors import JobNotFound, RoomNotFound
from parley.jobs import JobManager, JobStatus


class TestJobManager:
    @pytest.mark.asyncio
    async def test_job_completes_with_result(self):
        jobs = JobManager()

        async def worker(job):
            job.total = 2
            job.done = 2
            return {"answer": 42}

        job = jobs.start("test", "room-1", "alice", worker)
        await jobs.wait(job.job_id, timeout=1.0)

        assert job.status == JobStatus.COMPLETED
        assert job.result == {"answer": 42}
        data = job.to_dict()
        assert data["status"] == "completed"
        assert data["progress"] == {"done": 2, "total": 2}
        assert data["finished_at"] is not None

    @pytest.mark.asyncio
    async def test_cancel_before_start(self):
        jobs = JobManager()
        ran = []

        async def worker(job):
            ran.append(True)

        job = jobs.start("test", "room-1", "alice", worker)
        jobs.cancel(job.job_id)
        await jobs.wait(job.job_id, timeout=1.0)

        assert job.status == JobStatus.CANCELLED
        assert ran == []

    @pytest.mark.asyncio
    async def test_cooperative_cancellation_between_batches(self):
        jobs = JobManager()
        proceed = asyncio.Event()
        batches = []

        async def worker(job):
            for i in range(10):
                job.raise_if_cancelled()
                batches.append(i)
                if i == 2:
                    await proceed.wait()
            return "done"

        job = jobs.start("test", "room-1", "alice", worker)
        while len(batches) < 3:
            await asyncio.sleep(0)
        jobs.cancel(job.job_id)
        proceed.set()
        await jobs.wait(job.job_id, timeout=1.0)

        assert job.status == JobStatus.CANCELLED
        assert batches == [0, 1, 2]
        assert job.result is None

    @pytest.mark.asyncio
    async def test_failed_job_records_error(self):
        jobs = JobManager()

        async def worker(job):
            raise RoomNotFound()

        job = jobs.start("test", "room-1", "alice", worker)
        await jobs.wait(job.job_id, timeout=1.0)

        assert job.status == JobStatus.FAILED
        assert job.error.startswith("RoomNotFound")

    @pytest.mark.asyncio
    async def test_crashed_job_records_error(self):
        jobs = JobManager()

        async def worker(job):
            raise KeyError("boom")

        job = jobs.start("test", "room-1", "alice", worker)
        await jobs.wait(job.job_id, timeout=1.0)

        assert job.status == JobStatus.FAILED
        assert "KeyError" in job.error

    @pytest.mark.asyncio
    async def test_cancel_finished_job_is_noop(self):
        jobs = JobManager()

        async def worker(job):
            return 1

        job = jobs.start("test", "room-1", "alice", worker)
        await jobs.wait(job.job_id, timeout=1.0)
        jobs.cancel(job.job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.cancel_requested is False

    @pytest.mark.asyncio
    async def test_get_and_list(self):
        jobs = JobManager()

        async def worker(job):
            return None

        a = jobs.start("test", "room-1", "alice", worker)
        b = jobs.start("test", "room-2", "alice", worker)

        assert jobs.get(a.job_id) is a
        assert jobs.list("room-2") == [b]
        assert len(jobs.list()) == 2
        with pytest.raises(JobNotFound):
            jobs.get("missing")
        await jobs.aclose()

    @pytest.mark.asyncio
    async def test_aclose_cancels_running_jobs(self):
        jobs = JobManager()

        async def worker(job):
            while True:
                job.raise_if_cancelled()
                await asyncio.sleep(0.001)

        job = jobs.start("test", "room-1", "alice", worker)
        await asyncio.sleep(0.01)
        await jobs.aclose()

        assert job.status == JobStatus.CANCELLED
