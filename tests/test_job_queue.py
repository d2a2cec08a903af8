"""
Unit tests for the in-process job queue: execution, retry with backoff,
concurrency ceiling, FIFO claiming, cleanup and waiting.
"""

import asyncio

import pytest

from conftest import drain
from services.errors import CaptureValidationError, JobNotFoundError, JobTimeoutError
from services.job_handlers import build_job_handlers
from services.job_queue import JobQueue, JobStatus, JobType, generate_job_id


def make_queue(scheduler, clock, handlers=None, **kwargs):
    kwargs.setdefault("concurrency", 5)
    kwargs.setdefault("max_retries", 3)
    kwargs.setdefault("retry_base_delay", 5.0)
    return JobQueue(handlers or {}, scheduler=scheduler, clock=clock, **kwargs)


class TestSubmit:

    @pytest.mark.asyncio
    async def test_submit_returns_id_and_stores_pending_job(self, scheduler, clock):
        blocker = asyncio.Event()

        async def handler(payload):
            await blocker.wait()

        queue = make_queue(scheduler, clock, {"slow": handler}, concurrency=1)
        first = queue.submit("slow", {"n": 1})
        second = queue.submit("slow", {"n": 2})

        assert first != second
        assert queue.get_status(second).status is JobStatus.PENDING
        assert queue.get_status(second).attempts == 0
        assert queue.get_status(second).payload == {"n": 2}
        blocker.set()
        await drain()

    def test_job_id_format(self, clock):
        job_id = generate_job_id(clock())
        millis, suffix = job_id.split("-")
        assert int(millis) == int(clock().timestamp() * 1000)
        assert len(suffix) == 9
        assert suffix.isalnum()

    @pytest.mark.asyncio
    async def test_missing_type_rejected(self, scheduler, clock):
        queue = make_queue(scheduler, clock)
        with pytest.raises(CaptureValidationError):
            queue.submit("", {})

    @pytest.mark.asyncio
    async def test_non_mapping_payload_rejected(self, scheduler, clock):
        queue = make_queue(scheduler, clock)
        with pytest.raises(CaptureValidationError):
            queue.submit("classify", ["not", "a", "dict"])

    def test_invalid_limits(self):
        with pytest.raises(ValueError):
            JobQueue(concurrency=0)
        with pytest.raises(ValueError):
            JobQueue(max_retries=0)

    def test_get_status_unknown_job(self, scheduler, clock):
        assert make_queue(scheduler, clock).get_status("nope") is None

    @pytest.mark.asyncio
    async def test_status_is_a_snapshot(self, scheduler, clock):
        queue = make_queue(scheduler, clock, {"noop": lambda payload: asyncio.sleep(0)})
        job_id = queue.submit("noop")
        snapshot = queue.get_status(job_id)
        snapshot.status = JobStatus.FAILED
        assert queue.get_status(job_id).status is not JobStatus.FAILED
        await drain()


class TestExecution:

    @pytest.mark.asyncio
    async def test_classify_job_completes_with_result(self, scheduler, clock, classifier):
        classifier.classify_content.return_value = {"contentType": "todo", "title": "Buy milk"}
        queue = make_queue(scheduler, clock, build_job_handlers(classifier, blob_store=None))

        job_id = queue.submit(JobType.CLASSIFY, {"content": "Buy milk"})
        job = await queue.wait_for(job_id, timeout=1)

        assert job.status is JobStatus.COMPLETED
        assert job.result["contentType"] == "todo"
        assert job.attempts == 1
        assert job.error is None
        classifier.classify_content.assert_awaited_once_with("Buy milk", None, None)

    @pytest.mark.asyncio
    async def test_always_failing_job_fails_after_max_retries(self, scheduler, clock):
        calls = []

        async def broken(payload):
            calls.append(payload)
            raise RuntimeError("Claude API error: 500")

        queue = make_queue(scheduler, clock, {"classify": broken})
        job_id = queue.submit("classify", {"content": "Buy milk"})
        await drain()

        job = queue.get_status(job_id)
        assert job.status is JobStatus.PENDING
        assert job.attempts == 1
        assert scheduler.delays == [5.0]

        # Not claimable before its delay has passed
        scheduler.advance(4.0)
        await drain()
        assert queue.get_status(job_id).attempts == 1

        scheduler.advance(1.0)
        await drain()
        assert queue.get_status(job_id).attempts == 2
        assert scheduler.delays == [5.0, 10.0]

        scheduler.advance(10.0)
        await drain()

        job = queue.get_status(job_id)
        assert job.status is JobStatus.FAILED
        assert job.attempts == 3
        assert job.error == "Claude API error: 500"
        assert len(calls) == 3
        assert scheduler.delays == [5.0, 10.0]

    @pytest.mark.asyncio
    async def test_retry_then_success(self, scheduler, clock):
        outcomes = [RuntimeError("timeout"), {"ok": True}]

        async def flaky(payload):
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        queue = make_queue(scheduler, clock, {"flaky": flaky})
        job_id = queue.submit("flaky")
        await drain()
        scheduler.advance(5.0)
        job = await queue.wait_for(job_id, timeout=1)

        assert job.status is JobStatus.COMPLETED
        assert job.result == {"ok": True}
        assert job.attempts == 2

    @pytest.mark.asyncio
    async def test_unknown_type_is_retried_then_failed(self, scheduler, clock):
        queue = make_queue(scheduler, clock)
        job_id = queue.submit("transcode")
        await drain()
        scheduler.advance(5.0)
        await drain()
        scheduler.advance(10.0)
        await drain()

        job = queue.get_status(job_id)
        assert job.status is JobStatus.FAILED
        assert job.attempts == 3
        assert "Unknown job type: transcode" in job.error

    @pytest.mark.asyncio
    async def test_concurrency_ceiling(self, scheduler, clock):
        release = asyncio.Event()
        running = 0
        peak = 0

        async def handler(payload):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await release.wait()
            running -= 1

        queue = make_queue(scheduler, clock, {"work": handler}, concurrency=2)
        ids = [queue.submit("work", {"n": n}) for n in range(5)]
        await drain()

        assert queue.current_processing == 2
        assert [queue.get_status(i).status for i in ids].count(JobStatus.PROCESSING) == 2

        release.set()
        for job_id in ids:
            await queue.wait_for(job_id, timeout=1)
        assert peak == 2
        assert queue.current_processing == 0
        assert queue.get_stats()["completed"] == 5

    @pytest.mark.asyncio
    async def test_jobs_claimed_in_submission_order(self, scheduler, clock):
        order = []

        async def handler(payload):
            order.append(payload["n"])

        queue = make_queue(scheduler, clock, {"work": handler}, concurrency=1)
        ids = [queue.submit("work", {"n": n}) for n in range(4)]
        for job_id in ids:
            await queue.wait_for(job_id, timeout=1)
        assert order == [0, 1, 2, 3]


class TestWaiting:

    @pytest.mark.asyncio
    async def test_wait_for_timeout_does_not_cancel_job(self, scheduler, clock):
        release = asyncio.Event()

        async def handler(payload):
            await release.wait()
            return "done"

        queue = make_queue(scheduler, clock, {"slow": handler})
        job_id = queue.submit("slow")

        with pytest.raises(JobTimeoutError):
            await queue.wait_for(job_id, timeout=0.01)

        release.set()
        job = await queue.wait_for(job_id, timeout=1)
        assert job.status is JobStatus.COMPLETED
        assert job.result == "done"

    @pytest.mark.asyncio
    async def test_wait_for_unknown_job(self, scheduler, clock):
        with pytest.raises(JobNotFoundError):
            await make_queue(scheduler, clock).wait_for("missing")

    @pytest.mark.asyncio
    async def test_poll_until_done(self, scheduler, clock):
        async def handler(payload):
            await asyncio.sleep(0.01)
            return payload["x"] * 2

        queue = make_queue(scheduler, clock, {"double": handler})
        job_id = queue.submit("double", {"x": 21})
        job = await queue.poll_until_done(job_id, timeout=1, interval=0.005)
        assert job.result == 42

    @pytest.mark.asyncio
    async def test_poll_until_done_times_out(self, scheduler, clock):
        release = asyncio.Event()

        async def handler(payload):
            await release.wait()

        queue = make_queue(scheduler, clock, {"slow": handler})
        job_id = queue.submit("slow")
        with pytest.raises(JobTimeoutError):
            await queue.poll_until_done(job_id, timeout=0.02, interval=0.005)
        release.set()
        await drain()

    @pytest.mark.asyncio
    async def test_real_scheduler_retries_after_delay(self):
        attempts = []

        async def flaky(payload):
            attempts.append(1)
            if len(attempts) < 2:
                raise RuntimeError("503")
            return "ok"

        queue = JobQueue({"flaky": flaky}, concurrency=1, max_retries=3, retry_base_delay=0.01)
        job = await queue.wait_for(queue.submit("flaky"), timeout=2)
        assert job.status is JobStatus.COMPLETED
        assert job.attempts == 2


class TestCleanupAndStats:

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_old_terminal_jobs(self, scheduler, clock):
        release = asyncio.Event()

        async def ok(payload):
            return "ok"

        async def blocked(payload):
            await release.wait()

        async def broken(payload):
            raise RuntimeError("nope")

        queue = make_queue(scheduler, clock, {"ok": ok, "blocked": blocked, "broken": broken},
                           max_retries=1)
        done = queue.submit("ok")
        failed = queue.submit("broken")
        running = queue.submit("blocked")
        await drain()

        clock.advance(3601)
        recent = queue.submit("ok")
        await drain()

        removed = queue.cleanup()

        assert removed == 2
        assert queue.get_status(done) is None
        assert queue.get_status(failed) is None
        assert queue.get_status(running).status is JobStatus.PROCESSING
        assert queue.get_status(recent).status is JobStatus.COMPLETED

        release.set()
        await drain()

    @pytest.mark.asyncio
    async def test_cleanup_with_explicit_age(self, scheduler, clock):
        async def ok(payload):
            return 1

        queue = make_queue(scheduler, clock, {"ok": ok})
        queue.submit("ok")
        await drain()
        clock.advance(10)
        assert queue.cleanup(max_age_seconds=60) == 0
        assert queue.cleanup(max_age_seconds=5) == 1

    @pytest.mark.asyncio
    async def test_stats(self, scheduler, clock):
        release = asyncio.Event()

        async def blocked(payload):
            await release.wait()

        queue = make_queue(scheduler, clock, {"blocked": blocked}, concurrency=1)
        queue.submit("blocked")
        queue.submit("blocked")
        await drain()

        stats = queue.get_stats()
        assert stats == {
            "total": 2,
            "pending": 1,
            "processing": 1,
            "completed": 0,
            "failed": 0,
            "currentProcessing": 1,
            "maxConcurrency": 1,
        }
        release.set()
        await drain()

    @pytest.mark.asyncio
    async def test_stop_cancels_retry_timers(self, scheduler, clock):
        async def broken(payload):
            raise RuntimeError("down")

        queue = make_queue(scheduler, clock, {"broken": broken})
        queue.start()
        queue.submit("broken")
        await drain()
        assert len(scheduler.pending) == 1

        await queue.stop()
        assert scheduler.pending == []

    @pytest.mark.asyncio
    async def test_cleanup_keeps_job_exactly_at_max_age(self, scheduler, clock):
        async def ok(payload):
            return 1

        queue = make_queue(scheduler, clock, {"ok": ok})
        job_id = queue.submit("ok")
        await drain()

        clock.advance(60)
        assert queue.cleanup(max_age_seconds=60) == 0
        assert queue.get_status(job_id) is not None

        clock.advance(1)
        assert queue.cleanup(max_age_seconds=60) == 1

    @pytest.mark.asyncio
    async def test_illegal_transitions_rejected(self, scheduler, clock):
        release = asyncio.Event()

        async def blocked(payload):
            await release.wait()
            return "ok"

        queue = make_queue(scheduler, clock, {"blocked": blocked}, concurrency=1)
        done = queue.submit("blocked")
        waiting = queue.submit("blocked")
        await drain()

        with pytest.raises(RuntimeError, match="pending -> completed"):
            queue._transition(queue._jobs[waiting], JobStatus.COMPLETED)

        release.set()
        await queue.wait_for(done, timeout=1)
        with pytest.raises(RuntimeError, match="completed -> pending"):
            queue._transition(queue._jobs[done], JobStatus.PENDING)
        assert queue.get_status(done).status is JobStatus.COMPLETED
        await queue.wait_for(waiting, timeout=1)

    @pytest.mark.asyncio
    async def test_stop_does_not_start_pending_jobs(self, scheduler, clock):
        started = []

        async def blocked(payload):
            started.append(payload["n"])
            await asyncio.Event().wait()

        queue = make_queue(scheduler, clock, {"blocked": blocked}, concurrency=1)
        queue.start()
        queue.submit("blocked", {"n": 1})
        second = queue.submit("blocked", {"n": 2})
        await drain()
        assert started == [1]

        await queue.stop()
        await drain()

        assert started == [1]
        assert queue.get_status(second).status is JobStatus.PENDING
        assert queue.current_processing == 0

    def test_register_handler(self, scheduler, clock):
        queue = make_queue(scheduler, clock)
        assert not queue.has_handler("classify")
        queue.register_handler(JobType.CLASSIFY, lambda payload: None)
        assert queue.has_handler("classify")
        assert queue.job_types == ["classify"]
