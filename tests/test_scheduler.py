"""
Tests for the recognition worker pool.

Most tests use the thread backend with a fake engine; the process backend
is exercised with picklable engines from conftest.
"""

import sys
import threading
import time
from concurrent.futures import wait
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))


def _scheduler(engine_factory, workers, **kwargs):
    from scanflow.utils.scheduler import RecognitionScheduler
    return RecognitionScheduler(
        engine_factory=engine_factory,
        backend="thread",
        worker_count=workers,
        **kwargs
    )


def _wait_until(predicate, timeout=30.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


class TestScheduler:
    """Test task fan-out and settlement."""

    @pytest.mark.parametrize("workers,pages", [(1, 3), (2, 5), (4, 4), (3, 9)])
    def test_every_future_settles(self, fake_engine_factory, workers, pages):
        """K tasks on N <= K workers settle exactly K futures."""
        from scanflow.utils.errors import RecognitionTaskError

        images = [b"boom" if i % 3 == 1 else f"page {i}".encode() for i in range(pages)]
        with _scheduler(fake_engine_factory, workers, page_count=pages) as scheduler:
            futures = [scheduler.enqueue(i, img) for i, img in enumerate(images)]
            done, not_done = wait(futures, timeout=10)

        assert not not_done
        completed = [f for f in done if f.exception() is None]
        failed = [f for f in done if isinstance(f.exception(), RecognitionTaskError)]
        assert len(completed) + len(failed) == pages
        assert len(failed) == sum(1 for img in images if img == b"boom")

    def test_results_match_pages(self, fake_engine_factory):
        from scanflow.utils.scheduler import recognize_pages

        with _scheduler(fake_engine_factory, 2) as scheduler:
            futures = recognize_pages(scheduler, [b"alpha beta", b"gamma"])
            results = [f.result(timeout=10) for f in futures]

        assert results[0].lines[0].text == "alpha beta"
        assert results[1].words[0].text == "gamma"

    def test_error_carries_page_index(self, fake_engine_factory):
        from scanflow.utils.errors import RecognitionTaskError

        with _scheduler(fake_engine_factory, 1) as scheduler:
            future = scheduler.enqueue(7, b"boom")
            with pytest.raises(RecognitionTaskError) as exc_info:
                future.result(timeout=10)

        assert exc_info.value.page_index == 7
        assert "engine exploded" in str(exc_info.value)

    def test_worker_survives_failed_task(self, fake_engine_factory):
        with _scheduler(fake_engine_factory, 1) as scheduler:
            first = scheduler.enqueue(0, b"boom")
            second = scheduler.enqueue(1, b"still working")

            assert second.result(timeout=10).words[1].text == "working"
            assert first.exception(timeout=10) is not None

    def test_init_failure(self):
        from conftest import failing_engine_factory
        from scanflow.utils.errors import WorkerInitError

        scheduler = _scheduler(failing_engine_factory, 2, language="xyz")
        with pytest.raises(WorkerInitError) as exc_info:
            scheduler.init()

        assert "xyz" in str(exc_info.value)
        assert not scheduler.is_running

    def test_enqueue_requires_running(self, fake_engine_factory):
        from scanflow.utils.errors import SchedulerClosedError

        scheduler = _scheduler(fake_engine_factory, 1)
        with pytest.raises(SchedulerClosedError):
            scheduler.enqueue(0, b"too early")

        scheduler.init()
        scheduler.terminate()
        with pytest.raises(SchedulerClosedError):
            scheduler.enqueue(0, b"too late")

    def test_terminate_is_idempotent(self, fake_engine_factory):
        scheduler = _scheduler(fake_engine_factory, 2)
        scheduler.init()
        scheduler.terminate()
        scheduler.terminate()

        assert not scheduler.is_running

    def test_unknown_backend(self, fake_engine_factory):
        from scanflow.utils.scheduler import RecognitionScheduler

        with pytest.raises(ValueError):
            RecognitionScheduler(engine_factory=fake_engine_factory, backend="gpu")

    def test_worker_count_from_profile(self, fake_engine_factory):
        from scanflow.utils.device import DeviceProfile
        from scanflow.utils.scheduler import RecognitionScheduler

        scheduler = RecognitionScheduler(
            engine_factory=fake_engine_factory,
            backend="thread",
            profile=DeviceProfile(cpu_cores=16, memory_gb=3.0),
        )
        assert scheduler.worker_count == 3


class TestProgress:
    """Test progress reporting."""

    def test_progress_payloads(self, fake_engine_factory):
        payloads = []
        lock = threading.Lock()

        def on_progress(payload):
            with lock:
                payloads.append(payload)

        with _scheduler(fake_engine_factory, 2, page_count=3, on_progress=on_progress) as scheduler:
            futures = [scheduler.enqueue(i, f"page {i}".encode()) for i in range(3)]
            wait(futures, timeout=10)

        assert payloads
        assert all(0.0 <= p.overall_progress <= 1.0 for p in payloads)
        assert all(p.total_pages == 3 for p in payloads)
        final = max(payloads, key=lambda p: p.completed_pages)
        assert final.completed_pages == 3
        assert final.overall_progress == pytest.approx(1.0)

    def test_total_grows_with_submissions(self, fake_engine_factory):
        with _scheduler(fake_engine_factory, 1, page_count=1) as scheduler:
            futures = [scheduler.enqueue(i, b"x") for i in range(3)]
            wait(futures, timeout=10)

            assert scheduler.total_pages == 3
            assert scheduler.page_progress(2) == 1.0
            assert scheduler.page_progress(99) == 0.0

    def test_empty_scheduler_is_complete(self, fake_engine_factory):
        scheduler = _scheduler(fake_engine_factory, 1)
        assert scheduler.overall_progress() == 1.0

    def test_callback_errors_are_contained(self, fake_engine_factory):
        def on_progress(payload):
            raise RuntimeError("ui went away")

        with _scheduler(fake_engine_factory, 1, on_progress=on_progress) as scheduler:
            result = scheduler.enqueue(0, b"fine").result(timeout=10)

        assert result.words[0].text == "fine"


class TestWorkerLoop:
    """Test the worker loop directly over plain queues."""

    def test_message_sequence(self, fake_engine_factory):
        import queue
        from scanflow.utils.workers import (
            run_worker, WorkerRequest,
            REQUEST_INIT, REQUEST_RECOGNIZE, REQUEST_TERMINATE,
            MESSAGE_READY, MESSAGE_PROGRESS, MESSAGE_RESULT,
        )

        inbox, outbox = queue.Queue(), queue.Queue()
        inbox.put(WorkerRequest(REQUEST_INIT, language="eng"))
        inbox.put(WorkerRequest(REQUEST_RECOGNIZE, task_id="t1", image=b"hi"))
        inbox.put(WorkerRequest(REQUEST_TERMINATE))

        run_worker("w", fake_engine_factory, inbox, outbox)

        kinds = []
        while not outbox.empty():
            kinds.append(outbox.get().kind)
        assert kinds[0] == MESSAGE_READY
        assert MESSAGE_PROGRESS in kinds
        assert kinds[-1] == MESSAGE_RESULT

    def test_requires_init_first(self, fake_engine_factory):
        import queue
        from scanflow.utils.workers import (
            run_worker, WorkerRequest, REQUEST_RECOGNIZE, MESSAGE_INIT_ERROR,
        )

        inbox, outbox = queue.Queue(), queue.Queue()
        inbox.put(WorkerRequest(REQUEST_RECOGNIZE, task_id="t1", image=b"hi"))

        run_worker("w", fake_engine_factory, inbox, outbox)

        assert outbox.get_nowait().kind == MESSAGE_INIT_ERROR


class TestWorkerExit:
    """Test recovery when a worker disappears mid-task."""

    def test_exit_fails_only_held_task(self, fake_engine_factory):
        from conftest import FakeEngine
        from scanflow.utils.errors import RecognitionTaskError
        from scanflow.utils.workers import WorkerMessage, MESSAGE_EXITED

        FakeEngine.gate.clear()
        try:
            with _scheduler(fake_engine_factory, 1) as scheduler:
                stuck = scheduler.enqueue(0, b"slow page")
                assert _wait_until(lambda: bool(scheduler._busy), 5)
                worker_id = next(iter(scheduler._busy))

                scheduler._events.put(WorkerMessage(
                    MESSAGE_EXITED, worker_id, error="Worker process exited with code 9"
                ))
                with pytest.raises(RecognitionTaskError) as exc_info:
                    stuck.result(timeout=10)
                FakeEngine.gate.set()

                after = scheduler.enqueue(1, b"next page")
                assert after.result(timeout=10).words[0].text == "next"
                assert worker_id not in scheduler._handles
                assert len(scheduler._handles) == 1
        finally:
            FakeEngine.gate.set()

        assert exc_info.value.page_index == 0
        assert "code 9" in str(exc_info.value)


class TestProcessBackend:
    """Test the default process-backed pool."""

    def test_results_and_prompt_shutdown(self):
        from conftest import FakeEngine
        from scanflow.utils.scheduler import RecognitionScheduler, recognize_pages

        scheduler = RecognitionScheduler(engine_factory=FakeEngine, backend="process", worker_count=2)
        scheduler.init()
        processes = [handle._process for handle in scheduler._handles.values()]
        try:
            futures = recognize_pages(scheduler, [b"alpha beta", b"gamma", b"delta"])
            results = [f.result(timeout=30) for f in futures]
        finally:
            started = time.monotonic()
            scheduler.terminate()
            elapsed = time.monotonic() - started

        assert [r.words[0].text for r in results] == ["alpha", "gamma", "delta"]
        assert elapsed < 5.0
        assert not any(p.is_alive() for p in processes)
        # Workers left through the terminate request, not a signal
        assert all(p.exitcode == 0 for p in processes)

    def test_dead_worker_is_replaced(self):
        from conftest import ExitingEngine
        from scanflow.utils.errors import RecognitionTaskError
        from scanflow.utils.scheduler import RecognitionScheduler

        with RecognitionScheduler(
            engine_factory=ExitingEngine, backend="process", worker_count=2
        ) as scheduler:
            doomed = scheduler.enqueue(0, b"die")
            with pytest.raises(RecognitionTaskError) as exc_info:
                doomed.result(timeout=30)

            later = [scheduler.enqueue(i, f"page {i}".encode()) for i in range(1, 4)]
            assert [f.result(timeout=60).words[1].text for f in later] == ["1", "2", "3"]
            assert _wait_until(lambda: len(scheduler._idle) == 2, 60)

        assert exc_info.value.page_index == 0
        assert "exited with code 3" in str(exc_info.value)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
