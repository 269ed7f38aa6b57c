"""
Tests for the worker pool scheduler
"""

import io
import os
import random
import signal
import sys
import threading
import time
from multiprocessing.connection import wait as wait_for_processes

import pytest
from PIL import Image

from converter.conversion.errors import BufferTransferredError, SchedulerClosedError
from converter.conversion.models import ColorProfile, DoneEvent, ErrorEvent, ProgressEvent, TargetFormat
from converter.conversion.scheduler import WorkerPoolScheduler
from converter.inbox import TaskInbox, TaskStatus


class FakeContext:
    """In-process stand-in for a worker process; tests drive its replies by hand"""

    def __init__(self, index, scheduler):
        self.index = index
        self.scheduler = scheduler
        self.submitted = []
        self.recycled = 0
        self.closed = False
        self.failing_submits = 0

    def submit(self, task):
        if self.failing_submits:
            self.failing_submits -= 1
            raise BrokenPipeError("worker process is gone")
        self.submitted.append(task)

    def recycle(self):
        self.recycled += 1

    def shutdown(self, wait=True):
        self.closed = True


@pytest.fixture
def pool():
    """Factory for schedulers with fake contexts; returns (scheduler, contexts, events)"""
    created = []

    def build(size):
        contexts = []
        events = []

        def factory(index, scheduler):
            context = FakeContext(index, scheduler)
            contexts.append(context)
            return context

        scheduler = WorkerPoolScheduler(size=size, listener=events.append, context_factory=factory)
        created.append(scheduler)
        return scheduler, contexts, events

    yield build
    for scheduler in created:
        scheduler.shutdown()


def _done(task_id):
    return DoneEvent(task_id, b"out", TargetFormat.PNG, ColorProfile.SRGB)


class TestDispatch:
    """FIFO order and capacity"""

    def test_contexts_created_up_front(self, pool):
        scheduler, contexts, _ = pool(3)
        assert scheduler.size == 3
        assert len(contexts) == 3
        assert scheduler.busy_count == 0

    def test_first_n_dispatched_in_enqueue_order(self, pool, make_task):
        scheduler, contexts, _ = pool(2)

        for i in range(5):
            scheduler.enqueue(make_task(f"t{i}"))

        assert scheduler.running_task_ids() == ["t0", "t1"]
        assert scheduler.queued_task_ids() == ["t2", "t3", "t4"]
        assert [t.task_id for t in contexts[0].submitted] == ["t0"]
        assert [t.task_id for t in contexts[1].submitted] == ["t1"]

    def test_completion_dispatches_queue_head(self, pool, make_task):
        scheduler, contexts, events = pool(2)
        for i in range(4):
            scheduler.enqueue(make_task(f"t{i}"))

        scheduler.handle_message(_done("t1"))

        assert events == [_done("t1")]
        assert scheduler.running_task_ids() == ["t0", "t2"]
        assert [t.task_id for t in contexts[1].submitted] == ["t1", "t2"]
        assert scheduler.queued_task_ids() == ["t3"]

    def test_dispatch_is_noop_without_idle_context(self, pool, make_task):
        scheduler, contexts, _ = pool(1)
        scheduler.enqueue(make_task("t0"))
        scheduler.enqueue(make_task("t1"))

        scheduler.dispatch()

        assert scheduler.running_task_ids() == ["t0"]
        assert scheduler.queued_count == 1

    def test_dispatch_is_noop_with_empty_queue(self, pool):
        scheduler, contexts, _ = pool(2)
        scheduler.dispatch()
        assert scheduler.busy_count == 0
        assert all(not c.submitted for c in contexts)

    def test_capacity_never_exceeded(self, pool, make_task):
        size = 3
        scheduler, _, _ = pool(size)
        rng = random.Random(1234)
        next_id = 0
        for _ in range(300):
            running = [t for t in scheduler.running_task_ids() if t is not None]
            if running and rng.random() < 0.45:
                scheduler.handle_message(_done(rng.choice(running)))
            else:
                scheduler.enqueue(make_task(f"t{next_id}"))
                next_id += 1
            assert scheduler.busy_count <= size
            # work-conserving: nothing waits while a context is idle
            assert scheduler.queued_count == 0 or scheduler.busy_count == size

    def test_strict_fifo_across_completions(self, pool, make_task):
        scheduler, contexts, _ = pool(2)
        for i in range(6):
            scheduler.enqueue(make_task(f"t{i}"))
        for finished in ["t1", "t0", "t3", "t2"]:
            scheduler.handle_message(_done(finished))

        # each freed context takes the earliest task still waiting
        assert [t.task_id for t in contexts[0].submitted] == ["t0", "t3", "t4"]
        assert [t.task_id for t in contexts[1].submitted] == ["t1", "t2", "t5"]
        assert scheduler.queued_count == 0


class TestBufferOwnership:
    def test_buffer_transferred_at_dispatch(self, pool, make_task):
        scheduler, contexts, _ = pool(1)
        first = make_task("t0")
        second = make_task("t1")
        payload = first.buffer

        scheduler.enqueue(first)
        scheduler.enqueue(second)

        with pytest.raises(BufferTransferredError):
            first.buffer
        assert contexts[0].submitted[0].buffer == payload
        # still queued, still owned by the submitter
        assert second.buffer


class TestMessages:
    """Progress, completion and failure handling"""

    def test_progress_forwarded_unchanged(self, pool, make_task):
        scheduler, _, events = pool(1)
        scheduler.enqueue(make_task("t0"))
        progress = ProgressEvent("t0", 45)

        scheduler.handle_message(progress)

        assert events == [progress]
        assert events[0] is progress
        assert scheduler.running_task_ids() == ["t0"]

    def test_error_isolated_to_its_task(self, pool, make_task):
        scheduler, contexts, events = pool(2)
        for i in range(3):
            scheduler.enqueue(make_task(f"t{i}"))

        scheduler.handle_message(ErrorEvent("t0", "Unable to decode PNG image"))
        scheduler.handle_message(_done("t1"))
        scheduler.handle_message(_done("t2"))

        errors = [e for e in events if isinstance(e, ErrorEvent)]
        assert errors == [ErrorEvent("t0", "Unable to decode PNG image")]
        assert [e.task_id for e in events if isinstance(e, DoneEvent)] == ["t1", "t2"]
        assert scheduler.busy_count == 0

    def test_message_for_unknown_task_is_dropped(self, pool, make_task):
        scheduler, _, events = pool(1)
        scheduler.enqueue(make_task("t0"))

        scheduler.handle_message(_done("ghost"))
        scheduler.handle_message(ProgressEvent("ghost", 20))

        assert events == []
        assert scheduler.running_task_ids() == ["t0"]

    def test_listener_failure_does_not_break_pool(self, make_task):
        contexts = []

        def factory(index, scheduler):
            context = FakeContext(index, scheduler)
            contexts.append(context)
            return context

        def listener(event):
            raise RuntimeError("listener bug")

        with WorkerPoolScheduler(size=1, listener=listener, context_factory=factory) as scheduler:
            scheduler.enqueue(make_task("t0"))
            scheduler.enqueue(make_task("t1"))
            scheduler.handle_message(_done("t0"))
            assert scheduler.running_task_ids() == ["t1"]

    def test_listener_may_enqueue_follow_up_work(self, make_task):
        contexts = []

        def factory(index, scheduler):
            context = FakeContext(index, scheduler)
            contexts.append(context)
            return context

        holder = {}

        def listener(event):
            if isinstance(event, DoneEvent) and event.task_id == "t0":
                holder["scheduler"].enqueue(make_task("retry"))

        with WorkerPoolScheduler(size=1, listener=listener, context_factory=factory) as scheduler:
            holder["scheduler"] = scheduler
            scheduler.enqueue(make_task("t0"))
            scheduler.handle_message(_done("t0"))
            assert scheduler.running_task_ids() == ["retry"]

    def test_empty_inbox_is_still_the_listener(self, make_task):
        inbox = TaskInbox()
        assert len(inbox) == 0

        with WorkerPoolScheduler(size=1, listener=inbox, context_factory=FakeContext) as scheduler:
            inbox.track("t0", "a.png", TargetFormat.PNG)
            scheduler.enqueue(make_task("t0"))
            scheduler.handle_message(_done("t0"))

        assert inbox.get("t0").status == TaskStatus.DONE


class TestContextFailure:
    """Hard failures of an execution context"""

    def test_crash_fails_running_task_and_recycles(self, pool, make_task):
        scheduler, contexts, events = pool(2)
        for i in range(3):
            scheduler.enqueue(make_task(f"t{i}"))

        scheduler.handle_context_failure(0, "process terminated abruptly")

        assert events == [ErrorEvent("t0", "Worker process failed: process terminated abruptly")]
        assert contexts[0].recycled == 1
        assert scheduler.running_task_ids() == ["t2", "t1"]

    def test_failure_for_finished_task_is_ignored(self, pool, make_task):
        scheduler, contexts, events = pool(1)
        scheduler.enqueue(make_task("t0"))
        scheduler.handle_message(_done("t0"))
        scheduler.enqueue(make_task("t1"))

        scheduler.handle_context_failure(0, "late crash report", task_id="t0")

        assert [e.task_id for e in events] == ["t0"]
        assert scheduler.running_task_ids() == ["t1"]
        assert contexts[0].recycled == 0

    def test_idle_context_death_restarts_it_quietly(self, pool):
        scheduler, contexts, events = pool(1)
        scheduler.handle_context_failure(0, "exit code -9")
        assert events == []
        assert contexts[0].recycled == 1

    def test_submit_to_dead_context_retries_on_fresh_worker(self, pool, make_task):
        scheduler, contexts, events = pool(1)
        contexts[0].failing_submits = 1

        scheduler.enqueue(make_task("t0"))

        assert events == []
        assert contexts[0].recycled == 1
        assert [t.task_id for t in contexts[0].submitted] == ["t0"]
        assert scheduler.running_task_ids() == ["t0"]

    def test_submit_refused_twice_becomes_error_and_pool_continues(self, pool, make_task):
        scheduler, contexts, events = pool(1)
        contexts[0].failing_submits = 2

        scheduler.enqueue(make_task("t0"))
        scheduler.enqueue(make_task("t1"))

        assert events == [ErrorEvent("t0", "Worker unavailable: worker process is gone")]
        assert contexts[0].recycled == 2
        assert scheduler.running_task_ids() == ["t1"]


class TestLifecycle:
    def test_duplicate_task_id_rejected(self, pool, make_task):
        scheduler, _, _ = pool(1)
        scheduler.enqueue(make_task("t0"))
        scheduler.handle_message(_done("t0"))
        with pytest.raises(ValueError, match="Duplicate"):
            scheduler.enqueue(make_task("t0"))

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            WorkerPoolScheduler(size=0, context_factory=FakeContext)

    def test_shutdown_drops_everything(self, pool, make_task):
        scheduler, contexts, events = pool(1)
        scheduler.enqueue(make_task("t0"))
        scheduler.enqueue(make_task("t1"))

        scheduler.shutdown()

        assert scheduler.closed
        assert scheduler.queued_count == 0
        assert scheduler.busy_count == 0
        assert all(c.closed for c in contexts)
        scheduler.handle_message(_done("t0"))
        assert events == []
        with pytest.raises(SchedulerClosedError):
            scheduler.enqueue(make_task("t2"))

    def test_shutdown_is_idempotent(self, pool):
        scheduler, _, _ = pool(1)
        scheduler.shutdown()
        scheduler.shutdown()


class TestProcessPool:
    """End-to-end through real worker processes"""

    def test_mixed_batch_with_one_bad_task(self, make_task, png_bytes, jpeg_bytes):
        events = []
        finished = threading.Event()
        terminal_ids = set()
        expected = {"png-tiff", "png-png", "bad", "jpeg-webp", "resize"}
        lock = threading.Lock()

        def listener(event):
            with lock:
                events.append(event)
                if not isinstance(event, ProgressEvent):
                    terminal_ids.add(event.task_id)
                    if terminal_ids == expected:
                        finished.set()

        with WorkerPoolScheduler(size=2, listener=listener) as scheduler:
            scheduler.enqueue(make_task("png-tiff"))
            scheduler.enqueue(make_task("png-png", target_format="image/png"))
            scheduler.enqueue(make_task("bad", buffer=b"not an image"))
            scheduler.enqueue(make_task("jpeg-webp", source_format="image/jpeg", buffer=jpeg_bytes(16, 16), target_format="image/webp"))
            scheduler.enqueue(make_task("resize", buffer=png_bytes(40, 20), short_edge=10, target_format="image/png"))

            assert scheduler.busy_count <= 2
            assert finished.wait(timeout=120), f"timed out, got {events}"

        terminal = [e for e in events if not isinstance(e, ProgressEvent)]
        assert len(terminal) == len(expected)
        by_id = {e.task_id: e for e in terminal}
        assert isinstance(by_id["bad"], ErrorEvent)
        for task_id in expected - {"bad"}:
            assert isinstance(by_id[task_id], DoneEvent), by_id[task_id]
        assert by_id["png-tiff"].buffer[:4] == b"II*\x00"
        assert by_id["jpeg-webp"].mime == TargetFormat.WEBP
        assert by_id["jpeg-webp"].source_profile == ColorProfile.UNKNOWN

        for task_id in expected - {"bad"}:
            progress = [e.progress for e in events if isinstance(e, ProgressEvent) and e.task_id == task_id]
            assert progress == sorted(progress)


class EventLog:
    """Thread-safe listener that lets a test wait for terminal events"""

    def __init__(self):
        self.events = []
        self._cond = threading.Condition()

    def __call__(self, event):
        with self._cond:
            self.events.append(event)
            self._cond.notify_all()

    def terminal(self):
        with self._cond:
            return {e.task_id: e for e in self.events if not isinstance(e, ProgressEvent)}

    def wait_for(self, predicate, timeout=120):
        with self._cond:
            return self._cond.wait_for(lambda: predicate(self.events), timeout)

    def wait_for_terminal(self, task_ids, timeout=120):
        def finished(events):
            return set(task_ids) <= {e.task_id for e in events if not isinstance(e, ProgressEvent)}

        return self.wait_for(finished, timeout)


def _wait_until(predicate, timeout=30):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


@pytest.fixture(scope="module")
def large_png():
    """Noisy image big enough that converting it takes a noticeable moment"""
    buf = io.BytesIO()
    Image.effect_noise((1600, 1600), 64).convert("RGB").save(buf, format="PNG")
    return buf.getvalue()


@pytest.mark.skipif(sys.platform == "win32", reason="needs SIGKILL")
class TestProcessCrashes:
    """Workers killed from outside, the way the OOM killer would"""

    def test_kill_mid_task_fails_only_that_task(self, make_task, large_png):
        log = EventLog()
        killed = {}

        def listener(event):
            if isinstance(event, ProgressEvent) and event.task_id == "big" and not killed:
                index = scheduler.running_task_ids().index("big")
                killed["index"] = index
                killed["pid"] = scheduler.contexts[index].pid
                os.kill(killed["pid"], signal.SIGKILL)
            log(event)

        small = ["small-1", "small-2", "small-3"]
        with WorkerPoolScheduler(size=2, listener=listener) as scheduler:
            scheduler.enqueue(
                make_task("big", buffer=large_png, target_color_profile="adobe-rgb", short_edge=800)
            )
            for task_id in small:
                scheduler.enqueue(make_task(task_id))

            assert log.wait_for_terminal(["big", *small]), f"timed out, got {log.events}"
            restarted_pid = scheduler.contexts[killed["index"]].pid

        terminal = log.terminal()
        assert isinstance(terminal["big"], ErrorEvent)
        assert terminal["big"].message.startswith("Worker process failed")
        for task_id in small:
            assert isinstance(terminal[task_id], DoneEvent), terminal[task_id]
        assert restarted_pid != killed["pid"]
        assert len([e for e in log.events if not isinstance(e, ProgressEvent)]) == 4

    def test_idle_worker_death_is_invisible_to_later_tasks(self, make_task):
        log = EventLog()
        with WorkerPoolScheduler(size=1, listener=log) as scheduler:
            scheduler.enqueue(make_task("warm"))
            assert log.wait_for_terminal(["warm"])
            old_pid = scheduler.contexts[0].pid

            os.kill(old_pid, signal.SIGKILL)
            assert _wait_until(lambda: scheduler.contexts[0].pid != old_pid), "worker was not restarted"
            scheduler.enqueue(make_task("innocent"))

            assert log.wait_for_terminal(["innocent"])

        terminal = log.terminal()
        assert isinstance(terminal["warm"], DoneEvent)
        assert isinstance(terminal["innocent"], DoneEvent), terminal["innocent"]

    def test_dispatch_to_freshly_dead_worker_is_retried(self, make_task):
        log = EventLog()
        with WorkerPoolScheduler(size=1, listener=log) as scheduler:
            scheduler.enqueue(make_task("warm"))
            assert log.wait_for_terminal(["warm"])
            context = scheduler.contexts[0]
            old_pid = context.pid

            # Holding the lock keeps the crash report back, so dispatch meets the dead pipe
            with scheduler.lock:
                os.kill(old_pid, signal.SIGKILL)
                assert wait_for_processes([context.process.sentinel], timeout=10)
                scheduler.enqueue(make_task("innocent"))
                assert context.pid != old_pid

            assert log.wait_for_terminal(["innocent"])
            # the stale crash report must not fail the retried task
            time.sleep(0.5)

        terminal = log.terminal()
        assert isinstance(terminal["innocent"], DoneEvent), terminal["innocent"]
        assert not any(isinstance(e, ErrorEvent) for e in log.events)

    def test_shutdown_without_wait_stops_running_workers(self, make_task, large_png):
        log = EventLog()
        scheduler = WorkerPoolScheduler(size=2, listener=log)
        scheduler.enqueue(make_task("big", buffer=large_png, target_color_profile="adobe-rgb"))
        assert log.wait_for(lambda events: any(e.task_id == "big" for e in events))
        processes = [context.process for context in scheduler.contexts]

        scheduler.shutdown(wait=False)

        for process in processes:
            assert wait_for_processes([process.sentinel], timeout=10), f"pid {process.pid} still running"
        assert "big" not in log.terminal()
