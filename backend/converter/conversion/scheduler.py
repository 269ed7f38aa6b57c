"""Fixed-size pool of worker processes with a FIFO queue of conversion tasks."""
import logging
import multiprocessing
import threading
from collections import deque
from functools import partial
from typing import Callable, Optional, Protocol

from converter.config import MAX_WORKERS, MP_START_METHOD
from converter.conversion.errors import SchedulerClosedError
from converter.conversion.models import ConversionTask, ErrorEvent, ProgressEvent, WorkerEvent
from converter.conversion.worker import serve

logger = logging.getLogger("converter.scheduler")

Listener = Callable[[WorkerEvent], None]

TERMINATE_TIMEOUT = 5


class ExecutionContext(Protocol):
    """An isolated worker that runs one task at a time and reports back asynchronously."""

    def submit(self, task: ConversionTask) -> None: ...

    def recycle(self) -> None: ...

    def shutdown(self, wait: bool = True) -> None: ...


ContextFactory = Callable[[int, "WorkerPoolScheduler"], ExecutionContext]


class ProcessContext:
    """
    One worker process with a private task pipe and a private event pipe.

    Each incarnation of the process gets fresh pipes and its own reader thread, so a
    worker killed mid-message can only break its own channel. The reader sees EOF
    when the process dies and reports the crash to the scheduler directly.
    """

    def __init__(self, index: int, scheduler: "WorkerPoolScheduler", mp_context=None):
        self.index = index
        self._scheduler = scheduler
        self._mp_context = mp_context or multiprocessing.get_context(MP_START_METHOD)
        self._lock = threading.Lock()
        self._generation = 0
        self._closing = False
        self._last_task_id: Optional[str] = None
        self._process = None
        self._tasks = None
        self._start()

    @property
    def process(self):
        return self._process

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    def _start(self) -> None:
        tasks_reader, tasks_writer = self._mp_context.Pipe(duplex=False)
        events_reader, events_writer = self._mp_context.Pipe(duplex=False)
        process = self._mp_context.Process(
            target=serve,
            args=(tasks_reader, events_writer),
            name=f"converter-worker-{self.index}",
            daemon=True,
        )
        process.start()
        # The child holds the only copies of these ends: its death means EOF/EPIPE here
        tasks_reader.close()
        events_writer.close()
        with self._lock:
            generation = self._generation
            self._process = process
            self._tasks = tasks_writer
            self._last_task_id = None
        threading.Thread(
            target=self._read_events,
            args=(generation, process, events_reader),
            name=f"converter-events-{self.index}",
            daemon=True,
        ).start()
        logger.debug("Context %s started worker pid %s", self.index, process.pid)

    def submit(self, task: ConversionTask) -> None:
        self._last_task_id = task.task_id
        self._tasks.send(task)

    def _read_events(self, generation: int, process, events) -> None:
        try:
            while True:
                try:
                    event = events.recv()
                except (EOFError, OSError):
                    break
                self._scheduler.handle_message(event)
        finally:
            events.close()
        process.join(timeout=1)
        # Decide under the scheduler lock so a concurrent recycle cannot slip in between
        with self._scheduler.lock:
            with self._lock:
                if self._closing or generation != self._generation:
                    return
                task_id = self._last_task_id
            self._scheduler.handle_context_failure(self.index, f"exit code {process.exitcode}", task_id=task_id)

    def _stop(self, wait: bool) -> None:
        with self._lock:
            self._generation += 1
            process, tasks = self._process, self._tasks
        tasks.close()
        if process.is_alive():
            process.terminate()
        if wait:
            process.join(timeout=TERMINATE_TIMEOUT)
            if process.is_alive():
                process.kill()
                process.join()

    def recycle(self) -> None:
        self._stop(wait=True)
        self._start()

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closing = True
        self._stop(wait)


class WorkerPoolScheduler:
    """
    Owns N execution contexts (Idle or Busy) and a FIFO queue of tasks not yet dispatched.

    All bookkeeping goes through this object's methods under one re-entrant lock, so the
    caller thread and the per-context event readers never race on state.
    Events reach ``listener`` in the order they are handled; completion order across tasks
    is not guaranteed.
    """

    def __init__(
        self,
        size: Optional[int] = None,
        listener: Optional[Listener] = None,
        context_factory: Optional[ContextFactory] = None,
    ):
        self._size = size if size is not None else MAX_WORKERS
        if self._size < 1:
            raise ValueError(f"Pool size must be at least 1, got {self._size}")
        self._listener = listener if listener is not None else (lambda event: None)
        self._lock = threading.RLock()
        self._queue: deque[ConversionTask] = deque()
        self._task_ids: set[str] = set()
        self._running: list[Optional[str]] = [None] * self._size
        self._closed = False

        if context_factory is None:
            context_factory = partial(ProcessContext, mp_context=multiprocessing.get_context(MP_START_METHOD))

        self._contexts: list[ExecutionContext] = [context_factory(i, self) for i in range(self._size)]
        logger.info("WorkerPoolScheduler started with %s contexts", self._size)

    @property
    def size(self) -> int:
        return self._size

    @property
    def contexts(self) -> tuple:
        return tuple(self._contexts)

    @property
    def lock(self):
        """Re-entrant lock guarding scheduler state; contexts hold it while reporting a crash."""
        return self._lock

    @property
    def busy_count(self) -> int:
        with self._lock:
            return sum(1 for task_id in self._running if task_id is not None)

    @property
    def queued_count(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def closed(self) -> bool:
        return self._closed

    def running_task_ids(self) -> list[Optional[str]]:
        """Task id per context, None for idle contexts."""
        with self._lock:
            return list(self._running)

    def queued_task_ids(self) -> list[str]:
        with self._lock:
            return [task.task_id for task in self._queue]

    def enqueue(self, task: ConversionTask) -> None:
        with self._lock:
            if self._closed:
                raise SchedulerClosedError("Scheduler has been shut down")
            if task.task_id in self._task_ids:
                raise ValueError(f"Duplicate task id: {task.task_id}")
            self._task_ids.add(task.task_id)
            self._queue.append(task)
            logger.debug("Queued %r (%s waiting)", task, len(self._queue))
            self.dispatch()

    def dispatch(self) -> None:
        """Assign queued tasks to idle contexts, earliest-enqueued first. No-op when nothing fits."""
        with self._lock:
            while self._queue and not self._closed:
                index = self._first_idle()
                if index is None:
                    return
                task = self._queue.popleft()
                self._running[index] = task.task_id
                payload = task.handoff()
                try:
                    self._submit(index, payload)
                except Exception as e:
                    logger.exception("Context %s rejected task %s twice: %s", index, task.task_id, e)
                    self._running[index] = None
                    self._recycle(index)
                    self._emit(ErrorEvent(task.task_id, f"Worker unavailable: {e}"))
                    continue
                logger.debug("Dispatched %s to context %s", task.task_id, index)

    def handle_message(self, event: WorkerEvent) -> None:
        """Inbox for worker reports. Progress is forwarded; done/error free the context first."""
        with self._lock:
            if self._closed:
                return
            index = self._index_of(event.task_id)
            if index is None:
                logger.warning("Dropping %s event for task %s which is not running", event.kind, event.task_id)
                return
            if isinstance(event, ProgressEvent):
                self._emit(event)
                return
            self._running[index] = None
            self._emit(event)
            self.dispatch()

    def handle_context_failure(self, index: int, message: str, task_id: Optional[str] = None) -> None:
        """A context became unusable: fail its running task, replace it, keep dispatching."""
        with self._lock:
            if self._closed:
                return
            running = self._running[index]
            if running is None:
                logger.warning("Idle context %s died (%s); restarting it", index, message)
                self._recycle(index)
                self.dispatch()
                return
            if task_id is not None and running != task_id:
                logger.debug("Ignoring failure of context %s for finished task %s", index, task_id)
                return
            logger.error("Context %s crashed while running %s: %s", index, running, message)
            self._running[index] = None
            self._recycle(index)
            self._emit(ErrorEvent(running, f"Worker process failed: {message}"))
            self.dispatch()

    def shutdown(self, wait: bool = True) -> None:
        """Abort in-flight work, drop queued work and stop every worker. Later events are discarded."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            dropped = len(self._queue)
            aborted = self.busy_count
            self._queue.clear()
            self._running = [None] * self._size
        for context in self._contexts:
            try:
                context.shutdown(wait=wait)
            except Exception as e:
                logger.warning("Could not shut down context: %s", e)
        logger.info("WorkerPoolScheduler shut down (%s running aborted, %s queued dropped)", aborted, dropped)

    def __enter__(self) -> "WorkerPoolScheduler":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()

    def _submit(self, index: int, payload: ConversionTask) -> None:
        # A worker that died while idle only shows up here; give it one fresh process
        try:
            self._contexts[index].submit(payload)
        except Exception as e:
            logger.warning("Context %s refused %s (%s); restarting it", index, payload.task_id, e)
            self._recycle(index)
            self._contexts[index].submit(payload)

    def _first_idle(self) -> Optional[int]:
        for index, task_id in enumerate(self._running):
            if task_id is None:
                return index
        return None

    def _index_of(self, task_id: str) -> Optional[int]:
        for index, running in enumerate(self._running):
            if running == task_id:
                return index
        return None

    def _recycle(self, index: int) -> None:
        try:
            self._contexts[index].recycle()
        except Exception as e:
            logger.exception("Could not recycle context %s: %s", index, e)

    def _emit(self, event: WorkerEvent) -> None:
        try:
            self._listener(event)
        except Exception as e:
            logger.exception("Listener failed on %s event for %s: %s", event.kind, event.task_id, e)
