"""In-memory per-task state for HTTP callers, fed by scheduler events. Nothing is persisted."""
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from converter.config import RESULT_TTL_SECONDS
from converter.conversion.models import ColorProfile, DoneEvent, ErrorEvent, ProgressEvent, TargetFormat, WorkerEvent

logger = logging.getLogger("converter.inbox")


class TaskStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


@dataclass
class TaskState:
    task_id: str
    filename: str
    target_format: TargetFormat
    status: TaskStatus = TaskStatus.QUEUED
    progress: int = 0
    error: Optional[str] = None
    source_profile: Optional[ColorProfile] = None
    result: Optional[bytes] = None
    output_size: Optional[int] = None
    finished_at: Optional[float] = None

    @property
    def output_filename(self) -> str:
        stem = self.filename.rsplit(".", 1)[0] if "." in self.filename else self.filename
        return f"{stem or 'image'}.{self.target_format.info.extension}"


class TaskInbox:
    """
    Scheduler listener that keeps the latest state per task until the caller has seen
    its outcome. A result is handed out once by ``take_result``; an error is reported
    once by ``poll``. Finished tasks nobody collects expire after ``ttl`` seconds.
    """

    def __init__(self, ttl: float = RESULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        self._tasks: dict[str, TaskState] = {}
        self._ttl = ttl
        self._clock = clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    def track(self, task_id: str, filename: str, target_format: TargetFormat) -> TaskState:
        state = TaskState(task_id=task_id, filename=filename, target_format=target_format)
        with self._lock:
            self._evict_expired()
            self._tasks[task_id] = state
        return state

    def get(self, task_id: str) -> Optional[TaskState]:
        with self._lock:
            self._evict_expired()
            return self._tasks.get(task_id)

    def poll(self, task_id: str) -> Optional[TaskState]:
        """Like get, but an errored task is forgotten once its state has been returned."""
        with self._lock:
            self._evict_expired()
            state = self._tasks.get(task_id)
            if state is not None and state.status == TaskStatus.ERROR:
                del self._tasks[task_id]
            return state

    def take_result(self, task_id: str) -> Optional[TaskState]:
        """Hand out a finished result once; the task is forgotten afterwards."""
        with self._lock:
            self._evict_expired()
            state = self._tasks.get(task_id)
            if state is None or state.status != TaskStatus.DONE:
                return None
            return self._tasks.pop(task_id)

    def forget(self, task_id: str) -> None:
        with self._lock:
            self._tasks.pop(task_id, None)

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [
            task_id
            for task_id, state in self._tasks.items()
            if state.finished_at is not None and now - state.finished_at >= self._ttl
        ]
        for task_id in expired:
            del self._tasks[task_id]
        if expired:
            logger.info("Evicted %s uncollected task(s)", len(expired))

    def __call__(self, event: WorkerEvent) -> None:
        with self._lock:
            state = self._tasks.get(event.task_id)
            if state is None:
                logger.warning("Event %s for untracked task %s", event.kind, event.task_id)
                return
            if isinstance(event, ProgressEvent):
                state.status = TaskStatus.PROCESSING
                state.progress = max(state.progress, event.progress)
            elif isinstance(event, DoneEvent):
                state.status = TaskStatus.DONE
                state.progress = 100
                state.result = event.buffer
                state.output_size = len(event.buffer)
                state.source_profile = event.source_profile
                state.finished_at = self._clock()
            elif isinstance(event, ErrorEvent):
                state.status = TaskStatus.ERROR
                state.error = event.message
                state.finished_at = self._clock()
