"""Single-task conversion pipeline: decode, detect profile, resize, convert color, encode."""
import logging
import time
from typing import Callable, Optional

from converter.conversion import codecs
from converter.conversion.color import convert_color_space
from converter.conversion.errors import ConversionError, UnexpectedError
from converter.conversion.models import (
    ConversionTask,
    DoneEvent,
    ErrorEvent,
    ProgressEvent,
    WorkerEvent,
    resolve_working_profile,
)
from converter.conversion.profile import detect_color_profile
from converter.conversion.resize import resize_short_edge

logger = logging.getLogger("converter.pipeline")

# Progress milestones; 100 is reserved for the done event
PROGRESS_DECODE_START = 20
PROGRESS_DECODED = 45
PROGRESS_TRANSFORMED = 70
PROGRESS_ENCODE_START = 85


class ConversionPipeline:
    """Runs one ConversionTask to completion inside an execution context."""

    def run(self, task: ConversionTask, on_progress: Optional[Callable[[int], None]] = None) -> DoneEvent:
        """Convert task.buffer. Raises a ConversionError subclass on failure; no partial result."""
        report = on_progress or (lambda _progress: None)
        started = time.monotonic()
        codecs.ensure_codecs_ready()

        report(PROGRESS_DECODE_START)
        source = task.buffer
        pixels = codecs.decode(task.source_format, source)
        detected = detect_color_profile(task.source_format, source)
        report(PROGRESS_DECODED)

        working = resolve_working_profile(detected)
        pixels = resize_short_edge(pixels, task.short_edge)
        pixels = convert_color_space(pixels, working, task.target_color_profile)
        report(PROGRESS_TRANSFORMED)

        report(PROGRESS_ENCODE_START)
        encoded = codecs.encode(task.target_format, pixels, task.target_quality)
        logger.info(
            "Converted %s (%s, %s) -> %s %sx%s %s in %.2fs",
            task.filename or task.task_id,
            task.source_format.label,
            detected.label,
            task.target_format.info.label,
            pixels.width,
            pixels.height,
            task.target_color_profile.label,
            time.monotonic() - started,
        )
        return DoneEvent(task.task_id, encoded, task.target_format, detected)

    def execute(self, task: ConversionTask, emit: Callable[[WorkerEvent], None]) -> None:
        """
        Failure boundary for one task: emits progress events and then exactly one
        DoneEvent or ErrorEvent. Never raises.
        """
        try:
            result = self.run(task, lambda progress: emit(ProgressEvent(task.task_id, progress)))
        except ConversionError as e:
            logger.warning("Conversion failed for %s: %s", task.task_id, e.message)
            emit(ErrorEvent(task.task_id, e.message))
            return
        except Exception as e:
            logger.exception("Unexpected failure converting %s: %s", task.task_id, e)
            emit(ErrorEvent(task.task_id, UnexpectedError(str(e) or "Unexpected error").message))
            return
        emit(result)
