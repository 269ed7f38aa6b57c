"""Entry point executed inside a worker process."""
import logging
import os

from converter.conversion.codecs import ensure_codecs_ready
from converter.conversion.pipeline import ConversionPipeline

logger = logging.getLogger("converter.worker")


def serve(tasks, events) -> None:
    """
    Worker process main loop. Receives ConversionTasks on ``tasks`` and posts
    progress/done/error on ``events`` until it gets None or the parent goes away.
    Both connections belong to this worker alone.
    """
    pipeline = ConversionPipeline()
    ensure_codecs_ready()
    logger.debug("Worker %s ready", os.getpid())
    while True:
        try:
            task = tasks.recv()
        except EOFError:
            return
        if task is None:
            return
        pipeline.execute(task, events.send)
