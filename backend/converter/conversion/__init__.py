from .models import ColorProfile, ConversionTask, DoneEvent, ErrorEvent, FORMATS, ProgressEvent, SourceFormat, TargetFormat
from .pipeline import ConversionPipeline
from .scheduler import WorkerPoolScheduler

__all__ = [
    "ColorProfile",
    "ConversionPipeline",
    "ConversionTask",
    "DoneEvent",
    "ErrorEvent",
    "FORMATS",
    "ProgressEvent",
    "SourceFormat",
    "TargetFormat",
    "WorkerPoolScheduler",
]
