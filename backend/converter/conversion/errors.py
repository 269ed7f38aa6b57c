"""Conversion error taxonomy. Every pipeline failure surfaces as one of these."""


class ConversionError(Exception):
    """Base class for failures reported back to the caller as an error event."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class DecodeError(ConversionError):
    """Source bytes are malformed or do not match the declared source format."""


class SurfaceError(ConversionError):
    """A scaling surface could not be allocated."""


class EncodeError(ConversionError):
    """The target codec rejected the pixels or options, or is unavailable."""


class UnexpectedError(ConversionError):
    """Anything not covered above, wrapped at the pipeline boundary."""


class BufferTransferredError(RuntimeError):
    """Raised when a task buffer is read after it was handed to a worker."""


class SchedulerClosedError(RuntimeError):
    """Raised when work is submitted to a scheduler that has been shut down."""
