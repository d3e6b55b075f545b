class ProdConsError(Exception):
    """Base class for every error raised by the producer/consumer run."""


class CancelledOperation(ProdConsError):
    """A blocking acquire was interrupted by a cancellation request."""


class LogWriteFailure(ProdConsError):
    """An audit record could not be written. Non-fatal for the buffer."""


class LogOpenFailure(ProdConsError):
    """The audit log could not be opened. Fatal at startup."""


class LogCloseFailure(ProdConsError):
    """The audit log could not be flushed/closed at shutdown."""
