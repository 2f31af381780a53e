"""Exception classes for chunkdrop transfers."""

from typing import List, Optional


class ChunkDropError(Exception):
    """
    Base exception class for all chunkdrop errors.
    """
    pass


class ConfigError(ChunkDropError):
    """
    Raised when a configuration value is out of range.
    """
    pass


class InvalidInput(ChunkDropError):
    """
    Raised when a codec or sender argument is invalid (e.g. chunk size <= 0).
    """
    pass


class ProtocolError(ChunkDropError):
    """
    Raised when a record on the wire cannot be decoded.
    """
    pass


class InvalidChunk(ChunkDropError):
    """
    Raised when a chunk payload is malformed or empty.
    """

    def __init__(self, index: int, reason: str = "empty payload"):
        self.index = index
        self.reason = reason
        super().__init__(f"Invalid chunk {index}: {reason}")


class UnexpectedChunk(ChunkDropError):
    """
    Raised when a chunk arrives and no session can take it.
    """

    def __init__(self, index: int):
        self.index = index
        super().__init__(f"Unexpected chunk {index}: no active transfer session")


class IncompleteSet(ChunkDropError):
    """
    Raised by assembly when one or more chunk indices are missing.
    """

    def __init__(self, missing: List[int]):
        self.missing = sorted(missing)
        preview = ", ".join(str(i) for i in self.missing[:10])
        if len(self.missing) > 10:
            preview += ", ..."
        super().__init__(f"Missing {len(self.missing)} chunk(s): {preview}")


class SizeMismatch(ChunkDropError):
    """
    Raised by assembly when the output length differs from the announced size.
    """

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Assembled {actual} bytes, expected {expected}")


class ChunkSendFailed(ChunkDropError):
    """
    Raised when a chunk could not be read or sent after all retries.
    """

    def __init__(self, index: int, attempts: int, cause: Optional[BaseException] = None):
        self.index = index
        self.attempts = attempts
        self.cause = cause
        message = f"Chunk {index} failed after {attempts} attempt(s)"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class Stalled(ChunkDropError):
    """
    Signal raised by the watchdog when a transfer stops making progress.
    """

    def __init__(self, elapsed: float):
        self.elapsed = elapsed
        super().__init__(f"Transfer stalled: no activity for {elapsed:.1f}s")


class ChannelClosed(ChunkDropError):
    """
    Raised when sending on, or losing, the peer channel.
    """
    pass


class TransferAborted(ChunkDropError):
    """
    Raised inside a transfer that was aborted locally.
    """
    pass
