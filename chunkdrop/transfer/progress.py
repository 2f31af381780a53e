"""Progress snapshots reported by senders and receivers."""

import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class TransferProgress:
    """Track transfer progress for one file in one direction."""
    direction: str  # 'sent' or 'received'
    file_name: str
    file_size: int
    total_chunks: int
    completed_chunks: int = 0
    bytes_transferred: int = 0
    state: str = 'idle'
    start_time: float = field(default_factory=time.time)

    @property
    def progress(self) -> float:
        """Progress as 0.0 to 1.0."""
        if self.total_chunks == 0:
            return 1.0
        return min(self.completed_chunks / self.total_chunks, 1.0)

    @property
    def progress_percent(self) -> float:
        """Progress as percentage."""
        return self.progress * 100

    @property
    def elapsed_seconds(self) -> float:
        """Time elapsed since start."""
        return time.time() - self.start_time

    @property
    def speed_bytes_per_sec(self) -> float:
        elapsed = self.elapsed_seconds
        if elapsed == 0:
            return 0
        return self.bytes_transferred / elapsed

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'direction': self.direction,
            'file_name': self.file_name,
            'file_size': self.file_size,
            'total_chunks': self.total_chunks,
            'completed_chunks': self.completed_chunks,
            'bytes_transferred': self.bytes_transferred,
            'progress_percent': self.progress_percent,
            'speed_bytes_per_sec': self.speed_bytes_per_sec,
            'elapsed_seconds': self.elapsed_seconds,
            'state': self.state,
        }


# Progress callback type
ProgressCallback = Callable[[TransferProgress], None]
