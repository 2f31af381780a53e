"""
Received File Storage

Storage Layout:
```
data/
├── files/            # Reassembled, received files
├── temp/             # In-progress writes (renamed into files/ when done)
└── ledger.db         # Transfer history (see storage.database)
```

Writes go to temp/ first and are renamed into place, so a file in
files/ is always complete.
"""

import logging
import uuid
from pathlib import Path
from typing import List

import aiofiles
import aiofiles.os

from .metadata import FileMetadata

logger = logging.getLogger(__name__)


class FileStore:
    """
    Local storage for files received from a peer.

    Provides:
    - Atomic save of a reassembled buffer
    - Collision-free naming (report.pdf, report (1).pdf, ...)
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.files_dir = self.data_dir / "files"
        self.temp_dir = self.data_dir / "temp"

        self._ensure_directories()

    def _ensure_directories(self):
        """Create storage directories if they don't exist."""
        for dir_path in [self.files_dir, self.temp_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)

    def _target_path(self, name: str) -> Path:
        """Pick a free path in files/ for `name`."""
        # Peers only get to pick the base name, never a directory
        safe_name = Path(name).name or "unnamed"
        candidate = self.files_dir / safe_name

        stem, suffix = candidate.stem, candidate.suffix
        counter = 1
        while candidate.exists():
            candidate = self.files_dir / f"{stem} ({counter}){suffix}"
            counter += 1
        return candidate

    async def save(self, metadata: FileMetadata, data: bytes) -> Path:
        """
        Store a received file.

        Returns:
            Path of the stored file
        """
        temp_path = self.temp_dir / f"{uuid.uuid4().hex}.part"

        async with aiofiles.open(temp_path, 'wb') as f:
            await f.write(data)

        output_path = self._target_path(metadata.name)
        await aiofiles.os.rename(temp_path, output_path)

        logger.info(f"Saved {metadata.name} ({len(data):,} bytes) to {output_path}")
        return output_path

    def list_files(self) -> List[Path]:
        """Stored files, newest first."""
        files = [p for p in self.files_dir.iterdir() if p.is_file()]
        return sorted(files, key=lambda p: p.stat().st_mtime, reverse=True)
