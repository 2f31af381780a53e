"""
SQLite Transfer Ledger

Design Decision: Why SQLite?
============================

Options Considered:
1. SQLite - Embedded, no server, ACID compliant
2. JSON file rewritten on every append - Simple, but a crash mid-write
   loses the whole history
3. Append-only JSON lines - Cheap, but a torn last line needs repair

Decision: SQLite with aiosqlite
- Each record is one INSERT in one transaction: fully written or not at all
- Ordered reads for the history view
- Async support via aiosqlite

Tables:
- transfers: one row per completed transfer (metadata only, never content)
"""

import logging
import time
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import aiosqlite

from ..file.metadata import FileMetadata

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1


class TransferDirection(str, Enum):
    SENT = "sent"
    RECEIVED = "received"


@dataclass(frozen=True)
class TransferRecord:
    """History entry for one completed transfer."""
    id: str
    file_name: str
    file_type: str
    file_size: int
    timestamp: int  # milliseconds since the epoch
    direction: TransferDirection

    @classmethod
    def create(cls, metadata: FileMetadata,
               direction: TransferDirection) -> 'TransferRecord':
        timestamp = int(time.time() * 1000)
        return cls(
            id=f"{timestamp}-{uuid.uuid4().hex}",
            file_name=metadata.name,
            file_type=metadata.mime_type,
            file_size=metadata.size,
            timestamp=timestamp,
            direction=direction,
        )

    @property
    def when(self) -> datetime:
        """Local time of the transfer."""
        return datetime.fromtimestamp(self.timestamp / 1000)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['direction'] = self.direction.value
        return data

    @classmethod
    def from_row(cls, row) -> 'TransferRecord':
        return cls(
            id=row['id'],
            file_name=row['file_name'],
            file_type=row['file_type'],
            file_size=row['file_size'],
            timestamp=row['timestamp'],
            direction=TransferDirection(row['direction']),
        )


class TransferLedger:
    """
    Durable, append-only log of completed transfers.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._connection: Optional[aiosqlite.Connection] = None

    async def connect(self):
        """Open database connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        # Initialize schema
        await self._init_schema()

        logger.info(f"Ledger connected: {self.db_path}")

    async def close(self):
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def _init_schema(self):
        """Initialize database schema."""
        await self._connection.executescript(f"""
            CREATE TABLE IF NOT EXISTS transfers (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                file_name TEXT NOT NULL,
                file_type TEXT NOT NULL,
                file_size INTEGER NOT NULL,
                timestamp INTEGER NOT NULL,
                direction TEXT NOT NULL CHECK (direction IN ('sent', 'received'))
            );

            CREATE INDEX IF NOT EXISTS idx_transfers_timestamp ON transfers(timestamp);

            PRAGMA user_version = {SCHEMA_VERSION};
        """)

        await self._connection.commit()

    def _require_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("Ledger is not connected")
        return self._connection

    # === Records ===

    async def append(self, record: TransferRecord):
        """Append one record. Either the whole row is written or nothing is."""
        conn = self._require_connection()
        try:
            await conn.execute(
                """INSERT INTO transfers (id, file_name, file_type, file_size, timestamp, direction)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (record.id, record.file_name, record.file_type, record.file_size,
                 record.timestamp, record.direction.value)
            )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise

        logger.debug(f"Ledger: {record.direction.value} {record.file_name}")

    async def load_all(self) -> List[TransferRecord]:
        """All records, oldest first."""
        conn = self._require_connection()
        async with conn.execute(
            "SELECT * FROM transfers ORDER BY timestamp, seq"
        ) as cursor:
            rows = await cursor.fetchall()
            return [TransferRecord.from_row(row) for row in rows]

    async def clear(self):
        """Forget the whole history."""
        conn = self._require_connection()
        await conn.execute("DELETE FROM transfers")
        await conn.commit()


async def init_ledger(data_dir: Path) -> TransferLedger:
    """Initialize and return a ledger instance."""
    ledger = TransferLedger(Path(data_dir) / "ledger.db")
    await ledger.connect()
    return ledger
