"""
Transfer Record Protocol

Design Decision: Record Encoding
================================

Options Considered:
1. JSON only, payload base64-encoded
   - Simple, but inflates every chunk by a third

2. Fixed binary struct per record kind
   - Compact, but every new field is a format change

3. Length-prefixed JSON header + raw binary payload
   - Header stays readable and extensible
   - Payload travels untouched

Decision: Length-prefixed JSON header + raw payload for structured
records, plain UTF-8 text for chat.

Record Format (structured):
```
+--------------------+----------------+----------------+
| Header length (4B) | Header (JSON)  | Payload        |
+--------------------+----------------+----------------+

Header JSON:
{
    "type": "METADATA" | "CHUNK" | "RESTART",
    "data_length": 16384,
    ...
}
```

Chat travels as text, `{"type": "chat", "message": "..."}`, which is what
keeps it distinguishable from the binary records.
"""

import json
import struct
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from dataclasses import dataclass, field

from ..errors import InvalidInput, ProtocolError
from ..file.metadata import Chunk, FileMetadata

logger = logging.getLogger(__name__)

# A record as it crosses the channel
Record = Union[bytes, str]

HEADER_LENGTH_FORMAT = '>I'
HEADER_LENGTH_SIZE = struct.calcsize(HEADER_LENGTH_FORMAT)


class TransferMessageType(Enum):
    """Structured record types."""
    METADATA = "METADATA"
    CHUNK = "CHUNK"
    RESTART = "RESTART"


@dataclass
class TransferMessage:
    """A structured transfer record."""
    type: TransferMessageType
    headers: Dict[str, Any]
    data: bytes = b''

    def to_bytes(self) -> bytes:
        """Serialize message to bytes."""
        header_dict = {
            'type': self.type.value,
            'data_length': len(self.data),
            **self.headers
        }
        header_bytes = json.dumps(header_dict).encode('utf-8')

        return (
            struct.pack(HEADER_LENGTH_FORMAT, len(header_bytes)) +
            header_bytes +
            self.data
        )

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'TransferMessage':
        """
        Parse a structured record.

        Raises:
            ProtocolError: truncated record, bad JSON or unknown type
        """
        if len(raw) < HEADER_LENGTH_SIZE:
            raise ProtocolError(f"Record too short: {len(raw)} bytes")

        header_length = struct.unpack(HEADER_LENGTH_FORMAT, raw[:HEADER_LENGTH_SIZE])[0]
        header_end = HEADER_LENGTH_SIZE + header_length
        if header_end > len(raw):
            raise ProtocolError(f"Header length {header_length} exceeds record size {len(raw)}")

        try:
            header_dict = json.loads(raw[HEADER_LENGTH_SIZE:header_end].decode('utf-8'))
            msg_type = TransferMessageType(header_dict.pop('type'))
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, ValueError) as e:
            raise ProtocolError(f"Malformed record header: {e}") from e

        data = bytes(raw[header_end:])
        declared = header_dict.pop('data_length', len(data))
        if declared != len(data):
            raise ProtocolError(f"Payload length {len(data)} does not match header ({declared})")

        return cls(type=msg_type, headers=header_dict, data=data)


# === Record payloads ===

@dataclass(frozen=True)
class RestartRequest:
    """
    Sent by the side that saw a stall, asking the peer to resend.

    Carries both the byte count already received and the explicit list of
    missing indices; the index list is authoritative when present.
    """
    metadata: FileMetadata
    received_size: int
    missing: List[int] = field(default_factory=list)


@dataclass(frozen=True)
class ChatMessage:
    message: str


@dataclass(frozen=True)
class TextMessage:
    """Plain text that is not a chat record (shown as a status line)."""
    text: str


Decoded = Union[FileMetadata, Chunk, RestartRequest, ChatMessage, TextMessage]


# === Encoders ===

def encode_metadata(metadata: FileMetadata) -> bytes:
    return TransferMessage(
        type=TransferMessageType.METADATA,
        headers={
            'name': metadata.name,
            'mime_type': metadata.mime_type,
            'size': metadata.size,
            'total_chunks': metadata.total_chunks,
        },
    ).to_bytes()


def encode_chunk(chunk: Chunk) -> bytes:
    return TransferMessage(
        type=TransferMessageType.CHUNK,
        headers={'index': chunk.index, 'is_last': chunk.is_last},
        data=chunk.payload,
    ).to_bytes()


def encode_restart(request: RestartRequest) -> bytes:
    return TransferMessage(
        type=TransferMessageType.RESTART,
        headers={
            'metadata': request.metadata.to_dict(),
            'received_size': request.received_size,
            'missing': sorted(request.missing),
        },
    ).to_bytes()


def encode_chat(message: str) -> str:
    return json.dumps({'type': 'chat', 'message': message})


# === Decoder ===

def decode_record(record: Record) -> Decoded:
    """
    Turn a channel record into a typed value.

    Raises:
        ProtocolError: the record is binary but not a valid structured record
    """
    if isinstance(record, str):
        return _decode_text(record)

    message = TransferMessage.from_bytes(bytes(record))
    headers = message.headers

    try:
        if message.type == TransferMessageType.METADATA:
            return FileMetadata.from_dict(headers)

        if message.type == TransferMessageType.CHUNK:
            return Chunk(
                index=int(headers['index']),
                payload=message.data,
                is_last=bool(headers.get('is_last', False)),
            )

        if message.type == TransferMessageType.RESTART:
            return RestartRequest(
                metadata=FileMetadata.from_dict(headers['metadata']),
                received_size=int(headers.get('received_size', 0)),
                missing=[int(i) for i in headers.get('missing', [])],
            )
    except (KeyError, TypeError, ValueError, InvalidInput) as e:
        raise ProtocolError(f"Malformed {message.type.value} record: {e}") from e

    raise ProtocolError(f"Unhandled record type {message.type}")


def _decode_text(text: str) -> Union[ChatMessage, TextMessage]:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return TextMessage(text=text)

    if isinstance(parsed, dict) and parsed.get('type') == 'chat':
        return ChatMessage(message=str(parsed.get('message', '')))

    return TextMessage(text=text)


def describe(record: Optional[Decoded]) -> str:
    """Short label for log lines."""
    if isinstance(record, FileMetadata):
        return f"metadata({record.name}, {record.size} bytes, {record.total_chunks} chunks)"
    if isinstance(record, Chunk):
        return f"chunk({record.index}, {record.size} bytes)"
    if isinstance(record, RestartRequest):
        return f"restart({record.metadata.name}, {len(record.missing)} missing)"
    if isinstance(record, ChatMessage):
        return "chat"
    return "text"
