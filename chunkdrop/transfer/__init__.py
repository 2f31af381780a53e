"""
Transfer Module - Wire Protocol, Channels, and the Transfer Engine

Sender and receiver state machines, the stall watchdog, and the
per-connection session that ties them to a channel.
"""

from .protocol import (
    TransferMessage, TransferMessageType, RestartRequest, ChatMessage, TextMessage,
    encode_metadata, encode_chunk, encode_restart, encode_chat, decode_record,
)
from .channel import Channel, StreamChannel, LoopbackChannel, TransferServer, connect_to_peer
from .progress import TransferProgress
from .sender import FileSender, SenderState, ChunkSource, FileSource, BytesSource, send_file
from .receiver import FileReceiver, ReceiverState, ReceivedFile, TransferSession
from .monitor import TransferMonitor
from .session import PeerSession

__all__ = [
    'TransferMessage',
    'TransferMessageType',
    'RestartRequest',
    'ChatMessage',
    'TextMessage',
    'encode_metadata',
    'encode_chunk',
    'encode_restart',
    'encode_chat',
    'decode_record',
    'Channel',
    'StreamChannel',
    'LoopbackChannel',
    'TransferServer',
    'connect_to_peer',
    'TransferProgress',
    'FileSender',
    'SenderState',
    'ChunkSource',
    'FileSource',
    'BytesSource',
    'send_file',
    'FileReceiver',
    'ReceiverState',
    'ReceivedFile',
    'TransferSession',
    'TransferMonitor',
    'PeerSession',
]
