"""
Peer Node - Main Controller

Orchestrates the pieces one chunkdrop instance needs:
- transfer ledger (SQLite) and the received-file store
- TCP listener for an incoming peer, or a dialer for an outgoing one
- the PeerSession bound to whichever channel is open

One peer at a time: while a session is open, further incoming
connections are refused.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import Config
from .errors import ChannelClosed
from .file.storage import FileStore
from .storage.database import TransferLedger, TransferRecord, init_ledger
from .transfer.channel import Channel, StreamChannel, TransferServer, connect_to_peer
from .transfer.session import EventListener, PeerSession

logger = logging.getLogger(__name__)


class PeerNode:
    """
    A complete chunkdrop peer.

    Usage:
        node = PeerNode(config)
        await node.start()
        await node.connect("192.168.1.20", 8470)
        await node.send_file(Path("photo.jpg"))
    """

    def __init__(self, config: Optional[Config] = None, listen: bool = True):
        self.config = config or Config()
        self.listen = listen

        # Create data directory
        self.data_dir = Path(self.config.data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

        self.file_store = FileStore(self.data_dir)
        self.ledger: Optional[TransferLedger] = None
        self.server: Optional[TransferServer] = None
        self.session: Optional[PeerSession] = None
        self.peer_address: Optional[str] = None

        self._listeners: List[EventListener] = []
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_connected(self) -> bool:
        return self.session is not None and self.session.is_open

    async def start(self):
        """
        Start the node.

        Opens the ledger, then (unless listen=False) starts accepting
        a peer on the transfer port.
        """
        if self._running:
            return

        logger.info("Starting chunkdrop node...")

        self.ledger = await init_ledger(self.data_dir)

        if self.listen:
            self.server = TransferServer(
                self._on_incoming,
                host=self.config.host,
                port=self.config.transfer_port,
            )
            await self.server.start()

        self._running = True

        logger.info("chunkdrop node started successfully")
        if self.server:
            logger.info(f"  Transfer Port: {self.server.bound_port}")
        logger.info(f"  Data Dir: {self.data_dir}")

    async def stop(self):
        """Stop the node, closing any open session."""
        if not self._running:
            return

        logger.info("Stopping chunkdrop node...")
        self._running = False

        if self.session is not None:
            await self.session.close()
            self.session = None
        if self.server is not None:
            await self.server.stop()
            self.server = None
        if self.ledger is not None:
            await self.ledger.close()
            self.ledger = None

        logger.info("chunkdrop node stopped")

    # === Events ===

    def on_event(self, listener: EventListener):
        """Register listener for events of the current and future sessions."""
        self._listeners.append(listener)
        if self.session is not None:
            self.session.on_event(listener)

    def remove_listener(self, listener: EventListener):
        if listener in self._listeners:
            self._listeners.remove(listener)
        if self.session is not None:
            self.session.remove_listener(listener)

    # === Connections ===

    async def _on_incoming(self, channel: StreamChannel):
        if self.is_connected:
            raise ChannelClosed(f"Already connected to {self.peer_address}")

        host, port = channel.remote_address[:2]
        self.attach(channel, f"{host}:{port}")

    def attach(self, channel: Channel, peer_address: str = "peer") -> PeerSession:
        """Bind a new session to an open channel."""
        session = PeerSession(
            channel,
            config=self.config,
            ledger=self.ledger,
            file_store=self.file_store,
            peer_name=peer_address,
        )
        for listener in self._listeners:
            session.on_event(listener)

        self.session = session
        self.peer_address = peer_address
        logger.info(f"Connected to peer {peer_address}")
        return session

    async def connect(self, host: str, port: int) -> PeerSession:
        """
        Dial a peer's transfer port.

        Raises:
            ChannelClosed: connection refused or timed out
        """
        if self.is_connected:
            logger.info(f"Closing connection to {self.peer_address}")
            await self.session.close()

        channel = await connect_to_peer(host, port, timeout=self.config.connect_timeout)
        if channel is None:
            raise ChannelClosed(f"Could not connect to {host}:{port}")

        session = self.attach(channel, f"{host}:{port}")
        channel.start()
        return session

    def _require_session(self) -> PeerSession:
        if not self.is_connected:
            raise ChannelClosed("No active connection")
        return self.session

    # === Transfers ===

    async def send_file(self, file_path: Path) -> TransferRecord:
        """
        Send a file to the connected peer.

        Raises:
            FileNotFoundError: file does not exist
            ChannelClosed: no peer connected, or the connection dropped
            ChunkSendFailed: a chunk could not be sent
        """
        file_path = Path(file_path)
        if not file_path.is_file():
            raise FileNotFoundError(f"File not found: {file_path}")
        return await self._require_session().send_file(file_path)

    async def send_chat(self, message: str):
        """Send a chat message to the connected peer."""
        await self._require_session().send_chat(message)

    def chat_history(self) -> List[Dict[str, str]]:
        return list(self.session.chat_history) if self.session else []

    async def history(self) -> List[TransferRecord]:
        """All completed transfers, oldest first."""
        if self.ledger is None:
            return []
        return await self.ledger.load_all()

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of node state."""
        session = self.session
        sender = session.sender if session else None
        receiver = session.receiver if session else None
        return {
            'running': self._running,
            'connected': self.is_connected,
            'peer': self.peer_address if self.is_connected else None,
            'transfer_port': self.server.bound_port if self.server else None,
            'last_status': session.last_status if session else "",
            'sending': {
                'state': sender.state.value,
                'file_name': sender.metadata.name if sender.metadata else None,
                'progress': sender.progress,
            } if sender else None,
            'receiving': {
                'state': receiver.state.value,
                'file_name': receiver.metadata.name if receiver.metadata else None,
                'progress': receiver.progress,
            } if receiver else None,
        }

