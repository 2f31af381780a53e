"""
REST API for a chunkdrop Node

Design Decision: API Framework
==============================

Options Considered:
1. FastAPI - async, pydantic validation, auto-docs
2. Flask - simple, but sync-focused
3. Plain websocket server - a custom protocol for every client

Decision: FastAPI
- The node is asyncio all the way down, so handlers await it directly
- Pydantic models validate request bodies
- Server-Sent Events (a StreamingResponse) carry live session events
  to a browser UI without a second protocol

API Design:
- JSON responses
- Domain errors mapped to HTTP status codes (404, 409, 400, 503)
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from ..errors import ChannelClosed, ChunkDropError, InvalidInput

logger = logging.getLogger(__name__)

# Global reference to the node (set when app is created)
_node = None


# === Pydantic Models ===

class ConnectRequest(BaseModel):
    """Request to connect to a peer."""
    host: str
    port: int = 8470


class SendRequest(BaseModel):
    """Request to send a file to the connected peer."""
    file_path: str


class ChatRequest(BaseModel):
    """Chat message to send."""
    message: str


class ChatEntry(BaseModel):
    sender: str
    message: str


class TransferInfo(BaseModel):
    """One ledger record."""
    id: str
    file_name: str
    file_type: str
    file_size: int
    timestamp: int
    direction: str


class NodeStatus(BaseModel):
    """Node status response."""
    running: bool
    connected: bool
    peer: Optional[str] = None
    transfer_port: Optional[int] = None
    last_status: str = ""
    sending: Optional[dict] = None
    receiving: Optional[dict] = None


# === API Creation ===

def _require_node():
    if not _node or not _node.is_running:
        raise HTTPException(status_code=503, detail="Node not running")
    return _node


def _require_connection():
    node = _require_node()
    if not node.is_connected:
        raise HTTPException(status_code=409, detail="No peer connected")
    return node


def create_app(node=None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        node: PeerNode instance to control

    Returns:
        FastAPI application
    """
    global _node
    _node = node

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown."""
        logger.info("API server starting...")
        yield
        logger.info("API server stopping...")

    app = FastAPI(
        title="chunkdrop API",
        description="REST API for chunked peer-to-peer file transfer",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Allow a local browser UI
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # === Endpoints ===

    @app.get("/", tags=["General"])
    async def root():
        """API root - basic info."""
        return {
            "name": "chunkdrop",
            "version": "1.0.0",
            "status": "running" if _node and _node.is_running else "not running"
        }

    @app.get("/status", response_model=NodeStatus, tags=["Node"])
    async def get_status():
        """Get node status."""
        node = _require_node()
        return NodeStatus(**node.get_status())

    @app.post("/connect", tags=["Node"])
    async def connect(request: ConnectRequest):
        """Connect to a peer's transfer port."""
        node = _require_node()

        if not 0 < request.port < 65536:
            raise HTTPException(status_code=400, detail=f"Invalid port: {request.port}")

        try:
            await node.connect(request.host, request.port)
        except ChannelClosed as e:
            raise HTTPException(status_code=502, detail=str(e))

        return {"success": True, "peer": f"{request.host}:{request.port}"}

    # === Transfers ===

    @app.post("/files/send", tags=["Files"])
    async def send_file(request: SendRequest):
        """Send a file to the connected peer and wait for it to finish."""
        node = _require_connection()

        file_path = Path(request.file_path)
        if not file_path.is_absolute():
            file_path = file_path.resolve()

        logger.info(f"Send request for: {file_path}")

        if not file_path.exists():
            raise HTTPException(status_code=404, detail=f"File not found: {file_path}")
        if not file_path.is_file():
            raise HTTPException(status_code=400, detail=f"Not a file: {file_path}")

        try:
            record = await node.send_file(file_path)
        except ChannelClosed as e:
            raise HTTPException(status_code=409, detail=str(e))
        except InvalidInput as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ChunkDropError as e:
            logger.error(f"Error sending file: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=str(e))

        return {"success": True, "record": record.to_dict()}

    @app.get("/history", response_model=List[TransferInfo], tags=["Files"])
    async def history():
        """Completed transfers, oldest first."""
        node = _require_node()
        records = await node.history()
        return [TransferInfo(**r.to_dict()) for r in records]

    # === Chat ===

    @app.post("/chat", tags=["Chat"])
    async def send_chat(request: ChatRequest):
        """Send a chat message to the connected peer."""
        node = _require_connection()

        if not request.message.strip():
            raise HTTPException(status_code=400, detail="Empty message")

        try:
            await node.send_chat(request.message)
        except ChannelClosed as e:
            raise HTTPException(status_code=409, detail=str(e))

        return {"success": True}

    @app.get("/chat", response_model=List[ChatEntry], tags=["Chat"])
    async def chat_history():
        """Chat lines of the current session."""
        node = _require_node()
        return [ChatEntry(**entry) for entry in node.chat_history()]

    # === Events ===

    @app.get("/events", tags=["Events"])
    async def events(request: Request):
        """
        Server-Sent Events stream of session events.

        Each event is `data: {"event": <type>, ...}`; a heartbeat comment
        is sent when nothing happened for a second.
        """
        node = _require_node()
        queue: asyncio.Queue = asyncio.Queue()

        def listener(event_type: str, data: dict):
            queue.put_nowait({"event": event_type, **data})

        node.on_event(listener)

        async def event_generator():
            yield f"data: {json.dumps({'event': 'status', 'message': 'Listening for events'})}\n\n"
            try:
                while not await request.is_disconnected():
                    try:
                        event = await asyncio.wait_for(queue.get(), timeout=1.0)
                        yield f"data: {json.dumps(event)}\n\n"
                    except asyncio.TimeoutError:
                        yield ": heartbeat\n\n"
            finally:
                node.remove_listener(listener)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            }
        )

    return app


async def run_api_server(node, host: str = "0.0.0.0", port: int = 8080):
    """
    Run the API server.

    Args:
        node: PeerNode instance
        host: Host to bind to
        port: Port to listen on
    """
    import uvicorn

    app = create_app(node)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()
