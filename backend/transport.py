"""
Message transport between the session host and its clients.

The host runs a small FastAPI app (served in-process by uvicorn) with one
WebSocket endpoint per peer; clients connect with ``websockets``. Both sides
exchange JSON envelopes ``{"type": ..., "payload": {...}}`` and report
connection lifecycle and inbound messages to a ``TransportHandler``.
"""
from typing import Dict, Iterable, List, Optional, Protocol
from urllib.parse import quote
import asyncio
import json
import random
import socket as socketlib
import string
import time
import uuid
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
import uvicorn
import websockets

import config
from message_types import MsgType, PING, PONG, envelope

logger = logging.getLogger(__name__)


class PeerConnectionError(ConnectionError):
    """The transport could not start hosting or reach the host."""
    pass


class TransportHandler(Protocol):
    async def on_client_connected(self, peer_id: str, player_name: str) -> None: ...

    async def on_client_disconnected(self, peer_id: str, reason: str) -> None: ...

    async def on_message(self, msg: dict, sender: str) -> None: ...

    async def on_connection_failed(self, error: Exception, peer_id: Optional[str] = None) -> None: ...


class Transport:
    """Common surface of the host and client transports."""

    def __init__(self):
        self.handler: Optional[TransportHandler] = None

    def set_handler(self, handler: TransportHandler):
        self.handler = handler

    async def initialize_as_host(self) -> str:
        raise NotImplementedError

    async def connect_to_host(self, host_id: str, player_name: str = "") -> str:
        raise NotImplementedError

    async def send_to_peer(self, peer_id: str, msg_type, payload: Optional[dict] = None) -> bool:
        raise NotImplementedError

    async def broadcast_message(self, msg_type, payload: Optional[dict] = None,
                                exclude_peer_ids: Iterable[str] = ()):
        raise NotImplementedError

    async def disconnect_peer(self, peer_id: str):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError


def get_local_ip():
    try:
        s = socketlib.socket(socketlib.AF_INET, socketlib.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return "127.0.0.1"


def generate_host_code() -> str:
    """Random code clients use to address this host, e.g. ``K3ZQ8A``."""
    return ''.join(random.choices(string.ascii_uppercase + string.digits, k=config.HOST_CODE_LENGTH))


def _parse_origins(raw: str) -> List[str]:
    return [o.strip() for o in raw.split(",") if o.strip()]


class WebSocketHostTransport(Transport):
    def __init__(self, host: str = config.HOST, port: int = config.PORT,
                 allowed_origins: Optional[List[str]] = None,
                 heartbeat_interval: float = config.HEARTBEAT_INTERVAL,
                 heartbeat_timeout: float = config.HEARTBEAT_TIMEOUT):
        super().__init__()
        self.host = host
        self.port = port
        self.allowed_origins = (
            allowed_origins if allowed_origins is not None else _parse_origins(config.ALLOWED_ORIGINS)
        )
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.host_code: Optional[str] = None
        self.connections: Dict[str, WebSocket] = {}
        self.last_seen: Dict[str, float] = {}
        # WS rate limiting: peer_id -> list of timestamps
        self.msg_timestamps: Dict[str, list] = {}
        self.app = self._build_app()
        self._server: Optional[uvicorn.Server] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="Quiz Session Host")
        if self.allowed_origins:
            app.add_middleware(
                CORSMiddleware,
                allow_origins=self.allowed_origins,
                allow_credentials=False,
                allow_methods=["GET"],
                allow_headers=["Content-Type"],
            )

        @app.get("/")
        async def root():
            return {"message": "Quiz session host is running"}

        @app.get("/health")
        async def health():
            return {"status": "healthy", "peers": len(self.connections)}

        @app.get("/system/info")
        async def get_system_info():
            return {"ip": get_local_ip(), "port": self.port, "hostCode": self.host_code}

        @app.websocket("/ws/{host_code}/{peer_id}")
        async def websocket_endpoint(websocket: WebSocket, host_code: str, peer_id: str, name: str = ""):
            await self.connect(websocket, host_code, peer_id, name)

        return app

    async def initialize_as_host(self) -> str:
        if self._server is not None:
            raise PeerConnectionError("Transport is already hosting")
        # Bind up front so a busy port surfaces as an error here instead of
        # uvicorn exiting the process.
        sock = socketlib.socket(socketlib.AF_INET, socketlib.SOCK_STREAM)
        try:
            sock.setsockopt(socketlib.SOL_SOCKET, socketlib.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
        except OSError as e:
            sock.close()
            raise PeerConnectionError(f"Could not listen on {self.host}:{self.port}: {e}") from e
        self.port = sock.getsockname()[1]
        self.host_code = generate_host_code()

        server_config = uvicorn.Config(self.app, log_level="warning", lifespan="off")
        self._server = uvicorn.Server(server_config)
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[sock]))
        while not self._server.started:
            if self._serve_task.done():
                self._server = None
                raise PeerConnectionError("Session host server failed to start")
            await asyncio.sleep(0.01)

        if self.heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info("Hosting session %s on %s:%d", self.host_code, self.host, self.port)
        return self.host_code

    async def connect(self, websocket: WebSocket, host_code: str, peer_id: str, name: str = ""):
        # Validate WebSocket origin
        origin = websocket.headers.get("origin", "")
        if self.allowed_origins and origin and origin not in self.allowed_origins:
            logger.warning("Rejected WebSocket from unauthorized origin: %s", origin)
            await websocket.close(code=1008)
            return

        await websocket.accept()
        if host_code != self.host_code:
            await websocket.send_json(envelope(MsgType.ERROR, {"message": "Session not found"}))
            await websocket.close()
            return
        if peer_id in self.connections or peer_id == self.host_code:
            await websocket.send_json(envelope(MsgType.ERROR, {"message": "Peer id already in use"}))
            await websocket.close()
            return

        self.connections[peer_id] = websocket
        self.last_seen[peer_id] = time.monotonic()
        logger.info("Peer %s connected", peer_id)
        reason = "closed"
        try:
            await self.handler.on_client_connected(peer_id, name)
            while self.connections.get(peer_id) is websocket:
                data = await websocket.receive_text()

                # Enforce message size limit
                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await websocket.send_json(envelope(MsgType.ERROR, {"message": "Message too large"}))
                    continue

                # Per-peer rate limiting
                now = time.time()
                timestamps = self.msg_timestamps.setdefault(peer_id, [])
                timestamps[:] = [t for t in timestamps if now - t < 1.0]
                if len(timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
                    await websocket.send_json(envelope(MsgType.ERROR, {"message": "Too many messages"}))
                    continue
                timestamps.append(now)

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Malformed JSON from peer %s: %s", peer_id, data[:100])
                    await websocket.send_json(envelope(MsgType.ERROR, {"message": "Invalid message format"}))
                    continue

                self.last_seen[peer_id] = time.monotonic()
                msg_type = message.get("type") if isinstance(message, dict) else None
                if msg_type == PING:
                    await websocket.send_json(envelope(PONG))
                    continue
                if msg_type == PONG:
                    continue
                await self.handler.on_message(message, peer_id)
        except WebSocketDisconnect:
            logger.info("Peer %s disconnected", peer_id)
        except Exception as e:
            if self.connections.get(peer_id) is websocket:
                logger.exception("WebSocket error for peer %s", peer_id)
                reason = "error"
                await self.handler.on_connection_failed(e, peer_id)
        finally:
            if self._forget(peer_id, websocket):
                await self.handler.on_client_disconnected(peer_id, reason)

    def _forget(self, peer_id: str, websocket: Optional[WebSocket] = None) -> bool:
        """Drop bookkeeping for a peer. False if it was already gone."""
        current = self.connections.get(peer_id)
        if current is None or (websocket is not None and current is not websocket):
            return False
        del self.connections[peer_id]
        self.last_seen.pop(peer_id, None)
        self.msg_timestamps.pop(peer_id, None)
        return True

    async def _close_socket(self, websocket: WebSocket, code: int = 1000):
        try:
            await websocket.close(code=code)
        except Exception:
            pass

    async def send_to_peer(self, peer_id: str, msg_type, payload: Optional[dict] = None) -> bool:
        ws = self.connections.get(peer_id)
        if ws is None:
            logger.warning("Cannot send %s to unknown peer %s", msg_type, peer_id)
            return False
        try:
            await ws.send_json(envelope(msg_type, payload))
            return True
        except Exception:
            # The receive loop notices the dead socket and reports the disconnect.
            logger.warning("Failed to send to peer %s, closing connection", peer_id)
            await self._close_socket(ws, code=1011)
            return False

    async def broadcast_message(self, msg_type, payload: Optional[dict] = None,
                                exclude_peer_ids: Iterable[str] = ()):
        excluded = set(exclude_peer_ids)
        for peer_id in list(self.connections):
            if peer_id not in excluded:
                await self.send_to_peer(peer_id, msg_type, payload)

    async def disconnect_peer(self, peer_id: str):
        """Close a peer's socket. The handler is not notified; the caller already knows."""
        ws = self.connections.get(peer_id)
        if ws is not None and self._forget(peer_id, ws):
            logger.info("Disconnecting peer %s", peer_id)
            await self._close_socket(ws)

    def _expired_peers(self, now: float) -> List[str]:
        return [pid for pid, seen in self.last_seen.items() if now - seen > self.heartbeat_timeout]

    async def _drop_peer(self, peer_id: str, reason: str):
        ws = self.connections.get(peer_id)
        if ws is None or not self._forget(peer_id, ws):
            return
        await self._close_socket(ws, code=1001)
        await self.handler.on_client_disconnected(peer_id, reason)

    async def _heartbeat_loop(self):
        """Ping every peer periodically and drop the ones that went silent."""
        while True:
            try:
                await asyncio.sleep(self.heartbeat_interval)
                for peer_id in self._expired_peers(time.monotonic()):
                    logger.warning("Peer %s timed out after %.0fs of silence", peer_id, self.heartbeat_timeout)
                    await self._drop_peer(peer_id, "timeout")
                await self.broadcast_message(PING)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in heartbeat loop")

    async def close(self):
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        sockets = list(self.connections.values())
        self.connections.clear()
        self.last_seen.clear()
        self.msg_timestamps.clear()
        for ws in sockets:
            await self._close_socket(ws, code=1001)
        if self._server is not None:
            self._server.should_exit = True
            await self._serve_task
            self._server = None
            self._serve_task = None
            logger.info("Session host %s closed", self.host_code)


class WebSocketClientTransport(Transport):
    def __init__(self, address: str = config.HOST_ADDRESS,
                 heartbeat_interval: float = config.HEARTBEAT_INTERVAL,
                 heartbeat_timeout: float = config.HEARTBEAT_TIMEOUT,
                 peer_id: Optional[str] = None):
        super().__init__()
        self.address = address
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.peer_id = peer_id or uuid.uuid4().hex[:12]
        self.host_id: Optional[str] = None
        self._ws = None
        self._last_seen = 0.0
        self._closing = False
        self._drop_reason = "closed"
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    async def connect_to_host(self, host_id: str, player_name: str = "") -> str:
        url = f"ws://{self.address}/ws/{quote(host_id)}/{quote(self.peer_id)}?name={quote(player_name)}"
        try:
            self._ws = await asyncio.wait_for(
                websockets.connect(url, ping_interval=None, max_size=2 ** 20),
                timeout=config.CONNECT_TIMEOUT,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            error = PeerConnectionError(f"Could not reach host {host_id} at {self.address}: {e}")
            if self.handler:
                await self.handler.on_connection_failed(error)
            raise error from e

        self.host_id = host_id
        self._closing = False
        self._drop_reason = "closed"
        self._last_seen = time.monotonic()
        self._reader_task = asyncio.create_task(self._read_loop())
        if self.heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info("Connected to host %s at %s as %s", host_id, self.address, self.peer_id)
        return self.peer_id

    async def _read_loop(self):
        try:
            async for raw in self._ws:
                self._last_seen = time.monotonic()
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Malformed JSON from host: %s", str(raw)[:100])
                    continue
                msg_type = message.get("type") if isinstance(message, dict) else None
                if msg_type == PING:
                    await self._send(envelope(PONG))
                    continue
                if msg_type == PONG:
                    continue
                await self.handler.on_message(message, self.host_id)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Connection to host %s closed", self.host_id)
        finally:
            if not self._closing:
                self._closing = True
                self._stop_heartbeat()
                await self.handler.on_client_disconnected(self.host_id, self._drop_reason)

    async def _heartbeat_loop(self):
        while True:
            try:
                await asyncio.sleep(self.heartbeat_interval)
                if time.monotonic() - self._last_seen > self.heartbeat_timeout:
                    logger.warning("Host %s silent for %.0fs, dropping connection", self.host_id, self.heartbeat_timeout)
                    self._drop_reason = "timeout"
                    await self._ws.close()
                    break
                await self._send(envelope(PING))
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in client heartbeat loop")

    def _stop_heartbeat(self):
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _send(self, message: dict) -> bool:
        if self._ws is None:
            return False
        try:
            await self._ws.send(json.dumps(message))
            return True
        except websockets.exceptions.ConnectionClosed:
            logger.warning("Cannot send %s: connection to host is closed", message.get("type"))
            return False

    async def send_to_peer(self, peer_id: str, msg_type, payload: Optional[dict] = None) -> bool:
        if peer_id != self.host_id:
            logger.warning("Client transport can only send to the host, not %s", peer_id)
            return False
        return await self._send(envelope(msg_type, payload))

    async def broadcast_message(self, msg_type, payload: Optional[dict] = None,
                                exclude_peer_ids: Iterable[str] = ()):
        # A client's only peer is the host.
        if self.host_id not in set(exclude_peer_ids):
            await self._send(envelope(msg_type, payload))

    async def disconnect_peer(self, peer_id: str):
        if peer_id == self.host_id:
            await self.close()

    async def close(self):
        self._closing = True
        self._stop_heartbeat()
        reader, self._reader_task = self._reader_task, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception:
                pass
            self._ws = None
            logger.info("Disconnected from host %s", self.host_id)
