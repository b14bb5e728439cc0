"""Websocket relay between the tester process and the app under test."""

from __future__ import annotations

import asyncio
import json
import logging
import socket
from dataclasses import dataclass, field
from typing import Any

from aiohttp import WSMsgType, web

logger = logging.getLogger(__name__)

ROLES = ("tester", "app")


@dataclass(slots=True)
class RelaySession:
    session_id: str
    peers: dict[str, web.WebSocketResponse] = field(default_factory=dict)

    def counterpart(self, role: str) -> web.WebSocketResponse | None:
        other = "app" if role == "tester" else "tester"
        return self.peers.get(other)


class SessionRelayServer:
    """Pairs one tester and one app connection per session id and relays messages.

    The first message on every connection must be a ``login`` carrying
    ``sessionId`` and ``role``; every later message is forwarded verbatim to
    the counterpart in the same session.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 0) -> None:
        self.host = host
        self._requested_port = port
        self._port = port
        self._sessions: dict[str, RelaySession] = {}
        self._runner: web.AppRunner | None = None
        self._server: asyncio.Server | None = None

    @property
    def port(self) -> int:
        return self._port

    @property
    def is_open(self) -> bool:
        return self._server is not None

    async def open(self) -> None:
        """Bind and start serving; port 0 resolves to an OS-assigned port."""
        app = web.Application()
        app.router.add_get("/", self._ws_handler)
        app.router.add_get("/health", self._health_handler)

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self._requested_port))
            sock.listen(128)
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise

        runner = web.AppRunner(app, handle_signals=False, access_log=None)
        await runner.setup()
        loop = asyncio.get_running_loop()
        try:
            self._server = await loop.create_server(runner.server, sock=sock)
        except Exception:
            await runner.cleanup()
            sock.close()
            raise
        self._runner = runner
        self._port = sock.getsockname()[1]
        logger.info("Relay server started: ws://%s:%d", self.host, self._port)

    async def close(self) -> None:
        runner = self._runner
        self.close_sync()
        self._runner = None
        for session in list(self._sessions.values()):
            for ws in list(session.peers.values()):
                await ws.close()
        self._sessions.clear()
        if runner is not None:
            await runner.cleanup()
            logger.info("Relay server stopped")

    def close_sync(self) -> None:
        """Stop accepting connections without awaiting."""
        server = self._server
        self._server = None
        if server is not None:
            server.close()

    async def _health_handler(self, request: web.Request) -> web.Response:
        _ = request
        return web.json_response({"status": "ok", "sessions": len(self._sessions)})

    async def _ws_handler(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        session: RelaySession | None = None
        role: str | None = None
        try:
            async for msg in ws:
                if msg.type != WSMsgType.TEXT:
                    if msg.type == WSMsgType.ERROR:
                        logger.warning("Relay connection error: %s", ws.exception())
                    continue
                try:
                    payload = json.loads(msg.data)
                except json.JSONDecodeError:
                    await self._send_error(ws, "Invalid JSON received")
                    continue

                if session is None or role is None:
                    login = self._parse_login(payload)
                    if login is None:
                        await self._send_error(ws, "The first message must be a valid login")
                        break
                    session_id, role = login
                    session = await self._register(ws, session_id, role)
                    continue

                peer = session.counterpart(role)
                if peer is None or peer.closed:
                    logger.debug("Relay dropped message without counterpart: session=%s", session.session_id)
                    continue
                await peer.send_str(msg.data)
        finally:
            if session is not None and role is not None:
                await self._unregister(session, role, ws)
        return ws

    async def _register(
        self, ws: web.WebSocketResponse, session_id: str, role: str
    ) -> RelaySession:
        session = self._sessions.setdefault(session_id, RelaySession(session_id=session_id))
        previous = session.peers.get(role)
        if previous is not None and not previous.closed:
            logger.warning("Replacing %s connection in relay session %s", role, session_id)
            await previous.close()
        session.peers[role] = ws
        await ws.send_json(
            {
                "type": "loginSuccess",
                "params": {
                    "testerConnected": "tester" in session.peers,
                    "appConnected": "app" in session.peers,
                },
            }
        )
        if role == "app":
            await self._notify(session.peers.get("tester"), "appConnected")
        logger.debug("Relay login: session=%s role=%s", session_id, role)
        return session

    async def _unregister(self, session: RelaySession, role: str, ws: web.WebSocketResponse) -> None:
        if session.peers.get(role) is not ws:
            return
        del session.peers[role]
        if role == "app":
            await self._notify(session.peers.get("tester"), "appDisconnected")
        if not session.peers:
            self._sessions.pop(session.session_id, None)

    @staticmethod
    def _parse_login(payload: Any) -> tuple[str, str] | None:
        if not isinstance(payload, dict) or payload.get("type") != "login":
            return None
        params = payload.get("params")
        if not isinstance(params, dict):
            return None
        session_id = params.get("sessionId")
        role = params.get("role")
        if not isinstance(session_id, str) or not session_id or role not in ROLES:
            return None
        return session_id, role

    @staticmethod
    async def _notify(ws: web.WebSocketResponse | None, event: str) -> None:
        if ws is None or ws.closed:
            return
        await ws.send_json({"type": event, "params": {}})

    @staticmethod
    async def _send_error(ws: web.WebSocketResponse, message: str) -> None:
        await ws.send_json({"type": "serverError", "params": {"error": message}})
