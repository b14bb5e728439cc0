"""Tests for the websocket relay server."""

from __future__ import annotations

import aiohttp
import pytest

from testfleet.relay.server import SessionRelayServer


def _login(session_id: str, role: str) -> dict[str, object]:
    return {"type": "login", "params": {"sessionId": session_id, "role": role}}


@pytest.mark.asyncio
async def test_open_assigns_port_and_serves_health() -> None:
    # Given a relay server on an OS-assigned port
    server = SessionRelayServer(port=0)
    await server.open()
    try:
        # Then a real port is bound
        assert server.is_open is True
        assert server.port > 0

        # When querying health
        async with aiohttp.ClientSession() as http:
            async with http.get(f"http://127.0.0.1:{server.port}/health") as response:
                body = await response.json()

        # Then it reports ok
        assert response.status == 200
        assert body == {"status": "ok", "sessions": 0}
    finally:
        await server.close()
    assert server.is_open is False


@pytest.mark.asyncio
async def test_tester_and_app_are_paired_and_relayed() -> None:
    # Given a running relay
    server = SessionRelayServer()
    await server.open()
    url = f"ws://127.0.0.1:{server.port}/"
    try:
        async with aiohttp.ClientSession() as http:
            tester = await http.ws_connect(url)
            app = await http.ws_connect(url)

            # When the tester logs in first
            await tester.send_json(_login("s1", "tester"))
            tester_login = await tester.receive_json(timeout=2)

            # Then it is told the app is absent
            assert tester_login == {
                "type": "loginSuccess",
                "params": {"testerConnected": True, "appConnected": False},
            }

            # When the app logs in
            await app.send_json(_login("s1", "app"))
            app_login = await app.receive_json(timeout=2)
            notification = await tester.receive_json(timeout=2)

            # Then both sides see each other
            assert app_login["params"] == {"testerConnected": True, "appConnected": True}
            assert notification == {"type": "appConnected", "params": {}}

            # When the tester sends an action
            await tester.send_str('{"type": "reloadReactNative", "messageId": 1}')

            # Then the app receives it verbatim
            assert await app.receive_str(timeout=2) == '{"type": "reloadReactNative", "messageId": 1}'

            # When the app disconnects
            await app.close()

            # Then the tester is notified
            assert await tester.receive_json(timeout=2) == {"type": "appDisconnected", "params": {}}
            await tester.close()
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_first_message_must_be_login() -> None:
    # Given a running relay
    server = SessionRelayServer()
    await server.open()
    try:
        async with aiohttp.ClientSession() as http:
            ws = await http.ws_connect(f"ws://127.0.0.1:{server.port}/")

            # When sending a non-login first message
            await ws.send_json({"type": "action"})

            # Then the server replies with an error and closes
            reply = await ws.receive_json(timeout=2)
            assert reply["type"] == "serverError"
            closing = await ws.receive(timeout=2)
            assert closing.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
            )
            await ws.close()
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_close_sync_stops_accepting_connections() -> None:
    # Given an open relay
    server = SessionRelayServer()
    await server.open()
    port = server.port

    # When closing synchronously
    server.close_sync()
    server.close_sync()

    # Then new connections are refused
    assert server.is_open is False
    async with aiohttp.ClientSession() as http:
        with pytest.raises(aiohttp.ClientConnectionError):
            await http.get(f"http://127.0.0.1:{port}/health")

    await server.close()
