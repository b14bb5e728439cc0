"""Auxiliary websocket relay server."""

from testfleet.relay.server import SessionRelayServer

__all__ = ["SessionRelayServer"]
