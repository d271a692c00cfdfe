from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Union

from facility.config.const import CLOSE_REPLACED, CLOSE_SHUTDOWN
from facility.services.auth.passphrase import PendingSecondFactor
from facility.services.users.models import Identity

__all__ = [
    "ConnectionHandle",
    "Unauthenticated",
    "Authenticated",
    "ConnectionState",
    "Connection",
    "SessionRegistry",
]

_log = logging.getLogger("facility.sessions")


class ConnectionHandle(Protocol):
    """Transport side of a connection (a websocket in production)."""

    async def send_json(self, payload: Mapping[str, Any]) -> None: ...

    async def close(self, code: int, reason: str) -> None: ...


@dataclass(frozen=True, slots=True)
class Unauthenticated:
    pass


@dataclass(frozen=True, slots=True)
class Authenticated:
    identity: Identity


ConnectionState = Union[Unauthenticated, PendingSecondFactor, Authenticated]


@dataclass(slots=True)
class Connection:
    id: str
    handle: ConnectionHandle
    source: str
    hardware_address: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    state: ConnectionState = field(default_factory=Unauthenticated)
    closed: bool = False

    @property
    def identity(self) -> Optional[Identity]:
        if isinstance(self.state, Authenticated):
            return self.state.identity
        return None

    @property
    def is_authenticated(self) -> bool:
        return isinstance(self.state, Authenticated)

    def reset(self) -> None:
        self.state = Unauthenticated()

    async def send(self, payload: Mapping[str, Any]) -> bool:
        """Best-effort send; a dead transport yields False instead of raising."""
        if self.closed:
            return False
        try:
            await self.handle.send_json(payload)
            return True
        except Exception as exc:
            _log.debug("send to %s failed: %s", self.id, exc)
            return False

    async def close(self, code: int, reason: str) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.handle.close(code, reason)
        except Exception as exc:
            _log.debug("close of %s failed: %s", self.id, exc)


class SessionRegistry:
    """
    All live connections plus the identity -> current holder map.

    ``promote`` is serialized so two devices authenticating as the same
    identity at once still end with exactly one holder; the loser is closed
    with ``4001 replaced``.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._connections: Dict[str, Connection] = {}
        self._by_identity: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def add_connection(self, connection_id: str, handle: ConnectionHandle, source: str) -> Connection:
        conn = Connection(id=connection_id, handle=handle, source=source, created_at=self._clock())
        self._connections[connection_id] = conn
        _log.info("connection %s opened from %s (%d total)", connection_id, source, len(self._connections))
        return conn

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def find_by_identity(self, identity_id: str) -> Optional[Connection]:
        conn_id = self._by_identity.get(identity_id)
        return self._connections.get(conn_id) if conn_id else None

    async def promote(
        self, connection_id: str, identity: Identity, hardware_address: Optional[str] = None
    ) -> Connection:
        async with self._lock:
            conn = self._connections.get(connection_id)
            if conn is None:
                raise KeyError(connection_id)
            previous_id = self._by_identity.get(identity.id)
            if previous_id and previous_id != connection_id:
                previous = self._connections.pop(previous_id, None)
                if previous is not None:
                    _log.info("identity %s re-authenticated; replacing connection %s", identity.id, previous_id)
                    await previous.close(CLOSE_REPLACED, "replaced")
            conn.state = Authenticated(identity)
            conn.hardware_address = hardware_address
            self._by_identity[identity.id] = connection_id
            return conn

    def remove_connection(self, connection_id: str) -> None:
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return
        conn.closed = True
        ident = conn.identity
        if ident is not None and self._by_identity.get(ident.id) == connection_id:
            del self._by_identity[ident.id]
        _log.info("connection %s closed (%d total)", connection_id, len(self._connections))

    async def send_to_identity(self, identity_id: str, payload: Mapping[str, Any]) -> bool:
        conn = self.find_by_identity(identity_id)
        if conn is None:
            return False
        return await conn.send(payload)

    async def close_all(self) -> None:
        connections = list(self._connections.values())
        self._connections.clear()
        self._by_identity.clear()
        for conn in connections:
            await conn.close(CLOSE_SHUTDOWN, "server shutdown")
        if connections:
            _log.info("closed %d connections on shutdown", len(connections))

    @property
    def active_count(self) -> int:
        return len(self._by_identity)

    @property
    def total_count(self) -> int:
        return len(self._connections)
