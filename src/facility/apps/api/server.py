# src/facility/apps/api/server.py
from __future__ import annotations

import itertools
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Callable, Iterable, Mapping, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from facility.adapters.agent.http_sink import HttpAgentSink
from facility.adapters.net.arp import resolve_hardware_address as arp_resolve
from facility.adapters.net.arp import scan_local_devices as arp_scan
from facility.adapters.users.yaml_store import YamlUserStore
from facility.build_info import BUILD_INFO
from facility.services.audit.log import AuditLog
from facility.services.auth import PassphraseGate, RateLimiter
from facility.services.chat_io.interfaces import DeliverySink, DeviceScanner, HardwareResolver
from facility.services.chat_io.protocol import ConnectionProtocol
from facility.services.sessions.registry import SessionRegistry
from facility.services.settings import FacilitySettings, load_settings
from facility.services.users.directory import IdentityDirectory, PersistFn
from facility.services.users.models import Identity

__all__ = ["create_app", "WebSocketHandle", "client_address"]

_log = logging.getLogger("facility.api")

_UNSET: Any = object()


class WebSocketHandle:
    """Adapt FastAPI's WebSocket to the connection handle used by the registry."""

    def __init__(self, ws: WebSocket) -> None:
        self._ws = ws

    async def send_json(self, payload: Mapping[str, Any]) -> None:
        # failures propagate so the registry can report a dead peer
        await self._ws.send_text(json.dumps(payload, ensure_ascii=False))

    async def close(self, code: int, reason: str) -> None:
        try:
            await self._ws.close(code=code, reason=reason)
        except (WebSocketDisconnect, RuntimeError):
            # client already gone
            return


def client_address(ws: WebSocket, *, trust_forwarded: bool = False) -> str:
    if trust_forwarded:
        forwarded = ws.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    host = ws.client.host if ws.client else ""
    if host.startswith("::ffff:"):
        host = host[len("::ffff:") :]
    return host or "unknown"


def create_app(
    settings: Optional[FacilitySettings] = None,
    *,
    identities: Optional[Iterable[Identity]] = None,
    persist: Optional[PersistFn] = _UNSET,
    sink: Optional[DeliverySink] = _UNSET,
    resolve_hardware_address: Optional[HardwareResolver] = arp_resolve,
    scan_local_devices: Optional[DeviceScanner] = arp_scan,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """
    Build the websocket application.

    Collaborators default to the concrete adapters configured by ``settings``
    (YAML user store, ARP lookups, HTTP agent sink); tests pass fakes.
    """
    settings = settings or load_settings()

    if identities is None or persist is _UNSET:
        store = YamlUserStore(settings.users_path)
        if identities is None:
            identities = store.load()
        if persist is _UNSET:
            persist = store.save
    if sink is _UNSET:
        sink = HttpAgentSink(settings.agent.url, timeout=settings.agent.timeout) if settings.agent.url else None

    directory = IdentityDirectory(identities, persist=persist)
    registry = SessionRegistry(clock=clock)
    audit = AuditLog(settings.audit_path, settings.audit.retention_months, clock=clock)
    protocol = ConnectionProtocol(
        directory=directory,
        registry=registry,
        rate_limiter=RateLimiter(settings.auth.max_failures, settings.auth.lockout_seconds),
        passphrase_gate=PassphraseGate(settings.auth.passphrase_timeout, clock=clock),
        audit=audit,
        sink=sink,
        resolve_hardware_address=resolve_hardware_address,
        scan_local_devices=scan_local_devices,
        channel_id=settings.channel_id,
        account_id=settings.account_id,
        audited_roles=settings.audit.roles,
        clock=clock,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await audit.start()
        _log.info(
            "facility-web ready: %d user(s), audit dir %s, agent %s",
            len(directory),
            audit.directory,
            settings.agent.url or "not configured",
        )
        try:
            yield
        finally:
            _log.info("shutting down, closing all connections")
            audit.close()
            await registry.close_all()

    app = FastAPI(title="Facility Web Chat", lifespan=lifespan, version=BUILD_INFO.version)
    app.state.settings = settings
    app.state.directory = directory
    app.state.registry = registry
    app.state.audit = audit
    app.state.protocol = protocol

    conn_ids = itertools.count(1)

    @app.get("/health/live")
    async def live():
        return {
            "ok": True,
            "version": BUILD_INFO.version,
            "connections": registry.total_count,
            "sessions": registry.active_count,
        }

    @app.get("/health/stats")
    async def stats():
        return {"ok": True, "counters": protocol.telemetry.snapshot()}

    @app.websocket("/ws")
    async def chat_ws(websocket: WebSocket):
        await websocket.accept()
        conn_id = f"fc-{next(conn_ids)}"
        source = client_address(websocket, trust_forwarded=settings.server.trust_forwarded)
        _log.debug("new ws connection %s from %s", conn_id, source)
        await protocol.open(conn_id, WebSocketHandle(websocket), source)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                try:
                    await protocol.handle_raw(conn_id, raw)
                except Exception:
                    _log.warning("frame handling failed on %s", conn_id, exc_info=True)
        except (WebSocketDisconnect, RuntimeError):
            pass
        finally:
            _log.debug("ws disconnected: %s", conn_id)
            protocol.close(conn_id)

    return app
