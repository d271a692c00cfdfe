"""Per-connection state machine for the browser chat channel.

A connection starts ``Unauthenticated``, may pass through
``PendingSecondFactor`` when an elevated identity has a passphrase, and ends
``Authenticated``. Authentication and authorization failures never close the
socket; they are answered with an error frame. Frames of one connection are
handled strictly in order by the caller's receive loop.
"""
from __future__ import annotations

import asyncio
import logging
import time
import weakref
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional

from facility.config.const import AUDIT_DEFAULT_LIMIT, CHANNEL_ID, PROTOCOL_VERSION
from facility.services.audit.log import AuditEntry, AuditLog, preview
from facility.services.auth import (
    AuthReason,
    DirectoryError,
    ErrorCode,
    PassphraseGate,
    PassphraseOutcome,
    PendingSecondFactor,
    RateLimiter,
    Role,
    authenticate,
)
from facility.services.sessions.registry import Connection, ConnectionHandle, SessionRegistry
from facility.services.users.directory import IdentityDirectory
from facility.services.users.models import Identity

from .frames import (
    AdminAddCurrentDeviceFrame,
    AdminAddMacFrame,
    AdminAddUserFrame,
    AdminGetUsersFrame,
    AdminLanScanFrame,
    AdminLanScanResultFrame,
    AdminRemoveMacFrame,
    AdminRemoveUserFrame,
    AdminResultFrame,
    AdminUpdateUserFrame,
    AdminUsersResultFrame,
    AuditQueryFrame,
    AuditResultFrame,
    AuthFrame,
    AuthResultFrame,
    ChatEventFrame,
    ChatMessageFrame,
    ErrorFrame,
    FrameError,
    OutboundFrame,
    PassphraseErrorFrame,
    PassphraseFrame,
    PassphrasePromptFrame,
    UnknownFrameType,
    WelcomeFrame,
    parse_frame,
)
from .interfaces import ChatContext, DeliverySink, DeviceScanner, HardwareResolver, PartialKind, session_key
from .telemetry import Telemetry

__all__ = ["ConnectionProtocol"]

_log = logging.getLogger("facility.chat")

_Handler = Callable[[Connection, Any], Awaitable[None]]


def _too_many(remaining: Optional[int]) -> str:
    return f"Too many attempts. Try again in {remaining}s."


class ConnectionProtocol:
    def __init__(
        self,
        *,
        directory: IdentityDirectory,
        registry: SessionRegistry,
        rate_limiter: RateLimiter,
        passphrase_gate: PassphraseGate,
        audit: Optional[AuditLog] = None,
        sink: Optional[DeliverySink] = None,
        resolve_hardware_address: Optional[HardwareResolver] = None,
        scan_local_devices: Optional[DeviceScanner] = None,
        channel_id: str = CHANNEL_ID,
        account_id: str = "default",
        audited_roles: Iterable[Role | str] = (Role.CHILD,),
        telemetry: Optional[Telemetry] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = directory
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.passphrase_gate = passphrase_gate
        self.audit = audit
        self.sink = sink
        self.telemetry = telemetry or Telemetry()
        self._resolve = resolve_hardware_address
        self._scan = scan_local_devices
        self._channel_id = channel_id
        self._account_id = account_id
        self._audited_roles = frozenset(Role(r) for r in audited_roles)
        self._clock = clock
        self._source_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._handlers: Dict[str, _Handler] = {
            "auth": self._on_auth,
            "passphrase": self._on_passphrase,
            "chat_message": self._on_chat_message,
            "audit_query": self._on_audit_query,
            "admin_get_users": self._on_admin_get_users,
            "admin_update_user": self._on_admin_update_user,
            "admin_add_mac": self._on_admin_add_mac,
            "admin_remove_mac": self._on_admin_remove_mac,
            "admin_add_current_device": self._on_admin_add_current_device,
            "admin_lan_scan": self._on_admin_lan_scan,
            "admin_add_user": self._on_admin_add_user,
            "admin_remove_user": self._on_admin_remove_user,
        }

    @property
    def handlers(self) -> Mapping[str, _Handler]:
        return dict(self._handlers)

    # ------------------------------------------------------------- lifecycle
    async def open(self, connection_id: str, handle: ConnectionHandle, source: str) -> Connection:
        conn = self.registry.add_connection(connection_id, handle, source)
        await self._send(conn, WelcomeFrame(version=PROTOCOL_VERSION))
        return conn

    def close(self, connection_id: str) -> None:
        self.registry.remove_connection(connection_id)

    async def handle_raw(self, connection_id: str, raw: str | bytes) -> None:
        conn = self.registry.get(connection_id)
        if conn is None:
            return
        try:
            frame = parse_frame(raw)
        except UnknownFrameType as exc:
            _log.debug("ignoring unknown frame type %r from %s", exc.frame_type, connection_id)
            self.telemetry.record_event("facility.frames", {"type": "unknown"})
            return
        except FrameError as exc:
            self.telemetry.record_event("facility.frames", {"type": "invalid"})
            await self._send(conn, ErrorFrame(error=str(exc)))
            return
        await self._dispatch(conn, frame)

    async def _dispatch(self, conn: Connection, frame: Any) -> None:
        self.telemetry.record_event("facility.frames", {"type": frame.type})
        await self._handlers[frame.type](conn, frame)

    async def deliver_to_identity(self, identity_id: str, text: str) -> bool:
        """Push an asynchronous agent message to the identity's live session."""
        sent = await self.registry.send_to_identity(
            identity_id, ChatEventFrame(event="agent_push", data=text or "").dump()
        )
        if sent:
            _log.info("async push delivered to %s", identity_id)
        else:
            _log.warning("no active session for %s, push not delivered", identity_id)
        return sent

    # ------------------------------------------------------------------ auth
    async def _on_auth(self, conn: Connection, frame: AuthFrame) -> None:
        if conn.is_authenticated:
            await self._send(conn, AuthResultFrame(success=False, error="Already authenticated."))
            return
        # a new PIN while a passphrase is pending starts over
        conn.reset()
        # attempts from one source are decided one at a time
        lock = self._source_lock(conn.source)
        async with lock:
            await self._attempt_pin(conn, frame.pin)

    async def _attempt_pin(self, conn: Connection, pin: str) -> None:
        decision = self.rate_limiter.check(conn.source)
        if not decision.allowed:
            self._count_auth(ErrorCode.RATE_LIMITED)
            await self._send(conn, AuthResultFrame(success=False, error=_too_many(decision.remaining_seconds)))
            return

        hardware_address = await self._resolve_hardware(conn.source)
        _log.debug("auth attempt from %s (mac: %s)", conn.source, hardware_address or "unknown")
        result = authenticate(self.directory.all(), pin, hardware_address)

        if result.identity is None:
            self.rate_limiter.record_failure(conn.source)
            self._count_auth(ErrorCode(result.reason.value))
            error = (
                "This device is not authorized for that PIN."
                if result.reason is AuthReason.HARDWARE_MISMATCH
                else "Invalid PIN."
            )
            _log.info("auth failed from %s: %s", conn.source, result.reason.value)
            await self._send(conn, AuthResultFrame(success=False, error=error))
            return

        identity = result.identity
        if self.passphrase_gate.required_for(identity):
            conn.state = self.passphrase_gate.begin(identity, hardware_address)
            conn.hardware_address = hardware_address
            self._count_auth("passphrase_prompt")
            _log.info("PIN ok for %s, awaiting passphrase", identity.name)
            await self._send(conn, PassphrasePromptFrame(user_name=identity.name))
            return

        await self._complete(conn, identity, hardware_address, result.reason.value)

    async def _on_passphrase(self, conn: Connection, frame: PassphraseFrame) -> None:
        pending = conn.state
        if not isinstance(pending, PendingSecondFactor):
            await self._send(conn, PassphraseErrorFrame(error="No pending authentication. Please start over."))
            return

        if self.passphrase_gate.is_expired(pending):
            conn.reset()
            self._count_auth(ErrorCode.PASSPHRASE_EXPIRED)
            await self._send(conn, PassphraseErrorFrame(error="Session expired. Please start over."))
            return

        lock = self._source_lock(conn.source)
        async with lock:
            await self._attempt_passphrase(conn, pending, frame.passphrase)

    async def _attempt_passphrase(self, conn: Connection, pending: PendingSecondFactor, passphrase: str) -> None:
        decision = self.rate_limiter.check(conn.source)
        if not decision.allowed:
            conn.reset()
            self._count_auth(ErrorCode.RATE_LIMITED)
            await self._send(conn, PassphraseErrorFrame(error=_too_many(decision.remaining_seconds)))
            return

        outcome = self.passphrase_gate.verify(pending, passphrase)
        if outcome is PassphraseOutcome.MISSING:
            await self._send(conn, PassphraseErrorFrame(error="Passphrase required."))
        elif outcome is PassphraseOutcome.EXPIRED:
            conn.reset()
            self._count_auth(ErrorCode.PASSPHRASE_EXPIRED)
            await self._send(conn, PassphraseErrorFrame(error="Session expired. Please start over."))
        elif outcome is PassphraseOutcome.ACCEPTED:
            await self._complete(conn, pending.candidate, pending.hardware_address, "passphrase")
        else:
            self.rate_limiter.record_failure(conn.source)
            conn.reset()
            self._count_auth(ErrorCode.PASSPHRASE_INCORRECT)
            _log.info("passphrase failed for %s from %s", pending.candidate.name, conn.source)
            await self._send(conn, PassphraseErrorFrame(error="Incorrect passphrase."))

    async def _complete(
        self, conn: Connection, identity: Identity, hardware_address: Optional[str], reason: str
    ) -> None:
        await self.registry.promote(conn.id, identity, hardware_address)
        self.rate_limiter.clear(conn.source)
        self._count_auth("ok")
        _log.info("auth ok: %s (%s) from %s", identity.name, reason, conn.source)
        await self._send(conn, AuthResultFrame(success=True, user=identity.public_profile()))

    def _source_lock(self, source: str) -> asyncio.Lock:
        lock = self._source_locks.get(source)
        if lock is None:
            lock = asyncio.Lock()
            self._source_locks[source] = lock
        return lock

    async def _resolve_hardware(self, source: str) -> Optional[str]:
        if self._resolve is None:
            return None
        try:
            return await self._resolve(source)
        except Exception:
            _log.warning("hardware address lookup failed for %s", source, exc_info=True)
            return None

    # ------------------------------------------------------------------ chat
    async def _on_chat_message(self, conn: Connection, frame: ChatMessageFrame) -> None:
        identity = conn.identity
        if identity is None:
            await self._send(conn, ErrorFrame(error="Not authenticated. Please log in."))
            return
        text = (frame.text or "").strip()
        if not text:
            return

        key = session_key(identity.agent, self._channel_id, identity.id)
        _log.debug("inbound from %s: %s", identity.name, text[:50])
        await self._audit_append(identity, "inbound", key, text)
        await self._send(conn, ChatEventFrame(event="thinking", data="Thinking"))

        if self.sink is None:
            _log.error("no delivery sink configured; cannot dispatch chat for %s", identity.id)
            self._count_error(ErrorCode.INTERNAL_UNAVAILABLE)
            await self._send(conn, ChatEventFrame(event="error", data="Internal error: dispatch API unavailable"))
            return

        ctx = ChatContext(
            text=text,
            user_id=identity.id,
            user_name=identity.name,
            agent=identity.agent,
            session_key=key,
            channel=self._channel_id,
            timestamp=int(self._clock() * 1000),
            account_id=self._account_id,
        )

        async def on_partial(kind: PartialKind, chunk: str) -> None:
            event = "tool" if kind == "tool" else "token"
            await self._send(conn, ChatEventFrame(event=event, data=chunk or ""))

        async def on_final(reply: str) -> None:
            await self._audit_append(identity, "outbound", key, reply or "")
            await self._send(conn, ChatEventFrame(event="done", data=reply or ""))

        _log.info("dispatching to agent %s with session key %s", identity.agent, key)
        try:
            await self.sink.deliver(ctx, on_partial, on_final)
        except Exception as exc:
            _log.error("dispatch failed for %s: %s", identity.id, exc)
            await self._send(conn, ChatEventFrame(event="error", data=f"Agent error: {exc}"))

    async def _audit_append(self, identity: Identity, direction: str, key: str, text: str) -> None:
        if self.audit is None or identity.role not in self._audited_roles:
            return
        entry = AuditEntry(
            ts=int(self._clock() * 1000),
            dir=direction,  # type: ignore[arg-type]
            userId=identity.id,
            userName=identity.name,
            agent=identity.agent,
            sessionKey=key,
            preview=preview(text),
        )
        try:
            await asyncio.to_thread(self.audit.append, entry)
        except OSError:
            _log.error("audit append failed for %s", identity.id, exc_info=True)

    async def _on_audit_query(self, conn: Connection, frame: AuditQueryFrame) -> None:
        identity = conn.identity
        if identity is None:
            await self._send(conn, ErrorFrame(error="Not authenticated."))
            return
        if not identity.is_elevated:
            self._count_error(ErrorCode.ACCESS_DENIED)
            await self._send(conn, ErrorFrame(error="Audit access denied."))
            return
        entries = []
        if self.audit is not None:
            entries = await asyncio.to_thread(
                self.audit.query,
                identity_filter=frame.identity_filter,
                since=frame.since,
                until=frame.until,
                limit=AUDIT_DEFAULT_LIMIT if frame.limit is None else frame.limit,
            )
        payload = [entry.to_dict() for entry in entries]
        await self._send(conn, AuditResultFrame(entries=payload, count=len(payload)))

    # ----------------------------------------------------------------- admin
    async def _require_admin(self, conn: Connection) -> Optional[Identity]:
        identity = conn.identity
        if identity is None or not identity.is_elevated:
            self._count_error(ErrorCode.ACCESS_DENIED)
            await self._send(conn, AdminResultFrame(success=False, error="Access denied."))
            return None
        return identity

    async def _admin_mutation(self, conn: Connection, mutation: Awaitable[Any]) -> None:
        try:
            await mutation
        except DirectoryError as exc:
            self._count_error(exc.error_code)
            await self._send(conn, AdminResultFrame(success=False, error=exc.message))
            return
        await self._send(conn, AdminResultFrame(success=True, users=self.directory.summaries()))

    async def _on_admin_get_users(self, conn: Connection, frame: AdminGetUsersFrame) -> None:
        if await self._require_admin(conn) is None:
            return
        await self._send(conn, AdminUsersResultFrame(users=self.directory.summaries()))

    async def _on_admin_update_user(self, conn: Connection, frame: AdminUpdateUserFrame) -> None:
        if await self._require_admin(conn) is None:
            return
        updates = frame.updates
        await self._admin_mutation(
            conn,
            self.directory.update_user(
                frame.user_id or "",
                pin=updates.pin,
                passphrase=updates.passphrase,
                mac_required=updates.mac_required,
            ),
        )

    async def _on_admin_add_mac(self, conn: Connection, frame: AdminAddMacFrame) -> None:
        if await self._require_admin(conn) is None:
            return
        await self._admin_mutation(conn, self.directory.add_mac(frame.user_id or "", frame.mac))

    async def _on_admin_remove_mac(self, conn: Connection, frame: AdminRemoveMacFrame) -> None:
        if await self._require_admin(conn) is None:
            return
        await self._admin_mutation(conn, self.directory.remove_mac(frame.user_id or "", frame.mac))

    async def _on_admin_add_current_device(self, conn: Connection, frame: AdminAddCurrentDeviceFrame) -> None:
        if await self._require_admin(conn) is None:
            return
        if not frame.user_id or self.directory.get(frame.user_id) is None:
            self._count_error(ErrorCode.NOT_FOUND)
            await self._send(conn, AdminResultFrame(success=False, error="User not found."))
            return
        if not conn.hardware_address:
            self._count_error(ErrorCode.VALIDATION_ERROR)
            await self._send(
                conn, AdminResultFrame(success=False, error="Could not detect this device's MAC address.")
            )
            return
        await self._admin_mutation(conn, self.directory.add_mac(frame.user_id, conn.hardware_address))

    async def _on_admin_lan_scan(self, conn: Connection, frame: AdminLanScanFrame) -> None:
        if await self._require_admin(conn) is None:
            return
        devices = []
        if self._scan is not None:
            try:
                devices = await self._scan()
            except Exception:
                _log.warning("LAN scan failed", exc_info=True)
        await self._send(conn, AdminLanScanResultFrame(devices=devices, current_mac=conn.hardware_address))

    async def _on_admin_add_user(self, conn: Connection, frame: AdminAddUserFrame) -> None:
        if await self._require_admin(conn) is None:
            return
        await self._admin_mutation(conn, self.directory.add_user(frame.user or {}))

    async def _on_admin_remove_user(self, conn: Connection, frame: AdminRemoveUserFrame) -> None:
        acting = await self._require_admin(conn)
        if acting is None:
            return
        await self._admin_mutation(conn, self.directory.remove_user(frame.user_id, acting_id=acting.id))

    # --------------------------------------------------------------- helpers
    async def _send(self, conn: Connection, frame: OutboundFrame) -> bool:
        return await conn.send(frame.dump())

    def _count_auth(self, outcome: ErrorCode | str) -> None:
        self.telemetry.record_event("facility.auth", {"outcome": str(outcome)})

    def _count_error(self, code: ErrorCode) -> None:
        self.telemetry.record_event("facility.errors", {"code": code.value})
