# tests/test_protocol.py
import asyncio
import json
from types import SimpleNamespace

import pytest

from facility.services.audit.log import AuditLog
from facility.services.auth import PassphraseGate, PendingSecondFactor, RateLimiter, Role
from facility.services.chat_io.frames import INBOUND_FRAME_TYPES
from facility.services.chat_io.protocol import ConnectionProtocol
from facility.services.sessions.registry import Authenticated, SessionRegistry, Unauthenticated
from facility.services.users.directory import IdentityDirectory
from facility.services.users.models import Identity

PARENT_MAC = "aa:bb:cc:dd:ee:ff"


class FakeHandle:
    def __init__(self):
        self.sent = []
        self.closed = None

    async def send_json(self, payload):
        self.sent.append(dict(payload))

    async def close(self, code, reason):
        self.closed = (code, reason)

    @property
    def last(self):
        return self.sent[-1]

    def of_type(self, kind):
        return [m for m in self.sent if m["type"] == kind]


class ScriptedSink:
    def __init__(self, reply="All done!", error=None):
        self.reply = reply
        self.error = error
        self.contexts = []

    async def deliver(self, ctx, on_partial, on_final):
        self.contexts.append(ctx)
        if self.error:
            raise self.error
        await on_partial("tool", "looking it up")
        await on_partial("block", "All ")
        await on_final(self.reply)


class Store:
    def __init__(self):
        self.ok = True
        self.saves = 0

    def __call__(self, identities):
        self.saves += 1
        return self.ok


def _identities():
    return [
        Identity(id="c1", name="Kid", pin="1234", agent="kid", role=Role.CHILD),
        Identity(id="p1", name="Dad", pin="5555", agent="dad", role=Role.PARENT, mac=[PARENT_MAC], passphrase="open sesame"),
        Identity(id="a1", name="Admin", pin="9999", agent="main", role=Role.ADMIN),
        Identity(id="p2", name="Mom", pin="7777", agent="mom", role=Role.PARENT, mac=[PARENT_MAC], mac_required=True),
    ]


@pytest.fixture
def env(tmp_path, clock):
    arp = {"10.0.0.9": PARENT_MAC, "10.0.0.8": "11:22:33:44:55:66"}

    async def resolve(ip):
        return arp.get(ip)

    async def scan():
        return [{"ip": ip, "mac": mac} for ip, mac in arp.items()]

    store = Store()
    directory = IdentityDirectory(_identities(), persist=store)
    registry = SessionRegistry(clock=clock)
    audit = AuditLog(tmp_path / "audit", clock=clock)
    sink = ScriptedSink()
    protocol = ConnectionProtocol(
        directory=directory,
        registry=registry,
        rate_limiter=RateLimiter(clock=clock),
        passphrase_gate=PassphraseGate(clock=clock),
        audit=audit,
        sink=sink,
        resolve_hardware_address=resolve,
        scan_local_devices=scan,
        clock=clock,
    )
    yield SimpleNamespace(
        protocol=protocol, registry=registry, directory=directory, audit=audit, sink=sink, store=store, clock=clock
    )
    audit.close()


async def _open(env, conn_id="fc-1", source="10.0.0.2"):
    handle = FakeHandle()
    await env.protocol.open(conn_id, handle, source)
    return handle


async def _send(env, frame, conn_id="fc-1"):
    await env.protocol.handle_raw(conn_id, json.dumps(frame))


async def _login(env, pin, conn_id="fc-1", source="10.0.0.2", passphrase=None):
    handle = await _open(env, conn_id, source)
    await _send(env, {"type": "auth", "pin": pin}, conn_id)
    if passphrase is not None:
        await _send(env, {"type": "passphrase", "passphrase": passphrase}, conn_id)
    assert handle.last["type"] == "auth_result" and handle.last["success"], handle.sent
    return handle


def test_every_inbound_frame_kind_has_a_handler(env):
    assert set(env.protocol.handlers) == INBOUND_FRAME_TYPES


@pytest.mark.anyio
async def test_open_sends_welcome(env):
    handle = await _open(env)
    assert handle.sent == [{"type": "welcome", "version": "0.1.0"}]
    assert env.registry.total_count == 1


@pytest.mark.anyio
async def test_child_pin_login(env):
    handle = await _login(env, "1234")
    assert handle.last == {
        "type": "auth_result",
        "success": True,
        "user": {"name": "Kid", "id": "c1", "agent": "kid", "role": "child"},
    }
    conn = env.registry.get("fc-1")
    assert isinstance(conn.state, Authenticated)
    assert env.registry.find_by_identity("c1") is conn


@pytest.mark.anyio
async def test_invalid_pin_then_lockout(env):
    handle = await _open(env)
    for _ in range(3):
        await _send(env, {"type": "auth", "pin": "0000"})
        assert handle.last == {"type": "auth_result", "success": False, "error": "Invalid PIN."}

    await _send(env, {"type": "auth", "pin": "1234"})
    assert handle.last["error"] == "Too many attempts. Try again in 30s."
    assert isinstance(env.registry.get("fc-1").state, Unauthenticated)

    env.clock.advance(31)
    await _send(env, {"type": "auth", "pin": "1234"})
    assert handle.last["success"] is True


@pytest.mark.anyio
async def test_hardware_mismatch_message(env):
    handle = await _open(env, source="10.0.0.8")
    await _send(env, {"type": "auth", "pin": "7777"})
    assert handle.last == {
        "type": "auth_result",
        "success": False,
        "error": "This device is not authorized for that PIN.",
    }


@pytest.mark.anyio
async def test_mac_required_parent_on_known_device(env):
    await _login(env, "7777", source="10.0.0.9")
    assert env.registry.get("fc-1").hardware_address == PARENT_MAC


@pytest.mark.anyio
async def test_parent_passphrase_flow(env):
    handle = await _open(env, source="10.0.0.9")
    await _send(env, {"type": "auth", "pin": "5555"})
    assert handle.last == {"type": "passphrase_prompt", "userName": "Dad"}
    state = env.registry.get("fc-1").state
    assert isinstance(state, PendingSecondFactor)
    assert state.hardware_address == PARENT_MAC
    assert env.registry.active_count == 0

    await _send(env, {"type": "passphrase", "passphrase": "  open sesame "})
    assert handle.last["success"] is True
    assert handle.last["user"]["id"] == "p1"
    assert env.registry.find_by_identity("p1").hardware_address == PARENT_MAC


@pytest.mark.anyio
async def test_wrong_passphrase_discards_pending(env):
    handle = await _open(env)
    await _send(env, {"type": "auth", "pin": "5555"})
    await _send(env, {"type": "passphrase", "passphrase": "guess"})
    assert handle.last == {"type": "passphrase_error", "error": "Incorrect passphrase."}
    assert isinstance(env.registry.get("fc-1").state, Unauthenticated)

    await _send(env, {"type": "passphrase", "passphrase": "open sesame"})
    assert handle.last["error"] == "No pending authentication. Please start over."


@pytest.mark.anyio
async def test_empty_passphrase_keeps_pending(env):
    handle = await _open(env)
    await _send(env, {"type": "auth", "pin": "5555"})
    await _send(env, {"type": "passphrase", "passphrase": "   "})
    assert handle.last == {"type": "passphrase_error", "error": "Passphrase required."}
    await _send(env, {"type": "passphrase", "passphrase": "open sesame"})
    assert handle.last["success"] is True


@pytest.mark.anyio
async def test_passphrase_after_timeout_is_rejected_for_good(env):
    handle = await _open(env)
    await _send(env, {"type": "auth", "pin": "5555"})
    env.clock.advance(301)

    await _send(env, {"type": "passphrase", "passphrase": "open sesame"})
    assert handle.last == {"type": "passphrase_error", "error": "Session expired. Please start over."}

    await _send(env, {"type": "passphrase", "passphrase": "open sesame"})
    assert handle.last == {"type": "passphrase_error", "error": "No pending authentication. Please start over."}
    assert env.registry.find_by_identity("p1") is None


@pytest.mark.anyio
async def test_passphrase_failures_share_rate_limit_with_pins(env):
    handle = await _open(env)
    await _send(env, {"type": "auth", "pin": "0000"})
    await _send(env, {"type": "auth", "pin": "0000"})
    await _send(env, {"type": "auth", "pin": "5555"})
    await _send(env, {"type": "passphrase", "passphrase": "guess"})
    await _send(env, {"type": "auth", "pin": "5555"})
    assert handle.last["error"].startswith("Too many attempts.")
    counters = env.protocol.telemetry
    assert counters.get("facility.auth", {"outcome": "invalid_pin"}) == 2
    assert counters.get("facility.auth", {"outcome": "passphrase_incorrect"}) == 1
    assert counters.get("facility.auth", {"outcome": "rate_limited"}) == 1


@pytest.mark.anyio
async def test_parallel_pin_guesses_from_one_source_are_rate_limited(env):
    lookups = []

    async def slow_resolve(ip):
        lookups.append(ip)
        await asyncio.sleep(0.05)
        return None

    protocol = ConnectionProtocol(
        directory=env.directory,
        registry=env.registry,
        rate_limiter=RateLimiter(clock=env.clock),
        passphrase_gate=PassphraseGate(clock=env.clock),
        resolve_hardware_address=slow_resolve,
        clock=env.clock,
    )
    handles = []
    for n in range(20):
        handle = FakeHandle()
        await protocol.open(f"fc-{n}", handle, "10.0.0.7")
        handles.append(handle)

    await asyncio.gather(
        *(protocol.handle_raw(f"fc-{n}", json.dumps({"type": "auth", "pin": "0000"})) for n in range(20))
    )

    errors = [h.last["error"] for h in handles]
    assert errors.count("Invalid PIN.") == 3
    assert sum(e.startswith("Too many attempts.") for e in errors) == 17
    assert len(lookups) == 3


@pytest.mark.anyio
async def test_new_pin_while_pending_restarts(env):
    handle = await _open(env)
    await _send(env, {"type": "auth", "pin": "5555"})
    await _send(env, {"type": "auth", "pin": "1234"})
    assert handle.last["user"]["id"] == "c1"


@pytest.mark.anyio
async def test_auth_when_already_authenticated(env):
    handle = await _login(env, "1234")
    await _send(env, {"type": "auth", "pin": "9999"})
    assert handle.last == {"type": "auth_result", "success": False, "error": "Already authenticated."}
    assert env.registry.get("fc-1").identity.id == "c1"


@pytest.mark.anyio
async def test_second_device_replaces_first_session(env):
    first = await _login(env, "1234", conn_id="fc-1")
    second = await _login(env, "1234", conn_id="fc-2", source="10.0.0.3")
    assert first.closed == (4001, "replaced")
    assert second.closed is None
    assert env.registry.find_by_identity("c1").id == "fc-2"
    assert env.registry.active_count == 1


@pytest.mark.anyio
async def test_chat_requires_authentication(env):
    handle = await _open(env)
    await _send(env, {"type": "chat_message", "text": "hello"})
    assert handle.last == {"type": "error", "error": "Not authenticated. Please log in."}
    assert env.sink.contexts == []


@pytest.mark.anyio
async def test_child_chat_is_streamed_and_audited(env):
    handle = await _login(env, "1234")
    await _send(env, {"type": "chat_message", "text": "  what is a volcano?  "})

    events = [(m["event"], m["data"]) for m in handle.of_type("chat_event")]
    assert events == [
        ("thinking", "Thinking"),
        ("tool", "looking it up"),
        ("token", "All "),
        ("done", "All done!"),
    ]
    ctx = env.sink.contexts[0]
    assert ctx.text == "what is a volcano?"
    assert ctx.session_key == "agent:kid:facility-web:dm:c1"
    assert ctx.timestamp == int(env.clock.now * 1000)

    entries = env.audit.query()
    assert [(e.dir, e.preview) for e in entries] == [("outbound", "All done!"), ("inbound", "what is a volcano?")]
    assert all(e.sessionKey == "agent:kid:facility-web:dm:c1" for e in entries)


@pytest.mark.anyio
async def test_audit_preview_is_truncated(env):
    await _login(env, "1234")
    await _send(env, {"type": "chat_message", "text": "x" * 500})
    inbound = [e for e in env.audit.query() if e.dir == "inbound"][0]
    assert len(inbound.preview) == 120


@pytest.mark.anyio
async def test_parent_chat_is_not_audited(env):
    await _login(env, "9999")
    await _send(env, {"type": "chat_message", "text": "status?"})
    assert env.audit.query() == []


@pytest.mark.anyio
async def test_blank_chat_is_ignored(env):
    handle = await _login(env, "1234")
    count = len(handle.sent)
    await _send(env, {"type": "chat_message", "text": "   "})
    assert len(handle.sent) == count


@pytest.mark.anyio
async def test_chat_without_sink(env):
    env.protocol.sink = None
    handle = await _login(env, "1234")
    await _send(env, {"type": "chat_message", "text": "hi"})
    assert handle.last == {"type": "chat_event", "event": "error", "data": "Internal error: dispatch API unavailable"}


@pytest.mark.anyio
async def test_chat_sink_failure(env):
    env.protocol.sink = ScriptedSink(error=RuntimeError("boom"))
    handle = await _login(env, "1234")
    await _send(env, {"type": "chat_message", "text": "hi"})
    assert handle.last == {"type": "chat_event", "event": "error", "data": "Agent error: boom"}


@pytest.mark.anyio
async def test_audit_query_access(env):
    anon = await _open(env, conn_id="fc-0")
    await _send(env, {"type": "audit_query"}, conn_id="fc-0")
    assert anon.last == {"type": "error", "error": "Not authenticated."}

    kid = await _login(env, "1234", conn_id="fc-1")
    await _send(env, {"type": "chat_message", "text": "hello"}, conn_id="fc-1")
    await _send(env, {"type": "audit_query"}, conn_id="fc-1")
    assert kid.last == {"type": "error", "error": "Audit access denied."}

    admin = await _login(env, "9999", conn_id="fc-2")
    await _send(env, {"type": "audit_query", "childId": "c1", "limit": 1}, conn_id="fc-2")
    assert admin.last["type"] == "audit_result"
    assert admin.last["count"] == 1
    assert admin.last["entries"][0]["dir"] == "outbound"
    assert admin.last["entries"][0]["userId"] == "c1"


@pytest.mark.anyio
async def test_admin_frames_require_elevated_role(env):
    handle = await _login(env, "1234")
    for frame in ({"type": "admin_get_users"}, {"type": "admin_lan_scan"}, {"type": "admin_remove_user", "userId": "a1"}):
        await _send(env, frame)
        assert handle.last == {"type": "admin_result", "success": False, "error": "Access denied."}
    assert env.store.saves == 0
    assert env.directory.get("a1") is not None
    assert env.protocol.telemetry.get("facility.errors", {"code": "access_denied"}) == 3


@pytest.mark.anyio
async def test_admin_get_and_update_users(env):
    handle = await _login(env, "9999")
    await _send(env, {"type": "admin_get_users"})
    assert handle.last["type"] == "admin_users_result"
    assert [u["id"] for u in handle.last["users"]] == ["c1", "p1", "a1", "p2"]
    assert handle.last["users"][1]["hasPassphrase"] is True

    await _send(env, {"type": "admin_update_user", "userId": "c1", "updates": {"pin": "4321", "macRequired": True}})
    assert handle.last["success"] is True
    assert handle.last["users"][0]["macRequired"] is True
    assert env.directory.get("c1").pin == "4321"
    assert env.store.saves == 1

    await _send(env, {"type": "admin_update_user", "userId": "c1", "updates": {"pin": "12"}})
    assert handle.last == {"type": "admin_result", "success": False, "error": "PIN must be exactly 4 digits."}


@pytest.mark.anyio
async def test_admin_persist_failure_reports_and_reverts(env):
    handle = await _login(env, "9999")
    env.store.ok = False
    await _send(env, {"type": "admin_update_user", "userId": "c1", "updates": {"pin": "4321"}})
    assert handle.last == {"type": "admin_result", "success": False, "error": "Failed to save changes."}
    assert env.directory.get("c1").pin == "1234"


@pytest.mark.anyio
async def test_admin_mac_management(env):
    handle = await _login(env, "9999")
    await _send(env, {"type": "admin_add_mac", "userId": "c1", "mac": "DE-AD-BE-EF-00-01"})
    assert handle.last["success"] is True
    assert env.directory.get("c1").mac == ["de:ad:be:ef:00:01"]

    await _send(env, {"type": "admin_add_mac", "userId": "c1", "mac": "bogus"})
    assert handle.last["error"] == "Invalid MAC address format."

    await _send(env, {"type": "admin_remove_mac", "userId": "c1", "mac": "de:ad:be:ef:00:01"})
    assert handle.last["success"] is True
    assert env.directory.get("c1").mac == []

    await _send(env, {"type": "admin_remove_mac", "userId": "ghost", "mac": "de:ad:be:ef:00:01"})
    assert handle.last["error"] == "User not found."


@pytest.mark.anyio
async def test_admin_add_current_device(env):
    blind = await _login(env, "9999", conn_id="fc-1", source="10.0.0.2")
    await _send(env, {"type": "admin_add_current_device", "userId": "c1"}, conn_id="fc-1")
    assert blind.last["error"] == "Could not detect this device's MAC address."
    await _send(env, {"type": "admin_add_current_device", "userId": "ghost"}, conn_id="fc-1")
    assert blind.last["error"] == "User not found."

    env.protocol.close("fc-1")
    known = await _login(env, "9999", conn_id="fc-2", source="10.0.0.9")
    await _send(env, {"type": "admin_add_current_device", "userId": "c1"}, conn_id="fc-2")
    assert known.last["success"] is True
    assert env.directory.get("c1").mac == [PARENT_MAC]


@pytest.mark.anyio
async def test_admin_lan_scan(env):
    handle = await _login(env, "9999", source="10.0.0.9")
    await _send(env, {"type": "admin_lan_scan"})
    assert handle.last["type"] == "admin_lan_scan_result"
    assert {"ip": "10.0.0.8", "mac": "11:22:33:44:55:66"} in handle.last["devices"]
    assert handle.last["currentMac"] == PARENT_MAC


@pytest.mark.anyio
async def test_admin_add_and_remove_user(env):
    handle = await _login(env, "9999")
    await _send(
        env,
        {"type": "admin_add_user", "user": {"id": "c2", "name": "Kid 2", "pin": "2468", "agent": "kid", "role": "child"}},
    )
    assert handle.last["success"] is True
    assert handle.last["users"][-1]["id"] == "c2"

    await _send(env, {"type": "admin_add_user", "user": {"id": "c3"}})
    assert handle.last["error"] == "Missing required fields: id, name, pin, agent, role."

    await _send(env, {"type": "admin_remove_user", "userId": "a1"})
    assert handle.last["error"] == "Cannot remove your own account."

    await _send(env, {"type": "admin_remove_user", "userId": "c2"})
    assert handle.last["success"] is True
    assert env.directory.get("c2") is None


@pytest.mark.anyio
async def test_malformed_and_unknown_frames(env):
    handle = await _open(env)
    await env.protocol.handle_raw("fc-1", "{not json")
    assert handle.last == {"type": "error", "error": "Invalid JSON"}

    count = len(handle.sent)
    await env.protocol.handle_raw("fc-1", json.dumps({"type": "imagegen", "prompt": "cat"}))
    assert len(handle.sent) == count
    assert env.protocol.telemetry.get("facility.frames", {"type": "unknown"}) == 1


@pytest.mark.anyio
async def test_frames_for_unknown_connection_are_dropped(env):
    await env.protocol.handle_raw("ghost", json.dumps({"type": "auth", "pin": "1234"}))
    assert env.registry.active_count == 0


@pytest.mark.anyio
async def test_deliver_to_identity(env):
    handle = await _login(env, "1234")
    assert await env.protocol.deliver_to_identity("c1", "reminder: homework") is True
    assert handle.last == {"type": "chat_event", "event": "agent_push", "data": "reminder: homework"}
    assert await env.protocol.deliver_to_identity("p1", "nobody home") is False


@pytest.mark.anyio
async def test_close_removes_session(env):
    await _login(env, "1234")
    env.protocol.close("fc-1")
    assert env.registry.find_by_identity("c1") is None
    assert await env.protocol.deliver_to_identity("c1", "late") is False
