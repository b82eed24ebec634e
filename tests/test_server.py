"""
test_server.py
---------------
Session handler tests: handshake, room membership, the sendMessage
pipeline (validation, freshness, membership, key resolution, replay,
signature, persistence, broadcast), conversation events and the account
events, all driven through handle_ws with in-memory websockets.
"""

import asyncio
import contextlib
import json
import os
import sqlite3
import uuid

import pytest

import keys
import server
from challenges import ChallengeStore
from client import build_signed_message
from datavault import DataVault
from enrollment import EnrollmentService
from payload import build_message_payload
from resolvers import ACCOUNT, DEVICE, make_key_resolver
from settings import Settings
from tokens import ENROLL, TokenService

# -------------------------
# Helpers
# -------------------------

class FakeWebSocket:
    """Async-iterable websocket double; frames are fed in while the handler runs."""

    def __init__(self, incoming=()):
        self._in = asyncio.Queue()
        for m in incoming:
            self.feed(m)
        self.sent = []
        self.closed = False
        self.close_code = None

    def feed(self, m):
        self._in.put_nowait(m if isinstance(m, str) else json.dumps(m))

    def finish(self):
        self._in.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._in.get()
        if item is None or self.closed:
            raise StopAsyncIteration
        return item

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self, code=1000, reason=""):
        self.closed = True
        self.close_code = code

    def ack(self, req_id):
        for f in self.sent:
            if f["type"] == "ack" and f["id"] == req_id:
                return f["payload"]
        return None

    def pushes(self, mtype):
        return [f["payload"] for f in self.sent if f["type"] == mtype]


async def until(pred, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not pred():
        if loop.time() > deadline:
            raise AssertionError("timed out waiting for condition")
        await asyncio.sleep(0.01)


class Conn:
    """One live connection running chat.handle_ws."""

    def __init__(self, chat, ws):
        self.ws = ws
        self.task = asyncio.create_task(chat.handle_ws(ws))

    async def request(self, mtype, payload=None):
        rid = uuid.uuid4().hex
        self.ws.feed({"type": mtype, "id": rid, "payload": payload or {}})
        await until(lambda: self.ws.ack(rid) is not None)
        return self.ws.ack(rid)

    async def close(self):
        self.ws.finish()
        await asyncio.wait_for(self.task, 5)


async def connect(chat, user_id, name):
    conn = Conn(chat, FakeWebSocket())
    res = await conn.request("authenticate", {"token": chat.tokens.issue(user_id, name)})
    assert res["ok"] is True
    return conn


def make_chat(vault, mode=ACCOUNT, clock=None, delivered=None):
    tokens = TokenService("test-secret")
    deliver = (lambda u, c: delivered.append((u, c))) if delivered is not None else server.log_delivery
    enrollment = EnrollmentService(vault, tokens, ChallengeStore(), mode, deliver)
    kwargs = {"clock": clock} if clock else {}
    return server.ChatServer(vault, tokens, enrollment, make_key_resolver(mode, vault), **kwargs)


async def seed(vault, alice_keys, bob_keys):
    a = await vault.register_user("alice", "pw-alice", alice_keys[1].decode())
    b = await vault.register_user("bob", "pw-bob", bob_keys[1].decode())
    conv, _ = await vault.create_conversation("general", [a, b])
    return a, b, conv["id"]


# -------------------------
# Synchronous Tests
# -------------------------

# is_open should correctly detect websocket open/closed across variants
def test_is_open_variants():
    class DummyA:
        def __init__(self, open): self.open = open
    class DummyB:
        def __init__(self, closed): self.closed = closed
    class State:
        def __init__(self, name): self.name = name
    class DummyC:
        def __init__(self, state_name): self.state = State(state_name)

    assert server.is_open(None) is False
    assert server.is_open(DummyA(True)) is True
    assert server.is_open(DummyA(False)) is False
    assert server.is_open(DummyB(False)) is True
    assert server.is_open(DummyB(True)) is False
    assert server.is_open(DummyC("OPEN")) is True
    assert server.is_open(DummyC("CLOSED")) is False


# Bearer token is read from either websockets API generation
def test_bearer_from_headers():
    class New:
        class request:
            headers = {"Authorization": "Bearer abc.def.ghi"}
    class Legacy:
        request_headers = {"Authorization": "Bearer xyz"}
    class Bare:
        pass

    assert server.bearer_from_headers(New()) == "abc.def.ghi"
    assert server.bearer_from_headers(Legacy()) == "xyz"
    assert server.bearer_from_headers(Bare()) is None
    assert server.bearer_from_headers(FakeWebSocket()) is None


def test_room_registry_leave_all():
    reg = server.RoomRegistry()
    s1, s2 = server.Session(object()), server.Session(object())
    reg.join("conv:1", s1)
    reg.join("conv:1", s2)
    reg.join("user:1", s1)
    reg.leave_all(s1)
    assert reg.members("conv:1") == [s2]
    assert reg.members("user:1") == []
    assert s1.rooms == set()


# -------------------------
# Handshake
# -------------------------

# Any event other than authenticate/account events before auth closes the socket
@pytest.mark.asyncio
async def test_event_before_authenticate_is_rejected(vault, alice_keys):
    chat = make_chat(vault)
    ws = FakeWebSocket([{"type": "joinRoom", "id": "r1", "payload": {"conversationId": 1}}])
    await asyncio.wait_for(chat.handle_ws(ws), 5)
    assert ws.ack("r1") == {"ok": False, "error": "invalid credentials", "code": "UNAUTHENTICATED"}
    assert ws.close_code == 4401


@pytest.mark.asyncio
async def test_bad_or_wrong_purpose_token_is_rejected(vault):
    chat = make_chat(vault)
    for token in ("garbage", chat.tokens.issue(1, "alice", ENROLL),
                  TokenService("other-secret").issue(1, "alice")):
        ws = FakeWebSocket([{"type": "authenticate", "id": "a", "payload": {"token": token}}])
        await asyncio.wait_for(chat.handle_ws(ws), 5)
        assert ws.ack("a")["error"] == "invalid credentials"
        assert ws.close_code == 4401


# A valid bearer in the upgrade headers authenticates without a frame
@pytest.mark.asyncio
async def test_header_token_authenticates(vault, alice_keys, bob_keys):
    a, _, conv_id = await seed(vault, alice_keys, bob_keys)
    chat = make_chat(vault)

    ws = FakeWebSocket()
    ws.request_headers = {"Authorization": "Bearer " + chat.tokens.issue(a, "alice")}
    conn = Conn(chat, ws)
    await until(lambda: ws.ack(None) is not None)
    assert ws.ack(None)["user"] == {"id": a, "username": "alice"}
    assert (await conn.request("joinRoom", {"conversationId": conv_id}))["ok"] is True
    await conn.close()


@pytest.mark.asyncio
async def test_header_token_invalid_closes(vault):
    chat = make_chat(vault)
    ws = FakeWebSocket()
    ws.request_headers = {"Authorization": "Bearer nope"}
    await asyncio.wait_for(chat.handle_ws(ws), 5)
    assert ws.close_code == 4401


# -------------------------
# Rooms and the send pipeline
# -------------------------

# Spec scenario: A and B in a conversation, A sends "hi", B receives it once
@pytest.mark.asyncio
async def test_member_message_is_persisted_and_broadcast(vault, alice_keys, bob_keys):
    a, b, conv_id = await seed(vault, alice_keys, bob_keys)
    chat = make_chat(vault)
    ca = await connect(chat, a, "alice")
    cb = await connect(chat, b, "bob")
    assert (await ca.request("joinRoom", {"conversationId": conv_id})) == {"ok": True}
    assert (await cb.request("joinRoom", {"conversationId": conv_id})) == {"ok": True}

    nonce = os.urandom(16)
    msg = build_signed_message(alice_keys[0], conv_id, "hi", nonce=nonce)
    res = await ca.request("sendMessage", msg)
    assert res["ok"] is True and isinstance(res["id"], int)

    await until(lambda: len(cb.ws.pushes("messageCreated")) == 1)
    push = cb.ws.pushes("messageCreated")[0]
    expected = build_message_payload(conv_id, msg["clientTimestamp"], nonce, "hi")
    assert push["id"] == res["id"]
    assert push["conversationId"] == conv_id
    assert push["senderId"] == a
    assert push["body"] == "hi"
    assert push["nonce"] == keys.b64encode(nonce)
    assert push["clientTimestamp"] == msg["clientTimestamp"]
    assert push["signature"] == msg["signature"]
    assert push["bodyHashHex"] == keys.sha256(expected).hex()
    assert push["createdAt"].endswith("Z")
    assert len(ca.ws.pushes("messageCreated")) == 1
    assert await vault.count_messages() == 1

    # identical resubmission: rejected and not broadcast again
    assert (await ca.request("sendMessage", msg))["error"] == "replay detected"
    assert len(cb.ws.pushes("messageCreated")) == 1

    await ca.close()
    await cb.close()
    assert chat.rooms.members(server.conversation_room(conv_id)) == []


# A non-member can neither join nor post, and nothing is stored
@pytest.mark.asyncio
async def test_non_member_rejected(vault, alice_keys, bob_keys, mallory_keys):
    _, _, conv_id = await seed(vault, alice_keys, bob_keys)
    m = await vault.register_user("mallory", "pw", mallory_keys[1].decode())
    chat = make_chat(vault)
    cm = await connect(chat, m, "mallory")

    res = await cm.request("joinRoom", {"conversationId": conv_id})
    assert res == {"ok": False, "error": "not a member", "code": "NOT_A_MEMBER"}
    res = await cm.request("sendMessage", build_signed_message(mallory_keys[0], conv_id, "hi"))
    assert res["error"] == "not a member"
    assert await vault.count_messages() == 0
    await cm.close()


@pytest.mark.asyncio
async def test_resubmission_is_replay(vault, alice_keys, bob_keys):
    a, _, conv_id = await seed(vault, alice_keys, bob_keys)
    chat = make_chat(vault)
    ca = await connect(chat, a, "alice")
    msg = build_signed_message(alice_keys[0], conv_id, "hi")
    assert (await ca.request("sendMessage", msg))["ok"] is True
    res = await ca.request("sendMessage", msg)
    assert res == {"ok": False, "error": "replay detected", "code": "REPLAY_DETECTED"}

    # same nonce, different body
    reused = build_signed_message(alice_keys[0], conv_id, "other", nonce=keys.b64decode(msg["nonce"]))
    assert (await ca.request("sendMessage", reused))["error"] == "replay detected"
    assert await vault.count_messages() == 1
    await ca.close()


# Two connections race the same signed message: exactly one wins
@pytest.mark.asyncio
async def test_concurrent_duplicate_single_winner(vault, alice_keys, bob_keys):
    a, _, conv_id = await seed(vault, alice_keys, bob_keys)
    chat = make_chat(vault)
    c1 = await connect(chat, a, "alice")
    c2 = await connect(chat, a, "alice")
    msg = build_signed_message(alice_keys[0], conv_id, "race")

    r1, r2 = await asyncio.gather(c1.request("sendMessage", msg), c2.request("sendMessage", msg))
    results = sorted([r1, r2], key=lambda r: r["ok"])
    assert results[0]["error"] == "replay detected"
    assert results[1]["ok"] is True
    assert await vault.count_messages() == 1
    await c1.close()
    await c2.close()


# The store's UNIQUE constraint still rejects when the pre-check misses
@pytest.mark.asyncio
async def test_unique_constraint_catches_missed_precheck(tmp_path, alice_keys, bob_keys):
    class BlindVault(DataVault):
        async def find_existing_by_hash_or_nonce(self, body_hash, nonce):
            return False

    vault = BlindVault(str(tmp_path / "blind.sqlite"))
    vault.init_db()
    a, _, conv_id = await seed(vault, alice_keys, bob_keys)
    chat = make_chat(vault)
    ca = await connect(chat, a, "alice")
    msg = build_signed_message(alice_keys[0], conv_id, "hi")
    assert (await ca.request("sendMessage", msg))["ok"] is True
    assert (await ca.request("sendMessage", msg))["error"] == "replay detected"
    assert await vault.count_messages() == 1
    await ca.close()


# Freshness boundary through the whole pipeline with a fixed server clock
@pytest.mark.asyncio
async def test_freshness_window(vault, alice_keys, bob_keys):
    a, _, conv_id = await seed(vault, alice_keys, bob_keys)
    chat = make_chat(vault, clock=lambda: 1_000_000_000_000)
    ca = await connect(chat, a, "alice")

    await ca.request("joinRoom", {"conversationId": conv_id})

    ok = build_signed_message(alice_keys[0], conv_id, "edge", client_timestamp=999_700_000_000)
    assert (await ca.request("sendMessage", ok))["ok"] is True
    # an integer timestamp is echoed back as a string
    await until(lambda: len(ca.ws.pushes("messageCreated")) == 1)
    assert ca.ws.pushes("messageCreated")[0]["clientTimestamp"] == "999700000000"

    stale = build_signed_message(alice_keys[0], conv_id, "late", client_timestamp=999_699_999_999)
    assert (await ca.request("sendMessage", stale)) == {
        "ok": False, "error": "timestamp invalid/expired", "code": "TIMESTAMP_INVALID"}

    garbled = build_signed_message(alice_keys[0], conv_id, "x", client_timestamp=999_700_000_001)
    garbled["clientTimestamp"] = "not-a-time"
    assert (await ca.request("sendMessage", garbled))["error"] == "timestamp invalid/expired"
    assert await vault.count_messages() == 1
    await ca.close()


@pytest.mark.asyncio
async def test_invalid_payloads(vault, alice_keys, bob_keys):
    a, _, conv_id = await seed(vault, alice_keys, bob_keys)
    chat = make_chat(vault)
    ca = await connect(chat, a, "alice")
    good = build_signed_message(alice_keys[0], conv_id, "hi")

    bad_variants = [
        {**good, "conversationId": "seven"},
        {**good, "conversationId": 0},
        {**good, "conversationId": "\u00b2"},
        {**good, "body": 42},
        {**good, "body": "x" * 16_001},
        {**good, "clientTimestamp": None},
        {**good, "nonce": keys.b64encode(b"\x00" * 15)},
        {**good, "nonce": "!!!"},
        {**good, "signature": ""},
        {**good, "signature": "%%%"},
        {**good, "deviceId": 5},
    ]
    for payload in bad_variants:
        res = await ca.request("sendMessage", payload)
        assert res == {"ok": False, "error": "invalid payload", "code": "INVALID_PAYLOAD"}, payload

    # non-JSON text and non-object payloads
    ca.ws.feed("{not json")
    await until(lambda: ca.ws.ack(None) is not None)
    assert ca.ws.ack(None)["error"] == "invalid payload"
    assert (await ca.request("sendMessage", ["list"]))["error"] == "invalid payload"
    assert (await ca.request("no-such-event"))["error"] == "invalid payload"

    # str.isdigit() is true for superscripts, int() is not
    assert (await ca.request("joinRoom", {"conversationId": "\u00b2"}))["error"] == "invalid payload"
    hist = await ca.request("message:history", {"conversationId": conv_id, "limit": "\u00b9"})
    assert hist["error"] == "invalid payload"
    created = await ca.request("conversation:create", {"title": "solo", "memberIds": ["\u00b2"]})
    assert created["ok"] is True and created["memberIds"] == [a]
    assert await vault.count_messages() == 0
    await ca.close()


@pytest.mark.asyncio
async def test_bad_signatures(vault, alice_keys, bob_keys, mallory_keys):
    a, _, conv_id = await seed(vault, alice_keys, bob_keys)
    chat = make_chat(vault)
    ca = await connect(chat, a, "alice")

    forged = build_signed_message(mallory_keys[0], conv_id, "hi")
    assert (await ca.request("sendMessage", forged)) == {
        "ok": False, "error": "signature verify failed", "code": "SIGNATURE_INVALID"}

    tampered = build_signed_message(alice_keys[0], conv_id, "hi")
    tampered["body"] = "ho"
    assert (await ca.request("sendMessage", tampered))["error"] == "signature verify failed"

    # signed for another conversation
    other = build_signed_message(alice_keys[0], conv_id + 1, "hi")
    other["conversationId"] = conv_id
    assert (await ca.request("sendMessage", other))["error"] == "signature verify failed"
    assert await vault.count_messages() == 0
    await ca.close()


# A member without an enrolled key cannot post
@pytest.mark.asyncio
async def test_missing_account_key(vault, alice_keys):
    a = await vault.register_user("alice", "pw")
    conv, _ = await vault.create_conversation("t", [a])
    chat = make_chat(vault)
    ca = await connect(chat, a, "alice")
    res = await ca.request("sendMessage", build_signed_message(alice_keys[0], conv["id"], "hi"))
    assert res == {"ok": False, "error": "sender/device not found or unauthorized", "code": "KEY_NOT_FOUND"}
    await ca.close()


# A store failure surfaces as a generic server error
@pytest.mark.asyncio
async def test_internal_error_is_generic(tmp_path, alice_keys, bob_keys):
    class BrokenVault(DataVault):
        async def is_member(self, conversation_id, user_id):
            raise RuntimeError("disk on fire at /var/lib/secret")

    vault = BrokenVault(str(tmp_path / "broken.sqlite"))
    vault.init_db()
    a, _, conv_id = await seed(vault, alice_keys, bob_keys)
    chat = make_chat(vault)
    ca = await connect(chat, a, "alice")
    res = await ca.request("sendMessage", build_signed_message(alice_keys[0], conv_id, "hi"))
    assert res == {"ok": False, "error": "server error", "code": "SERVER_ERROR"}
    # connection survives
    assert (await ca.request("conversation:list"))["ok"] is True
    await ca.close()


# Broadcast order follows commit order
@pytest.mark.asyncio
async def test_broadcast_order(vault, alice_keys, bob_keys):
    a, b, conv_id = await seed(vault, alice_keys, bob_keys)
    chat = make_chat(vault)
    ca = await connect(chat, a, "alice")
    cb = await connect(chat, b, "bob")
    await cb.request("joinRoom", {"conversationId": conv_id})
    ids = []
    for body in ("one", "two", "three"):
        ids.append((await ca.request("sendMessage", build_signed_message(alice_keys[0], conv_id, body)))["id"])
    await until(lambda: len(cb.ws.pushes("messageCreated")) == 3)
    assert [p["id"] for p in cb.ws.pushes("messageCreated")] == ids
    assert ids == sorted(ids)
    await ca.close()
    await cb.close()


# After a message is stored, a failing fan-out or last-seen refresh still acks ok
@pytest.mark.asyncio
async def test_post_commit_failures_do_not_fail_send(vault, alice_keys, bob_keys):
    class BrokenPipe(FakeWebSocket):
        async def send(self, data):
            if json.loads(data)["type"] == "messageCreated":
                raise RuntimeError("pipe burst")
            await super().send(data)

    a, b, conv_id = await seed(vault, alice_keys, bob_keys)
    chat = make_chat(vault)
    ca = await connect(chat, a, "alice")
    cb = Conn(chat, BrokenPipe())
    assert (await cb.request("authenticate", {"token": chat.tokens.issue(b, "bob")}))["ok"] is True
    await cb.request("joinRoom", {"conversationId": conv_id})
    await ca.request("joinRoom", {"conversationId": conv_id})

    res = await ca.request("sendMessage", build_signed_message(alice_keys[0], conv_id, "hi"))
    assert res["ok"] is True
    assert await vault.count_messages() == 1
    await until(lambda: len(ca.ws.pushes("messageCreated")) == 1)
    assert chat._commit_locks == {}
    await ca.close()
    await cb.close()


@pytest.mark.asyncio
async def test_device_touch_failure_keeps_ack_ok(tmp_path, alice_keys):
    class FlakyVault(DataVault):
        async def touch_device(self, user_id, device_id):
            raise sqlite3.OperationalError("database is locked")

    vault = FlakyVault(str(tmp_path / "flaky.sqlite"))
    vault.init_db()
    a = await vault.register_user("alice", "pw")
    conv, _ = await vault.create_conversation("t", [a])
    await vault.enroll_device(a, "laptop", alice_keys[1].decode())
    chat = make_chat(vault, mode=DEVICE)
    ca = await connect(chat, a, "alice")
    await ca.request("joinRoom", {"conversationId": conv["id"]})

    res = await ca.request("sendMessage", build_signed_message(alice_keys[0], conv["id"], "hi", device_id="laptop"))
    assert res["ok"] is True
    await until(lambda: len(ca.ws.pushes("messageCreated")) == 1)
    assert await vault.count_messages() == 1
    await ca.close()


# -------------------------
# Device-scoped keys
# -------------------------

@pytest.mark.asyncio
async def test_device_mode(tmp_path, alice_keys, bob_keys):
    ticks = iter(range(1_700_000_000_000, 1_700_000_100_000))
    vault = DataVault(str(tmp_path / "dev.sqlite"), clock=lambda: next(ticks))
    vault.init_db()
    a = await vault.register_user("alice", "pw")
    conv, _ = await vault.create_conversation("t", [a])
    await vault.enroll_device(a, "laptop", alice_keys[1].decode())
    seen_before = (await vault.list_devices(a))[0]["lastSeenAt"]

    chat = make_chat(vault, mode=DEVICE)
    ca = await connect(chat, a, "alice")

    no_device = build_signed_message(alice_keys[0], conv["id"], "hi")
    assert (await ca.request("sendMessage", no_device))["error"] == "sender/device not found or unauthorized"

    unknown = build_signed_message(alice_keys[0], conv["id"], "hi", device_id="tablet")
    assert (await ca.request("sendMessage", unknown))["error"] == "sender/device not found or unauthorized"

    wrong_key = build_signed_message(bob_keys[0], conv["id"], "hi", device_id="laptop")
    assert (await ca.request("sendMessage", wrong_key))["error"] == "signature verify failed"
    assert (await vault.list_devices(a))[0]["lastSeenAt"] == seen_before

    ok = build_signed_message(alice_keys[0], conv["id"], "hi", device_id="laptop")
    assert (await ca.request("sendMessage", ok))["ok"] is True
    assert (await vault.list_devices(a))[0]["lastSeenAt"] > seen_before
    await ca.close()


# -------------------------
# Conversations
# -------------------------

@pytest.mark.asyncio
async def test_conversation_create_list_history(vault, alice_keys, bob_keys, mallory_keys):
    a, b, _ = await seed(vault, alice_keys, bob_keys)
    m = await vault.register_user("mallory", "pw", mallory_keys[1].decode())
    chat = make_chat(vault)
    ca = await connect(chat, a, "alice")
    cb = await connect(chat, b, "bob")
    cm = await connect(chat, m, "mallory")

    res = await ca.request("conversation:create", {"title": "pair", "memberIds": [b, 999, "x"]})
    assert res["ok"] is True
    conv_id = res["conversation"]["id"]
    assert res["memberIds"] == [a, b]
    await until(lambda: len(cb.ws.pushes("conversationAdded")) == 1)
    assert cb.ws.pushes("conversationAdded")[0]["id"] == conv_id
    assert ca.ws.pushes("conversationAdded")[0]["title"] == "pair"
    assert cm.ws.pushes("conversationAdded") == []

    listed = await cb.request("conversation:list")
    assert conv_id in [c["id"] for c in listed["conversations"]]

    for body in ("first", "second"):
        await ca.request("sendMessage", build_signed_message(alice_keys[0], conv_id, body))
    hist = await cb.request("message:history", {"conversationId": conv_id, "limit": 1})
    assert [x["body"] for x in hist["messages"]] == ["second"]
    hist = await cb.request("message:history", {"conversationId": conv_id})
    assert [x["body"] for x in hist["messages"]] == ["first", "second"]
    assert keys.b64decode(hist["messages"][0]["nonce"])

    assert (await cm.request("message:history", {"conversationId": conv_id}))["error"] == "not a member"
    assert (await ca.request("conversation:create", {"title": 5}))["error"] == "invalid payload"

    for c in (ca, cb, cm):
        await c.close()


# A member adds a user, who is told on their private channel and may then join
@pytest.mark.asyncio
async def test_conversation_add_member(vault, alice_keys, bob_keys, mallory_keys):
    a, b, conv_id = await seed(vault, alice_keys, bob_keys)
    m = await vault.register_user("mallory", "pw", mallory_keys[1].decode())
    carol = await vault.register_user("carol", "pw")
    chat = make_chat(vault)
    ca = await connect(chat, a, "alice")
    cm = await connect(chat, m, "mallory")
    cc = await connect(chat, carol, "carol")

    # outsiders cannot add anyone, themselves included
    res = await cc.request("conversation:addMember", {"conversationId": conv_id, "userId": carol})
    assert res == {"ok": False, "error": "not a member", "code": "NOT_A_MEMBER"}
    assert (await ca.request("conversation:addMember", {"conversationId": conv_id, "userId": 999}))["error"] == \
        "invalid payload"
    assert (await ca.request("conversation:addMember", {"conversationId": conv_id}))["error"] == "invalid payload"

    res = await ca.request("conversation:addMember", {"conversationId": conv_id, "userId": m})
    assert res == {"ok": True, "added": True}
    await until(lambda: len(cm.ws.pushes("conversationAdded")) == 1)
    pushed = cm.ws.pushes("conversationAdded")[0]
    assert pushed["id"] == conv_id and pushed["title"] == "general"
    assert pushed["createdAt"].endswith("Z")
    assert (await cm.request("joinRoom", {"conversationId": conv_id})) == {"ok": True}
    assert cc.ws.pushes("conversationAdded") == []

    # adding again is a no-op without a second push
    res = await ca.request("conversation:addMember", {"conversationId": conv_id, "userId": str(m)})
    assert res == {"ok": True, "added": False}
    assert len(cm.ws.pushes("conversationAdded")) == 1

    for c in (ca, cm, cc):
        await c.close()


# -------------------------
# Account events over the socket
# -------------------------

# Login, OTP and key enrollment work before authenticate; the key then signs messages
@pytest.mark.asyncio
async def test_login_enroll_then_send(vault, alice_keys):
    a = await vault.register_user("alice", "pw")
    conv, _ = await vault.create_conversation("t", [a])
    delivered = []
    chat = make_chat(vault, delivered=delivered)
    conn = Conn(chat, FakeWebSocket())

    assert (await conn.request("login", {"username": "alice", "password": "bad"}))["error"] == "invalid credentials"
    login = await conn.request("login", {"username": "alice", "password": "pw"})
    assert login["ok"] is True and login["user"]["id"] == a

    assert (await conn.request("otp:request", {"username": "alice", "password": "pw"}))["ok"] is True
    code = delivered[-1][1]
    verified = await conn.request("otp:verify", {"username": "alice", "code": code})
    enroll = await conn.request("device:enroll", {
        "enrollmentToken": verified["enrollmentToken"],
        "publicKeyPem": alice_keys[1].decode(),
    })
    assert enroll == {"ok": True, "userId": a}

    assert (await conn.request("authenticate", {"token": login["token"]}))["ok"] is True
    res = await conn.request("sendMessage", build_signed_message(alice_keys[0], conv["id"], "hello"))
    assert res["ok"] is True
    await conn.close()


# -------------------------
# Server lifecycle
# -------------------------

# The OTP purge task runs while serving and is cancelled with the server
@pytest.mark.asyncio
async def test_main_loop_purges_and_cancels_purger(vault, monkeypatch):
    now = [1000.0]
    store = ChallengeStore(ttl_seconds=1, clock=lambda: now[0])
    chat = make_chat(vault)
    chat.enrollment.challenges = store
    store.issue("alice")
    now[0] += 5

    @contextlib.asynccontextmanager
    async def fake_serve(handler, host, port, **kwargs):
        assert handler == chat.handle_ws
        yield

    monkeypatch.setattr(server, "serve", fake_serve)
    monkeypatch.setattr(server, "build_server", lambda settings: chat)
    monkeypatch.setattr(server, "PURGE_INTERVAL", 0.01)

    task = asyncio.create_task(server.main_loop(Settings()))
    await until(lambda: len(store) == 0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await until(lambda: not [t for t in asyncio.all_tasks() if t.get_coro().__name__ == "purge_loop"])
