"""
server.py
----------
Realtime server for the signed chat protocol.

Responsibilities:
- Authenticate each WebSocket connection with a bearer token (upgrade header
  or a first `authenticate` frame) and join it to its private channel
- joinRoom: admit members of a conversation to its broadcast room
- sendMessage: validate, check freshness, membership, resolve the key, build
  the canonical payload, pre-check replays, verify RSA-PSS, persist, then
  broadcast `messageCreated` and ack the sender
- conversation:create and conversation:addMember push `conversationAdded`
  to every added member
- Account events (login, otp:request, otp:verify, device:enroll)

Frames (JSON text):
  request  {"type": <event>, "id": <request id>, "payload": {...}}
  ack      {"type": "ack", "id": <request id>, "payload": {"ok": ...}}
  push     {"type": "messageCreated" | "conversationAdded", "payload": {...}}
"""

import argparse
import asyncio
import contextlib
import json
import logging
import secrets
from typing import Any, Dict, List, Optional, Set

from websockets import serve
from websockets.exceptions import ConnectionClosed

from challenges import ChallengeStore
from datavault import DataVault, MessageRecord
from enrollment import EnrollmentService, log_delivery
from errors import (
    AuthenticationError,
    AuthorizationError,
    ChatError,
    FreshnessError,
    InternalError,
    NotFoundError,
    SignatureError,
    ValidationError,
)
from keys import b64decode, b64encode, rsa_pss_verify, sha256
from payload import build_message_payload, iso_from_ms, parse_client_timestamp
from replay import FRESHNESS_WINDOW_MS, ReplayGuard, decode_nonce, now_ms
from resolvers import DEVICE, KeyResolver, make_key_resolver
from settings import Settings, load_settings
from tokens import ACCESS, TokenService

log = logging.getLogger("chat.server")

CLOSE_UNAUTHORIZED = 4401
MAX_TITLE_CHARS = 200
HISTORY_DEFAULT = 50
HISTORY_MAX = 200
PURGE_INTERVAL = 30

ACCOUNT_EVENTS = ("login", "otp:request", "otp:verify", "device:enroll")


def is_open(ws):
    """Return True if websocket connection is alive across websocket versions."""
    if not ws:
        return False
    try:
        # websockets <=10.x
        if hasattr(ws, "open"):
            return bool(ws.open)
        if hasattr(ws, "closed"):
            return not ws.closed
        # websockets >=12.x (ServerConnection)
        if hasattr(ws, "state"):
            return getattr(ws.state, "name", "").upper() == "OPEN"
    except Exception:
        return False
    return False


def bearer_from_headers(ws) -> Optional[str]:
    """Bearer token from the upgrade request, across websocket versions."""
    headers = None
    request = getattr(ws, "request", None)       # websockets >= 13
    if request is not None:
        headers = getattr(request, "headers", None)
    if headers is None:
        headers = getattr(ws, "request_headers", None)   # legacy API
    if not headers:
        return None
    value = headers.get("Authorization")
    if not value:
        return None
    value = value.strip()
    return value[len("Bearer "):].strip() if value.startswith("Bearer ") else value


def conversation_room(conversation_id: int) -> str:
    return f"conv:{conversation_id}"


def private_room(principal_id: int) -> str:
    return f"user:{principal_id}"


def ack_frame(req_id, payload: dict) -> dict:
    return {"type": "ack", "id": req_id, "payload": payload}


def _is_decimal(s: str) -> bool:
    # str.isdigit() also accepts superscripts and other non-ASCII digits
    return s.isascii() and s.isdigit()


def _positive_int(value, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, str) and _is_decimal(value):
        value = int(value)
    if not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    return value


# ---------------------------------------------------------------------------
# Connection state
# ---------------------------------------------------------------------------
class Session:
    """Unauthenticated -> Authenticated -> member of any number of rooms."""

    def __init__(self, ws):
        self.ws = ws
        self.principal: Optional[Dict[str, Any]] = None
        self.rooms: Set[str] = set()

    @property
    def authenticated(self) -> bool:
        return self.principal is not None

    @property
    def label(self) -> str:
        return f"user:{self.principal['id']}" if self.principal else "anon"


class RoomRegistry:
    def __init__(self):
        self._rooms: Dict[str, Set[Session]] = {}

    def join(self, room: str, session: Session) -> None:
        self._rooms.setdefault(room, set()).add(session)
        session.rooms.add(room)

    def leave_all(self, session: Session) -> None:
        for room in list(session.rooms):
            members = self._rooms.get(room)
            if members is not None:
                members.discard(session)
                if not members:
                    del self._rooms[room]
        session.rooms.clear()

    def members(self, room: str) -> List[Session]:
        return list(self._rooms.get(room, ()))


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------
class ChatServer:
    def __init__(self, vault: DataVault, tokens: TokenService, enrollment: EnrollmentService,
                 key_resolver: KeyResolver, window_ms: int = FRESHNESS_WINDOW_MS,
                 clock=now_ms, max_body_chars: int = 16_000):
        self.vault = vault
        self.tokens = tokens
        self.enrollment = enrollment
        self.key_resolver = key_resolver
        self.guard = ReplayGuard(vault, window_ms, clock)
        self.max_body_chars = max_body_chars
        self.rooms = RoomRegistry()
        # conversation id -> [lock, number of holders and waiters]
        self._commit_locks: Dict[int, list] = {}

        self.handlers = {
            "joinRoom": self.join_room,
            "sendMessage": self.send_message,
            "conversation:create": self.create_conversation,
            "conversation:addMember": self.add_conversation_member,
            "conversation:list": self.list_conversations,
            "message:history": self.message_history,
            "login": self.login,
            "otp:request": self.otp_request,
            "otp:verify": self.otp_verify,
            "device:enroll": self.device_enroll,
        }

    @contextlib.asynccontextmanager
    async def _commit_lock(self, conversation_id: int):
        """Per-conversation lock, dropped again once nobody holds or awaits it."""
        entry = self._commit_locks.get(conversation_id)
        if entry is None:
            entry = self._commit_locks[conversation_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._commit_locks[conversation_id]

    # -- transport ---------------------------------------------------------
    async def _send(self, session: Session, frame: dict) -> None:
        await session.ws.send(json.dumps(frame))

    async def broadcast(self, room: str, frame: dict) -> int:
        """Best-effort fan-out to every open connection in room."""
        data = json.dumps(frame)
        delivered = 0
        for member in self.rooms.members(room):
            if not is_open(member.ws):
                continue
            try:
                await member.ws.send(data)
                delivered += 1
            except ConnectionClosed:
                log.info("[%s] dropped %s to closed connection %s", room, frame.get("type"), member.label)
            except Exception:
                log.warning("[%s] failed to deliver %s to %s", room, frame.get("type"), member.label,
                            exc_info=True)
        return delivered

    async def notify_principal(self, principal_id: int, event: str, payload: dict) -> int:
        return await self.broadcast(private_room(principal_id), {"type": event, "payload": payload})

    # -- connection loop ---------------------------------------------------
    async def handle_ws(self, websocket) -> None:
        """
        Serve one connection until it closes. Frames of a connection are
        handled one after the other, so a client's own sends never interleave.
        """
        session = Session(websocket)
        log.info("[anon] New connection received.")
        try:
            header_token = bearer_from_headers(websocket)
            if header_token is not None and not await self._authenticate(session, header_token, None):
                return

            async for raw in websocket:
                try:
                    msg = json.loads(raw)
                except (ValueError, TypeError):
                    await self._send(session, ack_frame(None, ValidationError().to_ack()))
                    continue
                if not isinstance(msg, dict):
                    await self._send(session, ack_frame(None, ValidationError().to_ack()))
                    continue

                mtype = msg.get("type")
                req_id = msg.get("id")
                payload = msg.get("payload")
                if payload is None:
                    payload = {}

                if not session.authenticated:
                    if mtype == "authenticate":
                        token = payload.get("token") if isinstance(payload, dict) else None
                        if not await self._authenticate(session, token, req_id):
                            return
                        continue
                    if mtype not in ACCOUNT_EVENTS:
                        await self._reject(session, req_id, f"{mtype!r} before authenticate")
                        return
                elif mtype == "authenticate":
                    await self._send(session, ack_frame(req_id, ValidationError().to_ack()))
                    continue

                result = await self.dispatch(session, mtype, payload)
                await self._send(session, ack_frame(req_id, result))
        except ConnectionClosed:
            log.info("[%s] connection closed", session.label)
        finally:
            self.rooms.leave_all(session)
            log.info("[%s] disconnected", session.label)

    async def _reject(self, session: Session, req_id, detail: str) -> None:
        log.info("[handshake] rejected: %s", detail)
        await self._send(session, ack_frame(req_id, AuthenticationError().to_ack()))
        await session.ws.close(code=CLOSE_UNAUTHORIZED, reason="unauthorized")

    async def _authenticate(self, session: Session, token, req_id) -> bool:
        try:
            claims = self.tokens.verify(token, purpose=ACCESS)
        except AuthenticationError as e:
            await self._reject(session, req_id, e.detail or e.message)
            return False
        session.principal = {"id": claims["sub"], "username": claims.get("name")}
        self.rooms.join(private_room(claims["sub"]), session)
        log.info("[%s] authenticated", session.label)
        await self._send(session, ack_frame(req_id, {"ok": True, "user": session.principal}))
        return True

    async def dispatch(self, session: Session, event, payload) -> dict:
        """Run one event handler; every failure becomes an ack payload."""
        handler = self.handlers.get(event) if isinstance(event, str) else None
        try:
            if handler is None:
                raise ValidationError(f"unknown event {event!r}")
            if not isinstance(payload, dict):
                raise ValidationError("payload must be an object")
            return await handler(session, payload)
        except InternalError as e:
            log.error("[%s] %s failed: %s", session.label, event, e.detail, exc_info=True)
            return e.to_ack()
        except ChatError as e:
            log.info("[%s] %s rejected: %s (%s)", session.label, event, e.code, e.detail)
            return e.to_ack()
        except Exception:
            log.exception("[%s] %s failed with an internal error", session.label, event)
            return InternalError().to_ack()

    # -- rooms -------------------------------------------------------------
    async def join_room(self, session: Session, payload: dict) -> dict:
        conv_id = _positive_int(payload.get("conversationId"), "conversationId")
        if not await self.vault.is_member(conv_id, session.principal["id"]):
            raise AuthorizationError(f"{session.label} not in conversation {conv_id}")
        self.rooms.join(conversation_room(conv_id), session)
        log.info("[%s] joined %s", session.label, conversation_room(conv_id))
        return {"ok": True}

    # -- send pipeline -----------------------------------------------------
    def _validate_send(self, payload: dict) -> dict:
        conv_id = _positive_int(payload.get("conversationId"), "conversationId")

        body = payload.get("body")
        if not isinstance(body, str):
            raise ValidationError("body must be a string")
        if len(body) > self.max_body_chars:
            raise ValidationError(f"body longer than {self.max_body_chars} chars")

        client_ts = payload.get("clientTimestamp")
        if isinstance(client_ts, bool) or not isinstance(client_ts, (str, int)):
            raise ValidationError("clientTimestamp must be a string")

        nonce = decode_nonce(payload.get("nonce"))

        sig_b64 = payload.get("signature")
        if not isinstance(sig_b64, str) or not sig_b64:
            raise ValidationError("signature is required")
        try:
            signature = b64decode(sig_b64)
        except ValueError as e:
            raise ValidationError(f"signature: {e}") from e

        device_id = payload.get("deviceId")
        if device_id is not None and not isinstance(device_id, str):
            raise ValidationError("deviceId must be a string")

        return {
            "conversation_id": conv_id,
            "body": body,
            "client_timestamp": client_ts,
            "nonce": nonce,
            "nonce_b64": b64encode(nonce),
            "signature": signature,
            "device_id": device_id or None,
        }

    async def send_message(self, session: Session, payload: dict) -> dict:
        me = session.principal["id"]
        msg = self._validate_send(payload)
        conv_id = msg["conversation_id"]

        try:
            ts_ms = parse_client_timestamp(msg["client_timestamp"])
        except ValueError as e:
            raise FreshnessError(f"unparsable clientTimestamp: {e}") from e
        self.guard.check_fresh(ts_ms)

        if not await self.vault.is_member(conv_id, me):
            raise AuthorizationError(f"{session.label} not in conversation {conv_id}")

        public_key = await self.key_resolver.resolve(me, msg["device_id"])
        if not public_key:
            raise NotFoundError(f"no {self.key_resolver.mode} key for {session.label} device={msg['device_id']}")

        signed_data = build_message_payload(conv_id, ts_ms, msg["nonce"], msg["body"])
        body_hash = sha256(signed_data)

        await self.guard.check_unseen(body_hash, msg["nonce"])

        if not rsa_pss_verify(public_key, signed_data, msg["signature"]):
            raise SignatureError(f"bad signature from {session.label}")

        record = MessageRecord(
            conversation_id=conv_id,
            sender_id=me,
            body=msg["body"],
            body_hash=body_hash,
            signature=msg["signature"],
            client_timestamp=str(msg["client_timestamp"]),
            client_ts_ms=ts_ms,
            nonce=msg["nonce"],
            device_id=msg["device_id"],
        )
        # persist + broadcast under one lock per conversation: broadcast order == commit order
        async with self._commit_lock(conv_id):
            msg_id, created_at = await self.vault.persist_message(record)
            # committed: from here on only best-effort work, the ack is always ok
            out = {
                "id": msg_id,
                "conversationId": conv_id,
                "senderId": me,
                "body": msg["body"],
                "clientTimestamp": record.client_timestamp,
                "nonce": msg["nonce_b64"],
                "createdAt": iso_from_ms(created_at),
                "signature": b64encode(msg["signature"]),
                "bodyHashHex": body_hash.hex(),
            }
            if msg["device_id"]:
                out["deviceId"] = msg["device_id"]
            await self.broadcast(conversation_room(conv_id), {"type": "messageCreated", "payload": out})

        log.info("[%s] message %s accepted in %s", session.label, msg_id, conversation_room(conv_id))
        if msg["device_id"] and self.key_resolver.mode == DEVICE:
            try:
                await self.vault.touch_device(me, msg["device_id"])
            except Exception:
                log.warning("[%s] could not refresh last_seen of device %s", session.label, msg["device_id"],
                            exc_info=True)
        return {"ok": True, "id": msg_id}

    # -- conversations -----------------------------------------------------
    async def create_conversation(self, session: Session, payload: dict) -> dict:
        me = session.principal["id"]
        title = payload.get("title")
        if title is not None and (not isinstance(title, str) or len(title) > MAX_TITLE_CHARS):
            raise ValidationError("title must be a string of at most 200 chars")
        raw_ids = payload.get("memberIds") or []
        if not isinstance(raw_ids, list):
            raise ValidationError("memberIds must be a list")
        member_ids = [me]
        for x in raw_ids:
            if isinstance(x, bool):
                continue
            if isinstance(x, str) and _is_decimal(x):
                x = int(x)
            if isinstance(x, int) and x > 0:
                member_ids.append(x)

        conv, added = await self.vault.create_conversation(title, member_ids)
        conv_out = {"id": conv["id"], "title": conv["title"], "createdAt": iso_from_ms(conv["createdAt"])}
        for uid in added:
            await self.notify_principal(uid, "conversationAdded", conv_out)
        log.info("[%s] created conversation %s with %d members", session.label, conv["id"], len(added))
        return {"ok": True, "conversation": conv_out, "memberIds": added}

    async def add_conversation_member(self, session: Session, payload: dict) -> dict:
        """A member adds another user; the user is told on their private channel."""
        conv_id = _positive_int(payload.get("conversationId"), "conversationId")
        user_id = _positive_int(payload.get("userId"), "userId")
        if not await self.vault.is_member(conv_id, session.principal["id"]):
            raise AuthorizationError(f"{session.label} not in conversation {conv_id}")
        conv, added = await self.vault.add_member(conv_id, user_id)
        if conv is None:
            raise ValidationError(f"unknown user {user_id}")
        if added:
            conv_out = {"id": conv["id"], "title": conv["title"], "createdAt": iso_from_ms(conv["createdAt"])}
            await self.notify_principal(user_id, "conversationAdded", conv_out)
            log.info("[%s] added user:%s to conversation %s", session.label, user_id, conv_id)
        return {"ok": True, "added": added}

    async def list_conversations(self, session: Session, payload: dict) -> dict:
        convs = await self.vault.list_conversations(session.principal["id"])
        for c in convs:
            c["createdAt"] = iso_from_ms(c["createdAt"])
        return {"ok": True, "conversations": convs}

    async def message_history(self, session: Session, payload: dict) -> dict:
        conv_id = _positive_int(payload.get("conversationId"), "conversationId")
        limit = payload.get("limit", HISTORY_DEFAULT)
        limit = min(_positive_int(limit, "limit"), HISTORY_MAX)
        if not await self.vault.is_member(conv_id, session.principal["id"]):
            raise AuthorizationError(f"{session.label} not in conversation {conv_id}")
        messages = await self.vault.list_messages(conv_id, limit)
        for m in messages:
            m["conversationId"] = conv_id
            m["nonce"] = b64encode(m["nonce"])
            m["signature"] = b64encode(m["signature"])
            m["createdAt"] = iso_from_ms(m["createdAt"])
        return {"ok": True, "messages": messages}

    # -- account events ----------------------------------------------------
    async def login(self, session: Session, payload: dict) -> dict:
        result = await self.enrollment.login(payload.get("username"), payload.get("password"))
        return {"ok": True, **result}

    async def otp_request(self, session: Session, payload: dict) -> dict:
        await self.enrollment.request_otp(payload.get("username"), payload.get("password"))
        return {"ok": True}

    async def otp_verify(self, session: Session, payload: dict) -> dict:
        token = await self.enrollment.verify_otp(payload.get("username"), payload.get("code"))
        return {"ok": True, "enrollmentToken": token}

    async def device_enroll(self, session: Session, payload: dict) -> dict:
        result = await self.enrollment.enroll_device(
            payload.get("enrollmentToken"), payload.get("deviceId"), payload.get("publicKeyPem")
        )
        return {"ok": True, **result}


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------
def build_server(settings: Settings, deliver=log_delivery) -> ChatServer:
    vault = DataVault(settings.db_path)
    vault.init_db()

    secret = settings.token_secret
    if not secret:
        secret = secrets.token_hex(32)
        log.warning("[config] no token_secret configured; using a random per-process secret")
    tokens = TokenService(secret, settings.access_token_ttl, settings.enrollment_token_ttl)

    challenges = ChallengeStore(settings.otp_ttl)
    enrollment = EnrollmentService(vault, tokens, challenges, settings.key_mode, deliver)
    resolver = make_key_resolver(settings.key_mode, vault)
    return ChatServer(vault, tokens, enrollment, resolver,
                      window_ms=settings.freshness_window_ms,
                      max_body_chars=settings.max_body_chars)


async def purge_loop(challenges: ChallengeStore) -> None:
    """Periodically drop expired one-time codes."""
    while True:
        await asyncio.sleep(PURGE_INTERVAL)
        dropped = challenges.purge_expired()
        if dropped:
            log.debug("[otp] purged %d expired codes", dropped)


async def main_loop(settings: Settings) -> None:
    chat = build_server(settings)
    log.info("[vault] SQLite database initialised at %s (key_mode=%s)", settings.db_path, settings.key_mode)
    log.info("Listening on ws://%s:%s", settings.host, settings.port)
    async with serve(chat.handle_ws, settings.host, settings.port, ping_interval=20, ping_timeout=60):
        purger = asyncio.create_task(purge_loop(chat.enrollment.challenges))
        try:
            await asyncio.Future()
        finally:
            purger.cancel()


# ------------------------------------------------------------
# Program entry point
# ------------------------------------------------------------
def main():
    parser = argparse.ArgumentParser(description="Signed chat server")
    parser.add_argument("--config", default=None, help="YAML settings file (e.g. chat.yaml)")
    parser.add_argument("--host", default=None, help="Hostname or IP to bind")
    parser.add_argument("--port", default=None, type=int, help="TCP port to listen on")
    args = parser.parse_args()

    settings = load_settings(args.config)
    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(main_loop(settings))
    except KeyboardInterrupt:
        log.info("Server shutting down gracefully...")


if __name__ == "__main__":
    main()
