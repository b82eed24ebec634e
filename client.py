"""
client.py
----------
Command line client for the signed chat server.

Implements:
- login (password) and optional key enrollment through the OTP flow
- RSASSA-PSS (SHA-256) signing of every outgoing message over the
  canonical payload "{conversationId}|{epochMillis}|{nonceB64}|{body}"
- Commands: /history [n], /list, /new <title> [id,id,...], /join <id>,
  /add <userId>, /quit
- Displays messageCreated and conversationAdded pushes
"""

import argparse
import asyncio
import getpass
import json
import os
import uuid
from typing import Optional, Union

import websockets

from keys import b64decode, b64encode, load_or_create_keys, rsa_pss_sign, sha256
from payload import NONCE_BYTES, build_message_payload, iso_from_ms
from replay import now_ms


def build_signed_message(priv_pem: bytes, conversation_id: int, body: str,
                         client_timestamp: Union[str, int, None] = None,
                         nonce: Optional[bytes] = None,
                         device_id: Optional[str] = None) -> dict:
    """sendMessage payload signed with priv_pem; fresh nonce and ISO timestamp by default."""
    if client_timestamp is None:
        client_timestamp = iso_from_ms(now_ms())
    if nonce is None:
        nonce = os.urandom(NONCE_BYTES)
    data = build_message_payload(conversation_id, client_timestamp, nonce, body)
    msg = {
        "conversationId": conversation_id,
        "body": body,
        "clientTimestamp": client_timestamp,
        "nonce": b64encode(nonce),
        "signature": b64encode(rsa_pss_sign(priv_pem, data)),
    }
    if device_id:
        msg["deviceId"] = device_id
    return msg


def body_hash_matches(push: dict) -> bool:
    """Recompute bodyHashHex of a messageCreated push from its fields."""
    try:
        data = build_message_payload(
            int(push["conversationId"]), push["clientTimestamp"],
            b64decode(push["nonce"]), push["body"],
        )
    except (KeyError, TypeError, ValueError):
        return False
    return sha256(data).hex() == push.get("bodyHashHex")


def frame(mtype: str, payload: Optional[dict] = None) -> dict:
    return {"type": mtype, "id": uuid.uuid4().hex, "payload": payload or {}}


def show_push(msg: dict, names: dict) -> None:
    mtype = msg.get("type")
    p = msg.get("payload") or {}
    if mtype == "messageCreated":
        who = names.get(p.get("senderId"), p.get("senderId"))
        mark = "" if body_hash_matches(p) else " [hash mismatch]"
        print(f"[conv {p.get('conversationId')}] {who}: {p.get('body')}{mark}")
    elif mtype == "conversationAdded":
        print(f"[+] added to conversation {p.get('id')} '{p.get('title') or ''}'")
    elif mtype == "ack":
        if not p.get("ok"):
            print(f"[error] {p.get('error')} ({p.get('code')})")
    else:
        print(f"[debug] unhandled frame {mtype}")


async def call(ws, mtype: str, payload: Optional[dict] = None, names: Optional[dict] = None) -> dict:
    """Send one request and wait for its ack; pushes received meanwhile are shown."""
    req = frame(mtype, payload)
    await ws.send(json.dumps(req))
    async for raw in ws:
        msg = json.loads(raw)
        if msg.get("type") == "ack" and msg.get("id") == req["id"]:
            return msg.get("payload") or {}
        show_push(msg, names or {})
    raise ConnectionError("connection closed while waiting for ack")


async def ask(prompt: str) -> str:
    return await asyncio.get_event_loop().run_in_executor(None, input, prompt)


async def run_client(username: str, password: str, server_url: str, conversation_id: int,
                     device_id: Optional[str] = None, enroll: bool = False, keydir: str = ".keys"):
    """
    Log in, optionally enroll this client's key, authenticate the
    connection, join one conversation and then sign every typed line.
    """
    key_name = f"{username}:{device_id}" if device_id else username
    priv_pem, pub_pem = load_or_create_keys(key_name, keydir)
    names = {}

    async with websockets.connect(server_url, ping_interval=15, ping_timeout=45) as ws:
        # --- 1. Login -------------------------------------------------------
        res = await call(ws, "login", {"username": username, "password": password})
        if not res.get("ok"):
            print(f"Login failed: {res.get('error')}")
            return
        token = res["token"]
        me = res["user"]["id"]
        names[me] = username

        # --- 2. Optional enrollment ----------------------------------------
        if enroll:
            res = await call(ws, "otp:request", {"username": username, "password": password})
            if not res.get("ok"):
                print(f"OTP request failed: {res.get('error')}")
                return
            code = (await ask("One-time code: ")).strip()
            res = await call(ws, "otp:verify", {"username": username, "code": code})
            if not res.get("ok"):
                print(f"OTP rejected: {res.get('error')}")
                return
            res = await call(ws, "device:enroll", {
                "enrollmentToken": res["enrollmentToken"],
                "deviceId": device_id,
                "publicKeyPem": pub_pem.decode(),
            })
            if not res.get("ok"):
                print(f"Enrollment failed: {res.get('error')}")
                return
            print(f"[enroll] key registered for {key_name}")

        # --- 3. Authenticate + join ----------------------------------------
        res = await call(ws, "authenticate", {"token": token})
        if not res.get("ok"):
            print(f"Authentication failed: {res.get('error')}")
            return
        res = await call(ws, "joinRoom", {"conversationId": conversation_id}, names)
        if not res.get("ok"):
            print(f"Cannot join conversation {conversation_id}: {res.get('error')}")
            return
        print(f"Connected to {server_url} as {username} (id={me}), conversation {conversation_id}")

        current = {"conv": conversation_id}

        async def sender():
            while True:
                try:
                    line = await ask("")
                except (EOFError, KeyboardInterrupt):
                    break
                line = line.strip()
                if not line:
                    continue

                if line == "/quit":
                    break
                elif line.startswith("/history"):
                    parts = line.split()
                    limit = int(parts[1]) if len(parts) > 1 and parts[1].isascii() and parts[1].isdigit() else 20
                    await ws.send(json.dumps(frame("message:history",
                                                   {"conversationId": current["conv"], "limit": limit})))
                elif line == "/list":
                    await ws.send(json.dumps(frame("conversation:list")))
                elif line.startswith("/new "):
                    parts = line.split(" ", 2)
                    ids = [int(x) for x in parts[2].split(",") if x.strip().isascii() and x.strip().isdigit()] if len(parts) > 2 else []
                    await ws.send(json.dumps(frame("conversation:create",
                                                   {"title": parts[1], "memberIds": ids})))
                elif line.startswith("/join "):
                    target = line.split(" ", 1)[1].strip()
                    if not (target.isascii() and target.isdigit()):
                        print("Usage: /join <conversationId>")
                        continue
                    current["conv"] = int(target)
                    await ws.send(json.dumps(frame("joinRoom", {"conversationId": current["conv"]})))
                elif line.startswith("/add "):
                    target = line.split(" ", 1)[1].strip()
                    if not (target.isascii() and target.isdigit()):
                        print("Usage: /add <userId>")
                        continue
                    await ws.send(json.dumps(frame("conversation:addMember",
                                                   {"conversationId": current["conv"], "userId": int(target)})))
                else:
                    msg = build_signed_message(priv_pem, current["conv"], line, device_id=device_id)
                    await ws.send(json.dumps(frame("sendMessage", msg)))

            await ws.close()

        async def receiver():
            async for raw in ws:
                msg = json.loads(raw)
                p = msg.get("payload") or {}
                if msg.get("type") == "ack" and p.get("ok"):
                    if "messages" in p:
                        for m in p["messages"]:
                            who = names.get(m.get("senderId"), m.get("senderId"))
                            print(f"  {m.get('createdAt')} {who}: {m.get('body')}")
                    elif "conversations" in p:
                        for c in p["conversations"]:
                            print(f"  {c['id']:>4}  {c.get('title') or ''}")
                    continue
                show_push(msg, names)

        try:
            await asyncio.gather(sender(), receiver())
        except websockets.exceptions.ConnectionClosed:
            print("Connection closed by server.")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main():
    parser = argparse.ArgumentParser(description="Signed chat client")
    parser.add_argument("--user", required=True, help="Username")
    parser.add_argument("--password", default=None, help="Password (prompted if omitted)")
    parser.add_argument("--server", default="ws://127.0.0.1:8765", help="Server WebSocket URL")
    parser.add_argument("--conversation", required=True, type=int, help="Conversation id to join")
    parser.add_argument("--device", default=None, help="Device id (device-scoped key mode)")
    parser.add_argument("--enroll", action="store_true", help="Register this client's key via OTP first")
    parser.add_argument("--keydir", default=".keys", help="Where private keys are stored")
    args = parser.parse_args()

    password = args.password or getpass.getpass("Password: ")
    try:
        asyncio.run(run_client(args.user, password, args.server, args.conversation,
                               args.device, args.enroll, args.keydir))
    except KeyboardInterrupt:
        print("\nClient terminated by user.")


if __name__ == "__main__":
    main()
