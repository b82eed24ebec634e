"""
payload.py
----------
Canonical message payload shared by signer and verifier.

    "{conversationId}|{clientTimestampEpochMillis}|{nonceBase64}|{body}"

The timestamp is always reduced to integer epoch milliseconds and the nonce
is re-encoded from its bytes, so an ISO string on one side and millis on the
other still produce the same bytes. The body comes last, which keeps a "|"
inside the body unambiguous.
"""

from datetime import datetime, timezone
from typing import Union

from keys import b64encode

NONCE_BYTES = 16


def parse_client_timestamp(value: Union[str, int]) -> int:
    """
    Canonicalize a client timestamp to epoch milliseconds.

    Accepts an int (epoch ms), a string of digits (epoch ms) or an ISO-8601
    string; naive ISO times are taken as UTC. Raises ValueError otherwise.
    """
    if isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")
    if isinstance(value, int):
        return value
    if not isinstance(value, str):
        raise ValueError(f"unsupported timestamp type {type(value).__name__}")
    s = value.strip()
    if not s:
        raise ValueError("empty timestamp")
    if s.isascii() and s.isdigit():
        return int(s)
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    delta = dt - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86_400_000) + (delta.seconds * 1000) + (delta.microseconds // 1000)


def build_message_payload(conversation_id: int, client_timestamp: Union[str, int],
                          nonce: bytes, body: str) -> bytes:
    if isinstance(conversation_id, bool) or not isinstance(conversation_id, int):
        raise ValueError("conversation_id must be an int")
    if not isinstance(nonce, (bytes, bytearray)) or len(nonce) != NONCE_BYTES:
        raise ValueError(f"nonce must be {NONCE_BYTES} bytes")
    if not isinstance(body, str):
        raise ValueError("body must be a string")
    ts_ms = parse_client_timestamp(client_timestamp)
    return f"{conversation_id}|{ts_ms}|{b64encode(nonce)}|{body}".encode("utf-8")


def iso_from_ms(ms: int) -> str:
    """Epoch milliseconds as ISO-8601 UTC with millisecond precision."""
    dt = datetime.fromtimestamp(ms // 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ms % 1000:03d}Z"
