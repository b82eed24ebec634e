"""
tokens.py
---------
Signed, time-limited bearer credentials.

Format is the compact HS256 JWT shape: base64url(header) "." base64url(claims)
"." base64url(HMAC-SHA256(secret, first two parts)). Claims carry the
principal id (sub), display name (name), purpose, iat and exp in seconds.

Two purposes exist:
  access  - opens a realtime session
  enroll  - provisional credential allowing one device key enrollment
"""

import json
import time
from typing import Callable, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from errors import AuthenticationError
from keys import b64url_decode, b64url_encode

ACCESS = "access"
ENROLL = "enroll"

ACCESS_TTL_SECONDS = 2 * 60 * 60
ENROLL_TTL_SECONDS = 5 * 60

_HEADER = b64url_encode(json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode())


def _mac(secret: bytes, signing_input: bytes) -> hmac.HMAC:
    h = hmac.HMAC(secret, hashes.SHA256())
    h.update(signing_input)
    return h


class TokenService:
    def __init__(self, secret: bytes, access_ttl: int = ACCESS_TTL_SECONDS,
                 enroll_ttl: int = ENROLL_TTL_SECONDS,
                 clock: Callable[[], float] = time.time):
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        if not secret:
            raise ValueError("token secret must not be empty")
        self.secret = secret
        self.ttl = {ACCESS: access_ttl, ENROLL: enroll_ttl}
        self.clock = clock

    def issue(self, principal_id: int, name: str, purpose: str = ACCESS,
              ttl: Optional[int] = None) -> str:
        if purpose not in self.ttl:
            raise ValueError(f"unknown token purpose {purpose!r}")
        now = int(self.clock())
        claims = {
            "sub": int(principal_id),
            "name": name,
            "purpose": purpose,
            "iat": now,
            "exp": now + (ttl if ttl is not None else self.ttl[purpose]),
        }
        body = b64url_encode(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{_HEADER}.{body}".encode("ascii")
        sig = _mac(self.secret, signing_input).finalize()
        return f"{_HEADER}.{body}.{b64url_encode(sig)}"

    def verify(self, token, purpose: str = ACCESS) -> dict:
        """Return the claims of a valid token or raise AuthenticationError."""
        if not isinstance(token, str) or token.count(".") != 2:
            raise AuthenticationError("malformed token")
        if token.startswith("Bearer "):
            token = token[len("Bearer "):]
        header_b64, body_b64, sig_b64 = token.split(".")
        try:
            sig = b64url_decode(sig_b64)
            _mac(self.secret, f"{header_b64}.{body_b64}".encode("ascii")).verify(sig)
        except (InvalidSignature, ValueError, UnicodeEncodeError) as e:
            raise AuthenticationError("bad token signature") from e
        try:
            header = json.loads(b64url_decode(header_b64))
            claims = json.loads(b64url_decode(body_b64))
        except ValueError as e:
            raise AuthenticationError("undecodable token") from e
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise AuthenticationError("unsupported token algorithm")
        if not isinstance(claims, dict):
            raise AuthenticationError("token claims are not an object")
        if claims.get("purpose") != purpose:
            raise AuthenticationError(f"token purpose {claims.get('purpose')!r} != {purpose!r}")
        exp = claims.get("exp")
        sub = claims.get("sub")
        if not isinstance(exp, int) or self.clock() >= exp:
            raise AuthenticationError("token expired")
        if isinstance(sub, bool) or not isinstance(sub, int):
            raise AuthenticationError("token subject missing")
        return claims
