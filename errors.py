"""
errors.py
---------
Error taxonomy for the chat protocol.

Every rejection a client can see is a ChatError subclass carrying a stable
code and a stable, human readable message. The session handler turns these
into ack frames; anything that is not a ChatError becomes SERVER_ERROR.
"""


class ChatError(Exception):
    code = "SERVER_ERROR"
    message = "server error"

    def __init__(self, detail: str | None = None):
        # detail is for server logs only, never sent to the client
        super().__init__(detail or self.message)
        self.detail = detail

    def to_ack(self) -> dict:
        return {"ok": False, "error": self.message, "code": self.code}


class ValidationError(ChatError):
    code = "INVALID_PAYLOAD"
    message = "invalid payload"


class FreshnessError(ChatError):
    code = "TIMESTAMP_INVALID"
    message = "timestamp invalid/expired"


class AuthorizationError(ChatError):
    code = "NOT_A_MEMBER"
    message = "not a member"


class NotFoundError(ChatError):
    code = "KEY_NOT_FOUND"
    message = "sender/device not found or unauthorized"


class ReplayError(ChatError):
    code = "REPLAY_DETECTED"
    message = "replay detected"


class SignatureError(ChatError):
    code = "SIGNATURE_INVALID"
    message = "signature verify failed"


class AuthenticationError(ChatError):
    code = "UNAUTHENTICATED"
    message = "invalid credentials"


class InternalError(ChatError):
    code = "SERVER_ERROR"
    message = "server error"
