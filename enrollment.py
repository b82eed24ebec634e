"""
enrollment.py
-------------
Account side of the protocol: password login, OTP challenge and key
enrollment.

Flow for a new device:
  otp:request  {username, password}        -> code delivered out of band
  otp:verify   {username, code}            -> provisional enrollment token
  device:enroll {enrollmentToken, deviceId, publicKeyPem}

In the account-scoped variant device:enroll replaces the account key;
in the device-scoped variant it creates or replaces the (user, device) key.
"""

import logging
from typing import Callable

from challenges import ChallengeStore
from errors import AuthenticationError, ValidationError
from keys import public_key_pem
from resolvers import ACCOUNT
from tokens import ACCESS, ENROLL, TokenService

log = logging.getLogger("chat.enrollment")

MAX_DEVICE_ID_CHARS = 64


def log_delivery(username: str, code: str) -> None:
    # demo transport for one-time codes
    log.warning("[otp] one-time code for %s: %s", username, code)


class EnrollmentService:
    def __init__(self, vault, tokens: TokenService, challenges: ChallengeStore,
                 key_mode: str = ACCOUNT,
                 deliver: Callable[[str, str], None] = log_delivery):
        self.vault = vault
        self.tokens = tokens
        self.challenges = challenges
        self.key_mode = key_mode
        self.deliver = deliver

    async def _check_password(self, username, password) -> dict:
        if not isinstance(username, str) or not isinstance(password, str) or not username or not password:
            raise ValidationError("username and password are required")
        user = await self.vault.verify_user_password(username, password)
        if user is None:
            raise AuthenticationError(f"bad password for {username!r}")
        return user

    async def login(self, username, password) -> dict:
        user = await self._check_password(username, password)
        token = self.tokens.issue(user["id"], user["username"], ACCESS)
        log.info("[auth] login ok for user %s", user["id"])
        return {"token": token, "user": user}

    async def request_otp(self, username, password) -> None:
        user = await self._check_password(username, password)
        code = self.challenges.issue(user["username"])
        self.deliver(user["username"], code)

    async def verify_otp(self, username, code) -> str:
        if not isinstance(username, str) or not isinstance(code, str):
            raise ValidationError("username and code are required")
        if not self.challenges.consume(username, code):
            raise AuthenticationError(f"otp rejected for {username!r}")
        user = await self.vault.get_user_by_username(username)
        if user is None:
            raise AuthenticationError(f"user {username!r} vanished")
        return self.tokens.issue(user["id"], user["username"], ENROLL)

    async def enroll_device(self, enrollment_token, device_id, public_key_material) -> dict:
        claims = self.tokens.verify(enrollment_token, purpose=ENROLL)
        if not isinstance(public_key_material, str) or not public_key_material.strip():
            raise ValidationError("publicKeyPem is required")
        try:
            pem = public_key_pem(public_key_material)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        user_id = claims["sub"]
        if self.key_mode == ACCOUNT:
            await self.vault.set_user_public_key(user_id, pem)
            log.info("[enroll] account key replaced for user %s", user_id)
            return {"userId": user_id}

        if (not isinstance(device_id, str) or not device_id.strip()
                or len(device_id) > MAX_DEVICE_ID_CHARS):
            raise ValidationError("deviceId must be a non-empty string of at most 64 chars")
        await self.vault.enroll_device(user_id, device_id, pem)
        log.info("[enroll] device %s enrolled for user %s", device_id, user_id)
        return {"userId": user_id, "deviceId": device_id}
