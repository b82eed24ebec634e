"""
resolvers.py
------------
Which public key verifies a principal's message.

account - one key per principal, stored on the user row
device  - one key per (principal, deviceId); an unknown or missing device
          resolves to nothing, so verification fails closed
"""

from typing import Optional

ACCOUNT = "account"
DEVICE = "device"
KEY_MODES = (ACCOUNT, DEVICE)


class KeyResolver:
    mode = ""

    def __init__(self, vault):
        self.vault = vault

    async def resolve(self, principal_id: int, device_id: Optional[str] = None) -> Optional[str]:
        raise NotImplementedError


class AccountKeyResolver(KeyResolver):
    mode = ACCOUNT

    async def resolve(self, principal_id, device_id=None):
        return await self.vault.get_user_public_key(principal_id)


class DeviceKeyResolver(KeyResolver):
    mode = DEVICE

    async def resolve(self, principal_id, device_id=None):
        if not device_id:
            return None
        return await self.vault.get_device_public_key(principal_id, device_id)


def make_key_resolver(mode: str, vault) -> KeyResolver:
    if mode == ACCOUNT:
        return AccountKeyResolver(vault)
    if mode == DEVICE:
        return DeviceKeyResolver(vault)
    raise ValueError(f"unknown key_mode {mode!r}; expected one of {KEY_MODES}")
