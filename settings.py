"""
settings.py
-----------
Server configuration: YAML file, then CHAT_* environment overrides.

    host: 127.0.0.1
    port: 8765
    db_path: chat_vault.sqlite
    token_secret: change-me
    key_mode: account        # or: device
"""

import os
from dataclasses import dataclass, fields
from typing import Mapping, Optional

import yaml

from resolvers import ACCOUNT, KEY_MODES

ENV_PREFIX = "CHAT_"


@dataclass
class Settings:
    host: str = "127.0.0.1"
    port: int = 8765
    db_path: str = "chat_vault.sqlite"
    token_secret: Optional[str] = None
    access_token_ttl: int = 2 * 60 * 60
    enrollment_token_ttl: int = 5 * 60
    otp_ttl: int = 120
    freshness_window_ms: int = 5 * 60 * 1000
    key_mode: str = ACCOUNT
    max_body_chars: int = 16_000
    log_level: str = "INFO"

    def validate(self) -> "Settings":
        if self.key_mode not in KEY_MODES:
            raise ValueError(f"key_mode must be one of {KEY_MODES}, got {self.key_mode!r}")
        for name in ("port", "access_token_ttl", "enrollment_token_ttl", "otp_ttl",
                     "freshness_window_ms", "max_body_chars"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        return self


def _coerce(name: str, raw):
    kind = {f.name: f.type for f in fields(Settings)}[name]
    if kind in (int, "int"):
        return int(raw)
    return None if raw is None else str(raw)


def load_settings(yaml_path: Optional[str] = None,
                  environ: Optional[Mapping[str, str]] = None) -> Settings:
    environ = os.environ if environ is None else environ
    values = {}
    if yaml_path:
        with open(yaml_path, "r") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"{yaml_path}: expected a mapping at top level")
        values.update(loaded)

    known = {f.name for f in fields(Settings)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"unknown settings: {', '.join(sorted(unknown))}")

    for name in known:
        env_val = environ.get(ENV_PREFIX + name.upper())
        if env_val is not None:
            values[name] = env_val

    return Settings(**{k: _coerce(k, v) for k, v in values.items()}).validate()
