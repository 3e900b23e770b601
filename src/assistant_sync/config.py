"""Runtime settings for the assistant client.

Values come from the process environment; a ``.env`` file in the working
directory is loaded first when present. Malformed or non-positive numbers
fall back to their defaults instead of failing start-up.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv


DEFAULT_API_BASE = "http://localhost:5000"


@dataclass(frozen=True)
class Settings:
    api_base: str = DEFAULT_API_BASE
    auth_token: Optional[str] = None
    poll_interval_seconds: float = 2.0
    reveal_interval_seconds: float = 0.025
    reveal_recency_seconds: float = 5.0
    dedup_user_seconds: float = 10.0
    dedup_assistant_seconds: float = 2.0
    optimistic_dedup_seconds: float = 1.0
    ledger_impl: str = "file"
    ledger_file: str = "run/ledger.json"
    preferences_file: str = "run/preferences.json"
    redis_url: Optional[str] = None
    connect_timeout: float = 3.0
    read_timeout: float = 60.0

    @property
    def timeout(self) -> tuple[float, float]:
        return (self.connect_timeout, self.read_timeout)


def _env_float(env: Mapping[str, str], name: str, default: float, *, allow_zero: bool = False) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    if value < 0 or (value == 0 and not allow_zero):
        return default
    return value


def _env_str(env: Mapping[str, str], name: str, default: Optional[str]) -> Optional[str]:
    raw = env.get(name)
    if raw is None:
        return default
    raw = raw.strip()
    return raw or default


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    if env is None:
        load_dotenv()
        env = os.environ
    ledger_impl = (_env_str(env, "ASSISTANT_LEDGER_IMPL", "file") or "file").lower()
    if ledger_impl not in {"memory", "file", "redis"}:
        ledger_impl = "file"
    return Settings(
        api_base=(_env_str(env, "ASSISTANT_API_BASE", DEFAULT_API_BASE) or DEFAULT_API_BASE).rstrip("/"),
        auth_token=_env_str(env, "ASSISTANT_AUTH_TOKEN", None),
        poll_interval_seconds=_env_float(env, "ASSISTANT_POLL_INTERVAL_SECONDS", 2.0),
        reveal_interval_seconds=_env_float(env, "ASSISTANT_REVEAL_INTERVAL_SECONDS", 0.025, allow_zero=True),
        reveal_recency_seconds=_env_float(env, "ASSISTANT_REVEAL_RECENCY_SECONDS", 5.0),
        dedup_user_seconds=_env_float(env, "ASSISTANT_DEDUP_USER_SECONDS", 10.0),
        dedup_assistant_seconds=_env_float(env, "ASSISTANT_DEDUP_ASSISTANT_SECONDS", 2.0),
        optimistic_dedup_seconds=_env_float(env, "ASSISTANT_OPTIMISTIC_DEDUP_SECONDS", 1.0),
        ledger_impl=ledger_impl,
        ledger_file=_env_str(env, "ASSISTANT_LEDGER_FILE", "run/ledger.json") or "run/ledger.json",
        preferences_file=_env_str(env, "ASSISTANT_PREFERENCES_FILE", "run/preferences.json") or "run/preferences.json",
        redis_url=_env_str(env, "REDIS_URL", None),
        connect_timeout=_env_float(env, "ASSISTANT_CONNECT_TIMEOUT", 3.0),
        read_timeout=_env_float(env, "ASSISTANT_READ_TIMEOUT", 60.0),
    )
