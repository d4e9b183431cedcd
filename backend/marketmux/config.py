"""Multiplexer settings, read from environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_URL = "wss://stream.binance.com:9443/stream"


@dataclass(frozen=True, slots=True)
class MultiplexerSettings:
    """Tunables for one multiplexer instance. Durations are in seconds."""

    url: str = DEFAULT_URL
    heartbeat_interval: float = 30.0
    reconnect_base: float = 5.0
    reconnect_cap: float = 30.0
    max_reconnect_attempts: int = 10
    cache_staleness: float = 60.0
    cache_capacity: int = 1024

    def __post_init__(self) -> None:
        if not self.url.strip():
            raise ValueError("url must not be empty")
        for name in ("heartbeat_interval", "reconnect_base", "reconnect_cap", "cache_staleness"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.reconnect_cap < self.reconnect_base:
            raise ValueError("reconnect_cap must be >= reconnect_base")
        if self.max_reconnect_attempts < 0:
            raise ValueError("max_reconnect_attempts must be >= 0")
        if self.cache_capacity < 1:
            raise ValueError("cache_capacity must be >= 1")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> MultiplexerSettings:
        """Build settings from MARKETMUX_* variables. Blank values use defaults.

        - MARKETMUX_URL
        - MARKETMUX_HEARTBEAT_INTERVAL
        - MARKETMUX_RECONNECT_BASE
        - MARKETMUX_RECONNECT_CAP
        - MARKETMUX_MAX_RECONNECT_ATTEMPTS
        - MARKETMUX_CACHE_STALENESS
        - MARKETMUX_CACHE_CAPACITY
        """
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            url=env.get("MARKETMUX_URL", "").strip() or defaults.url,
            heartbeat_interval=_float(env, "MARKETMUX_HEARTBEAT_INTERVAL", defaults.heartbeat_interval),
            reconnect_base=_float(env, "MARKETMUX_RECONNECT_BASE", defaults.reconnect_base),
            reconnect_cap=_float(env, "MARKETMUX_RECONNECT_CAP", defaults.reconnect_cap),
            max_reconnect_attempts=_int(
                env, "MARKETMUX_MAX_RECONNECT_ATTEMPTS", defaults.max_reconnect_attempts
            ),
            cache_staleness=_float(env, "MARKETMUX_CACHE_STALENESS", defaults.cache_staleness),
            cache_capacity=_int(env, "MARKETMUX_CACHE_CAPACITY", defaults.cache_capacity),
        )


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value
