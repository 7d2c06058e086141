from __future__ import annotations

import threading
import time
from typing import Callable

from vault_client.logging_utils import get_logger
from vault_client.models import RateLimitState, VaultSettings
from vault_client.storage import (
    API_KEY_KEY,
    ENCRYPTION_SECRET_KEY,
    RATE_LIMIT_REMAINING_KEY,
    RATE_LIMIT_RESET_KEY,
    SERVER_URL_KEY,
    SettingsStore,
)

logger = get_logger(__name__)

# 9999-12-31T23:59:59Z; anything later cannot be shown as a date.
MAX_RESET_TIMESTAMP = 253_402_300_799


class SettingsCache:
    """Volatile read-through view of the stored connection settings."""

    def __init__(self, store: SettingsStore):
        self._store = store
        self._lock = threading.Lock()
        self._cached: VaultSettings | None = None

    def get(self) -> VaultSettings:
        with self._lock:
            cached = self._cached
        if cached is not None:
            return cached

        stored = self._store.get([SERVER_URL_KEY, API_KEY_KEY, ENCRYPTION_SECRET_KEY])
        settings = VaultSettings(
            server_url=str(stored.get(SERVER_URL_KEY) or ""),
            api_key=str(stored.get(API_KEY_KEY) or ""),
            encryption_secret=str(stored.get(ENCRYPTION_SECRET_KEY) or ""),
        )
        with self._lock:
            self._cached = settings
        return settings

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None


class RateLimitCache:
    """Last rate-limit headers seen, mirrored to the settings store.

    Only used to skip calls that would certainly be rejected; the server
    stays authoritative.
    """

    def __init__(self, store: SettingsStore, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._state: RateLimitState | None = None

    def get(self) -> RateLimitState:
        with self._lock:
            state = self._state
        if state is not None:
            return state

        try:
            stored = self._store.get([RATE_LIMIT_REMAINING_KEY, RATE_LIMIT_RESET_KEY])
        except OSError as exc:
            logger.warning("rate_limit_load_failed", error=str(exc))
            stored = {}

        state = RateLimitState(
            remaining=_to_int(stored.get(RATE_LIMIT_REMAINING_KEY)),
            reset_at=to_reset_timestamp(stored.get(RATE_LIMIT_RESET_KEY)),
        )
        if state.reset_at is not None and state.reset_at <= self._clock():
            self._forget_stored()
            state = RateLimitState()

        with self._lock:
            self._state = state
        return state

    def update(self, remaining: str | None, reset: str | None) -> None:
        if remaining is None and reset is None:
            return

        current = self.get()
        state = RateLimitState(
            remaining=_to_int(remaining) if remaining is not None else current.remaining,
            reset_at=to_reset_timestamp(reset) if reset is not None else current.reset_at,
        )
        with self._lock:
            self._state = state

        values: dict[str, int] = {}
        if state.remaining is not None:
            values[RATE_LIMIT_REMAINING_KEY] = state.remaining
        if state.reset_at is not None:
            values[RATE_LIMIT_RESET_KEY] = state.reset_at
        try:
            self._store.set(values)
        except Exception as exc:
            logger.warning("rate_limit_persist_failed", error=str(exc))

    def clear(self) -> None:
        with self._lock:
            self._state = None
        self._forget_stored()

    def invalidate(self) -> None:
        with self._lock:
            self._state = None

    def _forget_stored(self) -> None:
        try:
            self._store.remove([RATE_LIMIT_REMAINING_KEY, RATE_LIMIT_RESET_KEY])
        except Exception as exc:
            logger.warning("rate_limit_persist_failed", error=str(exc))


def _to_int(value: object) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(float(str(value)))
    except (ValueError, OverflowError):
        return None


def to_reset_timestamp(value: object) -> int | None:
    """Epoch seconds from a reset header or stored value; None when out of range."""
    timestamp = _to_int(value)
    if timestamp is None or not 0 <= timestamp <= MAX_RESET_TIMESTAMP:
        return None
    return timestamp
