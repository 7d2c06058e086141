from __future__ import annotations

import json
from typing import Any

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from vault_client.cache import RateLimitCache, SettingsCache
from vault_client.config import AppSettings
from vault_client.host import BrowserHost, HostError
from vault_client.http import HttpClient
from vault_client.storage import API_KEY_KEY, SERVER_URL_KEY


def make_settings(**overrides: Any) -> AppSettings:
    values: dict[str, Any] = {
        "default_server_url": "https://api.context-vault.com",
        "timeout_seconds": 15.0,
        "retry_backoff_seconds": (1.0, 3.0),
        "probe_timeout_seconds": 3.0,
        "oauth_start_url": "https://api.context-vault.com/api/auth/google",
        "oauth_callback_host": "app.context-vault.com",
        "oauth_callback_path": "/auth/callback",
        "oauth_timeout_seconds": 300.0,
        "settings_path": "unused.json",
        "host_call_timeout_seconds": 5.0,
        "log_level": "INFO",
    }
    values.update(overrides)
    return AppSettings(**values)


class InMemoryStore:
    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self.document: dict[str, Any] = dict(initial or {})
        self.fail_writes = False
        self.writes: list[dict[str, Any]] = []

    def get(self, keys):
        return {key: self.document[key] for key in keys if key in self.document}

    def set(self, values: dict[str, Any]) -> None:
        if self.fail_writes:
            raise OSError("disk full")
        self.writes.append(dict(values))
        self.document.update(values)

    def remove(self, keys) -> None:
        if self.fail_writes:
            raise OSError("disk full")
        for key in keys:
            self.document.pop(key, None)


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        payload: Any = None,
        headers: dict[str, str] | None = None,
        reason: str = "",
        raw: bytes | None = None,
        chunk_size: int | None = None,
        on_chunk=None,
    ) -> None:
        self.status_code = status_code
        self.chunk_size = chunk_size
        self.on_chunk = on_chunk
        self.closed = False
        self._payload = payload
        self.headers = CaseInsensitiveDict(headers or {})
        self.reason = reason
        if raw is not None:
            self.content = raw
        elif payload is None:
            self.content = b""
        else:
            self.content = json.dumps(payload).encode("utf-8")

    # Same rule as requests.Response.ok, which accepts redirects.
    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def json(self) -> Any:
        if not self.content:
            raise ValueError("No JSON body")
        return json.loads(self.content.decode("utf-8"))

    def iter_content(self, chunk_size: int = 1):
        size = self.chunk_size or chunk_size
        for start in range(0, len(self.content), size):
            if self.on_chunk is not None:
                self.on_chunk()
            yield self.content[start:start + size]

    def close(self) -> None:
        self.closed = True


class FakeSession:
    def __init__(self, *outcomes: Any) -> None:
        self.headers: dict[str, str] = {}
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []

    def queue(self, *outcomes: Any) -> None:
        self.outcomes.extend(outcomes)

    def request(self, method, url, headers=None, json=None, timeout=None, stream=False):
        self.calls.append(
            {"method": method, "url": url, "headers": headers, "json": json, "timeout": timeout, "stream": stream}
        )
        return self._next()

    def get(self, url, headers=None, timeout=None):
        self.calls.append({"method": "GET", "url": url, "headers": headers, "json": None, "timeout": timeout})
        return self._next()

    def _next(self):
        if not self.outcomes:
            raise AssertionError("Unexpected network call")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class ManualTimer:
    def __init__(self, interval: float, function) -> None:
        self.interval = interval
        self.function = function
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.function()


class FakeBrowserHost(BrowserHost):
    def __init__(self) -> None:
        self.created: list[str] = []
        self.removed: list[int] = []
        self.tab_messages: list[tuple[int, dict[str, Any]]] = []
        self.badges: list[tuple[str, str | None]] = []
        self.granted: set[str] = set()
        self.grant_on_request = True
        self.permission_requests: list[str] = []
        self.create_fails = False
        self.next_tab_id = 100
        self.updated_listeners: list = []
        self.removed_listeners: list = []

    def create_tab(self, url: str) -> int:
        if self.create_fails:
            raise HostError("No window available")
        self.created.append(url)
        self.next_tab_id += 1
        return self.next_tab_id

    def remove_tab(self, tab_id: int) -> None:
        self.removed.append(tab_id)

    def send_tab_message(self, tab_id: int, message: dict[str, Any]) -> None:
        self.tab_messages.append((tab_id, message))

    def contains_permission(self, origin: str) -> bool:
        return origin in self.granted

    def request_permission(self, origin: str) -> bool:
        self.permission_requests.append(origin)
        if self.grant_on_request:
            self.granted.add(origin)
        return self.grant_on_request

    def set_badge(self, text: str, color: str | None = None) -> None:
        self.badges.append((text, color))

    def add_tab_updated_listener(self, listener) -> None:
        self.updated_listeners.append(listener)

    def remove_tab_updated_listener(self, listener) -> None:
        self.updated_listeners.remove(listener)

    def add_tab_removed_listener(self, listener) -> None:
        self.removed_listeners.append(listener)

    def remove_tab_removed_listener(self, listener) -> None:
        self.removed_listeners.remove(listener)

    def fire_updated(self, tab_id: int, url: str) -> None:
        for listener in list(self.updated_listeners):
            listener(tab_id, url)

    def fire_removed(self, tab_id: int) -> None:
        for listener in list(self.removed_listeners):
            listener(tab_id)


class ClientHarness:
    def __init__(self, store: InMemoryStore, session: FakeSession, clock: FakeClock, **settings_overrides: Any) -> None:
        self.store = store
        self.session = session
        self.clock = clock
        self.monotonic = FakeClock(0.0)
        self.sleeps: list[float] = []
        self.settings = make_settings(**settings_overrides)
        self.settings_cache = SettingsCache(store)
        self.rate_limits = RateLimitCache(store, clock=clock)
        self.client = HttpClient(
            self.settings,
            self.settings_cache,
            self.rate_limits,
            session=session,
            sleep=self.sleeps.append,
            clock=clock,
            monotonic=self.monotonic,
        )


@pytest.fixture
def configured_store() -> InMemoryStore:
    return InMemoryStore({SERVER_URL_KEY: "https://vault.example.com/", API_KEY_KEY: "key-123"})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def harness(configured_store, session, clock) -> ClientHarness:
    return ClientHarness(configured_store, session, clock)


@pytest.fixture
def browser_host() -> FakeBrowserHost:
    return FakeBrowserHost()


def timeout_error() -> requests.exceptions.ReadTimeout:
    return requests.exceptions.ReadTimeout("read timed out")
