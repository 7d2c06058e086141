from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass, field
import threading
from typing import Any, Callable
from urllib.parse import parse_qs, urlsplit

from vault_client.config import AppSettings
from vault_client.host import BrowserHost, HostError
from vault_client.logging_utils import get_logger
from vault_client.models import OAuthResult

logger = get_logger(__name__)

ALREADY_IN_PROGRESS_MESSAGE = (
    "Sign-in already in progress. Please complete or close the existing sign-in tab."
)
TIMED_OUT_MESSAGE = "Sign-in timed out. Please try again."
CANCELLED_MESSAGE = "Sign-in cancelled."
TAB_FAILED_MESSAGE = "Failed to open sign-in tab."


class AuthenticationError(RuntimeError):
    pass


def parse_callback_fragment(url: str) -> OAuthResult:
    params = parse_qs(urlsplit(url).fragment, keep_blank_values=True)
    token = (params.get("token") or [""])[0]
    encryption_secret = (params.get("encryption_secret") or [None])[0]
    return OAuthResult(api_key=token, encryption_secret=encryption_secret or None)


def _daemon_timer(interval: float, function: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(interval, function)
    timer.daemon = True
    return timer


@dataclass(eq=False)
class _OAuthSession:
    future: Future
    timer: Any = None
    tab_id: int | None = None
    listeners: list[tuple[Callable[..., None], Callable[..., None]]] = field(default_factory=list)


class OAuthFlowCoordinator:
    """Owns the single sign-in flow that may be in flight.

    The provider page runs in a browser tab; completion is observed through
    tab navigation events and the credential is read from the URL fragment.
    Whichever of callback, tab removal or deadline reaches the session first
    settles it; the others find the slot empty and do nothing.
    """

    def __init__(
        self,
        settings: AppSettings,
        host: BrowserHost,
        timer_factory: Callable[[float, Callable[[], None]], Any] = _daemon_timer,
    ):
        self._settings = settings
        self._host = host
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._session: _OAuthSession | None = None

    @property
    def is_pending(self) -> bool:
        with self._lock:
            return self._session is not None

    def start_sign_in(self) -> "Future[OAuthResult]":
        session = _OAuthSession(future=Future())
        with self._lock:
            if self._session is not None:
                raise AuthenticationError(ALREADY_IN_PROGRESS_MESSAGE)
            self._session = session

        logger.info("oauth_flow_started")

        def on_deadline() -> None:
            self._reject(session, TIMED_OUT_MESSAGE)

        def on_updated(tab_id: int, url: str) -> None:
            self._handle_tab_update(session, tab_id, url)

        def on_removed(tab_id: int) -> None:
            self._handle_tab_removed(session, tab_id)

        self._host.add_tab_updated_listener(on_updated)
        self._host.add_tab_removed_listener(on_removed)
        session.listeners.append((self._host.remove_tab_updated_listener, on_updated))
        session.listeners.append((self._host.remove_tab_removed_listener, on_removed))

        session.timer = self._timer_factory(self._settings.oauth_timeout_seconds, on_deadline)
        session.timer.start()

        try:
            tab_id = self._host.create_tab(self._settings.oauth_start_url)
        except HostError as exc:
            logger.warning("oauth_tab_open_failed", error=str(exc))
            self._reject(session, TAB_FAILED_MESSAGE)
            return session.future

        with self._lock:
            still_pending = self._session is session
            if still_pending:
                session.tab_id = tab_id
        if not still_pending:
            # Settled while the tab was opening; the tab is orphaned.
            self._host.remove_tab(tab_id)

        return session.future

    def cancel(self) -> bool:
        with self._lock:
            session = self._session
        if session is None:
            return False
        return self._reject(session, CANCELLED_MESSAGE)

    def _handle_tab_update(self, session: _OAuthSession, tab_id: int, url: str) -> None:
        if not url or session.tab_id is None or tab_id != session.tab_id:
            return
        if not self._is_callback(url):
            return

        result = parse_callback_fragment(url)
        if not self._settle(session):
            return

        self._host.remove_tab(tab_id)
        logger.info("oauth_flow_resolved", has_credential=bool(result.api_key))
        session.future.set_result(result)

    def _handle_tab_removed(self, session: _OAuthSession, tab_id: int) -> None:
        if session.tab_id is None or tab_id != session.tab_id:
            return
        if not self._settle(session):
            return

        logger.info("oauth_flow_rejected", reason="cancelled")
        session.future.set_exception(AuthenticationError(CANCELLED_MESSAGE))

    def _reject(self, session: _OAuthSession, message: str) -> bool:
        if not self._settle(session):
            return False

        if session.tab_id is not None:
            self._host.remove_tab(session.tab_id)
        logger.info("oauth_flow_rejected", reason=message)
        session.future.set_exception(AuthenticationError(message))
        return True

    def _settle(self, session: _OAuthSession) -> bool:
        with self._lock:
            if self._session is not session:
                return False
            self._session = None

        if session.timer is not None:
            session.timer.cancel()
        for remove_listener, listener in session.listeners:
            remove_listener(listener)
        session.listeners.clear()
        return True

    def _is_callback(self, url: str) -> bool:
        try:
            parsed = urlsplit(url)
            host = parsed.netloc.rsplit("@", 1)[-1].lower()
        except ValueError:
            return False
        return (
            host == self._settings.oauth_callback_host
            and parsed.path == self._settings.oauth_callback_path
        )
