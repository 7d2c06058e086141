from __future__ import annotations

from typing import Any, Callable
from urllib.parse import urlsplit

from vault_client.apis import AuthApi, VaultApi
from vault_client.auth import AuthenticationError, OAuthFlowCoordinator
from vault_client.cache import RateLimitCache, SettingsCache
from vault_client.config import AppSettings
from vault_client.host import BrowserHost, HostError
from vault_client.http import ApiError, ErrorCode, format_reset_time
from vault_client.logging_utils import get_logger
from vault_client.models import CONTEXT_MENU_INGEST_ID, CONTEXT_MENU_VARIANTS, VaultSettings
from vault_client.permissions import InvalidServerUrlError, PermissionDeniedError, PermissionNegotiator
from vault_client.storage import (
    API_KEY_KEY,
    ENCRYPTION_SECRET_KEY,
    SERVER_URL_KEY,
    SettingsStore,
)

logger = get_logger(__name__)

DISCONNECTED_BADGE_COLOR = "#dc2626"
DEFAULT_SEARCH_LIMIT = 10
CAPTURE_TITLE_LENGTH = 80
GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."


def describe_error(error: ApiError) -> str:
    if error.code == ErrorCode.NOT_CONFIGURED:
        return "Not connected. Open settings to add your server URL and API key."
    if error.code == ErrorCode.UNAUTHORIZED:
        return "Your API key was rejected. Reconnect in settings."
    if error.code == ErrorCode.RATE_LIMITED:
        reset_time = format_reset_time(error.reset_at) if error.reset_at is not None else None
        if reset_time:
            return f"Rate limit reached. Try again after {reset_time}."
        return "Rate limit reached. Try again later."
    if error.code == ErrorCode.SERVER_ERROR:
        if error.status_code:
            return f"The vault server returned an error (HTTP {error.status_code}). Try again shortly."
        return "The vault server returned an error. Try again shortly."
    if error.code == ErrorCode.NETWORK_ERROR:
        return "Could not reach the server. Check your connection and server URL."
    if error.code == ErrorCode.TIMEOUT:
        return "The server took too long to respond. Try again."
    return GENERIC_ERROR_MESSAGE


def _error(message: str, code: ErrorCode | None = None) -> dict[str, Any]:
    response: dict[str, Any] = {"type": "error", "message": message}
    if code is not None:
        response["code"] = code.value
    return response


def _capture_title(text: str) -> str:
    if len(text) > CAPTURE_TITLE_LENGTH:
        return text[:CAPTURE_TITLE_LENGTH] + "..."
    return text


def _source_from_page(page_url: str | None) -> str:
    if not page_url:
        return "browser-extension"
    try:
        hostname = urlsplit(page_url).hostname
    except ValueError:
        return "browser-extension"
    return hostname or "browser-extension"


class MessageRouter:
    """Entry point for typed requests coming from the extension UI."""

    def __init__(
        self,
        settings: AppSettings,
        store: SettingsStore,
        settings_cache: SettingsCache,
        rate_limits: RateLimitCache,
        vault_api: VaultApi,
        auth_api: AuthApi,
        permissions: PermissionNegotiator,
        oauth: OAuthFlowCoordinator,
        host: BrowserHost,
    ):
        self._settings = settings
        self._store = store
        self._settings_cache = settings_cache
        self._rate_limits = rate_limits
        self._vault_api = vault_api
        self._auth_api = auth_api
        self._permissions = permissions
        self._oauth = oauth
        self._host = host
        self._handlers: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
            "search": self._search,
            "capture": self._capture,
            "ingest_url": self._ingest_url,
            "get_settings": self._get_settings,
            "save_settings": self._save_settings,
            "test_connection": self._test_connection,
            "check_health": self._check_health,
            "google_auth_start": self._google_auth_start,
            "sign_out": self._sign_out,
        }

    def handle(self, message: dict[str, Any]) -> dict[str, Any]:
        message_type = str(message.get("type", ""))
        handler = self._handlers.get(message_type)
        if handler is None:
            return _error("Unknown message type")

        try:
            return handler(message)
        except ApiError as exc:
            return _error(describe_error(exc), exc.code)
        except (
            AuthenticationError,
            PermissionDeniedError,
            InvalidServerUrlError,
            HostError,
            ValueError,
        ) as exc:
            logger.info("router_request_failed", message_type=message_type, error=str(exc))
            return _error(str(exc))
        except Exception:
            logger.exception("router_request_crashed", message_type=message_type)
            return _error(GENERIC_ERROR_MESSAGE)

    def handle_context_menu(
        self,
        menu_item_id: str,
        selection_text: str | None = None,
        page_url: str | None = None,
        tab_id: int | None = None,
    ) -> dict[str, Any] | None:
        if menu_item_id == CONTEXT_MENU_INGEST_ID:
            if not page_url:
                return None
            reply = self._run_capture(
                lambda: self._vault_api.ingest_url(page_url, tags=["captured", "page"]),
                "Ingest failed",
            )
        else:
            selected = (selection_text or "").strip()
            variant = next((item for item in CONTEXT_MENU_VARIANTS if item.menu_id == menu_item_id), None)
            if not selected or variant is None:
                return None
            reply = self._run_capture(
                lambda: self._vault_api.create_entry(
                    kind=variant.kind,
                    body=selected,
                    title=_capture_title(selected),
                    tags=list(variant.tags),
                    source=_source_from_page(page_url),
                ),
                "Save failed",
            )

        if tab_id is not None:
            try:
                self._host.send_tab_message(tab_id, reply)
            except HostError as exc:
                logger.info("tab_message_failed", tab_id=tab_id, error=str(exc))
        return reply

    def shutdown(self) -> None:
        self._oauth.cancel()

    def _run_capture(self, operation: Callable[[], Any], fallback: str) -> dict[str, Any]:
        try:
            entry = operation()
        except ApiError as exc:
            logger.warning("context_menu_capture_failed", code=exc.code.value if exc.code else None)
            return _error(describe_error(exc), exc.code)
        except ValueError as exc:
            return _error(str(exc) or fallback)
        return {"type": "capture_result", "id": _entry_id(entry)}

    def _search(self, message: dict[str, Any]) -> dict[str, Any]:
        result = self._vault_api.search(
            str(message.get("query", "")),
            kind=message.get("kind"),
            category=message.get("category"),
            limit=message.get("limit") or DEFAULT_SEARCH_LIMIT,
        )
        return {
            "type": "search_result",
            "results": result["results"],
            "count": result["count"],
            "query": result["query"],
        }

    def _capture(self, message: dict[str, Any]) -> dict[str, Any]:
        entry = self._vault_api.create_entry(
            kind=str(message.get("kind", "")),
            body=str(message.get("body", "")),
            title=message.get("title"),
            tags=message.get("tags"),
            source=message.get("source"),
            identity_key=message.get("identityKey"),
            folder=message.get("folder"),
        )
        return {"type": "capture_result", "id": _entry_id(entry)}

    def _ingest_url(self, message: dict[str, Any]) -> dict[str, Any]:
        entry = self._vault_api.ingest_url(
            str(message.get("url", "")),
            kind=message.get("kind"),
            tags=message.get("tags"),
        )
        return {"type": "capture_result", "id": _entry_id(entry)}

    def _get_settings(self, message: dict[str, Any]) -> dict[str, Any]:
        stored = self._store.get([SERVER_URL_KEY, API_KEY_KEY, ENCRYPTION_SECRET_KEY])
        settings = VaultSettings(
            server_url=str(stored.get(SERVER_URL_KEY) or self._settings.default_server_url),
            api_key=str(stored.get(API_KEY_KEY) or ""),
            encryption_secret=str(stored.get(ENCRYPTION_SECRET_KEY) or ""),
        )
        return self._settings_response(settings)

    def _save_settings(self, message: dict[str, Any]) -> dict[str, Any]:
        server_url = str(message.get("serverUrl") or "").strip()
        if server_url.endswith("/"):
            server_url = server_url[:-1]
        api_key = str(message.get("apiKey") or "").strip()
        encryption_secret = str(message.get("encryptionSecret") or "").strip()

        if not server_url:
            return _error("Server URL is required")

        self._permissions.ensure_permission(server_url)

        self._store.set(
            {
                SERVER_URL_KEY: server_url,
                API_KEY_KEY: api_key,
                ENCRYPTION_SECRET_KEY: encryption_secret,
            }
        )
        self._settings_cache.invalidate()
        logger.info("settings_saved", server_url=server_url, has_api_key=bool(api_key))

        settings = VaultSettings(server_url, api_key, encryption_secret)
        self._update_badge(settings.is_connected)
        return self._settings_response(settings)

    def _test_connection(self, message: dict[str, Any]) -> dict[str, Any]:
        try:
            status = self._vault_api.get_status()
        except ApiError as exc:
            self._update_badge(False)
            response: dict[str, Any] = {
                "type": "connection_result",
                "success": False,
                "error": describe_error(exc),
            }
            if exc.code is not None:
                response["code"] = exc.code.value
            return response

        health = status.get("health") if isinstance(status, dict) else None
        connected = health in ("ok", "degraded")
        self._update_badge(connected)
        return {"type": "connection_result", "success": connected, "health": health}

    def _check_health(self, message: dict[str, Any]) -> dict[str, Any]:
        reachable = self._vault_api.probe()
        self._update_badge(reachable)
        return {"type": "health_result", "reachable": reachable}

    def _google_auth_start(self, message: dict[str, Any]) -> dict[str, Any]:
        result = self._oauth.start_sign_in().result()
        if not result.api_key:
            raise AuthenticationError("Sign-in did not return an API key. Please try again.")

        server_url = self._settings.default_server_url
        self._permissions.ensure_permission(server_url)
        self._store.set(
            {
                SERVER_URL_KEY: server_url,
                API_KEY_KEY: result.api_key,
                ENCRYPTION_SECRET_KEY: result.encryption_secret or "",
            }
        )
        self._settings_cache.invalidate()
        self._rate_limits.clear()
        self._update_badge(True)

        profile = self._auth_api.get_profile(server_url, result.api_key)
        logger.info("signed_in", server_url=server_url, has_profile=profile is not None)
        return {
            "type": "auth_result",
            "connected": True,
            "serverUrl": server_url,
            "profile": profile.payload if profile is not None else None,
        }

    def _sign_out(self, message: dict[str, Any]) -> dict[str, Any]:
        self._store.remove([API_KEY_KEY, ENCRYPTION_SECRET_KEY])
        self._settings_cache.invalidate()
        self._rate_limits.clear()
        self._update_badge(False)
        logger.info("signed_out")
        return self._get_settings(message)

    def _settings_response(self, settings: VaultSettings) -> dict[str, Any]:
        return {
            "type": "settings",
            "serverUrl": settings.server_url,
            "apiKey": settings.api_key,
            "encryptionSecret": settings.encryption_secret,
            "connected": settings.is_connected,
        }

    def _update_badge(self, connected: bool) -> None:
        try:
            if connected:
                self._host.set_badge("")
            else:
                self._host.set_badge("!", DISCONNECTED_BADGE_COLOR)
        except HostError as exc:
            logger.info("badge_update_failed", error=str(exc))


def _entry_id(entry: Any) -> Any:
    if isinstance(entry, dict):
        return entry.get("id")
    return None
