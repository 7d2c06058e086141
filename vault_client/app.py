from __future__ import annotations

import sys

from vault_client.apis import AuthApi, VaultApi
from vault_client.auth import OAuthFlowCoordinator
from vault_client.cache import RateLimitCache, SettingsCache
from vault_client.config import AppSettings, ConfigurationError
from vault_client.host import BrowserHost
from vault_client.http import HttpClient
from vault_client.logging_utils import configure_logging, get_logger
from vault_client.native_messaging import MessageWriter, NativeBrowserHost, NativeMessagingHost
from vault_client.permissions import PermissionNegotiator
from vault_client.router import MessageRouter
from vault_client.storage import SettingsStore

logger = get_logger(__name__)


def build_router(settings: AppSettings, host: BrowserHost, store: SettingsStore | None = None) -> MessageRouter:
    store = store if store is not None else SettingsStore(settings.settings_path)
    settings_cache = SettingsCache(store)
    rate_limits = RateLimitCache(store)
    http_client = HttpClient(settings, settings_cache, rate_limits)
    return MessageRouter(
        settings=settings,
        store=store,
        settings_cache=settings_cache,
        rate_limits=rate_limits,
        vault_api=VaultApi(http_client),
        auth_api=AuthApi(http_client),
        permissions=PermissionNegotiator(host),
        oauth=OAuthFlowCoordinator(settings, host),
        host=host,
    )


def run_host() -> int:
    try:
        settings = AppSettings.from_env()
    except ConfigurationError as exc:
        configure_logging()
        logger.error("configuration_error", error=str(exc))
        return 2

    configure_logging(settings.log_level)

    writer = MessageWriter(sys.stdout.buffer)
    browser_host = NativeBrowserHost(writer, settings.host_call_timeout_seconds)
    router = build_router(settings, browser_host)
    NativeMessagingHost(router, browser_host, sys.stdin.buffer, writer).serve_forever()
    return 0
