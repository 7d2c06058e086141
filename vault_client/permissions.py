from __future__ import annotations

from urllib.parse import urlsplit

from vault_client.host import BrowserHost
from vault_client.logging_utils import get_logger

logger = get_logger(__name__)


class InvalidServerUrlError(ValueError):
    pass


class PermissionDeniedError(RuntimeError):
    def __init__(self, origin: str):
        super().__init__(
            f"Permission denied for {origin}. Allow host access to connect this server."
        )
        self.origin = origin


def origin_pattern_from_server_url(server_url: str) -> str:
    try:
        parsed = urlsplit(server_url.strip())
        # Accessing the port validates it.
        parsed.port
    except ValueError as exc:
        raise InvalidServerUrlError(
            "Invalid server URL. Use a full URL like https://api.context-vault.com"
        ) from exc

    if not parsed.scheme or not parsed.hostname:
        raise InvalidServerUrlError(
            "Invalid server URL. Use a full URL like https://api.context-vault.com"
        )

    scheme = parsed.scheme.lower()
    if scheme not in ("http", "https"):
        raise InvalidServerUrlError("Server URL must use http:// or https://")

    host = parsed.netloc.rsplit("@", 1)[-1].lower()
    return f"{scheme}://{host}/*"


class PermissionNegotiator:
    def __init__(self, host: BrowserHost):
        self._host = host

    def ensure_permission(self, server_url: str) -> str:
        origin = origin_pattern_from_server_url(server_url)
        if self._host.contains_permission(origin):
            return origin

        logger.info("host_permission_requested", origin=origin)
        if not self._host.request_permission(origin):
            logger.warning("host_permission_denied", origin=origin)
            raise PermissionDeniedError(origin)

        logger.info("host_permission_granted", origin=origin)
        return origin
