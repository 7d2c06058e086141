from __future__ import annotations

import requests

from vault_client.http import ApiError, HttpClient
from vault_client.logging_utils import get_logger
from vault_client.models import UserProfile

logger = get_logger(__name__)


class AuthApi:
    def __init__(self, http_client: HttpClient):
        self._http_client = http_client

    def get_profile(self, server_url: str, api_key: str) -> UserProfile | None:
        """Best-effort profile lookup; any failure yields None."""
        if not server_url or not api_key:
            return None

        url = f"{server_url.rstrip('/')}/api/auth/me"
        try:
            payload = self._http_client.get_absolute_json(url, api_key)
        except (ApiError, requests.exceptions.RequestException, ValueError) as exc:
            logger.info("profile_lookup_failed", error=type(exc).__name__)
            return None

        if not isinstance(payload, dict):
            return None
        return UserProfile(payload=payload)
