from __future__ import annotations

import json
import threading
from typing import Any, Iterable

from msal_extensions import (
    CrossPlatLock,
    FilePersistence,
    FilePersistenceWithDataProtection,
)
from msal_extensions.persistence import PersistenceNotFound

from vault_client.logging_utils import get_logger

logger = get_logger(__name__)

SERVER_URL_KEY = "server_url"
API_KEY_KEY = "api_key"
ENCRYPTION_SECRET_KEY = "encryption_secret"
RATE_LIMIT_REMAINING_KEY = "rate_limit_remaining"
RATE_LIMIT_RESET_KEY = "rate_limit_reset"


class SettingsStore:
    """Durable key/value document holding connection settings.

    The document is a single JSON object written through an msal-extensions
    persistence, so it is encrypted at rest where the platform supports it.
    Reads and writes are serialized across threads and across processes.
    """

    def __init__(self, path: str):
        self._persistence = self._build_persistence(path)
        self._lock_path = f"{self._persistence.get_location()}.lockfile"
        self._thread_lock = threading.Lock()

    @staticmethod
    def _build_persistence(path: str):
        try:
            return FilePersistenceWithDataProtection(path)
        except Exception:
            return FilePersistence(path)

    @property
    def location(self) -> str:
        return self._persistence.get_location()

    def get(self, keys: Iterable[str]) -> dict[str, Any]:
        # save() truncates before it writes; readers share the writers' lock.
        with self._thread_lock, CrossPlatLock(self._lock_path):
            document = self._load()
        return {key: document[key] for key in keys if key in document}

    def set(self, values: dict[str, Any]) -> None:
        with self._thread_lock, CrossPlatLock(self._lock_path):
            document = self._load()
            document.update(values)
            self._persistence.save(json.dumps(document))

    def remove(self, keys: Iterable[str]) -> None:
        with self._thread_lock, CrossPlatLock(self._lock_path):
            document = self._load()
            for key in keys:
                document.pop(key, None)
            self._persistence.save(json.dumps(document))

    def _load(self) -> dict[str, Any]:
        try:
            raw = self._persistence.load()
        except PersistenceNotFound:
            return {}

        if not raw.strip():
            return {}

        try:
            document = json.loads(raw)
        except ValueError:
            logger.warning("settings_store_corrupt", location=self.location)
            return {}
        if not isinstance(document, dict):
            logger.warning("settings_store_corrupt", location=self.location)
            return {}
        return document
