from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import sys
from urllib.parse import urlparse


class ConfigurationError(ValueError):
    pass


_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class AppSettings:
    default_server_url: str
    timeout_seconds: float
    retry_backoff_seconds: tuple[float, ...]
    probe_timeout_seconds: float
    oauth_start_url: str
    oauth_callback_host: str
    oauth_callback_path: str
    oauth_timeout_seconds: float
    settings_path: str
    host_call_timeout_seconds: float
    log_level: str

    @property
    def retry_attempts(self) -> int:
        return len(self.retry_backoff_seconds)

    @staticmethod
    def from_env() -> "AppSettings":
        _load_env_file()

        errors: list[str] = []

        default_server_url = os.getenv("VAULT_DEFAULT_SERVER_URL", "https://api.context-vault.com").strip().rstrip("/")
        timeout_seconds = _read_float("VAULT_TIMEOUT_SECONDS", "15", errors)
        retry_backoff_seconds = _read_float_list("VAULT_RETRY_BACKOFF_SECONDS", "1,3", errors)
        probe_timeout_seconds = _read_float("VAULT_PROBE_TIMEOUT_SECONDS", "3", errors)

        oauth_start_url = os.getenv(
            "VAULT_OAUTH_START_URL",
            "https://api.context-vault.com/api/auth/google",
        ).strip()
        oauth_callback_host = os.getenv("VAULT_OAUTH_CALLBACK_HOST", "app.context-vault.com").strip().lower()
        oauth_callback_path = os.getenv("VAULT_OAUTH_CALLBACK_PATH", "/auth/callback").strip()
        oauth_timeout_seconds = _read_float("VAULT_OAUTH_TIMEOUT_SECONDS", "300", errors)

        settings_path = os.getenv("VAULT_SETTINGS_PATH", "").strip() or _default_settings_path()
        host_call_timeout_seconds = _read_float("VAULT_HOST_CALL_TIMEOUT_SECONDS", "30", errors)
        log_level = os.getenv("VAULT_LOG_LEVEL", "INFO").strip().upper()

        if errors:
            raise ConfigurationError("Invalid numeric settings: " + ", ".join(errors))

        settings = AppSettings(
            default_server_url=default_server_url,
            timeout_seconds=timeout_seconds,
            retry_backoff_seconds=retry_backoff_seconds,
            probe_timeout_seconds=probe_timeout_seconds,
            oauth_start_url=oauth_start_url,
            oauth_callback_host=oauth_callback_host,
            oauth_callback_path=oauth_callback_path,
            oauth_timeout_seconds=oauth_timeout_seconds,
            settings_path=settings_path,
            host_call_timeout_seconds=host_call_timeout_seconds,
            log_level=log_level,
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        positive_fields = {
            "VAULT_TIMEOUT_SECONDS": self.timeout_seconds,
            "VAULT_PROBE_TIMEOUT_SECONDS": self.probe_timeout_seconds,
            "VAULT_OAUTH_TIMEOUT_SECONDS": self.oauth_timeout_seconds,
            "VAULT_HOST_CALL_TIMEOUT_SECONDS": self.host_call_timeout_seconds,
        }
        not_positive = [name for name, value in positive_fields.items() if value <= 0]
        if not_positive:
            raise ConfigurationError(
                "Timeouts must be greater than 0: " + ", ".join(not_positive)
            )

        if any(delay < 0 for delay in self.retry_backoff_seconds):
            raise ConfigurationError("VAULT_RETRY_BACKOFF_SECONDS must not contain negative delays")

        if not self.oauth_callback_path.startswith("/"):
            raise ConfigurationError("VAULT_OAUTH_CALLBACK_PATH must start with '/'")

        if not self.oauth_callback_host:
            raise ConfigurationError("VAULT_OAUTH_CALLBACK_HOST is required")

        if urlparse(self.oauth_start_url).scheme not in ("http", "https"):
            raise ConfigurationError("VAULT_OAUTH_START_URL must use http:// or https://")

        if self.log_level not in _LOG_LEVELS:
            raise ConfigurationError(
                "VAULT_LOG_LEVEL must be one of: " + ", ".join(sorted(_LOG_LEVELS))
            )


def _read_float(name: str, default: str, errors: list[str]) -> float:
    raw_value = os.getenv(name, default).strip()
    try:
        return float(raw_value)
    except ValueError:
        errors.append(name)
        return 0.0


def _read_float_list(name: str, default: str, errors: list[str]) -> tuple[float, ...]:
    raw_value = os.getenv(name, default).strip()
    try:
        return tuple(float(part) for part in raw_value.split(",") if part.strip())
    except ValueError:
        errors.append(name)
        return ()


def _default_settings_path() -> str:
    if sys.platform == "win32":
        base = os.getenv("LOCALAPPDATA", os.getcwd())
    else:
        base = os.getenv("XDG_DATA_HOME", os.path.join(os.path.expanduser("~"), ".local", "share"))
    return os.path.join(base, "ContextVault", "settings.json")


def _load_env_file() -> None:
    """Copy ``KEY=value`` lines from the env file into os.environ.

    ``VAULT_ENV_FILE`` names the file, otherwise ``.env`` in the working
    directory is used. Variables already set in the environment win.
    """
    path = Path(os.getenv("VAULT_ENV_FILE", "").strip() or ".env").expanduser()
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return

    for line in lines:
        key, separator, value = line.partition("=")
        key = key.strip()
        if not separator or not key or key.startswith("#"):
            continue
        os.environ.setdefault(key, value.strip().strip("\"'"))
