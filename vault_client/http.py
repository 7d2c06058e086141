from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
import json
import time
from typing import Any, Callable

import requests

from vault_client.cache import RateLimitCache, SettingsCache, to_reset_timestamp
from vault_client.config import AppSettings
from vault_client.logging_utils import get_logger
from vault_client.models import VaultSettings

logger = get_logger(__name__)

NO_RETRY_STATUSES = frozenset({401, 429})
READ_CHUNK_BYTES = 8192


class ErrorCode(str, Enum):
    NOT_CONFIGURED = "NOT_CONFIGURED"
    UNAUTHORIZED = "UNAUTHORIZED"
    RATE_LIMITED = "RATE_LIMITED"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"


class ApiError(RuntimeError):
    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: ErrorCode | None = None,
        reset_at: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.reset_at = reset_at

    @property
    def retryable(self) -> bool:
        return self.code not in (
            ErrorCode.NOT_CONFIGURED,
            ErrorCode.UNAUTHORIZED,
            ErrorCode.RATE_LIMITED,
        )


def format_reset_time(reset_at: int) -> str | None:
    try:
        return datetime.fromtimestamp(reset_at, timezone.utc).strftime("%H:%M:%S UTC")
    except (ValueError, OverflowError, OSError):
        return None


def is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


class HttpClient:
    def __init__(
        self,
        settings: AppSettings,
        settings_cache: SettingsCache,
        rate_limits: RateLimitCache,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings
        self._settings_cache = settings_cache
        self._rate_limits = rate_limits
        self._sleep = sleep
        self._clock = clock
        self._monotonic = monotonic
        self._session = session if session is not None else requests.Session()
        self._session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )

    def post_json(self, path: str, payload: dict[str, Any]) -> Any:
        return self.request_json("POST", path, payload)

    def get_json(self, path: str) -> Any:
        return self.request_json("GET", path)

    def request_json(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        settings = self._settings_cache.get()
        self._require_configured(settings)
        self._check_rate_limit(path)

        url = f"{settings.server_url.rstrip('/')}{path}"
        headers = self._build_headers(settings)
        backoff = self._settings.retry_backoff_seconds

        last_error: ApiError | None = None
        for attempt in range(len(backoff) + 1):
            try:
                return self._attempt(method, url, headers, payload)
            except ApiError as error:
                if not error.retryable:
                    logger.warning(
                        "vault_request_failed",
                        method=method,
                        path=path,
                        code=error.code.value if error.code else None,
                        status=error.status_code,
                        attempt=attempt + 1,
                    )
                    raise
                last_error = error

            if attempt < len(backoff):
                delay = backoff[attempt]
                logger.info(
                    "vault_request_retry",
                    method=method,
                    path=path,
                    code=last_error.code.value if last_error.code else None,
                    status=last_error.status_code,
                    attempt=attempt + 1,
                    delay_seconds=delay,
                )
                self._sleep(delay)

        if last_error is None:
            raise ApiError("Request failed", code=ErrorCode.NETWORK_ERROR)
        logger.warning(
            "vault_request_failed",
            method=method,
            path=path,
            code=last_error.code.value if last_error.code else None,
            status=last_error.status_code,
            attempt=len(backoff) + 1,
        )
        raise last_error

    def get_absolute_json(self, url: str, api_key: str) -> Any:
        response = self._session.get(
            url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=self._settings.timeout_seconds,
        )
        if not is_success(response.status_code):
            raise self._http_error(response, response.content)
        if not response.content:
            return {}
        return response.json()

    def probe(self) -> bool:
        settings = self._settings_cache.get()
        if not settings.server_url:
            return False

        url = f"{settings.server_url.rstrip('/')}/api/vault/status"
        try:
            response = self._session.get(url, timeout=self._settings.probe_timeout_seconds)
        except requests.exceptions.RequestException as exc:
            logger.info("vault_probe_failed", error=type(exc).__name__)
            return False
        return is_success(response.status_code)

    @staticmethod
    def _require_configured(settings: VaultSettings) -> None:
        if not settings.server_url:
            raise ApiError(
                "Not configured: set the server URL in extension settings",
                code=ErrorCode.NOT_CONFIGURED,
            )
        if not settings.api_key:
            raise ApiError(
                "Not configured: set the API key in extension settings",
                code=ErrorCode.NOT_CONFIGURED,
            )

    def _check_rate_limit(self, path: str) -> None:
        state = self._rate_limits.get()
        if not state.is_exhausted(self._clock()):
            return

        logger.info("vault_rate_limit_preflight", path=path, reset_at=state.reset_at)
        reset_time = format_reset_time(state.reset_at)
        if reset_time:
            message = f"Rate limit reached. Resets at {reset_time}."
        else:
            message = "Rate limit reached. Try again later."
        raise ApiError(
            message,
            status_code=429,
            code=ErrorCode.RATE_LIMITED,
            reset_at=state.reset_at,
        )

    @staticmethod
    def _build_headers(settings: VaultSettings) -> dict[str, str]:
        headers: dict[str, str] = {}
        if settings.api_key:
            headers["Authorization"] = f"Bearer {settings.api_key}"
        if settings.encryption_secret:
            headers["X-Vault-Secret"] = settings.encryption_secret
        return headers

    def _attempt(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        payload: dict[str, Any] | None,
    ) -> Any:
        timeout = self._settings.timeout_seconds
        deadline = self._monotonic() + timeout
        try:
            response = self._session.request(
                method,
                url,
                headers=headers,
                json=payload,
                timeout=timeout,
                stream=True,
            )
        except requests.exceptions.Timeout as exc:
            raise self._timed_out(timeout) from exc
        except requests.exceptions.RequestException as exc:
            raise self._unreachable() from exc

        try:
            body = self._read_body(response, deadline, timeout)
        except requests.exceptions.RequestException as exc:
            if self._monotonic() >= deadline:
                raise self._timed_out(timeout) from exc
            raise self._unreachable() from exc
        finally:
            response.close()

        if not is_success(response.status_code):
            raise self._http_error(response, body)

        self._rate_limits.update(
            response.headers.get("X-RateLimit-Remaining"),
            response.headers.get("X-RateLimit-Reset"),
        )

        if not body:
            return {}
        try:
            return json.loads(body)
        except ValueError as exc:
            raise ApiError(
                "Server returned a response that is not valid JSON",
                status_code=response.status_code,
                code=ErrorCode.SERVER_ERROR,
            ) from exc

    def _read_body(self, response: requests.Response, deadline: float, timeout: float) -> bytes:
        """Collect the streamed body, giving up once the attempt deadline passes.

        The socket timeout only bounds each read; a server trickling bytes is
        cut off here between chunks.
        """
        chunks: list[bytes] = []
        for chunk in response.iter_content(chunk_size=READ_CHUNK_BYTES):
            if self._monotonic() > deadline:
                raise self._timed_out(timeout)
            chunks.append(chunk)
        if self._monotonic() > deadline:
            raise self._timed_out(timeout)
        return b"".join(chunks)

    @staticmethod
    def _timed_out(timeout: float) -> ApiError:
        return ApiError(f"Request timed out after {timeout:g}s", code=ErrorCode.TIMEOUT)

    @staticmethod
    def _unreachable() -> ApiError:
        return ApiError(
            "Could not reach the server. Check your connection and server URL.",
            code=ErrorCode.NETWORK_ERROR,
        )

    @staticmethod
    def _http_error(response: requests.Response, body: bytes) -> ApiError:
        status = response.status_code
        message = ""
        try:
            document = json.loads(body) if body else None
        except ValueError:
            document = None
        if isinstance(document, dict) and document.get("error"):
            message = str(document["error"])
        if not message:
            message = response.reason or f"API error: {status}"

        if status == 401:
            code = ErrorCode.UNAUTHORIZED
        elif status == 429:
            code = ErrorCode.RATE_LIMITED
        else:
            code = ErrorCode.SERVER_ERROR

        reset_at = to_reset_timestamp(response.headers.get("X-RateLimit-Reset"))
        return ApiError(message[:500], status_code=status, code=code, reset_at=reset_at)
