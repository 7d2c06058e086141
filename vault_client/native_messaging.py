from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
import itertools
import json
import struct
import threading
from typing import Any, BinaryIO, Callable

from vault_client.host import BrowserHost, HostError, TabRemovedListener, TabUpdatedListener
from vault_client.logging_utils import get_logger
from vault_client.router import MessageRouter

logger = get_logger(__name__)

_HEADER = struct.Struct("=I")


class ProtocolError(RuntimeError):
    pass


def read_message(stream: BinaryIO) -> dict[str, Any] | None:
    """Read one length-prefixed JSON message; None on a clean end of stream."""
    raw_length = stream.read(_HEADER.size)
    if not raw_length:
        return None
    if len(raw_length) < _HEADER.size:
        raise ProtocolError("Truncated message header")

    (message_length,) = _HEADER.unpack(raw_length)
    payload = stream.read(message_length)
    if len(payload) < message_length:
        raise ProtocolError("Truncated message body")

    message = json.loads(payload.decode("utf-8"))
    if not isinstance(message, dict):
        raise ValueError("Message must be a JSON object")
    return message


def encode_message(message: dict[str, Any]) -> bytes:
    encoded = json.dumps(message).encode("utf-8")
    return _HEADER.pack(len(encoded)) + encoded


class MessageWriter:
    def __init__(self, stream: BinaryIO):
        self._stream = stream
        self._lock = threading.Lock()

    def send(self, message: dict[str, Any]) -> None:
        data = encode_message(message)
        with self._lock:
            self._stream.write(data)
            self._stream.flush()


class NativeBrowserHost(BrowserHost):
    """Browser capabilities proxied to the extension over native messaging.

    Outbound calls are ``host_call`` messages; the extension answers with a
    ``host_result`` carrying the same ``callId``. Tab events arrive unsolicited.
    """

    def __init__(self, writer: MessageWriter, call_timeout_seconds: float):
        self._writer = writer
        self._call_timeout_seconds = call_timeout_seconds
        self._call_ids = itertools.count(1)
        self._lock = threading.Lock()
        self._pending: dict[int, Future] = {}
        self._tab_updated_listeners: list[TabUpdatedListener] = []
        self._tab_removed_listeners: list[TabRemovedListener] = []
        self._closed = False

    def create_tab(self, url: str) -> int:
        result = self._call("tabs.create", {"url": url})
        tab_id = result.get("id") if isinstance(result, dict) else None
        if not isinstance(tab_id, int) or isinstance(tab_id, bool):
            raise HostError("Browser did not return a tab id")
        return tab_id

    def remove_tab(self, tab_id: int) -> None:
        self._notify("tabs.remove", {"tabId": tab_id})

    def send_tab_message(self, tab_id: int, message: dict[str, Any]) -> None:
        self._notify("tabs.sendMessage", {"tabId": tab_id, "message": message})

    def contains_permission(self, origin: str) -> bool:
        return bool(self._call("permissions.contains", {"origins": [origin]}))

    def request_permission(self, origin: str) -> bool:
        return bool(self._call("permissions.request", {"origins": [origin]}))

    def set_badge(self, text: str, color: str | None = None) -> None:
        params: dict[str, Any] = {"text": text}
        if color:
            params["color"] = color
        self._notify("action.setBadge", params)

    def add_tab_updated_listener(self, listener: TabUpdatedListener) -> None:
        with self._lock:
            self._tab_updated_listeners.append(listener)

    def remove_tab_updated_listener(self, listener: TabUpdatedListener) -> None:
        with self._lock:
            if listener in self._tab_updated_listeners:
                self._tab_updated_listeners.remove(listener)

    def add_tab_removed_listener(self, listener: TabRemovedListener) -> None:
        with self._lock:
            self._tab_removed_listeners.append(listener)

    def remove_tab_removed_listener(self, listener: TabRemovedListener) -> None:
        with self._lock:
            if listener in self._tab_removed_listeners:
                self._tab_removed_listeners.remove(listener)

    def dispatch_tab_updated(self, tab_id: int, url: str) -> None:
        with self._lock:
            listeners = list(self._tab_updated_listeners)
        for listener in listeners:
            listener(tab_id, url)

    def dispatch_tab_removed(self, tab_id: int) -> None:
        with self._lock:
            listeners = list(self._tab_removed_listeners)
        for listener in listeners:
            listener(tab_id)

    def resolve_call(self, call_id: int, result: Any = None, error: str | None = None) -> None:
        with self._lock:
            future = self._pending.pop(call_id, None)
        if future is None:
            return
        if error:
            future.set_exception(HostError(error))
        else:
            future.set_result(result)

    def close(self, reason: str = "Native messaging channel closed") -> None:
        with self._lock:
            self._closed = True
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            future.set_exception(HostError(reason))

    def _call(self, method: str, params: dict[str, Any]) -> Any:
        call_id = next(self._call_ids)
        future: Future = Future()
        with self._lock:
            if self._closed:
                raise HostError("Native messaging channel closed")
            self._pending[call_id] = future

        try:
            self._writer.send({"type": "host_call", "callId": call_id, "method": method, "params": params})
            return future.result(timeout=self._call_timeout_seconds)
        except FutureTimeoutError as exc:
            raise HostError(f"Browser did not answer {method} in time") from exc
        except OSError as exc:
            raise HostError(f"Could not send {method} to the browser") from exc
        finally:
            with self._lock:
                self._pending.pop(call_id, None)

    def _notify(self, method: str, params: dict[str, Any]) -> None:
        with self._lock:
            if self._closed:
                return
        try:
            self._writer.send({"type": "host_call", "callId": next(self._call_ids), "method": method, "params": params})
        except OSError as exc:
            logger.warning("host_notify_failed", method=method, error=str(exc))


class NativeMessagingHost:
    def __init__(
        self,
        router: MessageRouter,
        browser_host: NativeBrowserHost,
        reader: BinaryIO,
        writer: MessageWriter,
        max_workers: int = 8,
    ):
        self._router = router
        self._browser_host = browser_host
        self._reader = reader
        self._writer = writer
        self._max_workers = max_workers

    def serve_forever(self) -> None:
        logger.info("native_host_started")
        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="vault-request") as requests_pool, \
                ThreadPoolExecutor(max_workers=1, thread_name_prefix="vault-events") as events_pool:
            try:
                while True:
                    try:
                        message = read_message(self._reader)
                    except ValueError as exc:
                        logger.warning("native_message_invalid", error=str(exc))
                        continue
                    if message is None:
                        break
                    self._dispatch(message, requests_pool, events_pool)
            except ProtocolError as exc:
                logger.error("native_channel_broken", error=str(exc))
            finally:
                self._router.shutdown()
                self._browser_host.close()
        logger.info("native_host_stopped")

    def _dispatch(
        self,
        message: dict[str, Any],
        requests_pool: ThreadPoolExecutor,
        events_pool: ThreadPoolExecutor,
    ) -> None:
        message_type = message.get("type")

        if message_type == "host_result":
            self._browser_host.resolve_call(
                message.get("callId"),
                result=message.get("result"),
                error=message.get("error"),
            )
        elif message_type == "tab_updated":
            events_pool.submit(
                self._guarded,
                self._browser_host.dispatch_tab_updated,
                message.get("tabId"),
                message.get("url") or "",
            )
        elif message_type == "tab_removed":
            events_pool.submit(self._guarded, self._browser_host.dispatch_tab_removed, message.get("tabId"))
        elif message_type == "context_menu":
            requests_pool.submit(
                self._guarded,
                self._router.handle_context_menu,
                str(message.get("menuItemId", "")),
                message.get("selectionText"),
                message.get("pageUrl"),
                message.get("tabId"),
            )
        else:
            requests_pool.submit(self._guarded, self._handle_request, message)

    def _handle_request(self, message: dict[str, Any]) -> None:
        response = self._router.handle(message)
        if "requestId" in message:
            response = {**response, "requestId": message["requestId"]}
        self._writer.send(response)

    @staticmethod
    def _guarded(function: Callable[..., Any], *args: Any) -> None:
        try:
            function(*args)
        except Exception:
            logger.exception("native_task_failed", task=getattr(function, "__name__", repr(function)))
