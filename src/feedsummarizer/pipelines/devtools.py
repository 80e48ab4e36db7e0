from __future__ import annotations

import http.client
import json
import logging
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable

import websocket

from ..errors import ProtocolFormatError, TransportError
from ..utils import log_event, truncate_for_log

TAB_HTTP_TIMEOUT_SECONDS = 10
TAB_CLOSE_TIMEOUT_SECONDS = 5


@dataclass(frozen=True)
class Tab:
    id: str
    ws_url: str


class DevToolsClient:
    """HTTP side of the DevTools protocol: creating and closing tabs."""

    def __init__(self, base_url: str, logger: logging.Logger) -> None:
        self.base_url = base_url.rstrip("/")
        self.logger = logger

    def create_tab(self) -> Tab:
        url = f"{self.base_url}/json/new"
        request = urllib.request.Request(url, method="PUT")
        try:
            with urllib.request.urlopen(request, timeout=TAB_HTTP_TIMEOUT_SECONDS) as response:
                raw = response.read().decode("utf-8", errors="replace")
        except (urllib.error.URLError, http.client.HTTPException, OSError) as exc:
            raise TransportError(f"tab_create_failed: {exc}") from exc
        log_event(self.logger, logging.DEBUG, "tab_create_response", body=truncate_for_log(raw))
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ProtocolFormatError(f"tab_create_invalid_json: {truncate_for_log(raw, 100)}") from exc
        if not isinstance(data, dict) or not data.get("webSocketDebuggerUrl"):
            raise ProtocolFormatError("tab_create_missing_websocket_url")
        return Tab(id=str(data.get("id") or ""), ws_url=str(data["webSocketDebuggerUrl"]))

    def close_tab(self, tab_id: str) -> None:
        if not tab_id:
            log_event(self.logger, logging.WARNING, "tab_close_skipped", reason="missing_tab_id")
            return
        url = f"{self.base_url}/json/close/{tab_id}"
        try:
            with urllib.request.urlopen(url, timeout=TAB_CLOSE_TIMEOUT_SECONDS) as response:
                status = response.getcode()
        except (urllib.error.URLError, http.client.HTTPException, OSError) as exc:
            log_event(self.logger, logging.ERROR, "tab_close_failed", tab_id=tab_id, error=str(exc))
            return
        log_event(self.logger, logging.DEBUG, "tab_closed", tab_id=tab_id, http_status=status)


class CdpSession:
    """WebSocket control channel of a single tab.

    Every receive is bounded by ``message_timeout`` and by the caller's
    deadline, whichever comes first. Deadlines are readings of ``clock``
    (``time.monotonic`` by default).
    """

    def __init__(
        self,
        ws_url: str,
        logger: logging.Logger,
        *,
        message_timeout: float,
        connect: Callable[..., Any] = websocket.create_connection,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ws_url = ws_url
        self.clock = clock
        self.logger = logger
        self.message_timeout = message_timeout
        self._next_id = 0
        try:
            # Chrome rejects DevTools sockets that carry an Origin header unless started
            # with --remote-allow-origins.
            self.ws = connect(ws_url, timeout=message_timeout, suppress_origin=True)
        except (websocket.WebSocketException, OSError) as exc:
            raise TransportError(f"websocket_connect_failed: {exc}") from exc

    def send(self, method: str, params: dict[str, Any] | None = None) -> int:
        msg_id = self._next_id
        self._next_id += 1
        message: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            message["params"] = params
        encoded = json.dumps(message)
        log_event(self.logger, logging.DEBUG, "cdp_send", message=truncate_for_log(encoded))
        try:
            self.ws.send(encoded)
        except (websocket.WebSocketException, OSError) as exc:
            raise TransportError(f"websocket_send_failed: {exc}") from exc
        return msg_id

    def wait_for_event(self, event_name: str, deadline: float) -> dict[str, Any]:
        while True:
            data = self._recv(deadline)
            if data.get("method") == event_name:
                params = data.get("params")
                return params if isinstance(params, dict) else {}

    def wait_for_result(self, msg_id: int, deadline: float) -> dict[str, Any]:
        while True:
            data = self._recv(deadline)
            if data.get("id") != msg_id:
                continue
            if "error" in data:
                raise ProtocolFormatError(f"cdp_error: {data['error']}")
            result = data.get("result")
            return result if isinstance(result, dict) else {}

    def close(self) -> None:
        try:
            self.ws.close()
        except (websocket.WebSocketException, OSError) as exc:
            log_event(self.logger, logging.WARNING, "websocket_close_failed", error=str(exc))

    def _recv(self, deadline: float) -> dict[str, Any]:
        while True:
            remaining = deadline - self.clock()
            if remaining <= 0:
                raise TransportError("page_deadline_exceeded")
            try:
                self.ws.settimeout(min(self.message_timeout, remaining))
                raw = self.ws.recv()
            except (websocket.WebSocketTimeoutException, TimeoutError) as exc:
                if deadline - self.clock() <= 0:
                    raise TransportError("page_deadline_exceeded") from exc
                raise TransportError("websocket_message_timeout") from exc
            except (websocket.WebSocketException, OSError) as exc:
                raise TransportError(f"websocket_receive_failed: {exc}") from exc
            log_event(self.logger, logging.DEBUG, "cdp_recv", message=truncate_for_log(str(raw)))
            try:
                data = json.loads(raw)
            except (TypeError, json.JSONDecodeError):
                continue
            if isinstance(data, dict):
                return data
