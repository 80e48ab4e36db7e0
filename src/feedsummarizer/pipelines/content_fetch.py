from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable

import websocket

from ..config import ChromeConfig
from ..errors import TransportError
from ..models import FetchResult
from ..utils import log_event
from .devtools import CdpSession, DevToolsClient

LOAD_EVENT = "Page.loadEventFired"

_EXTRACT_SCRIPT = """(() => {
  let el = null;
  try { el = document.querySelector(%s); } catch (e) { el = null; }
  el = el || document.body;
  if (!el) { return {text: "", html: ""}; }
  return {text: el.innerText || "", html: el.outerHTML || ""};
})()"""


def build_extract_script(selector: str) -> str:
    return _EXTRACT_SCRIPT % json.dumps(selector)


class BrowserContentFetcher:
    """Render a page in a fresh headless-browser tab and pull out one element.

    Each attempt owns its tab: it is created, driven over the tab's WebSocket
    and closed again whatever the outcome. Only transport failures are
    retried, with a fixed delay between attempts.
    """

    def __init__(
        self,
        config: ChromeConfig,
        logger: logging.Logger,
        *,
        devtools: DevToolsClient | None = None,
        connect: Callable[..., Any] = websocket.create_connection,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.logger = logger
        self.devtools = devtools or DevToolsClient(config.base_url, logger)
        self.connect = connect
        self.sleep = sleep
        self.clock = clock
        self.last_attempts = 0

    def fetch_content(self, url: str, selector: str) -> FetchResult:
        max_retries = self.config.max_retries
        self.last_attempts = 0
        for attempt in range(1, max_retries + 1):
            self.last_attempts = attempt
            log_event(
                self.logger,
                logging.DEBUG,
                "fetch_attempt",
                attempt=attempt,
                max_retries=max_retries,
                url=url,
            )
            try:
                return self.attempt_fetch(url, selector)
            except TransportError as exc:
                log_event(
                    self.logger,
                    logging.WARNING,
                    "fetch_attempt_failed",
                    attempt=attempt,
                    url=url,
                    error=str(exc),
                )
                if attempt >= max_retries:
                    log_event(self.logger, logging.ERROR, "fetch_failed", url=url, attempts=attempt)
                    raise
                self.sleep(self.config.retry_delay_seconds)
        raise TransportError("fetch_not_attempted")

    def attempt_fetch(self, url: str, selector: str) -> FetchResult:
        log_event(self.logger, logging.DEBUG, "fetch_start", url=url, selector=selector)
        tab = self.devtools.create_tab()
        log_event(self.logger, logging.DEBUG, "tab_created", tab_id=tab.id, ws_url=tab.ws_url)
        session: CdpSession | None = None
        try:
            session = CdpSession(
                tab.ws_url,
                self.logger,
                message_timeout=self.config.message_timeout_seconds,
                connect=self.connect,
                clock=self.clock,
            )
            load_deadline = self.clock() + self.config.page_load_timeout_seconds
            session.send("Page.enable")
            session.send("Page.navigate", {"url": url})
            session.wait_for_event(LOAD_EVENT, load_deadline)
            log_event(self.logger, logging.DEBUG, "page_loaded", url=url)

            self.sleep(self.config.settle_seconds)

            # The settle delay is not charged against the page-load deadline.
            eval_deadline = self.clock() + self.config.message_timeout_seconds
            eval_id = session.send(
                "Runtime.evaluate",
                {"expression": build_extract_script(selector), "returnByValue": True},
            )
            result = session.wait_for_result(eval_id, eval_deadline)
            return _extract_result(result)
        finally:
            self._cleanup(session, tab.id)

    def _cleanup(self, session: CdpSession | None, tab_id: str) -> None:
        if session is not None:
            session.close()
        try:
            self.devtools.close_tab(tab_id)
        except Exception as exc:  # noqa: BLE001
            log_event(self.logger, logging.ERROR, "tab_cleanup_failed", tab_id=tab_id, error=str(exc))


def _extract_result(result: dict[str, Any]) -> FetchResult:
    inner = result.get("result")
    if not isinstance(inner, dict):
        return FetchResult.empty()
    value = inner.get("value")
    if not isinstance(value, dict):
        return FetchResult.empty()
    text = value.get("text")
    html = value.get("html")
    return FetchResult(
        text=text if isinstance(text, str) else "",
        html=html if isinstance(html, str) else "",
    )
