import copy
import http.client
import json
import logging
import urllib.error
import urllib.request

import websocket

from feedsummarizer.config import DEFAULT_CONFIG, build_config, default_config
from feedsummarizer.errors import ProtocolFormatError, TransportError
from feedsummarizer.models import FetchResult
from feedsummarizer.pipelines.content_fetch import BrowserContentFetcher, build_extract_script
from feedsummarizer.pipelines.devtools import CdpSession, DevToolsClient, Tab

LOGGER = logging.getLogger("test")


class FakeDevTools:
    def __init__(self, failures=0):
        self.failures = failures
        self.created = 0
        self.closed = []

    def create_tab(self):
        self.created += 1
        if self.created <= self.failures:
            raise TransportError("tab_create_failed: connection refused")
        return Tab(id=f"tab-{self.created}", ws_url=f"ws://localhost:9222/devtools/page/{self.created}")

    def close_tab(self, tab_id):
        self.closed.append(tab_id)


class FakeSocket:
    """Answers Page.navigate with a load event and Runtime.evaluate with ``value``."""

    def __init__(self, value=None, error=None, timeout_on_recv=False):
        self.value = value
        self.error = error
        self.timeout_on_recv = timeout_on_recv
        self.sent = []
        self.pending = []
        self.timeouts = []
        self.closed = False

    def send(self, raw):
        message = json.loads(raw)
        self.sent.append(message)
        self.pending.append(json.dumps({"id": message["id"], "result": {}}))
        if message["method"] == "Page.navigate":
            self.pending.append("not json")
            self.pending.append(json.dumps({"method": "Page.frameNavigated", "params": {}}))
            self.pending.append(json.dumps({"method": "Page.loadEventFired", "params": {"timestamp": 1}}))
        if message["method"] == "Runtime.evaluate":
            self.pending.pop()
            if self.error is not None:
                self.pending.append(json.dumps({"id": message["id"], "error": self.error}))
            else:
                self.pending.append(
                    json.dumps(
                        {"id": message["id"], "result": {"result": {"type": "object", "value": self.value}}}
                    )
                )

    def settimeout(self, value):
        self.timeouts.append(value)

    def recv(self):
        if self.timeout_on_recv or not self.pending:
            raise websocket.WebSocketTimeoutException("timed out")
        return self.pending.pop(0)

    def close(self):
        self.closed = True


def _fetcher(devtools, sockets, sleeps, config=None, clock=None):
    config = config or default_config().chrome

    def connect(url, timeout, suppress_origin=False):
        sock = sockets.pop(0)
        sock.url = url
        sock.suppress_origin = suppress_origin
        return sock

    kwargs = {"clock": clock} if clock is not None else {}
    return BrowserContentFetcher(
        config, LOGGER, devtools=devtools, connect=connect, sleep=sleeps.append, **kwargs
    )


def test_fetch_content_returns_text_and_html():
    devtools = FakeDevTools()
    sock = FakeSocket(value={"text": "Body text", "html": "<article>Body text</article>"})
    sleeps = []
    fetcher = _fetcher(devtools, [sock], sleeps)

    result = fetcher.fetch_content("https://example.com/post", "article.main")

    assert result.text == "Body text"
    assert result.html == "<article>Body text</article>"
    assert [message["method"] for message in sock.sent] == [
        "Page.enable",
        "Page.navigate",
        "Runtime.evaluate",
    ]
    assert [message["id"] for message in sock.sent] == [0, 1, 2]
    assert sock.sent[1]["params"] == {"url": "https://example.com/post"}
    assert '"article.main"' in sock.sent[2]["params"]["expression"]
    assert sock.sent[2]["params"]["returnByValue"] is True
    assert sleeps == [10.0]
    assert sock.closed
    assert sock.suppress_origin is True
    assert devtools.closed == ["tab-1"]
    assert fetcher.last_attempts == 1


def test_fetch_content_retries_transport_errors_with_delay():
    devtools = FakeDevTools(failures=2)
    sock = FakeSocket(value={"text": "ok", "html": "<p>ok</p>"})
    sleeps = []
    fetcher = _fetcher(devtools, [sock], sleeps)

    result = fetcher.fetch_content("https://example.com/post", "article")

    assert result.text == "ok"
    assert fetcher.last_attempts == 3
    assert sleeps == [2.0, 2.0, 10.0]


def test_fetch_content_raises_after_max_retries():
    devtools = FakeDevTools(failures=10)
    sleeps = []
    fetcher = _fetcher(devtools, [], sleeps)

    try:
        fetcher.fetch_content("https://example.com/post", "article")
    except TransportError as exc:
        assert "tab_create_failed" in str(exc)
    else:
        raise AssertionError("expected TransportError")
    assert devtools.created == 3
    assert sleeps == [2.0, 2.0]


def test_message_timeout_closes_tab_and_retries():
    devtools = FakeDevTools()
    sockets = [FakeSocket(timeout_on_recv=True), FakeSocket(value={"text": "late", "html": ""})]
    sleeps = []
    fetcher = _fetcher(devtools, sockets[:], sleeps)

    result = fetcher.fetch_content("https://example.com/post", "article")

    assert result.text == "late"
    assert devtools.closed == ["tab-1", "tab-2"]
    assert sockets[0].closed
    assert sockets[0].timeouts[0] <= 60.0


def test_cdp_error_is_not_retried():
    devtools = FakeDevTools()
    sock = FakeSocket(error={"code": -32000, "message": "boom"})
    sleeps = []
    fetcher = _fetcher(devtools, [sock], sleeps)

    try:
        fetcher.fetch_content("https://example.com/post", "article")
    except ProtocolFormatError as exc:
        assert str(exc).startswith("cdp_error")
    else:
        raise AssertionError("expected ProtocolFormatError")
    assert fetcher.last_attempts == 1
    assert devtools.closed == ["tab-1"]


def test_missing_value_yields_empty_result():
    devtools = FakeDevTools()
    sock = FakeSocket(value=None)
    fetcher = _fetcher(devtools, [sock], [])

    result = fetcher.fetch_content("https://example.com/post", "article")

    assert result == FetchResult.empty()


def test_connect_failure_is_transport_error():
    def connect(url, timeout, suppress_origin=False):
        raise ConnectionRefusedError("refused")

    try:
        CdpSession("ws://localhost:9222/devtools/page/1", LOGGER, message_timeout=5, connect=connect)
    except TransportError as exc:
        assert "websocket_connect_failed" in str(exc)
    else:
        raise AssertionError("expected TransportError")


def test_build_extract_script_quotes_selector():
    script = build_extract_script('div[data-x="a"]')
    assert 'document.querySelector("div[data-x=\\"a\\"]")' in script
    assert "document.body" in script


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


def test_settle_delay_longer_than_page_load_timeout_still_extracts():
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["chrome"]["settle_seconds"] = 2.0
    cfg["chrome"]["page_load_timeout_seconds"] = 1.0
    cfg["chrome"]["max_retries"] = 2
    chrome = build_config(cfg).chrome
    clock = FakeClock()
    devtools = FakeDevTools()
    sock = FakeSocket(value={"text": "settled", "html": "<article>settled</article>"})
    fetcher = BrowserContentFetcher(
        chrome,
        LOGGER,
        devtools=devtools,
        connect=lambda url, timeout, suppress_origin=False: sock,
        sleep=clock.sleep,
        clock=clock,
    )

    result = fetcher.fetch_content("https://example.com/post", "article")

    assert result.text == "settled"
    assert fetcher.last_attempts == 1
    assert clock.now == 2.0


def test_page_load_deadline_is_transport_error():
    clock = FakeClock()

    class SlowSocket(FakeSocket):
        def recv(self):
            clock.now += 0.6
            return json.dumps({"method": "Network.dataReceived", "params": {}})

    session = CdpSession(
        "ws://localhost:9222/devtools/page/1",
        LOGGER,
        message_timeout=60,
        connect=lambda url, timeout, suppress_origin=False: SlowSocket(),
        clock=clock,
    )
    try:
        session.wait_for_event("Page.loadEventFired", deadline=1.0)
    except TransportError as exc:
        assert str(exc) == "page_deadline_exceeded"
    else:
        raise AssertionError("expected TransportError")


class FailingCloseDevTools(FakeDevTools):
    def close_tab(self, tab_id):
        self.closed.append(tab_id)
        raise RuntimeError("close exploded")


def test_failed_tab_close_does_not_hide_result():
    devtools = FailingCloseDevTools()
    sock = FakeSocket(value={"text": "kept", "html": "<p>kept</p>"})
    fetcher = _fetcher(devtools, [sock], [])

    result = fetcher.fetch_content("https://example.com/post", "article")

    assert result.text == "kept"
    assert devtools.closed == ["tab-1"]


def test_failed_tab_close_does_not_hide_fetch_error():
    devtools = FailingCloseDevTools()
    sock = FakeSocket(error={"code": -32000, "message": "boom"})
    fetcher = _fetcher(devtools, [sock], [])

    try:
        fetcher.fetch_content("https://example.com/post", "article")
    except ProtocolFormatError as exc:
        assert str(exc).startswith("cdp_error")
    else:
        raise AssertionError("expected ProtocolFormatError")


class FakeHttpResponse:
    def __init__(self, body, status=200):
        self.body = body
        self.status = status

    def read(self):
        if isinstance(self.body, Exception):
            raise self.body
        return self.body.encode("utf-8")

    def getcode(self):
        return self.status

    def __enter__(self):
        return self

    def __exit__(self, *_exc):
        return False


def test_create_tab_parses_devtools_reply(monkeypatch):
    captured = {}

    def fake_urlopen(request, timeout):
        captured["url"] = request.full_url
        captured["method"] = request.get_method()
        return FakeHttpResponse(
            json.dumps({"id": "ABC", "webSocketDebuggerUrl": "ws://localhost:9222/devtools/page/ABC"})
        )

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    tab = DevToolsClient("http://localhost:9222/", LOGGER).create_tab()

    assert tab == Tab(id="ABC", ws_url="ws://localhost:9222/devtools/page/ABC")
    assert captured == {"url": "http://localhost:9222/json/new", "method": "PUT"}


def test_create_tab_rejects_malformed_replies(monkeypatch):
    client = DevToolsClient("http://localhost:9222", LOGGER)
    for body, expected in [
        ("<html>not json</html>", "tab_create_invalid_json"),
        (json.dumps({"id": "ABC"}), "tab_create_missing_websocket_url"),
        (json.dumps(["ABC"]), "tab_create_missing_websocket_url"),
    ]:
        monkeypatch.setattr(urllib.request, "urlopen", lambda request, timeout, body=body: FakeHttpResponse(body))
        try:
            client.create_tab()
        except ProtocolFormatError as exc:
            assert str(exc).startswith(expected)
        else:
            raise AssertionError(f"expected ProtocolFormatError for {body}")


def test_create_tab_transport_failures(monkeypatch):
    client = DevToolsClient("http://localhost:9222", LOGGER)

    def refused(request, timeout):
        raise urllib.error.URLError("connection refused")

    def truncated(request, timeout):
        return FakeHttpResponse(http.client.IncompleteRead(b"{\"id\""))

    for fake in (refused, truncated):
        monkeypatch.setattr(urllib.request, "urlopen", fake)
        try:
            client.create_tab()
        except TransportError as exc:
            assert str(exc).startswith("tab_create_failed")
        else:
            raise AssertionError("expected TransportError")


def test_close_tab_logs_failures_and_skips_empty_id(monkeypatch, caplog):
    calls = []

    def fake_urlopen(url, timeout):
        calls.append(url)
        raise urllib.error.URLError("connection reset")

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    client = DevToolsClient("http://localhost:9222", LOGGER)

    with caplog.at_level(logging.DEBUG, logger="test"):
        client.close_tab("")
        client.close_tab("ABC")

    assert calls == ["http://localhost:9222/json/close/ABC"]
    assert "event=tab_close_skipped" in caplog.text
    assert "event=tab_close_failed tab_id=ABC" in caplog.text
