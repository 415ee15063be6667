"""
test_content.py — Content network client over a mock HTTP transport.

Tests cover:
  - put / get / pin against the node API
  - Integrity verification on get (hash mismatch is ContentUnavailable)
  - Retry behavior on transient transport errors
  - Node error responses mapped to ContentUnavailable
  - Announcements: publish, poll with cursor, missing topic
  - Remote pinning service

Run with:
    pytest tests/test_content.py -v
"""

from __future__ import annotations

import json

import httpx
import pytest

from agent_settlement.content import ContentClient, PinningService, _raise_for_status
from agent_settlement.errors import ContentUnavailable

# ---------------------------------------------------------------------------
# Fixtures and helpers
# ---------------------------------------------------------------------------

def _make_response(status_code: int, body=None) -> httpx.Response:
    """Fake httpx.Response. dict bodies are JSON, bytes are returned raw."""
    if isinstance(body, (bytes, bytearray)):
        content, content_type = bytes(body), "application/octet-stream"
    else:
        content, content_type = json.dumps(body or {}).encode(), "application/json"
    return httpx.Response(
        status_code=status_code,
        content=content,
        headers={"Content-Type": content_type},
        request=httpx.Request("POST", "http://test"),
    )


class MockTransport(httpx.BaseTransport):
    """
    FIFO mock transport for httpx.Client.

    Each queued entry is either a response or an exception to raise, so
    retry paths can be exercised. Requests are recorded for assertions.
    """

    def __init__(self):
        self._queue: list[tuple[str, object]] = []
        self.requests: list[httpx.Request] = []

    def add(self, path: str, status: int = 200, body=None) -> "MockTransport":
        self._queue.append((path, _make_response(status, body)))
        return self

    def fail(self, path: str, exc: Exception) -> "MockTransport":
        self._queue.append((path, exc))
        return self

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for i, (p, outcome) in enumerate(self._queue):
            if request.url.path == p:
                self._queue.pop(i)
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
        raise AssertionError(
            f"MockTransport: unexpected request {request.method} {request.url.path}\n"
            f"Remaining queue: {[p for p, _ in self._queue]}"
        )


def _client(config, transport: MockTransport, **overrides) -> ContentClient:
    http = httpx.Client(transport=transport, base_url="http://ipfs.test")
    return ContentClient(config.model_copy(update=overrides), http_client=http)


# ---------------------------------------------------------------------------
# 1. Storage
# ---------------------------------------------------------------------------

class TestStorage:

    def test_put_returns_locator(self, config):
        transport = MockTransport().add("/api/v0/add", 200, {"Hash": "bafyblob"})
        assert _client(config, transport).put(b"data") == "bafyblob"
        request = transport.requests[0]
        assert request.url.params["cid-version"] == "1"
        assert request.url.params["pin"] == "true"

    def test_get_verifies_hash(self, config):
        transport = (
            MockTransport()
            .add("/api/v0/cat", 200, b"payload")
            .add("/api/v0/add", 200, {"Hash": "bafyblob"})
        )
        assert _client(config, transport).get("bafyblob") == b"payload"
        assert transport.requests[1].url.params["only-hash"] == "true"

    def test_get_rejects_mismatched_content(self, config):
        transport = (
            MockTransport()
            .add("/api/v0/cat", 200, b"tampered")
            .add("/api/v0/add", 200, {"Hash": "bafyother"})
        )
        with pytest.raises(ContentUnavailable, match="integrity"):
            _client(config, transport).get("bafyblob")

    def test_get_without_verification(self, config):
        transport = MockTransport().add("/api/v0/cat", 200, b"payload")
        assert _client(config, transport, verify_content=False).get("bafyblob") == b"payload"
        assert len(transport.requests) == 1

    def test_node_error_maps_to_content_unavailable(self, config):
        transport = MockTransport().add("/api/v0/cat", 500, {"Message": "block not found", "Code": 0})
        with pytest.raises(ContentUnavailable, match="block not found"):
            _client(config, transport).get("bafymissing")

    def test_pin(self, config):
        transport = MockTransport().add("/api/v0/pin/add", 200, {"Pins": ["bafyblob"]})
        _client(config, transport).pin("bafyblob")
        assert transport.requests[0].url.params["arg"] == "bafyblob"


# ---------------------------------------------------------------------------
# 2. Retry behavior
# ---------------------------------------------------------------------------

class TestRetries:

    def test_transient_error_then_success(self, config):
        transport = (
            MockTransport()
            .fail("/api/v0/add", httpx.ConnectError("refused"))
            .add("/api/v0/add", 200, {"Hash": "bafyblob"})
        )
        assert _client(config, transport).put(b"data") == "bafyblob"
        assert len(transport.requests) == 2

    def test_exhausted_retries_raise(self, config):
        transport = (
            MockTransport()
            .fail("/api/v0/add", httpx.ReadTimeout("slow"))
            .fail("/api/v0/add", httpx.ReadTimeout("slow"))
        )
        with pytest.raises(ContentUnavailable, match="after 2 attempts"):
            _client(config, transport).put(b"data")

    def test_http_errors_are_not_retried(self, config):
        transport = MockTransport().add("/api/v0/add", 400, {"Message": "bad request"})
        with pytest.raises(ContentUnavailable):
            _client(config, transport).put(b"data")
        assert len(transport.requests) == 1

    def test_raise_for_status_non_json_body(self):
        resp = httpx.Response(502, content=b"bad gateway", request=httpx.Request("POST", "http://test"))
        with pytest.raises(ContentUnavailable, match="bad gateway"):
            _raise_for_status(resp, "get")


# ---------------------------------------------------------------------------
# 3. Announcements
# ---------------------------------------------------------------------------

class TestAnnouncements:

    def test_publish_writes_under_topic(self, config):
        transport = MockTransport().add("/api/v0/files/write", 200, {})
        name = _client(config, transport).publish("abcd", b"bafyloc")
        assert transport.requests[0].url.params["arg"] == f"/mailbox/abcd/{name}"

    def test_poll_returns_entries_after_cursor_in_order(self, config):
        transport = (
            MockTransport()
            .add("/api/v0/files/ls", 200, {"Entries": [{"Name": "003"}, {"Name": "001"}, {"Name": "002"}]})
            .add("/api/v0/files/read", 200, b"bafytwo")
            .add("/api/v0/files/read", 200, b"bafythree")
        )
        announcements = _client(config, transport).poll("abcd", cursor="001")
        assert [(a.name, a.data) for a in announcements] == [("002", b"bafytwo"), ("003", b"bafythree")]

    def test_poll_missing_topic_is_empty(self, config):
        transport = MockTransport().add("/api/v0/files/ls", 500, {"Message": "file does not exist"})
        assert _client(config, transport).poll("abcd") == []


# ---------------------------------------------------------------------------
# 4. Remote pinning
# ---------------------------------------------------------------------------

class TestPinningService:

    def test_put_also_pins_remotely(self, config):
        pin_transport = MockTransport().add("/pinning/pinByHash", 200, {"id": "1"})
        pinning = PinningService("jwt", http_client=httpx.Client(transport=pin_transport, base_url="https://pin.test"))
        transport = MockTransport().add("/api/v0/add", 200, {"Hash": "bafyblob"})
        client = ContentClient(
            config, http_client=httpx.Client(transport=transport, base_url="http://ipfs.test"), pinning=pinning,
        )

        client.put(b"data")

        assert json.loads(pin_transport.requests[0].content) == {"hashToPin": "bafyblob"}

    def test_unpinned_put_skips_remote_pin(self, config):
        pin_transport = MockTransport()
        pinning = PinningService("jwt", http_client=httpx.Client(transport=pin_transport, base_url="https://pin.test"))
        transport = MockTransport().add("/api/v0/add", 200, {"Hash": "bafyblob"})
        client = ContentClient(
            config, http_client=httpx.Client(transport=transport, base_url="http://ipfs.test"), pinning=pinning,
        )
        client.put(b"data", pin=False)
        assert pin_transport.requests == []

    def test_remote_pin_failure_raises(self):
        pin_transport = MockTransport().add("/pinning/pinByHash", 401, {"error": "unauthorized"})
        pinning = PinningService("bad", http_client=httpx.Client(transport=pin_transport, base_url="https://pin.test"))
        with pytest.raises(ContentUnavailable, match="401"):
            pinning.pin_by_hash("bafyblob")
