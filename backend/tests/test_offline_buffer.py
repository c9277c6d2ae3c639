import pytest

from pos_desktop.offline_buffer import MAX_BACKOFF_SECONDS, OfflineWriteBuffer, backoff_seconds

URL = "http://pos.local/sync/queue"


class _Server:
    """Records deliveries and answers with scripted statuses (or raises)."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls: list[tuple[str, dict, dict]] = []

    def __call__(self, url, payload, headers):
        self.calls.append((url, payload, headers))
        reply = self.replies.pop(0) if self.replies else (201, {})
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def make_buffer(register_db, clock):
    def _make(send, headers=None):
        return OfflineWriteBuffer(register_db, send=send, headers=headers, clock=clock)

    return _make


def test_backoff_doubles_and_caps():
    assert [backoff_seconds(n) for n in range(4)] == [1, 2, 4, 8]
    assert backoff_seconds(20) == MAX_BACKOFF_SECONDS


def test_enqueue_stamps_key_and_dedupes(make_buffer):
    buf = make_buffer(_Server())
    entry = buf.enqueue(URL, {"entity_type": "product"}, idempotency_key="key-00000001")
    assert entry["payload"]["idempotency_key"] == "key-00000001"
    assert entry["retry_count"] == 0

    again = buf.enqueue(URL, {"entity_type": "product", "changed": True}, idempotency_key="key-00000001")
    assert again["payload"] == entry["payload"]
    assert buf.count() == 1


def test_enqueue_generates_key_when_missing(make_buffer):
    buf = make_buffer(_Server())
    entry = buf.enqueue(URL, {"entity_type": "product"})
    assert entry["idempotency_key"]
    assert entry["payload"]["idempotency_key"] == entry["idempotency_key"]


def test_drain_delivers_oldest_first_and_removes_entries(make_buffer, clock):
    server = _Server((201, {}), (409, {"detail": "conflict"}))
    buf = make_buffer(server, headers={"X-Device-Id": "dev-1"})
    buf.enqueue(URL, {"n": 1}, idempotency_key="key-00000001")
    clock.advance(seconds=1)
    buf.enqueue(URL, {"n": 2}, idempotency_key="key-00000002")

    result = buf.drain()
    assert result.delivered == 2
    assert result.remaining == 0
    assert [c[1]["n"] for c in server.calls] == [1, 2]
    _url, _payload, headers = server.calls[0]
    assert headers["Idempotency-Key"] == "key-00000001"
    assert headers["X-Device-Id"] == "dev-1"


def test_unreachable_server_backs_off(make_buffer, clock):
    server = _Server(ConnectionRefusedError("connection refused"))
    buf = make_buffer(server)
    buf.enqueue(URL, {"n": 1}, idempotency_key="key-00000001")

    result = buf.drain()
    assert result.failed == 1
    assert result.remaining == 1
    entry = buf.get("key-00000001")
    assert entry["retry_count"] == 1
    assert "connection refused" in entry["last_error"]

    # Not due until the backoff has elapsed.
    assert buf.drain().failed == 0
    assert len(server.calls) == 1

    clock.advance(seconds=backoff_seconds(1))
    assert buf.drain().delivered == 1
    assert buf.count() == 0


def test_unreachable_server_stops_the_drain_at_the_first_entry(make_buffer):
    server = _Server(ConnectionRefusedError("connection refused"))
    buf = make_buffer(server)
    for n in range(1, 6):
        buf.enqueue(URL, {"n": n}, idempotency_key=f"key-{n:08d}")

    result = buf.drain()
    assert len(server.calls) == 1
    assert result.unreachable is True
    assert result.failed == 1
    assert result.remaining == 5
    assert [buf.get(f"key-{n:08d}")["retry_count"] for n in range(1, 6)] == [1, 0, 0, 0, 0]

    # Untouched entries stay due; the next drain carries on from them.
    result = buf.drain()
    assert result.unreachable is False
    assert result.delivered == 4
    assert buf.count() == 1


def test_server_error_is_kept_with_detail(make_buffer):
    buf = make_buffer(_Server((500, {"detail": "internal error"})))
    buf.enqueue(URL, {"n": 1}, idempotency_key="key-00000001")
    result = buf.drain()
    assert result.failed == 1
    assert result.errors == ['key-00000001: HTTP 500: "internal error"']
    assert buf.get("key-00000001")["last_error"].startswith("HTTP 500")


def test_lost_response_is_not_applied_twice(make_buffer, clock):
    applied: dict[str, dict] = {}

    def flaky_server(url, payload, headers):
        key = headers["Idempotency-Key"]
        if key in applied:
            return 200, {"duplicate": True}
        # Applied, but the answer never reaches the register.
        applied[key] = payload
        raise TimeoutError("timed out")

    buf = make_buffer(flaky_server)
    buf.enqueue(URL, {"n": 1}, idempotency_key="key-00000001")
    assert buf.drain().failed == 1
    clock.advance(seconds=MAX_BACKOFF_SECONDS)
    assert buf.drain().delivered == 1
    assert list(applied) == ["key-00000001"]


def test_overlapping_drain_is_skipped(make_buffer):
    nested = []
    buf = None

    def send(url, payload, headers):
        nested.append(buf.drain())
        return 201, {}

    buf = make_buffer(send)
    buf.enqueue(URL, {"n": 1}, idempotency_key="key-00000001")
    result = buf.drain()
    assert result.delivered == 1
    assert nested[0].skipped is True
    assert nested[0].delivered == 0


def test_escalation_expedite_edit_and_delete(make_buffer, clock):
    server = _Server(OSError("down"), OSError("down"))
    buf = make_buffer(server)
    buf.enqueue(URL, {"n": 1}, idempotency_key="key-00000001")
    buf.drain()
    assert buf.expedite("key-00000001") is True
    buf.drain()
    assert buf.escalated_count(threshold=2) == 1
    assert buf.escalated_count(threshold=3) == 0

    assert buf.update_payload("key-00000001", {"n": 2}) is True
    entry = buf.get("key-00000001")
    assert entry["payload"] == {"n": 2, "idempotency_key": "key-00000001"}
    assert entry["retry_count"] == 0
    assert entry["next_attempt_at"] is None

    assert [e["idempotency_key"] for e in buf.list_entries()] == ["key-00000001"]
    assert buf.delete("key-00000001") is True
    assert buf.delete("key-00000001") is False
    assert buf.expedite("key-00000001") is False
