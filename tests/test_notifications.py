"""
test_notifications.py
=====================
Pushover pushes to doctors, the change feed and presence connections.
"""

import requests

from medisync import notifications
from medisync.notifications import ChangeFeed, PresenceConnection, send_pushover


class FakeResponse:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text


# --------------------------------------------------------------------------
# PUSHOVER
# --------------------------------------------------------------------------

def test_pushover_posts_message(monkeypatch):
    calls = []

    def fake_post(url, data=None, timeout=None):
        calls.append((url, data, timeout))
        return FakeResponse(200)

    monkeypatch.setattr(notifications.requests, "post", fake_post)
    send_pushover("app-token", "user-key", title="New Patient Assigned", message="Pat is waiting for you")

    assert len(calls) == 1
    url, data, timeout = calls[0]
    assert url == "https://api.pushover.net/1/messages.json"
    assert data == {"token": "app-token", "user": "user-key",
                    "title": "New Patient Assigned", "message": "Pat is waiting for you"}
    assert timeout == 5


def test_pushover_skipped_without_token_or_user(monkeypatch):
    calls = []
    monkeypatch.setattr(notifications.requests, "post", lambda *a, **kw: calls.append(1))

    send_pushover("", "user-key", title="t", message="m")
    send_pushover("app-token", None, title="t", message="m")
    assert calls == []


def test_pushover_errors_are_logged_not_raised(monkeypatch, caplog):
    monkeypatch.setattr(notifications.requests, "post", lambda *a, **kw: FakeResponse(400, "invalid user"))
    send_pushover("app-token", "user-key", title="t", message="m")
    assert "invalid user" in caplog.text

    def unreachable(*args, **kwargs):
        raise requests.ConnectionError("no route to host")

    monkeypatch.setattr(notifications.requests, "post", unreachable)
    send_pushover("app-token", "user-key", title="t", message="m")
    assert "no route to host" in caplog.text


# --------------------------------------------------------------------------
# CHANGE FEED / PRESENCE
# --------------------------------------------------------------------------

def test_feed_exact_and_prefix_subscriptions():
    feed = ChangeFeed()
    exact, nested = [], []
    feed.subscribe("sessions/s1", lambda key, value: exact.append(key))
    unsubscribe = feed.subscribe("sessions/s1", lambda key, value: nested.append(key), prefix=True)

    feed.publish("sessions/s1", {})
    feed.publish("sessions/s1/chat", [])
    feed.publish("sessions/s10", {})
    assert exact == ["sessions/s1"]
    assert nested == ["sessions/s1", "sessions/s1/chat"]

    unsubscribe()
    feed.publish("sessions/s1/chat", [])
    assert nested == ["sessions/s1", "sessions/s1/chat"]


def test_failing_subscriber_does_not_block_others():
    feed = ChangeFeed()
    seen = []

    def broken(key, value):
        raise RuntimeError("boom")

    feed.subscribe("doctors/d1", broken)
    feed.subscribe("doctors/d1", lambda key, value: seen.append(value))
    feed.publish("doctors/d1", "record")
    assert seen == ["record"]


def test_presence_drop_runs_fallbacks_once():
    connection = PresenceConnection("d1")
    ran = []
    connection.on_disconnect(lambda: ran.append("first"))
    connection.on_disconnect(lambda: ran.append("second"))

    connection.drop()
    connection.drop()
    assert ran == ["first", "second"]
    assert connection.connected is False


def test_presence_close_discards_fallbacks():
    connection = PresenceConnection("d1")
    ran = []
    connection.on_disconnect(lambda: ran.append(1))
    connection.close()
    connection.drop()
    assert ran == []
