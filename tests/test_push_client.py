import pytest
import requests

from notifications import push_client
from notifications.payloads import AutoFinished, RequestOffer
from notifications.push_client import PushClient


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


@pytest.fixture
def posts(monkeypatch):
    """
    Captures every requests.post call; responses use `posts.status`.
    """
    class Recorder:
        def __init__(self):
            self.status = 200
            self.calls = []

    recorder = Recorder()

    def fake_post(url, json=None, headers=None, timeout=None):
        recorder.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        return FakeResponse(recorder.status)

    monkeypatch.setattr(push_client.requests, "post", fake_post)
    return recorder


def test_notify_posts_tagged_payload(posts):
    client = PushClient(base_url="https://push.example.com/", api_key="secret", timeout=3)

    assert client.notify("client-1", "req-1", AutoFinished("req-1", "client_timeout"))

    call = posts.calls[0]
    assert call["url"] == "https://push.example.com/notify"
    assert call["headers"]["Authorization"] == "Bearer secret"
    assert call["timeout"] == 3
    assert call["json"] == {
        "user_id": "client-1",
        "request_id": "req-1",
        "payload": {"type": "auto_finished", "request_id": "req-1", "reason": "client_timeout"},
    }


def test_failures_are_swallowed(posts):
    posts.status = 503
    client = PushClient(base_url="https://push.example.com")

    assert client.notify("prv-1", "req-1", AutoFinished("req-1", "client_timeout")) is False


def test_connection_error_is_swallowed(monkeypatch):
    def refuse(*args, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(push_client.requests, "post", refuse)
    client = PushClient(base_url="https://push.example.com")

    assert client.notify("prv-1", "req-1", AutoFinished("req-1", "client_timeout")) is False


def test_broadcast_and_revoke(posts):
    client = PushClient(base_url="https://push.example.com")
    offer = RequestOffer("req-1", "tow", "Praca da Se, 1", 2.4, 3)

    assert client.broadcast_offer(["prv-1", "prv-2"], offer) == 2
    assert client.revoke_offer(["prv-1"], "req-1") == 1

    assert [call["json"]["payload"]["type"] for call in posts.calls] == ["request_offer", "request_offer", "offer_revoked"]
    assert posts.calls[2]["json"]["payload"]["reason"] == "taken"


def test_missing_url_is_a_configuration_error(monkeypatch):
    monkeypatch.setattr(push_client, "PUSH_GATEWAY_URL", None)
    with pytest.raises(ValueError):
        PushClient()
