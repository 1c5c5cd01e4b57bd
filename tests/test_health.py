import requests

from nextcloud_updates.utils import health


class FakeResponse:
    def __init__(self, payload=None, status=200, invalid=False):
        self.payload = payload
        self.status = status
        self.invalid = invalid

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        if self.invalid:
            raise ValueError("not json")
        return self.payload


def test_status_reply_is_returned(monkeypatch):
    payload = {"installed": True, "maintenance": False, "needsDbUpgrade": False, "versionstring": "29.0.4"}
    seen = {}

    def fake_get(url, timeout, verify):
        seen.update(url=url, verify=verify)
        return FakeResponse(payload)

    monkeypatch.setattr(health.requests, "get", fake_get)
    assert health.check_status_endpoint("https://localhost/status.php") == payload
    assert seen == {"url": "https://localhost/status.php", "verify": False}


def test_unreachable_endpoint(monkeypatch):
    def fake_get(url, timeout, verify):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(health.requests, "get", fake_get)
    assert health.check_status_endpoint("http://localhost/status.php") is None


def test_error_status_and_bad_json(monkeypatch):
    monkeypatch.setattr(health.requests, "get", lambda url, timeout, verify: FakeResponse(status=503))
    assert health.check_status_endpoint("http://localhost/status.php") is None

    monkeypatch.setattr(health.requests, "get", lambda url, timeout, verify: FakeResponse(invalid=True))
    assert health.check_status_endpoint("http://localhost/status.php") is None
