from types import SimpleNamespace

import pytest
from requests.structures import CaseInsensitiveDict

from azRest.client import http_client


class FakeHTTPResponse:
    """Stands in for a streamed requests.Response"""

    def __init__(self, status_code=200, body=b'', headers=None, reason='OK'):
        self.status_code = status_code
        self.reason = reason
        self.headers = CaseInsensitiveDict(headers or {})
        self._body = body
        self.closed = False

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self._body), chunk_size):
            yield self._body[i:i + chunk_size]

    def close(self):
        self.closed = True


class FakeSession:
    """Replays queued responses/exceptions; the last item repeats forever"""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.verify = True
        self.max_redirects = 30

    def request(self, method, url, **kwargs):
        self.calls.append(SimpleNamespace(method=method, url=url, **kwargs))
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if callable(item) and not isinstance(item, FakeHTTPResponse):
            item = item(method, url, kwargs)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def make_response():
    return FakeHTTPResponse


@pytest.fixture
def make_session():
    return FakeSession


@pytest.fixture(autouse=True)
def backoff_delays(monkeypatch):
    """Record retry backoff delays instead of sleeping"""
    delays = []

    def fake_wait(delay, cancel_event):
        delays.append(delay)

    monkeypatch.setattr(http_client, '_wait_for_backoff', fake_wait)
    return delays
