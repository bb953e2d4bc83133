import json

import pytest
import requests


def sse(*payloads, done=True):
    """Encode payloads as an event stream body."""
    records = []
    for p in payloads:
        body = p if isinstance(p, str) else json.dumps(p, ensure_ascii=False)
        records.append(f"data: {body}\n\n")
    if done:
        records.append("data: [DONE]\n\n")
    return "".join(records).encode("utf-8")


def delta(text):
    return {"choices": [{"index": 0, "delta": {"content": text}}]}


class FakeResponse:
    def __init__(self, chunks=(), status_code=200, body=None, reason="OK"):
        self.chunks = list(chunks)
        self.status_code = status_code
        self.body = body
        self.reason = reason
        self.closed = False

    @property
    def text(self):
        return self.body if isinstance(self.body, str) else json.dumps(self.body or "")

    def json(self):
        if isinstance(self.body, str):
            return json.loads(self.body)
        return self.body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error: {self.reason}", response=self)

    def iter_content(self, chunk_size=None):
        yield from self.chunks

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.calls = []
        self.headers = {}
        self.closed = False

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return self.response

    def close(self):
        self.closed = True


@pytest.fixture
def fake_session():
    def make(chunks=(), **kwargs):
        return FakeSession(FakeResponse(chunks, **kwargs))

    return make
