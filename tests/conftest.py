"""Shared fixtures: in-memory store, fake upstream session, test app."""
from __future__ import annotations

import json

import pytest
import requests
from fastapi.testclient import TestClient

from marketing_gateway.jobs import JobService
from marketing_gateway.main import create_app
from marketing_gateway.settings import Settings
from marketing_gateway.storage import JobStore
from marketing_gateway.workflow_adapter import WorkflowClient

USER = "ana@example.com"
OTHER_USER = "bo@example.com"
AUTH = {"X-Auth-Request-Email": USER, "X-Auth-Request-User": "Ana"}
OTHER_AUTH = {"X-Auth-Request-Email": OTHER_USER}

_NO_JSON = object()


class FakeResponse:
    encoding = "utf-8"

    def __init__(self, status_code=200, json_body=_NO_JSON, text=""):
        self.status_code = status_code
        self._json = json_body
        self.text = text if json_body is _NO_JSON else json.dumps(json_body)
        self.closed = False

    def json(self):
        if self._json is _NO_JSON:
            raise ValueError("No JSON object could be decoded")
        return self._json

    def iter_content(self, chunk_size=1):
        content = self.text.encode(self.encoding)
        for i in range(0, len(content), chunk_size):
            yield content[i:i + chunk_size]

    def close(self):
        self.closed = True


class FakeSession:
    """Stands in for requests.Session; replays scripted replies in order.

    A reply may be a FakeResponse, an exception instance (raised), or a
    callable ``(url, body) -> reply`` evaluated at call time. The last
    reply repeats once the script runs out.
    """

    def __init__(self, *replies):
        self.replies = list(replies) or [FakeResponse(200, {})]
        self.calls = []
        self.headers = {}

    def post(self, url, json=None, headers=None, timeout=None, stream=False):
        self.calls.append({"url": url, "json": json, "headers": headers or {}, "timeout": timeout, "stream": stream})
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if callable(reply) and not isinstance(reply, FakeResponse):
            reply = reply(url, json)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    def script(self, *replies):
        self.replies = list(replies)


def workflow_reply(outputs=None, run_id="run-1", status="succeeded", error=None, status_code=200):
    data = {"status": status, "error": error}
    if outputs is not None:
        data["outputs"] = outputs
    return FakeResponse(status_code, {"workflow_run_id": run_id, "task_id": "t-1", "data": data})


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        WORKFLOW_API_URL="https://workflows.test/v1/workflows/run",
        WORKFLOW_API_KEY="wf-key",
        AUTOMATION_WEBHOOK_URL="https://automation.test/webhook/audience",
        AUTOMATION_API_KEY="auto-key",
        ASSISTANT_WEBHOOK_URL="https://automation.test/webhook/assistant",
        UPSTREAM_TIMEOUT_SECONDS=300,
        CORS_ORIGINS="http://localhost:3100",
    )


@pytest.fixture
def store(settings):
    return JobStore(settings.DATABASE_URL)


@pytest.fixture
def upstream():
    return FakeSession(workflow_reply({"headline": "ok"}))


@pytest.fixture
def wf_client(settings, upstream):
    return WorkflowClient(settings, session=upstream)


@pytest.fixture
def service(store, wf_client, settings):
    return JobService(store, wf_client, settings)


@pytest.fixture
def app(settings, store, wf_client):
    return create_app(settings, store=store, client=wf_client)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def timeout_error():
    return requests.ReadTimeout("Read timed out. (read timeout=300)")
