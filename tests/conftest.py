import asyncio
import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlencode, urlparse

import pytest
import requests

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Importing notes_agent.main builds a module level app; keep its data out of the checkout.
os.environ.setdefault("NOTES_AGENT_DATA", tempfile.mkdtemp(prefix="notes-agent-"))

from notes_agent.main import create_app  # noqa: E402


class InlineClient(requests.Session):
    """
    requests.Session that hands every request straight to an ASGI app.
    """

    def __init__(self, app: Any, base_url: str = "http://testserver") -> None:
        super().__init__()
        self.app = app
        self.base_url = base_url

    def request(self, method, url, params=None, data=None, headers=None, json=None, **kwargs):  # type: ignore[override]
        parsed = urlparse(url)
        path = parsed.path or "/"
        query = parsed.query
        if params:
            extra = urlencode(params, doseq=True)
            query = f"{query}&{extra}" if query else extra
        raw_headers = [(b"accept", b"*/*")]
        body = data or b""
        if json is not None:
            body = _json_dumps(json)
            raw_headers.append((b"content-type", b"application/json"))
        if isinstance(body, str):
            body = body.encode("utf-8")
        for key, value in (headers or {}).items():
            raw_headers.append((key.lower().encode("latin-1"), str(value).encode("latin-1")))
        raw_headers.append((b"content-length", str(len(body)).encode("latin-1")))
        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": method.upper(),
            "scheme": parsed.scheme or "http",
            "path": unquote(path),
            "raw_path": path.encode("utf-8"),
            "root_path": "",
            "query_string": query.encode("utf-8"),
            "headers": raw_headers,
            "server": (parsed.hostname or "testserver", parsed.port or 80),
            "client": ("testclient", 50000),
        }
        request_messages = [
            {
                "type": "http.request",
                "body": body,
                "more_body": False,
            }
        ]

        response_done = asyncio.Event()

        async def receive() -> dict:
            if request_messages:
                return request_messages.pop(0)
            # Like a real server, only report a disconnect once the response is complete.
            await response_done.wait()
            return {"type": "http.disconnect"}

        collected: List[dict] = []

        async def send(message: dict) -> None:
            collected.append(message)
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                response_done.set()

        asyncio.run(self.app(scope, receive, send))

        status = 500
        response_headers = requests.structures.CaseInsensitiveDict()
        chunks: List[bytes] = []
        for message in collected:
            if message["type"] == "http.response.start":
                status = message["status"]
                for header_key, header_value in message.get("headers", []):
                    response_headers[header_key.decode("latin-1")] = header_value.decode("latin-1")
            elif message["type"] == "http.response.body":
                chunks.append(message.get("body", b""))
        response = requests.Response()
        response.status_code = status
        response._content = b"".join(chunks)
        response.url = url
        response.headers = response_headers
        response.encoding = "utf-8"
        return response


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload)


class FakeUpstreamResponse:
    def __init__(self, status_code: int, body: Any) -> None:
        self.status_code = status_code
        self._body = body
        self.text = body if isinstance(body, str) else json.dumps(body)

    def json(self) -> Any:
        if isinstance(self._body, str):
            raise ValueError("not JSON")
        return self._body


class FakeUpstream:
    """
    Stand-in for requests.post that replays queued replies and records calls.
    """

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.replies: List[Any] = []

    def reply_text(self, text: str) -> None:
        self.replies.append(
            FakeUpstreamResponse(
                200,
                {
                    "id": "msg_test",
                    "type": "message",
                    "role": "assistant",
                    "content": [{"type": "text", "text": text}],
                    "stop_reason": "end_turn",
                },
            )
        )

    def reply(self, status_code: int, body: Any) -> None:
        self.replies.append(FakeUpstreamResponse(status_code, body))

    def fail(self, exc: Exception) -> None:
        self.replies.append(exc)

    def __call__(self, url: str, headers: Optional[Dict[str, str]] = None, data: str = "", timeout: Any = None):
        self.calls.append(
            {
                "url": url,
                "headers": dict(headers or {}),
                "payload": json.loads(data) if data else None,
                "timeout": timeout,
            }
        )
        if not self.replies:
            raise AssertionError("Unexpected upstream call")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "data"


@pytest.fixture
def upstream(monkeypatch: pytest.MonkeyPatch) -> FakeUpstream:
    fake = FakeUpstream()
    monkeypatch.setattr("notes_agent.llm.requests.post", fake)
    return fake


@pytest.fixture
def app(data_dir: Path):
    return create_app(data_dir)


@pytest.fixture
def http_session(app) -> Tuple[requests.Session, str]:
    client = InlineClient(app)
    try:
        yield client, client.base_url
    finally:
        client.close()


@pytest.fixture
def inline_client():
    clients: List[InlineClient] = []

    def factory(asgi_app: Any) -> InlineClient:
        client = InlineClient(asgi_app)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()
