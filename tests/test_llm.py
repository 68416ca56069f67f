import pytest
import requests

from notes_agent.llm import (
    ChatClient,
    NoteDirective,
    UpstreamError,
    extract_reply_text,
    parse_directive,
)
from notes_agent.settings import DEFAULT_SETTINGS


def _client() -> ChatClient:
    return ChatClient.from_settings(DEFAULT_SETTINGS["upstream"])


def test_parse_directive_basic() -> None:
    assert parse_directive("WRITE_NOTE|x.md|hello") == NoteDirective("x.md", "hello")


def test_parse_directive_keeps_delimiters_in_content() -> None:
    directive = parse_directive("WRITE_NOTE|table.md|| a | b |\n|---|---|")
    assert directive == NoteDirective("table.md", "| a | b |\n|---|---|")


def test_parse_directive_ignores_leading_whitespace() -> None:
    assert parse_directive("\n  WRITE_NOTE| todo.md |buy milk") == NoteDirective("todo.md", "buy milk")


@pytest.mark.parametrize(
    "reply",
    [
        "",
        "Sure, I saved it. WRITE_NOTE|x.md|hello",
        "WRITE_NOTE|missing-content.md",
        "WRITE_NOTE||content without a name",
        "write_note|x.md|lowercase sentinel",
        "WRITE_NOTE x.md hello",
    ],
)
def test_parse_directive_rejects_non_directives(reply: str) -> None:
    assert parse_directive(reply) is None


def test_extract_reply_text_joins_text_blocks() -> None:
    payload = {
        "content": [
            {"type": "text", "text": "Hello "},
            {"type": "tool_use", "id": "t1", "name": "x", "input": {}},
            {"type": "text", "text": "world"},
        ]
    }
    assert extract_reply_text(payload) == "Hello world"


@pytest.mark.parametrize("payload", [None, [], {}, {"content": None}, {"type": "error", "error": {}}])
def test_extract_reply_text_without_text(payload) -> None:
    assert extract_reply_text(payload) == ""


def test_chat_sends_messages_request(upstream) -> None:
    upstream.reply_text("hi there")
    reply = _client().chat("hello", "sk-test")

    assert reply.ok
    assert reply.text == "hi there"
    [call] = upstream.calls
    assert call["url"] == "https://api.anthropic.com/v1/messages"
    assert call["headers"]["x-api-key"] == "sk-test"
    assert call["headers"]["anthropic-version"] == "2023-06-01"
    assert call["payload"] == {
        "model": "claude-sonnet-4-20250514",
        "max_tokens": 1000,
        "messages": [{"role": "user", "content": "hello"}],
    }
    assert call["timeout"] == 120


def test_chat_prepends_history_and_system(upstream) -> None:
    upstream.reply_text("again")
    history = [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "reply"},
    ]
    _client().chat("second", "sk", history=history, system="Be brief.")
    payload = upstream.calls[0]["payload"]
    assert payload["system"] == "Be brief."
    assert [message["content"] for message in payload["messages"]] == ["first", "reply", "second"]


def test_chat_passes_error_payload_through(upstream) -> None:
    error_body = {
        "type": "error",
        "error": {"type": "authentication_error", "message": "invalid x-api-key"},
    }
    upstream.reply(401, error_body)
    reply = _client().chat("hello", "bad-key")
    assert reply.status_code == 401
    assert reply.payload == error_body
    assert not reply.ok


def test_chat_network_failure_raises_upstream_error(upstream) -> None:
    upstream.fail(requests.ConnectionError("connection refused"))
    with pytest.raises(UpstreamError):
        _client().chat("hello", "sk")


def test_chat_non_json_body_raises_upstream_error(upstream) -> None:
    upstream.reply(502, "<html>Bad gateway</html>")
    with pytest.raises(UpstreamError):
        _client().chat("hello", "sk")


def test_complete_text_requires_success(upstream) -> None:
    upstream.reply(429, {"type": "error", "error": {"type": "rate_limit_error", "message": "slow down"}})
    with pytest.raises(UpstreamError, match="slow down"):
        _client().complete_text("plan", "sk")


def test_complete_text_requires_text(upstream) -> None:
    upstream.reply(200, {"content": []})
    with pytest.raises(UpstreamError):
        _client().complete_text("plan", "sk")
