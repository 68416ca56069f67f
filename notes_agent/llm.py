from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import requests

DIRECTIVE_SENTINEL = "WRITE_NOTE"
DIRECTIVE_DELIMITER = "|"
ENERGY_LEVELS = ("low", "medium", "high")

logger = logging.getLogger("notes_agent.llm")


class UpstreamError(RuntimeError):
    """Raised when the upstream API cannot be reached or answers with something other than JSON."""


@dataclass
class UpstreamReply:
    status_code: int
    payload: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def text(self) -> str:
        return extract_reply_text(self.payload)


@dataclass
class NoteDirective:
    filename: str
    content: str


class ChatClient:
    """
    Minimal HTTP client for the Anthropic Messages endpoint.

    The caller supplies the API key on every call; the client never stores it.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        max_tokens: int = 1000,
        api_version: str = "2023-06-01",
        timeout: Optional[float] = 120,
    ) -> None:
        self.base_url = base_url
        self.model = model
        self.max_tokens = max_tokens
        self.api_version = api_version
        self.timeout = timeout

    @classmethod
    def from_settings(cls, upstream: Dict[str, Any]) -> "ChatClient":
        return cls(
            base_url=upstream["base_url"],
            model=upstream["model"],
            max_tokens=int(upstream.get("max_tokens") or 1000),
            api_version=upstream.get("api_version") or "2023-06-01",
            timeout=upstream.get("timeout"),
        )

    def chat(
        self,
        message: str,
        api_key: str,
        history: Sequence[Dict[str, str]] = (),
        system: Optional[str] = None,
    ) -> UpstreamReply:
        messages: List[Dict[str, str]] = [dict(turn) for turn in history]
        messages.append({"role": "user", "content": message})
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": messages,
        }
        if system:
            payload["system"] = system

        headers = {
            "Content-Type": "application/json",
            "x-api-key": api_key or "",
            "anthropic-version": self.api_version,
        }

        try:
            response = requests.post(
                self.base_url,
                headers=headers,
                data=json.dumps(payload),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Upstream request to %s failed: %s", self.base_url, exc)
            raise UpstreamError(f"Upstream request failed: {exc}") from exc
        try:
            body = response.json()
        except ValueError as exc:
            logger.warning(
                "Upstream returned non-JSON body (status=%s)", response.status_code
            )
            raise UpstreamError(
                f"Upstream returned {response.status_code} with a non-JSON body."
            ) from exc
        if response.status_code >= 400:
            logger.warning("Upstream returned %s for model %s", response.status_code, self.model)
        else:
            logger.debug(
                "Upstream replied %s (messages=%d)", response.status_code, len(messages)
            )
        return UpstreamReply(status_code=response.status_code, payload=body)

    def complete_text(self, message: str, api_key: str, system: Optional[str] = None) -> str:
        """
        Single-turn call that insists on a successful reply carrying text.
        """
        reply = self.chat(message, api_key, system=system)
        if not reply.ok:
            raise UpstreamError(_upstream_error_message(reply))
        text = reply.text
        if not text:
            raise UpstreamError("Upstream reply contained no text.")
        return text


def _upstream_error_message(reply: UpstreamReply) -> str:
    payload = reply.payload if isinstance(reply.payload, dict) else {}
    error = payload.get("error")
    if isinstance(error, dict) and error.get("message"):
        return f"Upstream returned {reply.status_code}: {error['message']}"
    return f"Upstream returned {reply.status_code}."


def extract_reply_text(payload: Any) -> str:
    """
    Join the text blocks of a Messages API response into one string.
    """
    if not isinstance(payload, dict):
        return ""
    content = payload.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    segments: List[str] = []
    for block in content:
        if isinstance(block, dict) and block.get("type", "text") == "text":
            text = block.get("text")
            if isinstance(text, str):
                segments.append(text)
    return "".join(segments)


def parse_directive(reply: str) -> Optional[NoteDirective]:
    """
    Recognise ``WRITE_NOTE|filename|content`` replies.

    Only the first delimiter after the sentinel separates the filename; the
    rest of the reply is the note content, delimiters included.
    """
    if not reply:
        return None
    text = reply.lstrip()
    prefix = DIRECTIVE_SENTINEL + DIRECTIVE_DELIMITER
    if not text.startswith(prefix):
        return None
    remainder = text[len(prefix) :]
    filename, delimiter, content = remainder.partition(DIRECTIVE_DELIMITER)
    filename = filename.strip()
    if not delimiter or not filename:
        return None
    return NoteDirective(filename=filename, content=content)


def build_plan_prompt(dump: str, available_minutes: int, energy: str) -> str:
    return (
        "Here is everything on my mind right now:\n"
        f"{dump.strip()}\n\n"
        f"I have {available_minutes} minutes and my energy is {energy}. "
        "Turn this into a short, realistic plan: pick what fits in the time, "
        "order it to suit my energy, give each item a time box in minutes, "
        "and list anything that should wait under 'Later'."
    )


PLAN_SYSTEM_PROMPT = "You are a calm, practical planning assistant. Answer in markdown."

EXTRACT_SYSTEM_PROMPT = (
    "You turn instructions into notes. Reply with a single directive starting with "
    f"{DIRECTIVE_SENTINEL}{DIRECTIVE_DELIMITER}filename.md{DIRECTIVE_DELIMITER} "
    "followed by the note content, and nothing else."
)


def build_extract_prompt(instruction: str) -> str:
    return (
        f"Instruction: {instruction.strip()}\n\n"
        "Respond with: "
        f"{DIRECTIVE_SENTINEL}{DIRECTIVE_DELIMITER}filename.md{DIRECTIVE_DELIMITER}content"
    )
