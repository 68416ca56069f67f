"""
Python counterpart of the browser client.

It talks to the JSON API over HTTP, keeps the API key in a local JSON file
the way the browser keeps it in local storage, and turns ``WRITE_NOTE``
replies into append-mode note writes.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote
from uuid import uuid4

import requests

from .llm import extract_reply_text, parse_directive
from .storage import is_note_filename

NOTE_KEYWORDS = ("note", "write", "save", "record", "remember", "jot")
CHAT_FAILURE_MESSAGE = "Failed to get response. Check your API key."
EMPTY_REPLY_MESSAGE = "No response"

logger = logging.getLogger("notes_agent.client")


class MissingCredentialError(RuntimeError):
    """Raised when a chat message is sent before an API key was stored."""


@dataclass
class ChatTurn:
    role: str
    text: str


class CredentialStore:
    """
    Keeps the upstream API key in a small JSON file.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def get(self) -> str:
        if not self.path.exists():
            return ""
        with self.path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        return data.get("api_key") or ""

    def set(self, api_key: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as handle:
            json.dump({"api_key": api_key}, handle)
            handle.write("\n")

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


def mentions_notes(message: str) -> bool:
    lowered = message.lower()
    return any(keyword in lowered for keyword in NOTE_KEYWORDS)


def build_context_message(message: str, note_names: Sequence[str]) -> str:
    if not mentions_notes(message):
        return message
    names = ", ".join(note_names) or "none"
    return (
        f"Available notes: {names}.\n\n"
        f"User message: {message}\n\n"
        "If I ask you to write/save/record something, respond with: "
        "WRITE_NOTE|filename.md|content"
    )


def normalise_filename(filename: str) -> str:
    filename = filename.strip() or "untitled.md"
    if not is_note_filename(filename):
        filename += ".md"
    return filename


class NotesClient:
    def __init__(
        self,
        base_url: str,
        credentials: CredentialStore,
        session: Optional[requests.Session] = None,
        timeout: float = 130,
        conversation_id: Optional[str] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.session = session or requests.Session()
        self.timeout = timeout
        self.conversation_id = conversation_id or uuid4().hex
        self.transcript: List[ChatTurn] = []
        self.notes: List[Dict[str, Any]] = []

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _note_url(self, filename: str) -> str:
        return self._url(f"/api/notes/{quote(filename)}")

    def _json(self, response: requests.Response) -> Any:
        if response.status_code >= 400:
            try:
                message = response.json().get("error")
            except ValueError:
                message = None
            raise requests.HTTPError(
                message or f"{response.status_code} error for {response.url}",
                response=response,
            )
        return response.json()

    def list_notes(self) -> List[Dict[str, Any]]:
        response = self.session.get(self._url("/api/notes"), timeout=self.timeout)
        self.notes = self._json(response)
        return self.notes

    def read_note(self, filename: str) -> str:
        response = self.session.get(self._note_url(filename), timeout=self.timeout)
        return self._json(response)["content"]

    def save_note(self, filename: str, content: str, mode: str = "overwrite") -> str:
        filename = normalise_filename(filename)
        response = self.session.post(
            self._note_url(filename),
            json={"content": content, "mode": mode},
            timeout=self.timeout,
        )
        self._json(response)
        return filename

    def delete_note(self, filename: str) -> None:
        response = self.session.delete(self._note_url(filename), timeout=self.timeout)
        self._json(response)

    def search(self, query: str) -> List[Dict[str, Any]]:
        response = self.session.get(
            self._url("/api/search"), params={"q": query}, timeout=self.timeout
        )
        return self._json(response)

    def _add(self, role: str, text: str) -> ChatTurn:
        turn = ChatTurn(role=role, text=text)
        self.transcript.append(turn)
        return turn

    def send_message(self, message: str) -> Optional[ChatTurn]:
        """
        Send one chat message and return the turn that should be displayed.

        A ``WRITE_NOTE`` reply is saved with an append write and replaced by
        a confirmation. Any failure talking to the chat endpoint forgets the
        stored API key so it has to be entered again.
        """
        message = message.strip()
        if not message:
            return None
        api_key = self.credentials.get()
        if not api_key:
            raise MissingCredentialError("Enter an API key before chatting.")

        self._add("user", message)
        names = [note.get("name", "") for note in self.notes]
        payload = {
            "message": build_context_message(message, names),
            "apiKey": api_key,
            "conversation_id": self.conversation_id,
        }
        try:
            response = self.session.post(
                self._url("/api/chat"), json=payload, timeout=self.timeout
            )
            data = self._json(response)
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Chat request failed: %s", exc)
            self.credentials.clear()
            return self._add("system", CHAT_FAILURE_MESSAGE)

        reply = extract_reply_text(data) or EMPTY_REPLY_MESSAGE
        directive = parse_directive(reply)
        if directive is None:
            return self._add("assistant", reply)
        try:
            self.save_note(directive.filename, directive.content, mode="append")
        except requests.RequestException as exc:
            logger.warning("Saving %s from chat failed: %s", directive.filename, exc)
            return self._add("system", f"Failed to save {directive.filename}")
        self.list_notes()
        return self._add("system", f"✓ Saved to {normalise_filename(directive.filename)}")
