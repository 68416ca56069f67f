from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
import weakref
from collections import OrderedDict, deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Deque, Dict, Iterator, List, Optional, Sequence, Tuple
from uuid import uuid4

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
NOTE_EXTENSIONS: Tuple[str, ...] = (".md", ".txt")
WRITE_MODES = ("overwrite", "append")
APPEND_SEPARATOR = "\n\n"
MAX_FILENAME_LENGTH = 255
CREATED_INDEX_NAME = ".created.jsonl"

# Unicode word characters, spaces, dots and dashes; no leading dot or space.
_FILENAME_PATTERN = re.compile(r"^\w[\w .\-]*$")

logger = logging.getLogger("notes_agent.storage")


class NoteStoreError(RuntimeError):
    """Base class for note store failures that map onto client errors."""


class NoteNotFoundError(NoteStoreError):
    """Raised when a note does not exist on disk."""


class InvalidNoteError(NoteStoreError):
    """Raised for filenames or write modes the store refuses to handle."""


def _format_timestamp(value: float) -> str:
    return datetime.fromtimestamp(value, tz=timezone.utc).strftime(ISO_FORMAT)


def is_note_filename(filename: str) -> bool:
    return filename.endswith(NOTE_EXTENSIONS)


def display_name(filename: str) -> str:
    for extension in NOTE_EXTENSIONS:
        if filename.endswith(extension):
            return filename[: -len(extension)]
    return filename


def validate_filename(filename: str) -> str:
    """
    Check a client supplied filename before it is turned into a path.

    Only flat names made of letters, digits, underscores, spaces, dots and
    dashes are accepted, and they must carry a note extension.
    """
    if not filename or len(filename) > MAX_FILENAME_LENGTH:
        raise InvalidNoteError("Filename must be between 1 and 255 characters.")
    if "\x00" in filename or "/" in filename or "\\" in filename or ".." in filename:
        raise InvalidNoteError(f"Invalid filename: {filename!r}")
    if not _FILENAME_PATTERN.match(filename):
        raise InvalidNoteError(f"Invalid filename: {filename!r}")
    if not is_note_filename(filename):
        raise InvalidNoteError("Notes must use a .md or .txt extension.")
    return filename


def is_addressable(filename: str) -> bool:
    try:
        validate_filename(filename)
    except InvalidNoteError:
        return False
    return True


def _read_note_text(path: Path) -> str:
    # newline="" keeps \r\n and \r exactly as stored.
    with path.open("r", encoding="utf-8", errors="replace", newline="") as handle:
        return handle.read()


def _append_jsonl(path: Path, payload: Dict) -> None:
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload))
        handle.write("\n")


@dataclass
class NoteSummary:
    filename: str
    name: str
    preview: str
    size: int
    created: str
    created_ts: float

    def to_dict(self) -> Dict:
        payload = asdict(self)
        payload.pop("created_ts")
        return payload


@dataclass
class SearchHit:
    file: str
    line: int
    content: str

    def to_dict(self) -> Dict:
        return asdict(self)


class CreatedIndex:
    """
    Append-only record of when each note was first written.

    Notes are replaced through a new file on every write, so the filesystem
    birth time only reflects the latest write. When the file grows beyond
    ``max_lines`` it is deduplicated and atomically rewritten.
    """

    def __init__(self, path: Path, max_lines: int = 4096) -> None:
        self.path = path
        self.max_lines = max_lines
        self._lock = threading.Lock()
        self._created: Dict[str, float] = {}
        self._line_count = 0
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                self._line_count += 1
                try:
                    entry = json.loads(line)
                except ValueError:
                    logger.warning("Skipping corrupt line in %s", self.path)
                    continue
                filename = entry.get("filename") if isinstance(entry, dict) else None
                if not filename:
                    continue
                if entry.get("created") is None:
                    self._created.pop(filename, None)
                else:
                    self._created[filename] = float(entry["created"])

    def get(self, filename: str) -> Optional[float]:
        with self._lock:
            return self._created.get(filename)

    def record(self, filename: str, created: float) -> None:
        with self._lock:
            self._created[filename] = created
            self._append({"filename": filename, "created": created})

    def discard(self, filename: str) -> None:
        with self._lock:
            if self._created.pop(filename, None) is not None:
                self._append({"filename": filename, "created": None})

    def _append(self, payload: Dict) -> None:
        _append_jsonl(self.path, payload)
        self._line_count += 1
        if self._line_count > self.max_lines:
            self._prune()

    def _prune(self) -> None:
        tmp_path = self.path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            for filename, created in self._created.items():
                handle.write(json.dumps({"filename": filename, "created": created}))
                handle.write("\n")
        os.replace(tmp_path, self.path)
        self._line_count = len(self._created)


class NoteStore:
    """
    Flat directory of markdown/text notes keyed by filename.

    Writes go through a temporary file and ``os.replace`` so a note is always
    fully materialized. Read-modify-write sequences for the same filename are
    serialized with a per-filename lock.
    """

    def __init__(
        self,
        root: Path,
        preview_chars: int = 100,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.root = root
        self.preview_chars = preview_chars
        self.clock = clock
        self.root.mkdir(parents=True, exist_ok=True)
        self.created_index = CreatedIndex(self.root / CREATED_INDEX_NAME)
        # Entries vanish once no writer holds the lock any more.
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, filename: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(filename)
            if lock is None:
                lock = threading.Lock()
                self._locks[filename] = lock
            return lock

    def _note_path(self, filename: str) -> Path:
        validate_filename(filename)
        path = self.root / filename
        if path.resolve().parent != self.root.resolve():
            raise InvalidNoteError(f"Invalid filename: {filename!r}")
        return path

    def _iter_note_files(self) -> Iterator[Path]:
        for path in sorted(self.root.iterdir()):
            if not (path.is_file() and is_note_filename(path.name)):
                continue
            if not is_addressable(path.name):
                logger.debug("Skipping %s: name cannot be used through the API", path.name)
                continue
            yield path

    def _created_at(self, path: Path, stat: os.stat_result) -> float:
        recorded = self.created_index.get(path.name)
        if recorded is not None:
            return recorded
        # Files dropped into the directory by hand: birth time where the
        # platform has one, otherwise the last status change.
        return getattr(stat, "st_birthtime", None) or stat.st_ctime

    def count(self) -> int:
        return sum(1 for _ in self._iter_note_files())

    def list(self) -> List[NoteSummary]:
        items: List[NoteSummary] = []
        for path in self._iter_note_files():
            try:
                stat = path.stat()
                content = _read_note_text(path)
            except FileNotFoundError:
                # Deleted between the directory listing and the read.
                continue
            created = self._created_at(path, stat)
            items.append(
                NoteSummary(
                    filename=path.name,
                    name=display_name(path.name),
                    preview=content[: self.preview_chars],
                    size=stat.st_size,
                    created=_format_timestamp(created),
                    created_ts=created,
                )
            )
        items.sort(key=lambda item: item.filename)
        items.sort(key=lambda item: item.created_ts, reverse=True)
        logger.debug("Listed %d notes in %s", len(items), self.root)
        return items

    def read(self, filename: str) -> str:
        path = self._note_path(filename)
        try:
            return _read_note_text(path)
        except (FileNotFoundError, IsADirectoryError) as exc:
            raise NoteNotFoundError(f"Note not found: {filename}") from exc

    def write(self, filename: str, content: str, mode: str = "overwrite") -> str:
        if mode not in WRITE_MODES:
            raise InvalidNoteError(f"Unknown write mode {mode!r}; use overwrite or append.")
        path = self._note_path(filename)
        with self._lock_for(filename):
            try:
                stat: Optional[os.stat_result] = path.stat()
            except FileNotFoundError:
                stat = None
            final_content = content
            if mode == "append" and stat is not None:
                final_content = _read_note_text(path) + APPEND_SEPARATOR + content
            if self.created_index.get(filename) is None:
                created = self._created_at(path, stat) if stat is not None else self.clock()
                self.created_index.record(filename, created)
            self._replace(path, final_content)
        logger.info("Wrote note %s (mode=%s bytes=%d)", filename, mode, len(final_content.encode("utf-8")))
        return "Note updated" if mode == "append" else "Note created"

    def _replace(self, path: Path, content: str) -> None:
        tmp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        try:
            with tmp_path.open("w", encoding="utf-8", newline="") as handle:
                handle.write(content)
            os.replace(tmp_path, path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    def delete(self, filename: str) -> None:
        path = self._note_path(filename)
        with self._lock_for(filename):
            try:
                path.unlink()
            except FileNotFoundError as exc:
                raise NoteNotFoundError(f"Note not found: {filename}") from exc
            self.created_index.discard(filename)
        logger.info("Deleted note %s", filename)

    def search(self, query: str) -> List[SearchHit]:
        needle = (query or "").lower()
        hits: List[SearchHit] = []
        scanned = 0
        for path in self._iter_note_files():
            try:
                content = _read_note_text(path)
            except FileNotFoundError:
                continue
            scanned += 1
            for index, line in enumerate(content.split("\n")):
                if needle in line.lower():
                    hits.append(SearchHit(file=path.name, line=index + 1, content=line.strip()))
        logger.debug("Search %r scanned %d notes, %d hits", query, scanned, len(hits))
        return hits


class ConversationHistory:
    """
    Bounded in-memory chat history keyed by a caller supplied conversation id.

    Each conversation keeps at most ``max_turns`` messages and only the
    ``max_conversations`` most recently used conversations are retained.
    """

    def __init__(self, max_turns: int = 20, max_conversations: int = 64) -> None:
        self.max_turns = max_turns
        self.max_conversations = max_conversations
        self._conversations: "OrderedDict[str, Deque[Dict[str, str]]]" = OrderedDict()
        self._lock = threading.Lock()

    def messages(self, conversation_id: Optional[str]) -> List[Dict[str, str]]:
        if not conversation_id:
            return []
        with self._lock:
            turns = self._conversations.get(conversation_id)
            if turns is None:
                return []
            self._conversations.move_to_end(conversation_id)
            messages = [dict(turn) for turn in turns]
        # The upstream API expects the first message to come from the user.
        while messages and messages[0]["role"] != "user":
            messages.pop(0)
        return messages

    def record(self, conversation_id: str, turns: Sequence[Tuple[str, str]]) -> None:
        with self._lock:
            history = self._conversations.get(conversation_id)
            if history is None:
                history = deque(maxlen=self.max_turns)
                self._conversations[conversation_id] = history
            self._conversations.move_to_end(conversation_id)
            for role, text in turns:
                history.append({"role": role, "content": text})
            while len(self._conversations) > self.max_conversations:
                evicted, _ = self._conversations.popitem(last=False)
                logger.debug("Evicted conversation %s from history", evicted)

    def __len__(self) -> int:
        with self._lock:
            return len(self._conversations)
