import json
import os
from pathlib import Path
from typing import Any, Dict


DEFAULT_SETTINGS: Dict[str, Any] = {
    "notes_dir": "notes",
    "public_dir": "public",
    "preview_chars": 100,
    "upstream": {
        "base_url": "https://api.anthropic.com/v1/messages",
        "model": "claude-sonnet-4-20250514",
        "max_tokens": 1000,
        "api_version": "2023-06-01",
        "timeout": 120,
    },
    "history": {
        "max_turns": 20,
        "max_conversations": 64,
    },
}


def data_dir_from_env() -> Path:
    return Path(os.environ.get("NOTES_AGENT_DATA", "data"))


class SettingsManager:
    """
    Loads the editable configuration file, writing the defaults on first use.

    The file is stored as pretty-printed JSON so it can be edited by hand.
    Relative directories in it are resolved against the data directory that
    holds the file.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._settings: Dict[str, Any] | None = None
        self.path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def settings(self) -> Dict[str, Any]:
        if self._settings is None:
            self._settings = self._load_from_disk()
        return self._settings

    @property
    def base_dir(self) -> Path:
        return self.path.parent

    def resolve_dir(self, key: str) -> Path:
        configured = Path(self.settings.get(key) or DEFAULT_SETTINGS[key])
        if configured.is_absolute():
            return configured
        return self.base_dir / configured

    @property
    def notes_dir(self) -> Path:
        return self.resolve_dir("notes_dir")

    @property
    def public_dir(self) -> Path:
        return self.resolve_dir("public_dir")

    @property
    def upstream(self) -> Dict[str, Any]:
        return self.settings["upstream"]

    @property
    def history(self) -> Dict[str, Any]:
        return self.settings["history"]

    def _load_from_disk(self) -> Dict[str, Any]:
        if not self.path.exists():
            self._write(DEFAULT_SETTINGS)
            return json.loads(json.dumps(DEFAULT_SETTINGS))
        with self.path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        # Merge with defaults to backfill new keys without overwriting manual edits.
        merged = json.loads(json.dumps(DEFAULT_SETTINGS))
        _deep_update(merged, data)
        return merged

    def _write(self, data: Dict[str, Any]) -> None:
        with self.path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, sort_keys=True)
            handle.write("\n")


def _deep_update(target: Dict[str, Any], source: Dict[str, Any]) -> None:
    """
    Recursively update a mapping, preserving nested structures.
    """
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_update(target[key], value)
        else:
            target[key] = value
