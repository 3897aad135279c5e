import json
import os
from pathlib import Path
from typing import Any, Dict


DEFAULT_SETTINGS: Dict[str, Any] = {
    "system_prompt": (
        "You are an assistant that proposes concrete, 3-5 actionable tasks. "
        "Use user tasks if provided to avoid duplicates, reference exact task text when relevant. "
        "Prefer short imperative sentences."
    ),
    "stream_system_prompt": (
        "You suggest concrete, deduplicated next actions based on current tasks when provided."
    ),
    "completion": {
        "base_url": "http://localhost:11434",
        "model": "llama3.1",
        "timeout": None,
    },
    "max_context_tasks": 20,
    "stream_buffer": 64,
}

# Environment variable -> (section, key) overrides applied at read time.
ENV_OVERRIDES = {
    "OLLAMA_BASE_URL": ("completion", "base_url"),
    "MODEL_NAME": ("completion", "model"),
}


class SettingsManager:
    """
    Handles loading and persisting the editable configuration file.

    The file is stored as pretty-printed JSON so contributors can edit it by hand.
    Environment overrides are layered on top when reading and never written back.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._settings: Dict[str, Any] | None = None
        self.path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def settings(self) -> Dict[str, Any]:
        if self._settings is None:
            self._settings = self._load_from_disk()
        return _apply_env_overrides(self._settings)

    @property
    def completion(self) -> Dict[str, Any]:
        return self.settings["completion"]

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

    def save(self, payload: Dict[str, Any]) -> None:
        if self._settings is None:
            self._settings = self._load_from_disk()
        config = json.loads(json.dumps(self._settings))
        _deep_update(config, payload)
        self._write(config)
        self._settings = config

    def reload(self) -> Dict[str, Any]:
        self._settings = self._load_from_disk()
        return self.settings

    def _write(self, data: Dict[str, Any]) -> None:
        # Persist as stable, human-readable JSON.
        with self.path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, sort_keys=True)
            handle.write("\n")


def _apply_env_overrides(settings: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(settings))
    for variable, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(variable)
        if value:
            merged.setdefault(section, {})[key] = value
    return merged


def _deep_update(target: Dict[str, Any], source: Dict[str, Any]) -> None:
    """
    Recursively update a mapping, preserving nested structures.
    """
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_update(target[key], value)
        else:
            target[key] = value
