"""Per-user model configuration overrides."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Protocol

from toolchat.errors import ConfigError, StorageError
from toolchat.types.config import AIConfig

logger = logging.getLogger(__name__)

_AI_FIELDS = frozenset(f.name for f in fields(AIConfig))


class OverrideStore(Protocol):
    """Keyed by ``platform:user_id``."""

    def get_override(self, key: str) -> AIConfig | None:
        ...

    def set_override(self, key: str, config: AIConfig) -> None:
        ...

    def clear_override(self, key: str) -> None:
        ...


class JsonOverrideStore:
    """Overrides kept in memory and rewritten to one JSON file on every change.

    File layout::

        {"user_data": {"telegram:42": {"override_ai": {"model": "...", ...}}}}

    A write is committed to memory only after the file has been replaced, so
    a failed save leaves both unchanged.

    Raises:
        ConfigError: The existing file is unreadable or not in this layout.
        StorageError: A change could not be written.
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._lock = threading.Lock()
        self._data: dict[str, AIConfig] = {}
        if self._path.exists():
            self._load()

    def _load(self) -> None:
        try:
            text = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"cannot read override store {self._path}: {exc}") from exc
        if not text.strip():
            return
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"corrupt override store {self._path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"corrupt override store {self._path}: top level must be an object")
        user_data = raw.get("user_data") or {}
        if not isinstance(user_data, dict):
            raise ConfigError(f"corrupt override store {self._path}: user_data must be an object")
        for key, settings in user_data.items():
            override = settings.get("override_ai") if isinstance(settings, dict) else None
            if isinstance(override, dict) and override:
                self._data[str(key)] = _from_dict(override)
        logger.debug("Loaded %d override(s) from %s", len(self._data), self._path)

    def _save(self, data: dict[str, AIConfig]) -> None:
        payload: dict[str, Any] = {
            "user_data": {
                key: {"override_ai": asdict(cfg)} for key, cfg in data.items()
            },
        }
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(tmp, self._path)
        except OSError as exc:
            raise StorageError(f"cannot write override store {self._path}: {exc}") from exc

    def get_override(self, key: str) -> AIConfig | None:
        with self._lock:
            return self._data.get(key)

    def set_override(self, key: str, config: AIConfig) -> None:
        with self._lock:
            data = {**self._data, key: config}
            self._save(data)
            self._data = data

    def clear_override(self, key: str) -> None:
        with self._lock:
            if key not in self._data:
                return
            data = {k: v for k, v in self._data.items() if k != key}
            self._save(data)
            self._data = data

    def __len__(self) -> int:
        return len(self._data)


class MemoryOverrideStore:
    """Non-persistent store; used when no store path is configured."""

    def __init__(self) -> None:
        self._data: dict[str, AIConfig] = {}

    def get_override(self, key: str) -> AIConfig | None:
        return self._data.get(key)

    def set_override(self, key: str, config: AIConfig) -> None:
        self._data[key] = config

    def clear_override(self, key: str) -> None:
        self._data.pop(key, None)


def _from_dict(raw: dict[str, Any]) -> AIConfig:
    return AIConfig(**{k: str(v) for k, v in raw.items() if k in _AI_FIELDS})
