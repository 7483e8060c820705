"""Session token stores."""

from __future__ import annotations

import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class MemoryTokenStore:
    """Token held in memory for the lifetime of the session."""

    def __init__(self, token: str | None = None) -> None:
        self._token = token

    def get(self) -> str | None:
        return self._token

    def set(self, token: str) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None


class FileTokenStore:
    """Token persisted as JSON on disk, re-read on every request.

    The file holds ``{"authToken": "..."}``; other keys are preserved.
    """

    def __init__(self, path: str | Path, *, field: str = "authToken") -> None:
        self._path = Path(path)
        self._field = field

    def _load(self) -> dict[str, object]:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable token file %s", self._path)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, object]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data), encoding="utf-8")

    def get(self) -> str | None:
        token = self._load().get(self._field)
        return token if isinstance(token, str) and token else None

    def set(self, token: str) -> None:
        data = self._load()
        data[self._field] = token
        self._save(data)

    def clear(self) -> None:
        data = self._load()
        if data.pop(self._field, None) is not None:
            self._save(data)
