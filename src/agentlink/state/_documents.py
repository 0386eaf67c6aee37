"""Whole-document JSON persistence.

Every write is a read-modify-write of the full document followed by an
atomic rename, so a reader never observes a partial file.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from agentlink.utils import read_json, write_json_atomic


class JsonDocument:
    """One JSON file owned by exactly one component."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> Any | None:
        return read_json(self.path)

    def write(self, data: Any) -> None:
        write_json_atomic(self.path, data)

    def update(self, **fields: Any) -> dict[str, Any] | None:
        """Merge ``fields`` into the stored object; no-op when absent."""
        raw = self.read()
        if not isinstance(raw, dict):
            return None
        raw.update(fields)
        self.write(raw)
        return raw

    def delete(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True
