"""Persistent memory notes shared across conversations.

Stored as a single memory.json ({"version": "1.0", "items": [...]}).
Every mutation is a locked read-modify-write with an atomic replace.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

import filelock
from filelock import FileLock
from pydantic import BaseModel, Field, ValidationError

from tern.errors import StorageError
from tern.models import new_id, utcnow
from tern.storage.conversations import LOCK_TIMEOUT, write_atomic

logger = logging.getLogger(__name__)

MEMORY_VERSION = "1.0"
MAX_TAGS = 5

TAG_KEYWORDS = (
    "rust", "python", "javascript", "typescript", "java", "c++", "c#", "go", "php", "ruby",
    "function", "class", "struct", "enum", "trait", "interface", "async", "await",
    "error", "bug", "fix", "todo", "note", "important", "warning",
    "api", "database", "sql", "http", "json", "xml", "yaml", "config",
)


def extract_tags(content: str) -> list[str]:
    """Keyword tags found in content: first MAX_TAGS hits, sorted and unique."""
    lowered = content.lower()
    hits = [keyword for keyword in TAG_KEYWORDS if keyword in lowered][:MAX_TAGS]
    return sorted(set(hits))


class MemoryItem(BaseModel):
    id: str = Field(default_factory=new_id)
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    tags: list[str] = Field(default_factory=list)


class MemoryFile(BaseModel):
    version: str = MEMORY_VERSION
    items: list[MemoryItem] = Field(default_factory=list)


class MemoryStore:
    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock_file = path.with_suffix(".lock")

    def _read(self) -> MemoryFile:
        if not self.path.exists():
            return MemoryFile()
        try:
            return MemoryFile.model_validate_json(self.path.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise StorageError(f"Corrupt memory file {self.path}: {e.error_count()} validation errors") from e
        except OSError as e:
            raise StorageError(f"Failed to read memory file: {e}") from e

    def _write(self, memory: MemoryFile) -> None:
        write_atomic(self.path, memory.model_dump_json(indent=2) + "\n")

    def _locked(self) -> FileLock:
        return FileLock(self.lock_file, timeout=LOCK_TIMEOUT)

    def list(self) -> list[MemoryItem]:
        return self._read().items

    def add(self, content: str, tags: list[str] | None = None) -> MemoryItem:
        """Store a note. Tags are extracted from the content unless given."""
        content = content.strip()
        if not content:
            raise StorageError("Memory content is empty")
        chosen = extract_tags(content) if tags is None else sorted(set(tags))[:MAX_TAGS]
        item = MemoryItem(content=content, tags=chosen)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self._locked():
                memory = self._read()
                memory.items.append(item)
                self._write(memory)
        except filelock.Timeout as e:
            raise StorageError("Memory file is locked by another process") from e
        except OSError as e:
            raise StorageError(f"Failed to save memory: {e}") from e
        logger.info("Added memory %s (tags=%s)", item.id[:8], item.tags)
        return item

    def remove(self, id_or_prefix: str) -> MemoryItem:
        """Remove one item by id or unique id prefix."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self._locked():
                memory = self._read()
                matches = [item for item in memory.items if item.id.startswith(id_or_prefix)]
                exact = [item for item in matches if item.id == id_or_prefix]
                if exact:
                    matches = exact
                if not matches:
                    raise StorageError(f"Memory not found: {id_or_prefix}")
                if len(matches) > 1:
                    raise StorageError(f"Ambiguous memory id '{id_or_prefix}' matches {len(matches)} items")
                removed = matches[0]
                memory.items = [item for item in memory.items if item.id != removed.id]
                self._write(memory)
        except filelock.Timeout as e:
            raise StorageError("Memory file is locked by another process") from e
        except OSError as e:
            raise StorageError(f"Failed to save memory: {e}") from e
        return removed

    def search(self, query: str) -> list[MemoryItem]:
        """Case-insensitive substring match over content and tags."""
        needle = query.lower()
        return [
            item
            for item in self._read().items
            if needle in item.content.lower() or any(needle in tag.lower() for tag in item.tags)
        ]

    def clear(self) -> int:
        """Remove every item; returns how many were removed."""
        if not self.path.exists():
            return 0
        try:
            with self._locked():
                memory = self._read()
                count = len(memory.items)
                self._write(MemoryFile())
        except filelock.Timeout as e:
            raise StorageError("Memory file is locked by another process") from e
        except OSError as e:
            raise StorageError(f"Failed to save memory: {e}") from e
        logger.info("Cleared %d memory items", count)
        return count
