"""Durable conversation persistence.

One pretty-printed JSON file per conversation under the conversations
directory. Writes go to a temp file in the same directory, are fsynced
and then renamed over the target, all while holding a per-conversation
FileLock, so a failed save leaves the previous file intact and two
processes never interleave writes to the same id.
"""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
from collections import OrderedDict
from pathlib import Path

import filelock
from filelock import FileLock
from pydantic import ValidationError

from tern.context.compression import close_pairs, tool_links
from tern.errors import StorageError
from tern.models import Conversation, ConversationSummary, Role, utcnow

logger = logging.getLogger(__name__)

# Seconds to wait for another process holding a conversation lock
LOCK_TIMEOUT = 10.0


def serialize(conversation: Conversation) -> str:
    """Canonical on-disk form: two-space indented JSON plus a trailing newline."""
    return conversation.model_dump_json(indent=2) + "\n"


def write_atomic(target: Path, text: str) -> None:
    fd, temp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.stem}_", suffix=".tmp")
    fd_owned_by_file = False
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            fd_owned_by_file = True  # fdopen took ownership, will close on exit
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, target)
    except BaseException:
        if not fd_owned_by_file:
            os.close(fd)
        with contextlib.suppress(OSError):
            os.unlink(temp_path)
        raise


class ConversationStore:
    """File-backed conversation store with a bounded LRU cache.

    The cache holds the same Conversation objects handed out by load()
    and create(), so a loaded conversation mutated by the session is
    what the next save() writes.
    """

    def __init__(self, directory: Path, cache_size: int = 100) -> None:
        self.directory = directory
        self._cache: OrderedDict[str, Conversation] = OrderedDict()
        self._cache_size = cache_size

    def _path(self, conversation_id: str) -> Path:
        return self.directory / f"{conversation_id}.json"

    def _lock(self, conversation_id: str) -> FileLock:
        return FileLock(self._path(conversation_id).with_suffix(".lock"), timeout=LOCK_TIMEOUT)

    def _remember(self, conversation: Conversation) -> None:
        self._cache[conversation.id] = conversation
        self._cache.move_to_end(conversation.id)
        while len(self._cache) > self._cache_size:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug("Evicted conversation %s from cache", evicted)

    @property
    def cached_ids(self) -> list[str]:
        """Cached ids, least recently used first."""
        return list(self._cache)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, title: str | None = None) -> str:
        """Create and persist an empty conversation; returns its id."""
        conversation = Conversation(title=title) if title else Conversation()
        self.save(conversation)
        logger.info("Created conversation %s (%s)", conversation.id, conversation.title)
        return conversation.id

    def resolve_id(self, id_or_prefix: str) -> str:
        """Resolve a full id or a unique prefix to a stored conversation id."""
        if id_or_prefix in self._cache or self._path(id_or_prefix).exists():
            return id_or_prefix
        if not self.directory.exists():
            raise StorageError(f"Conversation not found: {id_or_prefix}")
        matches = sorted(p.stem for p in self.directory.glob(f"{id_or_prefix}*.json"))
        if not matches:
            raise StorageError(f"Conversation not found: {id_or_prefix}")
        if len(matches) > 1:
            shown = ", ".join(m[:12] for m in matches[:5])
            raise StorageError(f"Ambiguous conversation id '{id_or_prefix}' matches {len(matches)}: {shown}")
        return matches[0]

    def load(self, conversation_id: str) -> Conversation:
        """Load by id or unique prefix, serving from the cache when possible."""
        conversation_id = self.resolve_id(conversation_id)
        cached = self._cache.get(conversation_id)
        if cached is not None:
            self._cache.move_to_end(conversation_id)
            return cached
        conversation = self._read(self._path(conversation_id))
        self._remember(conversation)
        return conversation

    def _read(self, path: Path) -> Conversation:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise StorageError(f"Conversation not found: {path.stem}") from e
        except OSError as e:
            raise StorageError(f"Failed to read {path.name}: {e}") from e
        try:
            return Conversation.model_validate_json(text)
        except ValidationError as e:
            raise StorageError(f"Corrupt conversation file {path.name}: {e.error_count()} validation errors") from e

    def save(self, conversation: Conversation) -> None:
        """Persist atomically. On failure the previous file is unchanged."""
        text = serialize(conversation)
        target = self._path(conversation.id)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with self._lock(conversation.id):
                write_atomic(target, text)
        except filelock.Timeout as e:
            raise StorageError(f"Conversation {conversation.id} is locked by another process") from e
        except OSError as e:
            raise StorageError(f"Failed to save conversation {conversation.id}: {e}") from e
        self._remember(conversation)
        logger.debug("Saved conversation %s (%d messages)", conversation.id, len(conversation.messages))

    def delete(self, conversation_id: str) -> bool:
        """Delete a conversation; returns False if it did not exist."""
        try:
            conversation_id = self.resolve_id(conversation_id)
        except StorageError:
            return False
        self._cache.pop(conversation_id, None)
        path = self._path(conversation_id)
        try:
            with self._lock(conversation_id):
                path.unlink(missing_ok=True)
        except filelock.Timeout as e:
            raise StorageError(f"Conversation {conversation_id} is locked by another process") from e
        except OSError as e:
            raise StorageError(f"Failed to delete conversation {conversation_id}: {e}") from e
        with contextlib.suppress(OSError):
            path.with_suffix(".lock").unlink(missing_ok=True)
        logger.info("Deleted conversation %s", conversation_id)
        return True

    def list(self) -> list[ConversationSummary]:
        """Summaries of every stored conversation, most recently updated first.

        Unreadable files are skipped with a warning.
        """
        if not self.directory.exists():
            return []
        summaries: list[ConversationSummary] = []
        for path in self.directory.glob("*.json"):
            cached = self._cache.get(path.stem)
            if cached is not None:
                summaries.append(cached.summary())
                continue
            try:
                summaries.append(self._read(path).summary())
            except StorageError as e:
                logger.warning("Skipping conversation file: %s", e.message)
        summaries.sort(key=lambda s: s.updated_at, reverse=True)
        return summaries

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def compact(
        self,
        conversation_id: str,
        instructions: str | None = None,
        *,
        keep_recent: int = 20,
        length_threshold: int = 1000,
    ) -> Conversation:
        """Drop low-value history from a stored conversation and persist it.

        Kept: every system turn, every turn longer than length_threshold
        characters and the last keep_recent turns, plus the tool partner
        of any kept turn. Kept turns stay in timestamp order.
        """
        conversation = self.load(conversation_id)
        messages = conversation.messages
        keep = {i for i, t in enumerate(messages) if t.role == Role.SYSTEM or t.char_count() > length_threshold}
        keep.update(range(max(0, len(messages) - keep_recent), len(messages)))
        keep = close_pairs(keep, tool_links(messages))

        seen: set[str] = set()
        retained = []
        for i in sorted(keep, key=lambda i: (messages[i].timestamp, i)):
            if messages[i].id in seen:
                continue
            seen.add(messages[i].id)
            retained.append(messages[i])

        before = len(messages)
        conversation.messages = retained
        if instructions:
            conversation.metadata["last_compact_instructions"] = instructions
        conversation.metadata["last_compacted_at"] = utcnow().isoformat()
        conversation.updated_at = utcnow()
        self.save(conversation)
        logger.info("Compacted conversation %s: %d -> %d messages", conversation.id, before, len(retained))
        return conversation
