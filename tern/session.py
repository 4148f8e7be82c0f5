"""Session -- binds context, storage, tools and dispatch for one interactive run.

The Session exclusively owns its ContextManager. The ConversationStore,
ToolRegistry and transport are shared collaborators handed in at
startup. Configuration is an immutable Settings snapshot; commands that
change it (model, config keys, tool permissions) swap in a new snapshot
derived with Settings.with_overrides().

The conversation file is rewritten at every turn boundary.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tern.api.dispatch import DispatchLoop, DispatchResult, StreamOpener
from tern.cancellation import CancelToken
from tern.config import Settings
from tern.context.manager import ContextManager, ContextStats, UsageLevel
from tern.errors import ConfigError, InvalidArguments, StorageError, UnknownTool
from tern.events import EventBus, EventType
from tern.models import CompressionRecord, Conversation, ConversationSummary, Role, TokenUsage, Turn, new_id, utcnow
from tern.storage.conversations import ConversationStore
from tern.storage.memory import MemoryItem, MemoryStore
from tern.storage.usage import CostTracker, UsageStatistics
from tern.tools.registry import ToolContext, ToolDefinition, ToolRegistry, ToolStats

logger = logging.getLogger(__name__)

# Keys that bind collaborators at startup and cannot change mid-session
STARTUP_ONLY_KEYS = frozenset(
    {"anthropic_api_key", "anthropic_auth_token", "api_base_url", "config_dir", "working_directory"}
)


@dataclass(frozen=True)
class PermissionState:
    allowed: tuple[str, ...]
    denied: tuple[str, ...]
    capabilities: tuple[str, ...]


@dataclass(frozen=True)
class CompactResult:
    conversation_id: str
    messages_before: int
    messages_after: int


@dataclass
class SessionStats:
    conversation_id: str
    title: str
    model: str
    message_count: int
    context: ContextStats
    usage: TokenUsage
    tools: dict[str, ToolStats] = field(default_factory=dict)


def _working_directory(settings: Settings) -> Path:
    workdir = (settings.working_directory or Path.cwd()).expanduser().resolve()
    if not workdir.is_dir():
        raise ConfigError(f"Working directory does not exist: {workdir}")
    return workdir


class Session:
    """One interactive run: a current conversation plus everything acting on it."""

    def __init__(
        self,
        settings: Settings,
        store: ConversationStore,
        registry: ToolRegistry,
        open_stream: StreamOpener,
        *,
        events: EventBus | None = None,
        memory: MemoryStore | None = None,
        costs: CostTracker | None = None,
        environment: dict[str, str] | None = None,
    ) -> None:
        self.id = new_id()
        self.events = events or EventBus()
        self.working_directory = _working_directory(settings)
        self.environment = dict(os.environ) if environment is None else dict(environment)
        self._settings = settings
        self._store = store
        self._registry = registry
        self._memory = memory or MemoryStore(settings.memory_file)
        self._costs = costs or CostTracker(settings.usage_dir)
        self._context = ContextManager(settings, on_compress=self._on_compress)
        self._dispatch = DispatchLoop(
            self._context,
            registry,
            open_stream,
            settings,
            events=self.events,
            on_turn=self._on_turn,
        )
        self._conversation: Conversation | None = None
        self._cancel: CancelToken | None = None
        self._reported_level = UsageLevel.OK

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def context(self) -> ContextManager:
        return self._context

    @property
    def conversation(self) -> Conversation:
        """The current conversation, created on first use."""
        if self._conversation is None:
            return self.new_conversation()
        return self._conversation

    @property
    def conversation_id(self) -> str | None:
        return self._conversation.id if self._conversation else None

    @property
    def busy(self) -> bool:
        return self._cancel is not None

    def tool_context(self, cancel: CancelToken | None = None) -> ToolContext:
        settings = self._settings
        return ToolContext(
            working_directory=self.working_directory,
            session_id=self.id,
            environment=self.environment,
            capabilities=frozenset(settings.capabilities),
            debug=settings.debug,
            interactive=settings.interactive,
            allowed_tools=frozenset(settings.allowed_tools),
            denied_tools=frozenset(settings.denied_tools),
            tool_timeout=settings.tool_timeout,
            cancel=cancel,
        )

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    async def submit(self, text: str, cancel: CancelToken | None = None) -> DispatchResult:
        """Append a user turn and drive the dispatch loop to a terminal state.

        Raises ContextOverflow if the user turn does not fit even after
        compression; the turn is then not recorded.
        """
        if not text.strip():
            raise InvalidArguments("prompt", "must not be empty")
        if self._conversation is None:
            self.new_conversation()
        cancel = cancel or CancelToken()
        self._cancel = cancel
        try:
            user_turn = self._context.append(Turn.user(text))
            await self._on_turn(user_turn)
            result = await self._dispatch.run(self.tool_context(cancel), cancel)
        finally:
            self._cancel = None
        self._report_level()
        logger.info(
            "Turn finished: %s after %d round-trip(s), %d turn(s) sealed",
            result.status,
            result.round_trips,
            len(result.turns),
        )
        return result

    def cancel(self) -> bool:
        """Cancel the in-flight request; returns False when idle."""
        if self._cancel is None:
            return False
        self._cancel.cancel()
        return True

    async def _on_turn(self, turn: Turn) -> None:
        conversation = self.conversation
        conversation.append(turn)
        usage = turn.usage if turn.role == Role.ASSISTANT else None
        if usage is not None and (usage.input_tokens or usage.output_tokens):
            cost = self._costs.calculate_cost(self._settings.model, usage.input_tokens, usage.output_tokens)
            conversation.total_token_usage = conversation.total_token_usage + TokenUsage(estimated_cost=cost)
        await asyncio.to_thread(self._store.save, conversation)
        if usage is not None and (usage.input_tokens or usage.output_tokens):
            try:
                await asyncio.to_thread(self._costs.record, self._settings.model, usage, conversation.id)
            except StorageError as e:
                logger.warning("Usage not recorded: %s", e.message)

    def _on_compress(self, record: CompressionRecord) -> None:
        if self._conversation is not None:
            self._conversation.compression_ledger.append(record)
        self.events.emit(
            EventType.COMPRESSED,
            first_turn_idx=record.first_turn_idx,
            last_turn_idx=record.last_turn_idx,
            original_turn_count=record.original_turn_count,
            retained=len(self._context),
        )

    def _report_level(self) -> None:
        stats = self._context.stats()
        if stats.level != self._reported_level and stats.level != UsageLevel.OK:
            self.events.emit(
                EventType.CONTEXT_WARNING,
                level=stats.level,
                usage_ratio=stats.usage_ratio,
                estimated_tokens=stats.estimated_tokens,
                max_tokens=stats.max_tokens,
            )
        self._reported_level = stats.level

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def new_conversation(self, title: str | None = None) -> Conversation:
        conversation_id = self._store.create(title)
        self._conversation = self._store.load(conversation_id)
        self._context.clear()
        self._reported_level = UsageLevel.OK
        return self._conversation

    def resume(self, conversation_id: str) -> Conversation:
        """Make a stored conversation current and refill the context from it."""
        conversation = self._store.load(conversation_id)
        self._conversation = conversation
        self._context.restore(conversation.messages, conversation.compression_ledger)
        self._reported_level = UsageLevel.OK
        logger.info("Resumed conversation %s (%d messages)", conversation.id, len(conversation.messages))
        return conversation

    def list_conversations(self) -> list[ConversationSummary]:
        return self._store.list()

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a stored conversation. Deleting the current one starts a new one.

        Returns False when no single stored conversation matches.
        """
        try:
            resolved = self._store.resolve_id(conversation_id)
        except StorageError:
            return False
        deleted = self._store.delete(resolved)
        if deleted and resolved == self.conversation_id:
            self.new_conversation()
        return deleted

    def clear(self) -> None:
        """Drop every turn and digest of the current conversation."""
        conversation = self.conversation
        conversation.messages.clear()
        conversation.compression_ledger.clear()
        conversation.updated_at = utcnow()
        self._context.clear()
        self._reported_level = UsageLevel.OK
        self._store.save(conversation)

    def compact(self, instructions: str | None = None) -> CompactResult:
        conversation = self.conversation
        before = len(conversation.messages)
        compacted = self._store.compact(
            conversation.id,
            instructions,
            keep_recent=self._settings.compact_keep_recent,
            length_threshold=self._settings.compact_length_threshold,
        )
        self._conversation = compacted
        self._context.restore(compacted.messages, compacted.compression_ledger)
        return CompactResult(compacted.id, before, len(compacted.messages))

    # ------------------------------------------------------------------
    # Configuration and permissions
    # ------------------------------------------------------------------

    def _apply(self, settings: Settings) -> None:
        self._settings = settings
        self._context.reconfigure(settings)
        self._dispatch.update_settings(settings)

    def set_model(self, model: str) -> str:
        model = model.strip()
        if not model:
            raise ConfigError("Model name must not be empty")
        self._apply(self._settings.with_overrides(model=model))
        logger.info("Model set to %s", model)
        return model

    def show_config(self, key: str | None = None) -> dict[str, Any]:
        data = self._settings.display()
        if key is None:
            return data
        if key not in data:
            raise ConfigError(f"Unknown configuration key: {key}")
        return {key: data[key]}

    def set_config(self, key: str, raw: str) -> Any:
        """Set one key from its command-line string form; returns the shown value."""
        if key in STARTUP_ONLY_KEYS:
            raise ConfigError(f"'{key}' can only be set at startup")
        value = self._settings.coerce(key, raw)
        self._apply(self._settings.with_overrides(**{key: value}))
        return self._settings.display()[key]

    def permissions(self) -> PermissionState:
        settings = self._settings
        return PermissionState(
            allowed=tuple(settings.allowed_tools),
            denied=tuple(settings.denied_tools),
            capabilities=tuple(settings.capabilities),
        )

    def _known_tool(self, name: str) -> str:
        if self._registry.get(name) is None:
            raise UnknownTool(name)
        return name

    def allow_tool(self, name: str) -> PermissionState:
        """Run a tool without confirmation (and lift any deny)."""
        name = self._known_tool(name)
        settings = self._settings
        allowed = [*settings.allowed_tools, name] if name not in settings.allowed_tools else settings.allowed_tools
        denied = [t for t in settings.denied_tools if t != name]
        self._apply(settings.with_overrides(allowed_tools=allowed, denied_tools=denied))
        return self.permissions()

    def deny_tool(self, name: str) -> PermissionState:
        name = self._known_tool(name)
        settings = self._settings
        denied = [*settings.denied_tools, name] if name not in settings.denied_tools else settings.denied_tools
        allowed = [t for t in settings.allowed_tools if t != name]
        self._apply(settings.with_overrides(allowed_tools=allowed, denied_tools=denied))
        return self.permissions()

    def reset_permissions(self) -> PermissionState:
        self._apply(self._settings.with_overrides(allowed_tools=[], denied_tools=[]))
        return self.permissions()

    # ------------------------------------------------------------------
    # Memory, cost, stats
    # ------------------------------------------------------------------

    def memory_list(self) -> list[MemoryItem]:
        return self._memory.list()

    def memory_add(self, content: str) -> MemoryItem:
        return self._memory.add(content)

    def memory_remove(self, item_id: str) -> MemoryItem:
        return self._memory.remove(item_id)

    def memory_search(self, query: str) -> list[MemoryItem]:
        return self._memory.search(query)

    def memory_clear(self) -> int:
        return self._memory.clear()

    def cost(self, days: int = 30) -> UsageStatistics:
        if days < 1:
            raise InvalidArguments("days", "must be >= 1")
        return self._costs.statistics(days)

    def tools(self) -> list[ToolDefinition]:
        return self._registry.definitions()

    def stats(self) -> SessionStats:
        conversation = self.conversation
        return SessionStats(
            conversation_id=conversation.id,
            title=conversation.title,
            model=self._settings.model,
            message_count=len(conversation.messages),
            context=self._context.stats(),
            usage=conversation.total_token_usage,
            tools=self._registry.all_stats(),
        )
