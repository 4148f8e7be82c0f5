"""Slash commands.

A line starting with "/" is parsed into a command name and a raw
argument string and routed to its handler. Each handler performs at
most one Session operation and renders the outcome as plain text.
Bad usage raises InvalidArguments, which the CLI shows like any other
user-facing error.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from tern.errors import InvalidArguments
from tern.session import PermissionState, Session
from tern.storage.memory import MemoryItem


@dataclass
class CommandResult:
    output: str = ""
    quit: bool = False


CommandHandler = Callable[[Session, str], CommandResult]


@dataclass(frozen=True)
class Command:
    name: str
    usage: str
    summary: str
    handler: CommandHandler


COMMANDS: dict[str, Command] = {}
ALIASES = {"exit": "quit", "q": "quit", "h": "help", "?": "help"}


def command(name: str, usage: str, summary: str) -> Callable[[CommandHandler], CommandHandler]:
    def register(handler: CommandHandler) -> CommandHandler:
        COMMANDS[name] = Command(name, usage, summary, handler)
        return handler

    return register


def is_command(line: str) -> bool:
    return line.lstrip().startswith("/")


def parse(line: str) -> tuple[str, str]:
    """Split "/name rest of line" into ("name", "rest of line")."""
    body = line.strip()
    if not body.startswith("/"):
        raise InvalidArguments("command", "slash commands start with '/'")
    name, _, rest = body[1:].partition(" ")
    name = name.lower()
    return ALIASES.get(name, name), rest.strip()


def run_command(session: Session, line: str) -> CommandResult:
    name, args = parse(line)
    cmd = COMMANDS.get(name)
    if cmd is None:
        raise InvalidArguments("command", f"unknown command /{name} (try /help)")
    return cmd.handler(session, args)


def _usage(name: str) -> InvalidArguments:
    return InvalidArguments(f"/{name}", f"usage: {COMMANDS[name].usage}")


def _when(value: datetime) -> str:
    return value.astimezone().strftime("%Y-%m-%d %H:%M")


def _format_permissions(state: PermissionState) -> str:
    return "\n".join(
        [
            f"allowed (no confirmation): {', '.join(state.allowed) or '-'}",
            f"denied: {', '.join(state.denied) or '-'}",
            f"capabilities: {', '.join(state.capabilities) or '-'}",
        ]
    )


def _format_memory(items: list[MemoryItem]) -> str:
    if not items:
        return "No memory items."
    lines = []
    for item in items:
        tags = f" [{', '.join(item.tags)}]" if item.tags else ""
        lines.append(f"{item.id[:8]}  {_when(item.timestamp)}  {item.content}{tags}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


@command("new", "/new [title]", "Start a new conversation")
def _new(session: Session, args: str) -> CommandResult:
    conversation = session.new_conversation(args or None)
    return CommandResult(f"Started conversation {conversation.id[:8]} ({conversation.title})")


@command("resume", "/resume <id>", "Resume a stored conversation (id or unique prefix)")
def _resume(session: Session, args: str) -> CommandResult:
    if not args:
        raise _usage("resume")
    conversation = session.resume(args)
    return CommandResult(
        f"Resumed {conversation.id[:8]} ({conversation.title}), {len(conversation.messages)} messages"
    )


@command("list", "/list", "List stored conversations")
def _list(session: Session, args: str) -> CommandResult:
    summaries = session.list_conversations()
    if not summaries:
        return CommandResult("No conversations yet.")
    lines = []
    for s in summaries:
        marker = "*" if s.id == session.conversation_id else " "
        lines.append(
            f"{marker} {s.id[:8]}  {_when(s.updated_at)}  {s.message_count:>4} msgs  "
            f"${s.estimated_cost:.4f}  {s.title}"
        )
    return CommandResult("\n".join(lines))


@command("delete", "/delete <id>", "Delete a stored conversation")
def _delete(session: Session, args: str) -> CommandResult:
    if not args:
        raise _usage("delete")
    if not session.delete_conversation(args):
        return CommandResult(f"No single conversation matches {args}")
    return CommandResult(f"Deleted conversation {args}")


@command("clear", "/clear", "Clear the current conversation")
def _clear(session: Session, args: str) -> CommandResult:
    session.clear()
    return CommandResult("Conversation cleared.")


@command("compact", "/compact [instructions]", "Drop low-value history from the current conversation")
def _compact(session: Session, args: str) -> CommandResult:
    result = session.compact(args or None)
    return CommandResult(f"Compacted: {result.messages_before} -> {result.messages_after} messages")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@command("model", "/model [name]", "Show or change the model")
def _model(session: Session, args: str) -> CommandResult:
    if not args:
        return CommandResult(f"Model: {session.show_config('model')['model']}")
    return CommandResult(f"Model set to {session.set_model(args)}")


@command("config", "/config [key [value]]", "Show configuration or set one key")
def _config(session: Session, args: str) -> CommandResult:
    key, _, value = args.partition(" ")
    value = value.strip()
    if key and value:
        shown = session.set_config(key, value)
        return CommandResult(f"{key} = {json.dumps(shown, ensure_ascii=False)}")
    data = session.show_config(key or None)
    return CommandResult("\n".join(f"{k} = {json.dumps(v, ensure_ascii=False)}" for k, v in data.items()))


@command("permissions", "/permissions [show | allow <tool> | deny <tool> | reset]", "Manage tool permissions")
def _permissions(session: Session, args: str) -> CommandResult:
    action, _, tool = args.partition(" ")
    tool = tool.strip()
    match action or "show":
        case "show":
            state = session.permissions()
        case "allow" if tool:
            state = session.allow_tool(tool)
        case "deny" if tool:
            state = session.deny_tool(tool)
        case "reset":
            state = session.reset_permissions()
        case _:
            raise _usage("permissions")
    return CommandResult(_format_permissions(state))


@command("cost", "/cost [days]", "Show API usage and cost (default 30 days)")
def _cost(session: Session, args: str) -> CommandResult:
    try:
        days = int(args) if args else 30
    except ValueError:
        raise _usage("cost") from None
    stats = session.cost(days)
    total = stats.total
    lines = [
        f"Last {stats.days} day(s): {total.calls} calls, "
        f"{total.input_tokens:,} in / {total.output_tokens:,} out tokens, ${total.cost:.4f}"
    ]
    for model, usage in sorted(stats.by_model.items()):
        lines.append(f"  {model}: {usage.calls} calls, ${usage.cost:.4f}")
    return CommandResult("\n".join(lines))


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


@command("memory", "/memory [show | add <text> | remove <id> | search <query> | clear]", "Manage memory notes")
def _memory(session: Session, args: str) -> CommandResult:
    action, _, rest = args.partition(" ")
    rest = rest.strip()
    match action or "show":
        case "show" | "list":
            return CommandResult(_format_memory(session.memory_list()))
        case "add" if rest:
            item = session.memory_add(rest)
            return CommandResult(f"Remembered {item.id[:8]}" + (f" [{', '.join(item.tags)}]" if item.tags else ""))
        case "remove" if rest:
            item = session.memory_remove(rest)
            return CommandResult(f"Removed {item.id[:8]}")
        case "search" if rest:
            return CommandResult(_format_memory(session.memory_search(rest)))
        case "clear":
            return CommandResult(f"Removed {session.memory_clear()} memory items")
    raise _usage("memory")


# ---------------------------------------------------------------------------
# Introspection
# ---------------------------------------------------------------------------


@command("stats", "/stats", "Show context and tool statistics")
def _stats(session: Session, args: str) -> CommandResult:
    stats = session.stats()
    ctx = stats.context
    lines = [
        f"Conversation: {stats.conversation_id[:8]} ({stats.title})",
        f"Model: {stats.model}",
        f"Messages: {stats.message_count} stored, {ctx.message_count} in context",
        f"Context: ~{ctx.estimated_tokens:,} / {ctx.max_tokens:,} tokens ({ctx.usage_ratio:.0%}, {ctx.level})",
        f"Compressions: {ctx.compression_count}",
        f"Usage: {stats.usage.input_tokens:,} in / {stats.usage.output_tokens:,} out, ${stats.usage.estimated_cost:.4f}",
    ]
    for name, tool in stats.tools.items():
        if tool.call_count:
            lines.append(
                f"  {name}: {tool.call_count} calls ({tool.error_count} failed), avg {tool.average_ms:.0f}ms"
            )
    return CommandResult("\n".join(lines))


@command("tools", "/tools", "List available tools")
def _tools(session: Session, args: str) -> CommandResult:
    lines = []
    for definition in session.tools():
        flag = " (confirm)" if definition.requires_confirmation else ""
        lines.append(f"{definition.name:<8} {definition.security_level:<9} {definition.description}{flag}")
    return CommandResult("\n".join(lines))


@command("help", "/help", "Show this help")
def _help(session: Session, args: str) -> CommandResult:
    width = max(len(c.usage) for c in COMMANDS.values())
    return CommandResult("\n".join(f"{c.usage:<{width}}  {c.summary}" for c in COMMANDS.values()))


@command("quit", "/quit", "Exit tern")
def _quit(session: Session, args: str) -> CommandResult:
    return CommandResult(quit=True)
