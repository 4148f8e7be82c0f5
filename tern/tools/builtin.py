"""Built-in tools: read, write, list, shell.

File tools are confined to the session working directory (checked after
symlink resolution). shell runs through the system shell with the
session environment, captures both streams and is killed on timeout or
cancellation.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import signal
from pathlib import Path
from typing import Any

from tern.errors import PathEscape, PermissionDenied, ToolFailed
from tern.tools.registry import (
    ParamType,
    SecurityLevel,
    ToolContext,
    ToolDefinition,
    ToolOutput,
    ToolParameter,
    ToolRegistry,
)

logger = logging.getLogger(__name__)

# Limits
_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB
_MAX_LIST_ENTRIES = 1000
_MAX_LOG_LINES = 50

SHELL_BLOCKLIST = ("rm -rf", "sudo", "su", "chmod 777", "mkfs", "dd")


def _blocklist_pattern(entry: str) -> re.Pattern[str]:
    # Entries start at a token boundary: "sudo" blocks `sudo-rs`, "su" blocks
    # `su root` but not `sum`, and "dd" does not block `git add`. Multi-word
    # entries match as prefixes, so `rm -rfv` and `chmod 7777` are blocked too.
    parts = entry.split()
    body = r"\s+".join(re.escape(part) for part in parts)
    tail = "" if len(parts) > 1 else r"(?!\w)"
    return re.compile(rf"(?<![\w-]){body}{tail}")


_BLOCKLIST_PATTERNS = [(entry, _blocklist_pattern(entry)) for entry in SHELL_BLOCKLIST]


def blocked_command(command: str) -> str | None:
    """Return the blocklist entry the command contains, if any."""
    for entry, pattern in _BLOCKLIST_PATTERNS:
        if pattern.search(command):
            return entry
    return None


def resolve_path(path_str: str, working_directory: Path) -> Path:
    """Resolve path_str against the working directory.

    Raises PathEscape if the canonical path is outside it.
    """
    root = working_directory.resolve()
    candidate = Path(path_str).expanduser()
    target = (candidate if candidate.is_absolute() else root / candidate).resolve()
    if not target.is_relative_to(root):
        raise PathEscape(path_str, str(root))
    return target


def _relative(target: Path, root: Path) -> str:
    return str(target.relative_to(root.resolve()))


def _truncate(text: str, label: str) -> str:
    if len(text) > _MAX_OUTPUT_CHARS:
        return text[:_MAX_OUTPUT_CHARS] + f"\n... [{label} truncated at 100KB]"
    return text


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def read_tool(args: dict[str, Any], ctx: ToolContext) -> ToolOutput:
    """Read a text file inside the working directory.

    Args:
        path: File path (relative to the working directory or absolute within it)
        offset: Line offset to start reading from (0-indexed)
        limit: Number of lines to read (0 = all)
    """
    path = args["path"]
    target = resolve_path(path, ctx.working_directory)

    if not target.exists():
        raise ToolFailed("read", f"File not found: {path}")
    if not target.is_file():
        raise ToolFailed("read", f"Not a file: {path}")

    file_size = target.stat().st_size
    if file_size > _MAX_FILE_SIZE:
        raise ToolFailed(
            "read",
            f"File too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes). "
            "Use offset/limit to read portions.",
        )

    try:
        content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
    except OSError as e:
        raise ToolFailed("read", f"Error reading file: {e}") from e

    offset = args.get("offset", 0)
    limit = args.get("limit", 0)
    lines = content.splitlines(keepends=True)
    if offset > 0 or limit > 0:
        selected = lines[offset:]
        if limit > 0:
            selected = selected[:limit]
        content = "".join(selected)

    return ToolOutput(
        data={
            "path": _relative(target, ctx.working_directory),
            "content": content,
            "size": file_size,
            "total_lines": len(lines),
        }
    )


async def write_tool(args: dict[str, Any], ctx: ToolContext) -> ToolOutput:
    """Write content to a file inside the working directory.

    Args:
        path: File path (relative to the working directory or absolute within it)
        content: Content to write
        create_dirs: Create missing parent directories (default false)
    """
    path = args["path"]
    content = args["content"]
    target = resolve_path(path, ctx.working_directory)

    if target.is_dir():
        raise ToolFailed("write", f"Is a directory: {path}")
    if not target.parent.exists():
        if not args.get("create_dirs", False):
            raise ToolFailed("write", f"Parent directory does not exist: {target.parent.name} (set create_dirs)")
        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)

    existed = target.exists()
    try:
        await asyncio.to_thread(target.write_text, content, encoding="utf-8")
    except OSError as e:
        raise ToolFailed("write", f"Error writing file: {e}") from e

    size = len(content.encode("utf-8"))
    logger.debug("Wrote %d bytes to %s", size, target)
    return ToolOutput(
        data={
            "path": _relative(target, ctx.working_directory),
            "bytes_written": size,
            "created": not existed,
        }
    )


def _scan(root: Path, target: Path, recursive: bool, show_hidden: bool) -> tuple[list[dict[str, Any]], bool]:
    entries: list[dict[str, Any]] = []

    def visible(name: str) -> bool:
        return show_hidden or not name.startswith(".")

    def entry(p: Path) -> dict[str, Any]:
        is_dir = p.is_dir()
        return {
            "path": _relative(p, root),
            "name": p.name,
            "is_dir": is_dir,
            "size": None if is_dir else p.stat().st_size,
        }

    if not recursive:
        for child in sorted(target.iterdir()):
            if visible(child.name):
                entries.append(entry(child))
                if len(entries) >= _MAX_LIST_ENTRIES:
                    return entries, True
        return entries, False

    for dirpath, dirnames, filenames in os.walk(target):
        dirnames[:] = sorted(d for d in dirnames if visible(d))
        base = Path(dirpath)
        for name in [*dirnames, *sorted(filenames)]:
            if not visible(name):
                continue
            entries.append(entry(base / name))
            if len(entries) >= _MAX_LIST_ENTRIES:
                return entries, True
    return entries, False


async def list_tool(args: dict[str, Any], ctx: ToolContext) -> ToolOutput:
    """List directory entries inside the working directory."""
    path = args.get("path", ".")
    target = resolve_path(path, ctx.working_directory)
    if not target.exists():
        raise ToolFailed("list", f"Directory not found: {path}")
    if not target.is_dir():
        raise ToolFailed("list", f"Not a directory: {path}")

    try:
        entries, truncated = await asyncio.to_thread(
            _scan,
            ctx.working_directory,
            target,
            args.get("recursive", False),
            args.get("show_hidden", False),
        )
    except OSError as e:
        raise ToolFailed("list", f"Error listing directory: {e}") from e

    data: dict[str, Any] = {
        "path": _relative(target, ctx.working_directory),
        "entries": entries,
        "count": len(entries),
    }
    if truncated:
        data["truncated"] = True
    return ToolOutput(data=data)


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()


async def shell_tool(args: dict[str, Any], ctx: ToolContext) -> ToolOutput:
    """Execute a shell command in the working directory.

    The wall-clock bound is enforced by the registry (the `timeout`
    argument); on cancellation the whole process group is killed.
    """
    command = args["command"]
    entry = blocked_command(command)
    if entry is not None:
        raise PermissionDenied(f"shell {entry}", f"Command contains blocked operation '{entry}'")

    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        stdin=asyncio.subprocess.DEVNULL,
        cwd=str(ctx.working_directory),
        env=dict(ctx.environment) if ctx.environment else None,
        start_new_session=hasattr(os, "killpg"),
    )
    if ctx.cancel is not None:
        ctx.cancel.on_cancel(lambda: _kill(proc))
    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        _kill(proc)
        await proc.wait()
        logger.info("shell command killed: %s", command)
        raise

    stdout_text = _truncate(stdout.decode("utf-8", errors="replace"), "output")
    stderr_text = _truncate(stderr.decode("utf-8", errors="replace"), "stderr")
    exit_code = proc.returncode
    success = exit_code == 0
    logs = [line for line in stderr_text.splitlines() if line.strip()][:_MAX_LOG_LINES]

    return ToolOutput(
        data={
            "stdout": stdout_text,
            "stderr": stderr_text,
            "exit_code": exit_code,
            "success": success,
        },
        success=success,
        error=None if success else f"Command exited with code {exit_code}",
        logs=logs,
    )


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

READ_DEFINITION = ToolDefinition(
    name="read",
    description="Read a text file from the working directory",
    category="filesystem",
    security_level=SecurityLevel.SAFE,
    parameters=[
        ToolParameter(name="path", type=ParamType.STRING, description="File path", required=True,
                      constraints={"min_length": 1}),
        ToolParameter(name="offset", type=ParamType.INTEGER, description="Line offset to start reading from (0-indexed)",
                      default=0, constraints={"minimum": 0}),
        ToolParameter(name="limit", type=ParamType.INTEGER, description="Number of lines to read (0 = all)",
                      default=0, constraints={"minimum": 0}),
    ],
)

WRITE_DEFINITION = ToolDefinition(
    name="write",
    description="Write content to a file in the working directory",
    category="filesystem",
    security_level=SecurityLevel.MEDIUM,
    requires_confirmation=True,
    parameters=[
        ToolParameter(name="path", type=ParamType.STRING, description="File path", required=True,
                      constraints={"min_length": 1}),
        ToolParameter(name="content", type=ParamType.STRING, description="Content to write to the file", required=True),
        ToolParameter(name="create_dirs", type=ParamType.BOOLEAN, description="Create missing parent directories",
                      default=False),
    ],
)

LIST_DEFINITION = ToolDefinition(
    name="list",
    description="List files and directories in the working directory",
    category="filesystem",
    security_level=SecurityLevel.SAFE,
    parameters=[
        ToolParameter(name="path", type=ParamType.STRING, description="Directory path", default="."),
        ToolParameter(name="recursive", type=ParamType.BOOLEAN, description="Descend into subdirectories",
                      default=False),
        ToolParameter(name="show_hidden", type=ParamType.BOOLEAN, description="Include dotfiles", default=False),
    ],
)

SHELL_DEFINITION = ToolDefinition(
    name="shell",
    description="Execute a shell command in the working directory",
    category="system",
    security_level=SecurityLevel.DANGEROUS,
    requires_confirmation=True,
    parameters=[
        ToolParameter(name="command", type=ParamType.STRING, description="Shell command to execute", required=True,
                      constraints={"min_length": 1}),
        ToolParameter(name="timeout", type=ParamType.INTEGER, description="Timeout in seconds (default 30, max 300)",
                      constraints={"minimum": 1, "maximum": 300}),
    ],
)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(registry: ToolRegistry) -> None:
    """Register read, write, list and shell with the registry."""
    registry.register(READ_DEFINITION, read_tool)
    registry.register(WRITE_DEFINITION, write_tool)
    registry.register(LIST_DEFINITION, list_tool)
    registry.register(SHELL_DEFINITION, shell_tool)
