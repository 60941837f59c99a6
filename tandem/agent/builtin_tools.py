"""Built-in workspace tools: file operations and shell commands.

Every path is resolved against ``settings.workspace_dir`` and rejected
if it escapes it. Blocking filesystem calls run in a worker thread.
Handlers take the raw parameter dict the model produced and accept the
common alternative spellings (``path``, ``target``, ``from``, ``to``...).
"""

from __future__ import annotations

import asyncio
import logging
import re
import shlex
import shutil
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from tandem.agent.models import ToolDefinition
from tandem.agent.tools import ToolDispatcher, ToolOutcome
from tandem.config import Settings

logger = logging.getLogger(__name__)

# Limits
_MAX_COMMAND_TIMEOUT = 300  # seconds
_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB

# Parameter spellings accepted for each canonical field, in priority order
_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "file_path": ("file_path", "path", "target"),
    "source_path": ("source_path", "path", "from"),
    "destination_path": ("destination_path", "destination", "to"),
    "dir_path": ("dir_path", "directory", "path", "target"),
}

_SAFE_COMMANDS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^git\s+(status|log|diff|branch|remote|fetch|pull|push|add|commit|clone|show)",
        r"^(npm|yarn|pnpm)\s+(list|view|info|install|uninstall|remove|run|test|start|build)",
        r"^(pip|uv)\s+(list|show|install|freeze)",
        r"^(ls|dir|pwd|mkdir|rmdir|cp|mv|rm|cat|more|less|head|tail|grep|find|which|wc|sort|diff)\b",
        r"^(node|python|python3|php|pytest|make)\b",
        r"^echo\b",
        r"^date$",
        r"^whoami$",
    )
]

_DANGEROUS_COMMANDS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"rm\s+-(rf|fr)\b",
        r"\bformat\s+",
        r"\bshutdown\b",
        r"\breboot\b",
        r"\binit\s+",
        r"\bdd\s+",
        r"\bmkfs",
        r"\bfdisk\b",
        r"\bchmod\s+[0-7]{3,4}\s+",
        r"\bchown\s+root\b",
        r"\bsudo\s+",
        r"\bsu\s+",
        r"\bpasswd\b",
        r"\bssh-keygen\b",
    )
]

# Shell control operators and command substitution
_SHELL_OPERATORS = re.compile(r"[;&|`<>\n\r]|\$\(")


def _validate_path(path_str: str, workspace_dir: str) -> Path:
    """Resolve *path_str* under workspace_dir.

    Raises ValueError if the path escapes the workspace.
    """
    workspace = Path(workspace_dir).resolve()
    candidate = Path(path_str)
    target = candidate.resolve() if candidate.is_absolute() else (workspace / candidate).resolve()

    if not target.is_relative_to(workspace):
        raise ValueError(f"Path outside workspace is not allowed: {path_str}")
    return target


def _param(params: Mapping[str, Any], field: str, *, required: bool = True, default: str = "") -> str:
    for key in _FIELD_ALIASES.get(field, (field,)):
        value = params.get(key)
        if isinstance(value, str) and value:
            return value
    if required:
        raise ValueError(f"{field} is required")
    return default


def _removes_recursively_by_force(argv: list[str]) -> bool:
    """True for rm invocations carrying both recursive and force flags, however split."""
    if not argv or Path(argv[0]).name.lower() != "rm":
        return False
    flags: set[str] = set()
    for arg in argv[1:]:
        if arg == "--":
            break
        if arg in ("--recursive", "--force"):
            flags.add(arg[2])
        elif arg.startswith("-") and not arg.startswith("--"):
            flags.update(arg[1:].lower())
    return {"r", "f"} <= flags


def is_command_allowed(command: str) -> bool:
    """Denylist first, then the allowlist. Unmatched commands are refused.

    The whole string goes to a shell, so any control operator or
    command substitution is refused outright.
    """
    stripped = command.strip()
    if _SHELL_OPERATORS.search(stripped):
        return False
    if any(p.search(stripped) for p in _DANGEROUS_COMMANDS):
        return False
    try:
        argv = shlex.split(stripped)
    except ValueError:
        return False
    if _removes_recursively_by_force(argv):
        return False
    return any(p.search(stripped) for p in _SAFE_COMMANDS)


def _truncate(text: str, label: str) -> str:
    if len(text) <= _MAX_OUTPUT_CHARS:
        return text
    return text[:_MAX_OUTPUT_CHARS] + f"\n... [{label} truncated at 100KB]"


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


class WorkspaceTools:
    """File and shell tools bound to one workspace directory."""

    def __init__(self, workspace_dir: str, command_timeout: int = 30, safety_enabled: bool = True) -> None:
        self.workspace_dir = workspace_dir
        self.command_timeout = command_timeout
        self.safety_enabled = safety_enabled

    def _resolve(self, path_str: str) -> Path:
        return _validate_path(path_str, self.workspace_dir)

    async def read_file(self, params: dict[str, Any]) -> ToolOutcome:
        try:
            path = _param(params, "file_path")
            target = self._resolve(path)
            if not target.is_file():
                return ToolOutcome.failed(f"File not found: {path}")
            size = target.stat().st_size
            if size > _MAX_FILE_SIZE:
                return ToolOutcome.failed(
                    f"File too large: {size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes)"
                )
            content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
            return ToolOutcome.ok(content=content)
        except (OSError, ValueError) as e:
            return ToolOutcome.failed(str(e))

    async def write_file(self, params: dict[str, Any]) -> ToolOutcome:
        try:
            path = _param(params, "file_path")
            content = str(params.get("content") or "")
            target = self._resolve(path)
            await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(target.write_text, content, encoding="utf-8")
            return ToolOutcome.ok(message=f"File written: {path}")
        except (OSError, ValueError) as e:
            return ToolOutcome.failed(str(e))

    async def append_to_file(self, params: dict[str, Any]) -> ToolOutcome:
        try:
            path = _param(params, "file_path")
            content = str(params.get("content") or "")
            target = self._resolve(path)
            await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(_append_text, target, content)
            return ToolOutcome.ok(message=f"Content appended to {path}")
        except (OSError, ValueError) as e:
            return ToolOutcome.failed(str(e))

    async def delete_file(self, params: dict[str, Any]) -> ToolOutcome:
        try:
            path = _param(params, "file_path")
            target = self._resolve(path)
            await asyncio.to_thread(target.unlink)
            return ToolOutcome.ok(message=f"File deleted: {path}")
        except (OSError, ValueError) as e:
            return ToolOutcome.failed(str(e))

    async def copy_file(self, params: dict[str, Any]) -> ToolOutcome:
        try:
            source = _param(params, "source_path")
            destination = _param(params, "destination_path")
            src, dst = self._resolve(source), self._resolve(destination)
            await asyncio.to_thread(dst.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copyfile, src, dst)
            return ToolOutcome.ok(message=f"Copied {source} → {destination}")
        except (OSError, ValueError) as e:
            return ToolOutcome.failed(str(e))

    async def move_file(self, params: dict[str, Any]) -> ToolOutcome:
        try:
            source = _param(params, "source_path")
            destination = _param(params, "destination_path")
            src, dst = self._resolve(source), self._resolve(destination)
            await asyncio.to_thread(dst.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.move, src, dst)
            return ToolOutcome.ok(message=f"Moved {source} → {destination}")
        except (OSError, ValueError) as e:
            return ToolOutcome.failed(str(e))

    async def list_directory(self, params: dict[str, Any]) -> ToolOutcome:
        try:
            path = _param(params, "dir_path", required=False, default=".")
            target = self._resolve(path)
            if not target.is_dir():
                return ToolOutcome.failed(f"Not a directory: {path}")
            entries = await asyncio.to_thread(lambda: sorted(target.iterdir(), key=lambda p: p.name))
            lines = [f"{entry.name}/" if entry.is_dir() else entry.name for entry in entries]
            return ToolOutcome.ok(content="\n".join(lines))
        except (OSError, ValueError) as e:
            return ToolOutcome.failed(str(e))

    async def edit_file(self, params: dict[str, Any]) -> ToolOutcome:
        """Apply literal find/replace edits in order; each replaces every occurrence."""
        try:
            path = _param(params, "file_path")
            edits = [
                (edit["find"], edit.get("replace") if isinstance(edit.get("replace"), str) else "")
                for edit in params.get("edits") or []
                if isinstance(edit, dict) and isinstance(edit.get("find"), str) and edit["find"]
            ]
            if not edits:
                return ToolOutcome.failed("No edits provided.")

            target = self._resolve(path)
            content = await asyncio.to_thread(target.read_text, encoding="utf-8")
            replacements = 0
            for find, replace in edits:
                replacements += content.count(find)
                content = content.replace(find, replace)
            await asyncio.to_thread(target.write_text, content, encoding="utf-8")
            return ToolOutcome.ok(message=f"Applied {replacements} replacement(s) in {path}.")
        except (OSError, ValueError) as e:
            return ToolOutcome.failed(str(e))

    async def run_command(self, params: dict[str, Any]) -> ToolOutcome:
        """Run a shell command in the workspace and capture its output."""
        command = params.get("command")
        if not isinstance(command, str) or not command.strip():
            return ToolOutcome.failed("command is required")
        if self.safety_enabled and not is_command_allowed(command):
            logger.warning("Refused command: %s", command)
            return ToolOutcome.failed(f'Command "{command}" is not allowed for security reasons.')

        try:
            timeout = int(params.get("timeout") or self.command_timeout)
        except (TypeError, ValueError):
            timeout = self.command_timeout
        effective_timeout = max(1, min(timeout, _MAX_COMMAND_TIMEOUT))

        workspace = Path(self.workspace_dir)
        workspace.mkdir(parents=True, exist_ok=True)

        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(workspace),
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=effective_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return ToolOutcome.failed(f"Command timed out after {effective_timeout}s: {command}")
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        stdout_text = _truncate(stdout.decode("utf-8", errors="replace"), "output")
        stderr_text = _truncate(stderr.decode("utf-8", errors="replace"), "stderr")

        parts = []
        if stdout_text:
            parts.append(stdout_text.rstrip("\n"))
        if stderr_text:
            parts.append(f"STDERR:\n{stderr_text.rstrip()}")
        output = "\n".join(parts) if parts else "(no output)"

        if proc.returncode != 0:
            return ToolOutcome(success=False, content=output, error=f"Exit code: {proc.returncode}")
        return ToolOutcome.ok(content=output)


def _append_text(target: Path, content: str) -> None:
    with target.open("a", encoding="utf-8") as fh:
        fh.write(content)


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

_PATH_PROPERTY = {"type": "string", "description": "Path relative to the workspace root"}

BUILTIN_DEFINITIONS: dict[str, ToolDefinition] = {
    d.name: d
    for d in (
        ToolDefinition(
            name="read_file",
            description="Read a UTF-8 text file from the workspace",
            parameters={
                "type": "object",
                "properties": {"file_path": _PATH_PROPERTY},
                "required": ["file_path"],
            },
        ),
        ToolDefinition(
            name="write_file",
            description="Create or overwrite a file in the workspace",
            parameters={
                "type": "object",
                "properties": {
                    "file_path": _PATH_PROPERTY,
                    "content": {"type": "string", "description": "Full file content"},
                },
                "required": ["file_path", "content"],
            },
        ),
        ToolDefinition(
            name="append_to_file",
            description="Append content to the end of a file",
            parameters={
                "type": "object",
                "properties": {
                    "file_path": _PATH_PROPERTY,
                    "content": {"type": "string", "description": "Content to append"},
                },
                "required": ["file_path", "content"],
            },
        ),
        ToolDefinition(
            name="delete_file",
            description="Delete a file from the workspace",
            parameters={
                "type": "object",
                "properties": {"file_path": _PATH_PROPERTY},
                "required": ["file_path"],
            },
        ),
        ToolDefinition(
            name="copy_file",
            description="Copy a file to a new location",
            parameters={
                "type": "object",
                "properties": {"source_path": _PATH_PROPERTY, "destination_path": _PATH_PROPERTY},
                "required": ["source_path", "destination_path"],
            },
        ),
        ToolDefinition(
            name="move_file",
            description="Move or rename a file",
            parameters={
                "type": "object",
                "properties": {"source_path": _PATH_PROPERTY, "destination_path": _PATH_PROPERTY},
                "required": ["source_path", "destination_path"],
            },
        ),
        ToolDefinition(
            name="list_directory",
            description="List directory entries; directories end with '/'",
            parameters={
                "type": "object",
                "properties": {"dir_path": {**_PATH_PROPERTY, "default": "."}},
            },
        ),
        ToolDefinition(
            name="edit_file",
            description="Apply literal find/replace edits to a file, in order",
            parameters={
                "type": "object",
                "properties": {
                    "file_path": _PATH_PROPERTY,
                    "edits": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "find": {"type": "string"},
                                "replace": {"type": "string"},
                            },
                            "required": ["find"],
                        },
                    },
                },
                "required": ["file_path", "edits"],
            },
        ),
        ToolDefinition(
            name="run_command",
            description="Run a shell command in the workspace directory",
            parameters={
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "Shell command to execute"},
                    "timeout": {
                        "type": "integer",
                        "description": "Timeout in seconds (max 300)",
                        "minimum": 1,
                        "maximum": _MAX_COMMAND_TIMEOUT,
                    },
                },
                "required": ["command"],
            },
        ),
    )
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(dispatcher: ToolDispatcher, settings: Settings) -> WorkspaceTools:
    """Register every builtin tool with the dispatcher, bound to settings.workspace_dir."""
    tools = WorkspaceTools(
        settings.workspace_dir,
        command_timeout=settings.command_timeout,
        safety_enabled=settings.command_safety_enabled,
    )
    for name, definition in BUILTIN_DEFINITIONS.items():
        dispatcher.register(name, getattr(tools, name), definition)
    return tools
