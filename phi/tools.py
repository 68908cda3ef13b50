"""Tool definitions, implementations and the registry the agent loop dispatches through."""

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Iterable, Iterator, Mapping

from . import shell
from .diff import unified_diff
from .edit import replace
from .errors import TransportError
from .search import (
    MAX_GLOB_RESULTS,
    MAX_SEARCH_RESULTS,
    expand_path,
    glob_paths,
    search_content,
)
from .todo import VALID_ACTIONS, TodoStore

logger = logging.getLogger(__name__)

MAX_READ_LINES = 2000
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_TIMEOUT = 600  # seconds

ERROR_PREFIX = "Error:"


def is_error_result(text: str) -> bool:
    return text.startswith(ERROR_PREFIX)


@dataclass
class ToolContext:
    """Per-session state handed to every tool run."""

    base_dir: str = "."
    todo: TodoStore = field(default_factory=TodoStore)


ToolRun = Callable[[dict, ToolContext], str]


@dataclass(frozen=True)
class ToolContract:
    name: str
    description: str
    input_schema: dict
    run: ToolRun

    def advertise(self) -> dict:
        """OpenAI-style function entry, as litellm expects in ``tools=``."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


class ToolRegistry(Mapping[str, ToolContract]):
    """Immutable name -> contract table.

    Built once and passed by reference to the agent loop; there is no way to
    add or replace a tool after construction.
    """

    def __init__(self, contracts: Iterable[ToolContract]):
        table: dict[str, ToolContract] = {}
        for contract in contracts:
            if contract.name in table:
                raise ValueError(f"duplicate tool name: {contract.name!r}")
            table[contract.name] = contract
        self._contracts = MappingProxyType(table)

    def __getitem__(self, name: str) -> ToolContract:
        return self._contracts[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._contracts)

    def __len__(self) -> int:
        return len(self._contracts)

    def advertise(self) -> list[dict]:
        return [c.advertise() for c in self._contracts.values()]

    def invoke(self, name: str, args: dict, context: ToolContext) -> tuple[str, bool]:
        """Run tool *name* and return ``(text, is_error)``.

        Failures inside the tool come back as ``Error:`` text. Only
        TransportError escapes, since it means the host could not run the
        tool at all.

        Raises:
            KeyError: If the tool name is not recognized.
        """
        contract = self._contracts[name]
        if not isinstance(args, dict):
            return f"Error: arguments for {name} must be a JSON object", True
        for key in contract.input_schema.get("required", ()):
            if key not in args:
                return f"Error: missing required argument '{key}' for {name}", True

        try:
            text = contract.run(args, context)
        except TransportError:
            raise
        except Exception as exc:
            logger.debug("tool %s raised", name, exc_info=True)
            text = f"Error: {exc}"
        return text, is_error_result(text)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def atomic_write(path: Path, content: str) -> int:
    """Write *content* to *path* through a temp file and ``os.replace``.

    Returns the number of bytes written.
    """
    data = content.encode("utf-8")
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        if path.exists():
            os.chmod(tmp, path.stat().st_mode & 0o7777)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    return len(data)


def _int_arg(args: dict, key: str, default: int) -> int:
    value = args.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{key}' must be an integer, got {value!r}") from None


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


def _read_file(path: str, base_dir: str, offset: int = 1, limit: int = MAX_READ_LINES) -> str:
    """Return numbered lines of a text file."""
    resolved = expand_path(path, base_dir)
    if not resolved.exists():
        return f"Error: File not found: {path}"
    if resolved.is_dir():
        return f"Error: {path} is a directory. Use glob to list its files."

    try:
        with open(resolved, "rb") as f:
            chunk = f.read(BINARY_CHECK_BYTES)
    except OSError as exc:
        return f"Error: {exc}"
    if b"\x00" in chunk:
        return f"Error: binary file detected: {path}"

    try:
        text = resolved.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        return f"Error: failed to decode {path} as UTF-8: {exc}"
    except OSError as exc:
        return f"Error: {exc}"

    lines = text.split("\n")
    total = len(lines)
    start = max(offset, 1)
    if start > total:
        return f"Error: Offset {offset} exceeds file length ({total} lines)"

    end = min(start - 1 + min(max(limit, 1), MAX_READ_LINES), total)
    width = len(str(end))
    out = []
    for n in range(start, end + 1):
        line = lines[n - 1]
        if len(line) > MAX_LINE_LENGTH:
            line = line[:MAX_LINE_LENGTH] + " [truncated]"
        out.append(f"{n:>{width}}\t{line}")

    result = "\n".join(out)
    remaining = total - end
    if remaining > 0:
        result += f"\n\n[{remaining} more lines. Use offset={end + 1} to continue reading]"
    return result


def _write_file(path: str, content: str, base_dir: str) -> str:
    """Create or overwrite a file with content."""
    resolved = expand_path(path, base_dir)
    if resolved.is_dir():
        return f"Error: {path} is a directory"
    size = atomic_write(resolved, content)
    lines = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
    return f"Successfully wrote {size} bytes ({lines} lines) to {path}"


def _edit_file(path: str, old_string: str, new_string: str, base_dir: str) -> str:
    """Replace the single occurrence of old_string and report the diff."""
    resolved = expand_path(path, base_dir)
    if not resolved.is_file():
        return f"Error: File not found: {path}"

    try:
        content = resolved.read_bytes().decode("utf-8")
    except (UnicodeDecodeError, OSError) as exc:
        return f"Error: cannot read {path}: {exc}"

    try:
        new_content = replace(content, old_string, new_string)
    except ValueError as exc:
        return f"Error: {exc}"

    atomic_write(resolved, new_content)
    return "File edited successfully.\n\n" + unified_diff(content, new_content, path)


def _bash(command: str, base_dir: str, timeout: int, workdir: str | None) -> str:
    if not command.strip():
        return "Error: 'command' must not be empty"
    if timeout < 1:
        return "Error: 'timeout' must be at least 1 second"
    timeout = min(timeout, MAX_TIMEOUT)
    cwd = expand_path(workdir or ".", base_dir)
    if not cwd.is_dir():
        return f"Error: working directory does not exist: {workdir}"
    return shell.run(command, timeout=timeout, workdir=str(cwd)).render()


def _grep(args: dict, base_dir: str) -> str:
    path = args.get("path") or "."
    root = expand_path(path, base_dir)
    if not root.exists():
        return f"Error: path does not exist: {path}"
    report = search_content(
        args["pattern"],
        root,
        file_glob=args.get("glob"),
        case_insensitive=bool(args.get("case_insensitive", False)),
        include_hidden=bool(args.get("include_hidden", False)),
        exclude_dirs=args.get("exclude_dirs") or (),
        max_results=max(_int_arg(args, "max_results", MAX_SEARCH_RESULTS), 1),
    )
    return report.render()


def _glob(args: dict, base_dir: str) -> str:
    path = args.get("path") or "."
    root = expand_path(path, base_dir)
    if not root.exists():
        return f"Error: path does not exist: {path}"
    if not root.is_dir():
        return f"Error: path is not a directory: {path}"
    report = glob_paths(
        args["pattern"],
        root,
        include_hidden=bool(args.get("include_hidden", False)),
        exclude_dirs=args.get("exclude_dirs") or (),
        max_results=max(_int_arg(args, "max_results", MAX_GLOB_RESULTS), 1),
    )
    return report.render()


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


READ_FILE = ToolContract(
    name="read_file",
    description=(
        "Read the contents of a text file. Returns lines prefixed with line numbers. "
        "Use offset and limit to page through large files."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The file path to read (supports ~ for home directory).",
            },
            "offset": {
                "type": "integer",
                "description": "Line number to start reading from (1-indexed, default: 1).",
            },
            "limit": {
                "type": "integer",
                "description": "Maximum number of lines to read (default: 2000).",
            },
        },
        "required": ["path"],
    },
    run=lambda args, ctx: _read_file(
        args["path"],
        ctx.base_dir,
        offset=_int_arg(args, "offset", 1),
        limit=_int_arg(args, "limit", MAX_READ_LINES),
    ),
)

WRITE_FILE = ToolContract(
    name="write_file",
    description=(
        "Create or overwrite a file with the given content, creating parent "
        "directories as needed."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path to the file to write."},
            "content": {"type": "string", "description": "The full file content."},
        },
        "required": ["path", "content"],
    },
    run=lambda args, ctx: _write_file(args["path"], args["content"], ctx.base_dir),
)

EDIT_FILE = ToolContract(
    name="edit_file",
    description=(
        "Replace exactly one occurrence of old_string with new_string in a file. "
        "old_string must match the file verbatim, including whitespace, and must be "
        "unique; include surrounding lines to disambiguate. Returns a diff of the change."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path to the file to edit."},
            "old_string": {"type": "string", "description": "The exact text to replace."},
            "new_string": {"type": "string", "description": "The replacement text."},
        },
        "required": ["path", "old_string", "new_string"],
    },
    run=lambda args, ctx: _edit_file(
        args["path"], args["old_string"], args["new_string"], ctx.base_dir
    ),
)

BASH = ToolContract(
    name="bash",
    description=(
        "Run a shell command and return its stdout and stderr. Output is capped at "
        "10 MiB per stream. The command is killed when it exceeds the timeout."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "The shell command to run."},
            "timeout": {
                "type": "integer",
                "description": f"Timeout in seconds (default: {shell.DEFAULT_TIMEOUT}).",
            },
            "workdir": {
                "type": "string",
                "description": "Directory to run the command in (default: current directory).",
            },
        },
        "required": ["command"],
    },
    run=lambda args, ctx: _bash(
        args["command"],
        ctx.base_dir,
        _int_arg(args, "timeout", shell.DEFAULT_TIMEOUT),
        args.get("workdir"),
    ),
)

GLOB = ToolContract(
    name="glob",
    description=(
        "Find files whose path matches a glob pattern such as '**/*.py', 'src/*.ts' "
        "or '*.{js,jsx}'. Returns paths sorted by modification time, newest first."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Glob pattern relative to path."},
            "path": {
                "type": "string",
                "description": "Directory to search in (default: current directory).",
            },
            "include_hidden": {
                "type": "boolean",
                "description": "Include hidden files and directories (default: false).",
            },
            "exclude_dirs": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Additional directory names to skip.",
            },
            "max_results": {
                "type": "integer",
                "description": f"Maximum number of results (default: {MAX_GLOB_RESULTS}).",
            },
        },
        "required": ["pattern"],
    },
    run=lambda args, ctx: _glob(args, ctx.base_dir),
)

GREP = ToolContract(
    name="grep",
    description=(
        "Search file contents for a regular expression (invalid expressions are "
        "matched literally). Returns matching lines grouped by file with line and "
        "column numbers."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Regex or literal to search for."},
            "path": {
                "type": "string",
                "description": "Directory or file to search (default: current directory).",
            },
            "glob": {
                "type": "string",
                "description": "Only search files matching this pattern, e.g. '*.py'.",
            },
            "case_insensitive": {
                "type": "boolean",
                "description": "Case insensitive search (default: false).",
            },
            "include_hidden": {
                "type": "boolean",
                "description": "Include hidden files (default: false).",
            },
            "exclude_dirs": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Additional directory names to skip.",
            },
            "max_results": {
                "type": "integer",
                "description": f"Maximum number of matches (default: {MAX_SEARCH_RESULTS}).",
            },
        },
        "required": ["pattern"],
    },
    run=lambda args, ctx: _grep(args, ctx.base_dir),
)

TODO = ToolContract(
    name="todo",
    description=(
        "Manage todo lists for tracking multi-step work during the conversation: "
        "create a list, add items, mark them complete or incomplete, remove them, "
        "or view lists."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "action": {"type": "string", "enum": list(VALID_ACTIONS)},
            "list_id": {
                "type": "string",
                "description": "List to operate on (default: the active list).",
            },
            "title": {"type": "string", "description": "Title, for 'create'."},
            "text": {"type": "string", "description": "Item text, for 'add'."},
            "item_id": {
                "type": "string",
                "description": "Item id, for 'complete', 'uncomplete' and 'remove'.",
            },
        },
        "required": ["action"],
    },
    run=lambda args, ctx: ctx.todo.process(args),
)

DEFAULT_TOOLS = (READ_FILE, WRITE_FILE, EDIT_FILE, BASH, GLOB, GREP, TODO)


def build_registry(extra: Iterable[ToolContract] = ()) -> ToolRegistry:
    """The standard tool set, plus any caller-supplied contracts."""
    return ToolRegistry((*DEFAULT_TOOLS, *extra))
