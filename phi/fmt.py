"""ANSI-formatted stderr output using Rich."""

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


def setup_logging(debug: bool = False) -> None:
    """Route the ``phi`` loggers through Rich on stderr."""
    handler = RichHandler(console=_console, show_path=False, markup=False)
    logger = logging.getLogger("phi")
    logger.handlers[:] = [handler]
    logger.setLevel(logging.DEBUG if debug else logging.WARNING)
    logger.propagate = False


# -- Turn structure ----------------------------------------------------------


def round_header(n: int, max_n: int | None) -> None:
    title = f"Round {n}/{max_n}" if max_n else f"Round {n}"
    _console.print(Rule(title, style="cyan"))


def completion(rounds: int, exhausted: bool) -> None:
    if not exhausted:
        _console.print(Text(f"  ✓ Agent finished: {rounds} rounds", style="bold green"))
    else:
        _console.print(
            Text(f"  Agent stopped after {rounds} rounds (round limit)", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- Todo updates ------------------------------------------------------------


def todo_update(action: str, detail: str) -> None:
    prefix_map = {"add": "+1", "done": "✓", "undo": "↺", "remove": "-1"}
    tag = prefix_map.get(action, action)
    line = Text()
    line.append(f"  [todo {tag}]", style="yellow")
    line.append(f" {detail}", style="dim italic")
    _console.print(line)


# -- Chats -------------------------------------------------------------------


def chat_list(rows: list[tuple[str, str, int]]) -> None:
    """Print ``(id, title, turn_count)`` rows, newest first."""
    if not rows:
        info("No saved chats.")
        return
    for chat_id, title, count in rows:
        line = Text()
        line.append(f"  {chat_id}", style="bold cyan")
        line.append(f"  {title}")
        line.append(f"  ({count} turns)", style="dim")
        _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def context_stats(label: str, tokens: int) -> None:
    _console.print(Text(f"  {label}: ~{tokens} tokens", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(Text("Interactive mode. Type /help for commands, /exit or Ctrl-D to quit.", style="dim"))
