import argparse
import json
import logging
import os
import sys
import time
import uuid
from functools import lru_cache
from importlib import metadata
from pathlib import Path
from typing import Iterator

from . import fmt
from .errors import AgentError, TransportError
from .stream import StreamReducer
from .tools import ToolContext, ToolRegistry
from .types import (
    AgentEvent,
    AssistantTurn,
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    InputJsonDelta,
    MessageStop,
    TextBlock,
    TextDelta,
    ToolExecutionEnd,
    ToolExecutionStart,
    ToolInvocation,
    ToolResult,
    Turn,
    TurnDone,
    UserTurn,
)

logger = logging.getLogger(__name__)

MAX_ARG_LOG = 1000
MAX_RESULT_PREVIEW = 120

SYSTEM_PROMPT = (
    "You are phi, a coding assistant running in the user's terminal. "
    "You help with software engineering tasks: reading and changing code, "
    "running commands, and answering questions about the project.\n\n"
    "Use the tools to inspect files before changing them. Prefer edit_file for "
    "small changes; old_string must match the file exactly and be unique. "
    "Use glob to find files by name and grep to search their contents. "
    "Use bash for builds, tests and version control. For work with several "
    "steps, keep a todo list up to date.\n\n"
    "Keep answers short and direct. When a tool fails, read the error and "
    "correct the call instead of repeating it."
)


# ---------------------------------------------------------------------------
# Token estimates
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _encoder():
    import tiktoken

    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list[dict], tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    enc = _encoder()
    total = 0
    for m in messages:
        content = m.get("content") or ""
        for tc in m.get("tool_calls") or ():
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments") or "")
        total += len(enc.encode(content))
    if tools:
        total += len(enc.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


# ---------------------------------------------------------------------------
# Model service
# ---------------------------------------------------------------------------


def to_messages(system_prompt: str | None, transcript: list[Turn]) -> list[dict]:
    """Render the transcript as OpenAI-style chat messages for litellm."""
    messages: list[dict] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for turn in transcript:
        if turn.role == "user":
            for r in turn.results:
                messages.append(
                    {"role": "tool", "tool_call_id": r.tool_use_id, "content": r.content}
                )
            if turn.text:
                messages.append({"role": "user", "content": turn.text})
        elif turn.role == "assistant":
            msg: dict = {"role": "assistant", "content": turn.text or None}
            calls = [
                {
                    "id": inv.id,
                    "type": "function",
                    "function": {"name": inv.name, "arguments": json.dumps(inv.input)},
                }
                for inv in turn.tool_invocations
            ]
            if calls:
                msg["tool_calls"] = calls
            messages.append(msg)
        else:
            raise ValueError(f"unknown turn role: {turn.role!r}")
    return messages


class LiteLLMStream:
    """Translate litellm streaming chunks into content block events.

    Text becomes one text block; each streamed tool call becomes its own
    tool block. Position keys are handed out in order of first appearance
    and are stable for the life of the response. Tool arguments arrive in
    fragments; every input delta carries the whole argument string received
    so far.
    """

    def __init__(self, response):
        self._response = response
        self._blocks: dict[int, TextBlock | ToolInvocation] = {}
        self._args: dict[int, str] = {}
        self._tool_keys: dict[int, int] = {}
        self._open: list[int] = []
        self._text_key: int | None = None
        self._finished = False
        self.finish_reason: str | None = None

    def _allocate(self, block) -> int:
        key = len(self._blocks)
        self._blocks[key] = block
        self._open.append(key)
        return key

    def _close(self, key: int) -> Iterator[ContentBlockStop]:
        if key in self._open:
            self._open.remove(key)
            yield ContentBlockStop(key)

    def __iter__(self) -> Iterator[AgentEvent]:
        if self._finished:
            raise RuntimeError("model stream already consumed")
        try:
            for chunk in self._response:
                yield from self._translate(chunk)
        except AgentError:
            raise
        except Exception as e:
            raise TransportError(f"model stream failed: {e}") from e
        for key in list(self._open):
            yield from self._close(key)
        self._finished = True
        yield MessageStop(self.finish_reason)

    def _translate(self, chunk) -> Iterator[AgentEvent]:
        choices = getattr(chunk, "choices", None)
        if not choices:
            return  # usage-only chunk
        choice = choices[0]
        if getattr(choice, "finish_reason", None):
            self.finish_reason = choice.finish_reason
        delta = getattr(choice, "delta", None)
        if delta is None:
            return

        text = getattr(delta, "content", None)
        if text:
            if self._text_key is None:
                self._text_key = self._allocate(TextBlock())
                yield ContentBlockStart(self._text_key, TextBlock())
            self._blocks[self._text_key].text += text
            yield ContentBlockDelta(self._text_key, TextDelta(text))

        for tc in getattr(delta, "tool_calls", None) or ():
            index = tc.index if getattr(tc, "index", None) is not None else len(self._tool_keys)
            fn = getattr(tc, "function", None)
            name = (getattr(fn, "name", None) or "") if fn else ""
            fragment = (getattr(fn, "arguments", None) or "") if fn else ""

            key = self._tool_keys.get(index)
            if key is None:
                # Text after a tool call starts a fresh text block.
                if self._text_key is not None:
                    yield from self._close(self._text_key)
                    self._text_key = None
                call_id = getattr(tc, "id", None) or f"call_{uuid.uuid4().hex[:24]}"
                key = self._allocate(ToolInvocation(call_id, name))
                self._tool_keys[index] = key
                self._args[key] = ""
                yield ContentBlockStart(key, ToolInvocation(call_id, name))
            elif name and not self._blocks[key].name:
                self._blocks[key].name = name

            if fragment:
                self._args[key] += fragment
                yield ContentBlockDelta(key, InputJsonDelta(self._args[key]))

    def final_message(self) -> AssistantTurn:
        """The complete assistant turn. Only valid once the stream is drained."""
        if not self._finished:
            raise RuntimeError("final_message() called before the stream ended")
        content = []
        for key, block in self._blocks.items():
            if block.kind == "text":
                content.append(TextBlock(block.text))
            elif block.kind == "tool_use":
                raw = self._args.get(key, "").strip()
                try:
                    args = json.loads(raw) if raw else {}
                except json.JSONDecodeError:
                    logger.warning("invalid JSON arguments for %s: %.200s", block.name, raw)
                    args = {}
                if not isinstance(args, dict):
                    args = {}
                content.append(ToolInvocation(block.id, block.name, args))
            else:
                raise ValueError(f"unknown content block kind: {block.kind!r}")
        return AssistantTurn(tuple(content))


class LiteLLMService:
    """Model service backed by ``litellm.completion(stream=True)``."""

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        max_output_tokens: int = 8192,
        temperature: float | None = None,
    ):
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature

    def open_stream(
        self, system_prompt: str | None, transcript: list[Turn], registry: ToolRegistry
    ) -> LiteLLMStream:
        import litellm

        litellm.suppress_debug_info = True

        kwargs: dict = dict(
            model=self.model,
            messages=to_messages(system_prompt, transcript),
            max_tokens=self.max_output_tokens,
            stream=True,
        )
        tools = registry.advertise()
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.base_url:
            kwargs["api_base"] = self.base_url
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature

        try:
            response = litellm.completion(**kwargs)
        except Exception as e:
            raise TransportError(f"LLM call failed: {e}") from e
        return LiteLLMStream(response)


# ---------------------------------------------------------------------------
# Turn controller
# ---------------------------------------------------------------------------


def run_turn(
    transcript: list[Turn],
    user_text: str,
    *,
    model,
    registry: ToolRegistry,
    context: ToolContext,
    system_prompt: str | None = SYSTEM_PROMPT,
    max_rounds: int | None = None,
) -> Iterator[AgentEvent]:
    """Drive one user turn to completion, yielding every event along the way.

    *model* is anything with ``open_stream(system_prompt, transcript,
    registry)`` returning an iterable of stream events with a
    ``final_message()`` method. Tool calls run one at a time, in the order
    the model emitted them. *transcript* is mutated in place; when a
    TransportError escapes, it holds everything up to the failure.
    """
    transcript.append(UserTurn(user_text))
    rounds = 0
    while True:
        if max_rounds is not None and rounds >= max_rounds:
            yield TurnDone(exhausted=True)
            return
        rounds += 1

        stream = model.open_stream(system_prompt, transcript, registry)
        yield from stream
        reply = stream.final_message()
        transcript.append(reply)

        invocations = reply.tool_invocations
        if not invocations:
            yield TurnDone()
            return

        results: list[ToolResult] = []
        try:
            for i, inv in enumerate(invocations):
                yield ToolExecutionStart(inv.id, inv.name, dict(inv.input))
                if inv.name not in registry:
                    result = ToolResult(inv.id, f"Error: Unknown tool {inv.name}", True)
                else:
                    try:
                        text, is_error = registry.invoke(inv.name, inv.input, context)
                    except TransportError as e:
                        results.append(ToolResult(inv.id, f"Error: {e}", True))
                        results.extend(
                            ToolResult(rest.id, "Error: not executed, an earlier tool failed", True)
                            for rest in invocations[i + 1 :]
                        )
                        yield ToolExecutionEnd(inv.id, f"Error: {e}", True)
                        raise
                    result = ToolResult(inv.id, text, is_error)
                results.append(result)
                yield ToolExecutionEnd(inv.id, result.content, result.is_error)
        finally:
            # Every call gets an answer, even when the consumer stops early.
            answered = {r.tool_use_id for r in results}
            results.extend(
                ToolResult(inv.id, "Error: interrupted before completion", True)
                for inv in invocations
                if inv.id not in answered
            )
            transcript.append(UserTurn(results=tuple(results)))


# ---------------------------------------------------------------------------
# Terminal rendering
# ---------------------------------------------------------------------------


def _preview(text: str) -> str:
    first = text.strip().split("\n", 1)[0]
    if len(first) > MAX_RESULT_PREVIEW:
        first = first[:MAX_RESULT_PREVIEW] + "..."
    return first


def render_events(
    events: Iterator[AgentEvent], *, verbose: bool = True, max_rounds: int | None = None
) -> tuple[str | None, bool]:
    """Print assistant text to stdout and tool activity to stderr as events arrive.

    Returns ``(final_answer, exhausted)``.
    """
    reducer = StreamReducer()
    started: dict[str, float] = {}
    at_line_start = True
    rounds = 0
    in_round = False

    for event in events:
        etype = event.type
        if etype == "content_block_start" and not in_round:
            in_round = True
            rounds += 1
            if verbose and rounds > 1:
                fmt.round_header(rounds, max_rounds)
        turn = reducer.feed(event)

        if etype == "content_block_delta" and event.delta.type == "text_delta":
            sys.stdout.write(event.delta.text)
            sys.stdout.flush()
            at_line_start = event.delta.text.endswith("\n")
        elif etype == "message_stop":
            in_round = False
            if turn is not None and turn.text and not at_line_start:
                sys.stdout.write("\n")
                sys.stdout.flush()
                at_line_start = True
        elif etype == "tool_execution_start":
            started[event.tool_use_id] = time.monotonic()
            if verbose:
                args_json = json.dumps(event.input, indent=2, ensure_ascii=False)
                if len(args_json) > MAX_ARG_LOG:
                    args_json = args_json[:MAX_ARG_LOG] + "\n..."
                fmt.tool_call(event.name, args_json)
        elif etype == "tool_execution_end":
            if verbose:
                elapsed = time.monotonic() - started.pop(event.tool_use_id, time.monotonic())
                name = next(
                    (
                        b.name
                        for t in reducer.turns
                        for b in t.content
                        if b.kind == "tool_use" and b.id == event.tool_use_id
                    ),
                    "tool",
                )
                if event.is_error:
                    fmt.tool_error(name, _preview(event.result))
                else:
                    fmt.tool_result(name, elapsed, _preview(event.result))

    answer = reducer.turns[-1].text if reducer.turns else None
    if verbose:
        fmt.completion(rounds, reducer.exhausted)
    return answer, reducer.exhausted


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    from .config import _UNSET

    parser = argparse.ArgumentParser(
        prog="phi",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A terminal coding agent with streaming output and local file, search and shell tools.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="litellm model string, e.g. anthropic/claude-sonnet-4-5-20250929.",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Custom API base URL for the provider.",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per model response (default: 8192).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--max-rounds",
        type=int,
        default=_UNSET,
        help="Maximum model rounds per question (default: 100).",
    )
    parser.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="Replace the built-in system prompt.",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Directory that relative tool paths resolve against (default: current directory).",
    )
    parser.add_argument(
        "--chat",
        metavar="ID",
        default=None,
        help="Resume a saved chat.",
    )
    parser.add_argument(
        "--chats-dir",
        default=_UNSET,
        help="Where chats are saved (default: ~/.phi/chats).",
    )
    parser.add_argument(
        "--no-save",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Don't save the conversation.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Suppress all diagnostics; only print the assistant's text.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log internal diagnostics to stderr.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def main(argv: list[str] | None = None):
    from .config import apply_config_to_args, generate_config, load_config

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("phi-agent")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config())
        sys.exit(0)

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")

    try:
        apply_config_to_args(args, load_config(Path(args.base_dir)))
        if args.max_rounds < 1:
            parser.error("--max-rounds must be at least 1")
        args.verbose = not args.quiet
        fmt.init(color=args.color, no_color=args.no_color)
        fmt.setup_logging(args.debug)
        exhausted = _run_main(args)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    if exhausted:
        sys.exit(2)


def _run_main(args) -> bool:
    from .session import Session
    from .store import ChatStore

    base_dir = Path(args.base_dir)
    if not base_dir.is_dir():
        raise AgentError(f"base directory does not exist: {args.base_dir}")

    model = LiteLLMService(
        args.model,
        api_key=args.api_key,
        base_url=args.base_url,
        max_output_tokens=args.max_output_tokens,
        temperature=args.temperature,
    )
    session = Session(
        model,
        store=None if args.no_save else ChatStore(args.chats_dir),
        chat_id=args.chat,
        base_dir=str(base_dir),
        system_prompt=args.system_prompt or SYSTEM_PROMPT,
        max_rounds=args.max_rounds,
        verbose=args.verbose,
    )
    if args.verbose:
        fmt.model_info(f"Using model {args.model}")
        if args.chat:
            fmt.info(f"Resumed chat {session.chat_id} ({len(session.transcript)} turns)")

    exhausted = False
    if args.question is not None:
        _, exhausted = render_events(
            session.stream(args.question), verbose=args.verbose, max_rounds=args.max_rounds
        )
        if exhausted:
            fmt.warning("round limit reached for this question.")
    if args.repl:
        repl_loop(session, verbose=args.verbose)
        return False
    return exhausted


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /new               Start a new chat\n"
        "  /chats             List saved chats\n"
        "  /load <id>         Switch to a saved chat\n"
        "  /delete <id>       Delete a saved chat\n"
        "  /todo              Show the active todo list\n"
        "  /exit, /quit       Exit the REPL"
    )


def _handle_command(session, cmd: str, arg: str) -> bool:
    """Run a REPL slash command. Returns False for text that should go to the model."""
    if cmd == "/help":
        _repl_help()
    elif cmd == "/new":
        session.reset()
        fmt.info(f"Started chat {session.chat_id}")
    elif cmd == "/chats":
        if session.store is None:
            fmt.warning("chats are not being saved (--no-save).")
        else:
            fmt.chat_list([(c.id, c.title, len(c.turns)) for c in session.store.list()])
    elif cmd == "/load":
        if not arg:
            fmt.warning("usage: /load <id>")
        else:
            try:
                session.load(arg)
            except AgentError as e:
                fmt.error(str(e))
            else:
                fmt.info(f"Loaded chat {session.chat_id} ({len(session.transcript)} turns)")
    elif cmd == "/delete":
        if session.store is None or not arg:
            fmt.warning("usage: /delete <id> (chats must be saved)")
        elif arg == session.chat_id:
            fmt.warning("cannot delete the current chat; use /new first.")
        else:
            try:
                deleted = session.store.delete(arg)
            except AgentError as e:
                fmt.error(str(e))
            else:
                if deleted:
                    fmt.info(f"Deleted chat {arg}")
                else:
                    fmt.warning(f"no saved chat with id {arg!r}")
    elif cmd == "/todo":
        fmt.info(session.context.todo.process({"action": "get"}))
    else:
        return False
    return True


def repl_loop(session, *, verbose: bool = True) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = Path.home() / ".phi" / "repl_history"
    os.makedirs(history_path.parent, exist_ok=True)
    prompt = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "phi> ")])

    if verbose:
        fmt.repl_banner()

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1].strip() if len(cmd_parts) > 1 else ""
        if cmd.startswith("/") and _handle_command(session, cmd, cmd_arg):
            continue

        try:
            _, exhausted = render_events(
                session.stream(line), verbose=verbose, max_rounds=session.max_rounds
            )
        except KeyboardInterrupt:
            fmt.warning("interrupted, question aborted.")
            continue
        except AgentError as e:
            fmt.error(str(e))
            continue

        if exhausted:
            fmt.warning("round limit reached for this question.")
        if verbose:
            fmt.context_stats(
                "Context", estimate_tokens(to_messages(session.system_prompt, session.transcript))
            )


if __name__ == "__main__":
    main()
