"""Shared fixtures: a scripted stand-in for the model service."""

import json

import pytest

from phi.types import (
    AssistantTurn,
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    InputJsonDelta,
    MessageStop,
    TextBlock,
    TextDelta,
    ToolInvocation,
)


def text_reply(text: str) -> AssistantTurn:
    return AssistantTurn((TextBlock(text),))


def tool_reply(*calls, text: str = "") -> AssistantTurn:
    """Assistant turn requesting *calls*, each a ``(id, name, input)`` tuple."""
    content = [TextBlock(text)] if text else []
    content.extend(ToolInvocation(cid, name, dict(args)) for cid, name, args in calls)
    return AssistantTurn(tuple(content))


class ScriptedStream:
    def __init__(self, reply: AssistantTurn):
        self.reply = reply
        self.finished = False

    def __iter__(self):
        for key, block in enumerate(self.reply.content):
            if block.kind == "text":
                yield ContentBlockStart(key, TextBlock())
                yield ContentBlockDelta(key, TextDelta(block.text))
            else:
                yield ContentBlockStart(key, ToolInvocation(block.id, block.name))
                doc = json.dumps(block.input)
                # cumulative input documents, first one incomplete
                yield ContentBlockDelta(key, InputJsonDelta(doc[: len(doc) // 2]))
                yield ContentBlockDelta(key, InputJsonDelta(doc))
            yield ContentBlockStop(key)
        self.finished = True
        yield MessageStop("tool_calls" if self.reply.tool_invocations else "stop")

    def final_message(self) -> AssistantTurn:
        assert self.finished, "final_message() before the stream ended"
        return AssistantTurn(
            tuple(
                TextBlock(b.text) if b.kind == "text" else ToolInvocation(b.id, b.name, dict(b.input))
                for b in self.reply.content
            )
        )


class ScriptedModel:
    """Plays back one scripted reply per round.

    A script entry that is an exception is raised from ``open_stream``.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.calls: list[int] = []

    def open_stream(self, system_prompt, transcript, registry):
        self.calls.append(len(transcript))
        if not self.script:
            raise AssertionError("model called more often than scripted")
        entry = self.script.pop(0)
        if isinstance(entry, BaseException):
            raise entry
        return ScriptedStream(entry)


@pytest.fixture
def no_home(tmp_path, monkeypatch):
    """Point HOME and XDG_CONFIG_HOME at empty temp dirs."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    return home
