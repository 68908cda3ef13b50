"""Rebuild ordered assistant content from the interleaved agent event stream.

The reducer keeps two lookups:

- position key -> block, for the response currently streaming. Keys come
  from ``content_block_start`` and are only meaningful until
  ``message_stop``, when the map is dropped.
- tool invocation id -> block, for the whole agent turn. Tool execution
  events arrive after the response that requested them has stopped, so
  they are matched by id, never by key.

Blocks are only ever appended or updated in place.
"""

import json
import logging

from .types import (
    AgentEvent,
    AssistantTurn,
    ContentBlock,
    TextBlock,
    ToolInvocation,
    ToolState,
)

logger = logging.getLogger(__name__)


class StreamReducer:
    def __init__(self):
        self.blocks: list[ContentBlock] = []
        self.turns: list[AssistantTurn] = []
        self.done = False
        self.exhausted = False
        self._by_key: dict[int, ContentBlock] = {}
        self._by_id: dict[str, ToolInvocation] = {}

    def feed(self, event: AgentEvent) -> AssistantTurn | None:
        """Apply one event. Returns the finalized turn on ``message_stop``."""
        etype = event.type
        if etype == "content_block_start":
            self._start(event.index, event.block)
        elif etype == "content_block_delta":
            self._delta(event.index, event.delta)
        elif etype == "content_block_stop":
            if event.index not in self._by_key:
                logger.debug("stop for unknown block %d", event.index)
        elif etype == "message_stop":
            return self._finish()
        elif etype == "tool_execution_start":
            inv = self._invocation(event.tool_use_id)
            if inv is not None and not inv.advance(ToolState.EXECUTING):
                logger.debug("ignoring late start for %s", event.tool_use_id)
        elif etype == "tool_execution_end":
            inv = self._invocation(event.tool_use_id)
            if inv is not None:
                final = ToolState.FAILED if event.is_error else ToolState.COMPLETED
                if inv.advance(final):
                    inv.result = event.result
                    inv.is_error = event.is_error
                else:
                    logger.debug("ignoring repeated end for %s", event.tool_use_id)
        elif etype == "done":
            self.done = True
            self.exhausted = event.exhausted
        else:
            raise ValueError(f"unhandled agent event type: {etype!r}")
        return None

    def _start(self, key: int, descriptor: ContentBlock) -> None:
        if key in self._by_key:
            logger.debug("duplicate start for block %d ignored", key)
            return
        kind = descriptor.kind
        if kind == "text":
            block: ContentBlock = TextBlock()
        elif kind == "tool_use":
            block = ToolInvocation(descriptor.id, descriptor.name)
            self._by_id[block.id] = block
        else:
            raise ValueError(f"unhandled content block kind: {kind!r}")
        self._by_key[key] = block
        self.blocks.append(block)

    def _delta(self, key: int, delta) -> None:
        block = self._by_key.get(key)
        if block is None:
            logger.debug("delta for unknown block %d dropped", key)
            return
        dtype = delta.type
        if dtype == "text_delta":
            if block.kind != "text":
                logger.debug("text delta for non-text block %d dropped", key)
                return
            block.text += delta.text
        elif dtype == "input_json_delta":
            if block.kind != "tool_use":
                logger.debug("input delta for non-tool block %d dropped", key)
                return
            try:
                parsed = json.loads(delta.partial_json)
            except json.JSONDecodeError:
                return  # incomplete document; keep the last good input
            if isinstance(parsed, dict):
                block.input = parsed
        else:
            raise ValueError(f"unhandled delta type: {dtype!r}")

    def _finish(self) -> AssistantTurn:
        turn = AssistantTurn(tuple(self.blocks))
        self.turns.append(turn)
        self.blocks = []
        self._by_key = {}
        return turn

    def _invocation(self, tool_use_id: str) -> ToolInvocation | None:
        inv = self._by_id.get(tool_use_id)
        if inv is None:
            logger.debug("execution event for unknown tool id %s", tool_use_id)
        return inv
