"""Public library API for phi: Session class and Result dataclass."""

from dataclasses import dataclass
from typing import Iterator

from .store import Chat, ChatStore, new_chat_id
from .todo import TodoStore
from .tools import ToolContext, ToolRegistry, build_registry
from .types import AgentEvent, Turn


@dataclass
class Result:
    """Result of an ask call."""

    answer: str | None
    exhausted: bool
    transcript: list[Turn]


class Session:
    """Programmatic interface to the phi agent loop.

    Owns the transcript, the todo lists and the tool context of one
    conversation. When a store is given, the chat is saved after every
    turn, including turns that end in an error.
    """

    def __init__(
        self,
        model,
        *,
        registry: ToolRegistry | None = None,
        store: ChatStore | None = None,
        chat_id: str | None = None,
        base_dir: str = ".",
        system_prompt: str | None = None,
        max_rounds: int | None = None,
        verbose: bool = False,
    ):
        from .agent import SYSTEM_PROMPT

        self.model = model
        self.registry = registry if registry is not None else build_registry()
        self.store = store
        self.base_dir = base_dir
        self.system_prompt = system_prompt if system_prompt is not None else SYSTEM_PROMPT
        self.max_rounds = max_rounds
        self.verbose = verbose
        self.chat = Chat(new_chat_id())
        self.context = ToolContext(base_dir, TodoStore(verbose))
        if chat_id is not None:
            self.load(chat_id)

    @property
    def chat_id(self) -> str:
        return self.chat.id

    @property
    def transcript(self) -> list[Turn]:
        return self.chat.turns

    def load(self, chat_id: str) -> None:
        if self.store is None:
            from .errors import AgentError

            raise AgentError("cannot load a chat without a chat store")
        self.chat = self.store.load(chat_id)
        self.context = ToolContext(self.base_dir, TodoStore(self.verbose))

    def reset(self) -> None:
        """Start a new, empty chat."""
        self.chat = Chat(new_chat_id())
        self.context = ToolContext(self.base_dir, TodoStore(self.verbose))

    def save(self) -> None:
        if self.store is not None and self.chat.turns:
            self.store.save(self.chat)

    def stream(self, text: str) -> Iterator[AgentEvent]:
        """Run one user turn, yielding agent events as they happen."""
        from .agent import run_turn

        try:
            yield from run_turn(
                self.chat.turns,
                text,
                model=self.model,
                registry=self.registry,
                context=self.context,
                system_prompt=self.system_prompt,
                max_rounds=self.max_rounds,
            )
        finally:
            self.save()

    def ask(self, text: str) -> Result:
        """Run one user turn to completion and return the final answer."""
        from .stream import StreamReducer

        reducer = StreamReducer()
        for event in self.stream(text):
            reducer.feed(event)
        answer = reducer.turns[-1].text if reducer.turns else None
        return Result(answer, reducer.exhausted, list(self.chat.turns))
