"""Saved conversations: one JSON file per chat under ~/.phi/chats/."""

import json
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from .errors import AgentError
from .tools import atomic_write
from .types import Turn, turn_from_dict, turn_to_dict

logger = logging.getLogger(__name__)

TITLE_LENGTH = 50
_CHAT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def default_chats_dir() -> Path:
    return Path.home() / ".phi" / "chats"


def new_chat_id() -> str:
    return uuid.uuid4().hex[:12]


def make_title(turns: list[Turn]) -> str:
    """First typed user message, cut to TITLE_LENGTH characters."""
    for turn in turns:
        if turn.role == "user" and turn.text:
            text = " ".join(turn.text.split())
            if len(text) > TITLE_LENGTH:
                return text[:TITLE_LENGTH] + "..."
            return text
    return "New chat"


@dataclass
class Chat:
    id: str
    title: str = "New chat"
    created: float = field(default_factory=time.time)
    turns: list[Turn] = field(default_factory=list)


class ChatStore:
    def __init__(self, root: str | Path | None = None):
        self.root = Path(root).expanduser() if root else default_chats_dir()

    def _path(self, chat_id: str) -> Path:
        if not _CHAT_ID_RE.match(chat_id):
            raise AgentError(f"invalid chat id {chat_id!r}")
        return self.root / f"{chat_id}.json"

    def load(self, chat_id: str) -> Chat:
        path = self._path(chat_id)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise AgentError(f"no saved chat with id {chat_id!r}") from None
        except (OSError, json.JSONDecodeError) as e:
            raise AgentError(f"cannot read chat {chat_id!r}: {e}") from e
        try:
            turns = [turn_from_dict(m) for m in data.get("messages", [])]
        except (KeyError, ValueError) as e:
            raise AgentError(f"chat {chat_id!r} is corrupted: {e}") from e
        return Chat(
            id=data.get("id", chat_id),
            title=data.get("title") or make_title(turns),
            created=data.get("created", path.stat().st_mtime),
            turns=turns,
        )

    def save(self, chat: Chat) -> Path:
        if chat.title == "New chat":
            chat.title = make_title(chat.turns)
        payload = {
            "id": chat.id,
            "title": chat.title,
            "created": chat.created,
            "messages": [turn_to_dict(t) for t in chat.turns],
        }
        path = self._path(chat.id)
        atomic_write(path, json.dumps(payload, indent=2, ensure_ascii=False))
        logger.debug("saved chat %s (%d turns) to %s", chat.id, len(chat.turns), path)
        return path

    def list(self) -> list[Chat]:
        """All readable chats, most recently saved first."""
        if not self.root.is_dir():
            return []
        files = sorted(
            self.root.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True
        )
        chats = []
        for path in files:
            try:
                chats.append(self.load(path.stem))
            except AgentError as e:
                logger.warning("skipping %s: %s", path.name, e)
        return chats

    def delete(self, chat_id: str) -> bool:
        try:
            self._path(chat_id).unlink()
        except FileNotFoundError:
            return False
        return True
