"""Todo list tool for tracking work items across an agent session.

Lists live in a TodoStore owned by the session and handed to the tool
through its ToolContext, so two sessions never see each other's lists.
"""

import uuid
from dataclasses import dataclass, field

from . import fmt

MAX_ITEMS = 50
MAX_ITEM_TEXT = 500
VALID_ACTIONS = ("create", "add", "complete", "uncomplete", "remove", "get", "list_all")


def _new_id() -> str:
    return uuid.uuid4().hex[:8]


@dataclass
class TodoItem:
    id: str
    text: str
    completed: bool = False


@dataclass
class TodoList:
    id: str
    title: str
    items: list[TodoItem] = field(default_factory=list)

    @property
    def completed_count(self) -> int:
        return sum(1 for i in self.items if i.completed)

    def render(self) -> str:
        lines = [
            f"Todo List: {self.title} ({self.completed_count}/{len(self.items)} complete)",
            f"ID: {self.id}",
            "",
        ]
        if not self.items:
            lines.append("  (no items)")
        for item in self.items:
            box = "[✓]" if item.completed else "[ ]"
            lines.append(f"  {box} {item.text}")
            lines.append(f"      ID: {item.id}")
        return "\n".join(lines)


class TodoStore:
    """All todo lists of one session plus the id of the active one."""

    def __init__(self, verbose: bool = False):
        self.lists: dict[str, TodoList] = {}
        self.active_id: str | None = None
        self.verbose = verbose

    def process(self, args: dict) -> str:
        """Handle a todo action. Returns the updated view or an error string."""
        action = args.get("action", "")
        if action not in VALID_ACTIONS:
            return (
                f"Error: Unknown action {action!r}, "
                f"expected one of: {', '.join(VALID_ACTIONS)}"
            )

        if action == "create":
            return self._create(args.get("title", "").strip())
        if action == "list_all":
            return self._list_all()

        if action == "get" and self.active_id is None and not args.get("list_id"):
            return "No todo list found. Create one first using action='create'"

        todo = self._resolve(args.get("list_id"))
        if isinstance(todo, str):
            return todo  # error string

        if action == "get":
            return todo.render()
        if action == "add":
            return self._add(todo, args.get("text", "").strip())

        item_id = args.get("item_id", "")
        if not item_id:
            return f"Error: 'item_id' is required for action '{action}'"
        item = next((i for i in todo.items if i.id == item_id), None)
        if item is None:
            return f"Error: Item with ID '{item_id}' not found in list \"{todo.title}\""

        if action == "remove":
            todo.items.remove(item)
            self._notify("remove", item.text)
            return (
                f"Removed item: {item.text}\n\n"
                f"Current list ({len(todo.items)} items):\n{todo.render()}"
            )

        item.completed = action == "complete"
        state = "complete" if item.completed else "incomplete"
        self._notify("done" if item.completed else "undo", item.text)
        return f"Marked item as {state}: {item.text}\n\nCurrent list:\n{todo.render()}"

    def _resolve(self, list_id: str | None) -> TodoList | str:
        list_id = list_id or self.active_id
        if list_id is None:
            return "Error: No todo list found. Create one first using action='create'"
        todo = self.lists.get(list_id)
        if todo is None:
            return f"Error: Todo list with ID '{list_id}' not found"
        return todo

    def _create(self, title: str) -> str:
        if not title:
            return "Error: 'title' is required when creating a new todo list"
        todo = TodoList(_new_id(), title)
        self.lists[todo.id] = todo
        self.active_id = todo.id
        self._notify("create", title)
        return (
            f'Created new todo list "{title}" with ID: {todo.id}\n\n'
            "This is now the active todo list."
        )

    def _add(self, todo: TodoList, text: str) -> str:
        if not text:
            return "Error: 'text' is required when adding a todo item"
        if len(text) > MAX_ITEM_TEXT:
            return f"Error: item text exceeds {MAX_ITEM_TEXT} character limit, please shorten it"
        if len(todo.items) >= MAX_ITEMS:
            return f"Error: todo list full ({MAX_ITEMS} items max)"
        item = TodoItem(_new_id(), text)
        todo.items.append(item)
        self._notify("add", text)
        return (
            f'Added item to "{todo.title}":\n  [{item.id}] {text}\n\n'
            f"Current list ({len(todo.items)} items):\n{todo.render()}"
        )

    def _list_all(self) -> str:
        if not self.lists:
            return "No todo lists found."
        lines = [f"Found {len(self.lists)} todo list(s):", ""]
        for todo in self.lists.values():
            active = " (active)" if todo.id == self.active_id else ""
            lines.append(
                f"[{todo.id}]{active} {todo.title} "
                f"({todo.completed_count}/{len(todo.items)} complete)"
            )
        return "\n".join(lines)

    def _notify(self, action: str, detail: str) -> None:
        if self.verbose:
            fmt.todo_update(action, detail[:80])
