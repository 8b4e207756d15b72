"""Built-in todo list provider; its plan feeds the dynamic part of the system prompt."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Mapping

from .errors import ErrorCode, ToolError
from .service import ToolService
from .types import ToolSpec

__all__ = ["Todo", "TodoService", "TODO_STATUSES"]

TodoStatus = Literal["pending", "in_progress", "completed", "cancelled"]
TODO_STATUSES: tuple[str, ...] = ("pending", "in_progress", "completed", "cancelled")
_STATUS_MARKERS = {"pending": "[ ]", "in_progress": "[~]", "completed": "[x]", "cancelled": "[-]"}

_TODO_ITEM_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "content": {"type": "string", "minLength": 1, "description": "The task description."},
        "status": {"type": "string", "enum": list(TODO_STATUSES), "default": "pending"},
        "dependencies": {"type": "array", "items": {"type": "string"}, "default": []},
    },
    "required": ["content"],
}


@dataclass(slots=True)
class Todo:
    id: str
    content: str
    status: TodoStatus = "pending"
    dependencies: List[str] = field(default_factory=list)


class TodoService(ToolService):
    """Keeps the model's task plan for the current session."""

    def __init__(self) -> None:
        self._todos: List[Todo] = []
        super().__init__("todos")

    @property
    def todos(self) -> tuple[Todo, ...]:
        return tuple(self._todos)

    def clear(self) -> None:
        self._todos = []

    def all_completed(self) -> bool:
        return all(todo.status in ("completed", "cancelled") for todo in self._todos)

    def plan_state(self) -> str | None:
        """Render the plan for the system prompt, or ``None`` when there is none."""

        if not self._todos:
            return None
        positions = {todo.id: index for index, todo in enumerate(self._todos, start=1)}
        lines = []
        for index, todo in enumerate(self._todos, start=1):
            line = f"{_STATUS_MARKERS[todo.status]} {index}. {todo.content} (id: {todo.id})"
            if todo.dependencies:
                depends = ", ".join(str(positions.get(dep, "?")) for dep in todo.dependencies)
                line += f" (depends on: {depends})"
            lines.append(line)
        return "\n".join(lines)

    def _register_tools(self) -> None:
        self.registry.register_function(
            ToolSpec(
                name="create_todos",
                description=(
                    "Create or replace the whole todo list. Use it to start a new plan; existing todos are "
                    "discarded. Ids are generated automatically."
                ),
                parameters={
                    "type": "object",
                    "properties": {"todos": {"type": "array", "items": _TODO_ITEM_SCHEMA}},
                    "required": ["todos"],
                },
            ),
            self._create_todos,
        )
        self.registry.register_function(
            ToolSpec(
                name="add_todos",
                description="Append todo items to the existing list. Ids are generated automatically.",
                parameters={
                    "type": "object",
                    "properties": {"todos": {"type": "array", "items": _TODO_ITEM_SCHEMA}},
                    "required": ["todos"],
                },
            ),
            self._add_todos,
        )
        self.registry.register_function(
            ToolSpec(
                name="update_todos",
                description="Update the status, content, or dependencies of existing todo items.",
                parameters={
                    "type": "object",
                    "properties": {
                        "updates": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "properties": {
                                    "id": {"type": "string"},
                                    "content": {"type": "string", "minLength": 1},
                                    "status": {"type": "string", "enum": list(TODO_STATUSES)},
                                    "dependencies": {"type": "array", "items": {"type": "string"}},
                                },
                                "required": ["id"],
                            },
                        }
                    },
                    "required": ["updates"],
                },
            ),
            self._update_todos,
        )

    def _create_todos(self, params: Mapping[str, Any]) -> List[Dict[str, Any]]:
        self._todos = [_new_todo(item) for item in params["todos"]]
        return self._snapshot()

    def _add_todos(self, params: Mapping[str, Any]) -> List[Dict[str, Any]]:
        self._todos.extend(_new_todo(item) for item in params["todos"])
        return self._snapshot()

    def _update_todos(self, params: Mapping[str, Any]) -> List[Dict[str, Any]]:
        by_id = {todo.id: todo for todo in self._todos}
        missing = [update["id"] for update in params["updates"] if update["id"] not in by_id]
        if missing:
            raise ToolError(ErrorCode.TODO_NOT_FOUND, f"Unknown todo id(s): {', '.join(missing)}", {"ids": missing})
        for update in params["updates"]:
            todo = by_id[update["id"]]
            if "content" in update:
                todo.content = update["content"]
            if "status" in update:
                todo.status = update["status"]
            if "dependencies" in update:
                todo.dependencies = list(update["dependencies"])
        return self._snapshot()

    def _snapshot(self) -> List[Dict[str, Any]]:
        return [asdict(todo) for todo in self._todos]


def _new_todo(item: Mapping[str, Any]) -> Todo:
    return Todo(
        id=uuid.uuid4().hex[:8],
        content=str(item["content"]),
        status=item.get("status") or "pending",
        dependencies=list(item.get("dependencies") or []),
    )
