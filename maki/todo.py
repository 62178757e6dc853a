"""Todo list tools backed by a markdown checklist in the workspace."""

import re
from dataclasses import dataclass
from pathlib import Path

from .errors import ToolFailure, ValidationError
from .tools import ToolDescriptor, read_text, resolve_path

TODO_FILE = "todo.md"
MAX_ITEM_TEXT = 500

STATUS_MARKERS = {
    "pending": "[ ]",
    "in_progress": "[/]",
    "completed": "[x]",
    "cancelled": "[~]",
}
_MARKER_STATUS = {m[1]: s for s, m in STATUS_MARKERS.items()}
_ITEM_RE = re.compile(r"^(\s*)[-*]\s*\[([ xX/~])\]\s?(.*)$")


@dataclass
class TodoItem:
    line: int
    text: str
    status: str


def parse_items(content: str) -> list[TodoItem]:
    """Return the checklist items of a todo file, numbered by line."""
    items = []
    for n, line in enumerate(content.split("\n"), start=1):
        m = _ITEM_RE.match(line)
        if m:
            items.append(TodoItem(line=n, text=m.group(3).strip(), status=_MARKER_STATUS[m.group(2).lower()]))
    return items


def _todo_path(root: Path) -> Path:
    return resolve_path(root, TODO_FILE)


def read_todo(root: Path) -> dict:
    path = _todo_path(root)
    if not path.exists():
        return {
            "exists": False,
            "content": "",
            "items": [],
            "message": f"No {TODO_FILE} yet. Use write_todo to create one.",
        }
    content = read_text(path, TODO_FILE)
    items = parse_items(content)
    return {
        "exists": True,
        "content": content,
        "items": [{"index": i, "text": it.text, "status": it.status} for i, it in enumerate(items, 1)],
    }


def write_todo(root: Path, content: str) -> dict:
    if not isinstance(content, str):
        raise ValidationError("content must be a string")
    path = _todo_path(root)
    path.write_text(content, encoding="utf-8")
    return {"path": TODO_FILE, "items": len(parse_items(content))}


def update_todo_item(
    root: Path, item_index: int, new_status: str, new_text: str | None = None
) -> dict:
    """Set the status (and optionally the text) of the Nth checklist item."""
    if new_status not in STATUS_MARKERS:
        raise ValidationError(
            f"invalid new_status {new_status!r}, expected one of: {', '.join(STATUS_MARKERS)}"
        )
    if new_text is not None and len(new_text) > MAX_ITEM_TEXT:
        raise ValidationError(f"item text exceeds {MAX_ITEM_TEXT} character limit")
    path = _todo_path(root)
    if not path.exists():
        raise ToolFailure(f"{TODO_FILE} not found. Use write_todo first.")
    content = read_text(path, TODO_FILE)
    items = parse_items(content)
    if not isinstance(item_index, int) or not 1 <= item_index <= len(items):
        raise ValidationError(f"invalid item_index {item_index}. {TODO_FILE} has {len(items)} items.")

    item = items[item_index - 1]
    lines = content.split("\n")
    indent = _ITEM_RE.match(lines[item.line - 1]).group(1)
    text = item.text if new_text is None else new_text.strip()
    lines[item.line - 1] = f"{indent}- {STATUS_MARKERS[new_status]} {text}"
    path.write_text("\n".join(lines), encoding="utf-8")
    return {"index": item_index, "status": new_status, "line": lines[item.line - 1].strip()}


TOOLS = [
    ToolDescriptor(
        name="read_todo",
        description=f"Read the todo checklist ({TODO_FILE}) in the workspace.",
        parameters={"type": "object", "properties": {}},
        func=read_todo,
        summarize=lambda a, r: (
            f"Read {TODO_FILE} ({len(r['items'])} items)" if r["exists"] else f"No {TODO_FILE} yet"
        ),
    ),
    ToolDescriptor(
        name="write_todo",
        description=(
            f"Create or replace {TODO_FILE}. Use markdown checklist lines: "
            "'- [ ] task' pending, '- [/] task' in progress, "
            "'- [x] task' completed, '- [~] task' cancelled."
        ),
        parameters={
            "type": "object",
            "properties": {"content": {"type": "string", "description": f"New {TODO_FILE} content."}},
            "required": ["content"],
        },
        func=write_todo,
        summarize=lambda a, r: f"Wrote {TODO_FILE} ({r['items']} items)",
    ),
    ToolDescriptor(
        name="update_todo_item",
        description=f"Change the status and optionally the text of one item in {TODO_FILE}.",
        parameters={
            "type": "object",
            "properties": {
                "item_index": {"type": "integer", "description": "1-based position of the item."},
                "new_status": {"type": "string", "enum": list(STATUS_MARKERS)},
                "new_text": {"type": "string", "description": "Replacement text for the item."},
            },
            "required": ["item_index", "new_status"],
        },
        func=update_todo_item,
        summarize=lambda a, r: f"Todo item {r['index']} is now {r['status']}",
    ),
]
