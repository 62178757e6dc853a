"""Tool registry and the built-in workspace file tools."""

from __future__ import annotations

import asyncio
import fnmatch
import inspect
import json
import logging
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from .errors import ErrorKind, MakiError, ToolFailure, ValidationError

logger = logging.getLogger(__name__)

MAX_READ_BYTES = 1024 * 1024  # 1 MB
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_FIND_RESULTS = 500


@dataclass(frozen=True)
class ToolDescriptor:
    """One callable capability exposed to the model.

    ``func`` receives the workspace root followed by the parsed arguments as
    keywords and returns a JSON-serializable dict. ``summarize`` turns the
    arguments and that dict into the one-line progress text.
    """

    name: str
    description: str
    parameters: dict
    func: Callable[..., dict]
    summarize: Callable[[dict, dict], str] | None = None

    def schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True)
class ToolOutcome:
    ok: bool
    content: str
    summary: str
    error_kind: ErrorKind | None = None

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> ToolOutcome:
        return cls(
            ok=False,
            content=json.dumps({"error": message}),
            summary=f"Error: {message}",
            error_kind=kind,
        )


def parse_arguments(raw: str | dict | None) -> Any:
    """Decode the model's argument text.

    Returns the decoded value, or the raw text unchanged when it is not valid
    JSON; the registry then rejects it with an explicit validation failure.
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw


class ToolRegistry:
    """Fixed name-indexed set of tools bound to one workspace directory."""

    def __init__(self, descriptors: list[ToolDescriptor], workspace: str | Path):
        self._tools: dict[str, ToolDescriptor] = {}
        for desc in descriptors:
            if desc.name in self._tools:
                raise ValueError(f"duplicate tool name: {desc.name}")
            self._tools[desc.name] = desc
        self.workspace = Path(workspace).resolve()

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def schemas(self) -> list[dict]:
        return [desc.schema() for desc in self._tools.values()]

    def with_tools(self, descriptors: list[ToolDescriptor]) -> ToolRegistry:
        """A new registry on the same workspace holding only ``descriptors``."""
        return ToolRegistry(descriptors, self.workspace)

    def _prepare(self, name: str, arguments: Any) -> tuple[ToolDescriptor, dict] | ToolOutcome:
        desc = self._tools.get(name)
        if desc is None:
            return ToolOutcome.failure(ErrorKind.VALIDATION, f"unknown tool: {name}")

        if not isinstance(arguments, dict):
            return ToolOutcome.failure(
                ErrorKind.VALIDATION,
                f"arguments for {name} must be a JSON object, got {arguments!r}",
            )

        properties = desc.parameters.get("properties", {})
        missing = [k for k in desc.parameters.get("required", []) if k not in arguments]
        if missing:
            return ToolOutcome.failure(
                ErrorKind.VALIDATION,
                f"{name}: missing required argument(s): {', '.join(missing)}",
            )
        kwargs = {k: v for k, v in arguments.items() if k in properties}
        ignored = set(arguments) - set(kwargs)
        if ignored:
            logger.debug("%s: ignoring unknown argument(s) %s", name, sorted(ignored))
        return desc, kwargs

    @staticmethod
    def _failure(name: str, e: Exception) -> ToolOutcome:
        if isinstance(e, MakiError):
            return ToolOutcome.failure(e.kind, e.message)
        if isinstance(e, TypeError):
            return ToolOutcome.failure(ErrorKind.VALIDATION, f"{name}: {e}")
        if not isinstance(e, OSError):
            logger.exception("tool %s raised", name)
        return ToolOutcome.failure(ErrorKind.TOOL_FAILURE, f"{name}: {e}")

    @staticmethod
    def _success(desc: ToolDescriptor, kwargs: dict, result: dict) -> ToolOutcome:
        summary = desc.summarize(kwargs, result) if desc.summarize else f"{desc.name} done"
        return ToolOutcome(ok=True, content=json.dumps(result, default=str), summary=summary)

    def execute(self, name: str, arguments: Any) -> ToolOutcome:
        """Run a synchronous tool and capture every failure as a ToolOutcome."""
        prepared = self._prepare(name, arguments)
        if isinstance(prepared, ToolOutcome):
            return prepared
        desc, kwargs = prepared
        if inspect.iscoroutinefunction(desc.func):
            return ToolOutcome.failure(ErrorKind.VALIDATION, f"{name} can only run asynchronously")
        try:
            result = desc.func(self.workspace, **kwargs)
        except Exception as e:
            return self._failure(name, e)
        return self._success(desc, kwargs, result)

    async def aexecute(self, name: str, arguments: Any) -> ToolOutcome:
        """Run any tool: coroutine tools on the loop, blocking ones in a thread."""
        desc = self._tools.get(name)
        if desc is None or not inspect.iscoroutinefunction(desc.func):
            return await asyncio.to_thread(self.execute, name, arguments)
        prepared = self._prepare(name, arguments)
        if isinstance(prepared, ToolOutcome):
            return prepared
        desc, kwargs = prepared
        try:
            result = await desc.func(self.workspace, **kwargs)
        except Exception as e:
            return self._failure(name, e)
        return self._success(desc, kwargs, result)


def build_registry(workspace: str | Path, *, web: bool = True) -> ToolRegistry:
    """Assemble the full built-in tool set for a workspace."""
    from . import csv_tools, todo

    descriptors = [THINK_TOOL, *FILE_TOOLS, *csv_tools.TOOLS, *todo.TOOLS]
    if web:
        from .fetch import FETCH_TOOL

        descriptors.append(FETCH_TOOL)
    Path(workspace).mkdir(parents=True, exist_ok=True)
    return ToolRegistry(descriptors, workspace)


# ---------------------------------------------------------------------------
# Path handling
# ---------------------------------------------------------------------------


def resolve_path(root: Path, path: str) -> Path:
    """Resolve a path, ensuring it stays within the workspace root.

    Symlinks are resolved on both sides before the containment check.

    Raises:
        ValidationError: If the path is not a string or escapes the root.
    """
    if not isinstance(path, str) or not path:
        raise ValidationError(f"path must be a non-empty string, got {path!r}")
    base = root.resolve()
    if Path(path).is_absolute():
        resolved = Path(path).resolve()
    else:
        resolved = (base / path).resolve()
    if not resolved.is_relative_to(base):
        raise ValidationError(f"path {path!r} is outside the workspace")
    return resolved


def relative(root: Path, path: Path) -> str:
    rel = path.relative_to(root.resolve()).as_posix()
    return rel or "."


def _timestamp(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat(timespec="seconds")


def _require_file(resolved: Path, path: str) -> None:
    if not resolved.exists():
        raise ToolFailure(f"file does not exist: {path}")
    if not resolved.is_file():
        raise ToolFailure(f"not a file: {path}")


def _require_dir(resolved: Path, path: str) -> None:
    if not resolved.exists():
        raise ToolFailure(f"folder does not exist: {path}")
    if not resolved.is_dir():
        raise ToolFailure(f"not a folder: {path}")


def read_text(resolved: Path, path: str) -> str:
    """Read a UTF-8 text file, refusing binary and oversized files."""
    _require_file(resolved, path)
    if resolved.stat().st_size > MAX_READ_BYTES:
        raise ToolFailure(f"file too large to read (over {MAX_READ_BYTES} bytes): {path}")
    data = resolved.read_bytes()
    if b"\x00" in data[:BINARY_CHECK_BYTES]:
        raise ToolFailure(f"binary file detected: {path}")
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ToolFailure(f"failed to decode {path} as UTF-8: {e}") from e


def _line_count(text: str) -> int:
    return len(text.splitlines())


# ---------------------------------------------------------------------------
# think
# ---------------------------------------------------------------------------


def think(root: Path, thoughts: str) -> dict:
    if not isinstance(thoughts, str) or not thoughts.strip():
        raise ValidationError("thoughts must be a non-empty string")
    logger.debug("think: %s", thoughts)
    return {"recorded": True, "length": len(thoughts)}


THINK_TOOL = ToolDescriptor(
    name="think",
    description=(
        "Write down your reasoning before acting. Use it to plan multi-step "
        "work or to reflect on tool results. Has no side effects."
    ),
    parameters={
        "type": "object",
        "properties": {
            "thoughts": {"type": "string", "description": "Your reasoning."},
        },
        "required": ["thoughts"],
    },
    func=think,
    summarize=lambda args, result: "Thought recorded",
)


# ---------------------------------------------------------------------------
# File tools
# ---------------------------------------------------------------------------


def list_files(root: Path, path: str = ".", extension: str | None = None) -> dict:
    resolved = resolve_path(root, path)
    _require_dir(resolved, path)
    if extension and not extension.startswith("."):
        extension = "." + extension
    files = []
    for child in sorted(resolved.iterdir()):
        if not child.is_file():
            continue
        if extension and child.suffix.lower() != extension.lower():
            continue
        st = child.stat()
        files.append({"name": child.name, "size": st.st_size, "modified": _timestamp(st.st_mtime)})
    return {"path": relative(root, resolved), "files": files, "count": len(files)}


def list_folders(root: Path, path: str = ".") -> dict:
    resolved = resolve_path(root, path)
    _require_dir(resolved, path)
    folders = [child.name for child in sorted(resolved.iterdir()) if child.is_dir()]
    return {"path": relative(root, resolved), "folders": folders, "count": len(folders)}


def read_file(root: Path, path: str) -> dict:
    resolved = resolve_path(root, path)
    text = read_text(resolved, path)
    return {
        "path": relative(root, resolved),
        "content": text,
        "lines": _line_count(text),
        "chars": len(text),
    }


def write_file(root: Path, path: str, content: str) -> dict:
    resolved = resolve_path(root, path)
    if not isinstance(content, str):
        raise ValidationError("content must be a string")
    if resolved.is_dir():
        raise ToolFailure(f"path is a folder: {path}")
    resolved.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    resolved.write_bytes(data)
    return {"path": relative(root, resolved), "bytes": len(data)}


UPDATE_OPERATIONS = ("replace", "insert", "append", "prepend")


def update_file(
    root: Path,
    path: str,
    content: str,
    operation: str = "append",
    start_line: int | None = None,
    end_line: int | None = None,
) -> dict:
    """Line-oriented edit of an existing text file.

    ``insert`` places content before ``start_line``; ``replace`` swaps lines
    ``start_line`` through ``end_line`` (inclusive, 1-based), or the whole
    file when no line is given.
    """
    if operation not in UPDATE_OPERATIONS:
        raise ValidationError(
            f"operation must be one of {', '.join(UPDATE_OPERATIONS)}, got {operation!r}"
        )
    if not isinstance(content, str):
        raise ValidationError("content must be a string")
    resolved = resolve_path(root, path)
    text = read_text(resolved, path)
    trailing_newline = text.endswith("\n")
    lines = text.splitlines()
    new_lines = content.splitlines()

    if operation == "append":
        lines = lines + new_lines
    elif operation == "prepend":
        lines = new_lines + lines
    elif operation == "insert":
        if not isinstance(start_line, int) or not 1 <= start_line <= len(lines) + 1:
            raise ValidationError(f"insert needs start_line between 1 and {len(lines) + 1}")
        idx = start_line - 1
        lines = lines[:idx] + new_lines + lines[idx:]
    elif start_line is None:
        lines = new_lines
    else:
        end = start_line if end_line is None else end_line
        if not isinstance(start_line, int) or not isinstance(end, int):
            raise ValidationError("start_line and end_line must be integers")
        if not 1 <= start_line <= end <= len(lines):
            raise ValidationError(
                f"line range {start_line}-{end} is outside the file (1-{len(lines)})"
            )
        lines = lines[: start_line - 1] + new_lines + lines[end:]

    updated = "\n".join(lines)
    if lines and (trailing_newline or operation == "append"):
        updated += "\n"
    resolved.write_text(updated, encoding="utf-8")
    return {"path": relative(root, resolved), "operation": operation, "lines": len(lines)}


def delete_file(root: Path, path: str) -> dict:
    resolved = resolve_path(root, path)
    _require_file(resolved, path)
    resolved.unlink()
    return {"path": relative(root, resolved), "deleted": True}


def create_folder(root: Path, path: str) -> dict:
    resolved = resolve_path(root, path)
    if resolved.exists() and not resolved.is_dir():
        raise ToolFailure(f"a file already exists at {path}")
    existed = resolved.exists()
    resolved.mkdir(parents=True, exist_ok=True)
    return {"path": relative(root, resolved), "created": not existed}


def delete_folder(root: Path, path: str, recursive: bool = False) -> dict:
    resolved = resolve_path(root, path)
    if resolved == root.resolve():
        raise ValidationError("refusing to delete the workspace root")
    _require_dir(resolved, path)
    if recursive:
        shutil.rmtree(resolved)
    else:
        if any(resolved.iterdir()):
            raise ToolFailure(f"folder is not empty: {path} (pass recursive=true)")
        resolved.rmdir()
    return {"path": relative(root, resolved), "deleted": True, "recursive": bool(recursive)}


def rename_path(root: Path, old_path: str, new_path: str) -> dict:
    source = resolve_path(root, old_path)
    target = resolve_path(root, new_path)
    if not source.exists():
        raise ToolFailure(f"path does not exist: {old_path}")
    if target.exists():
        raise ToolFailure(f"destination already exists: {new_path}")
    target.parent.mkdir(parents=True, exist_ok=True)
    source.rename(target)
    return {"old_path": relative(root, source), "new_path": relative(root, target)}


def copy_file(
    root: Path, source_path: str, destination_path: str, overwrite: bool = False
) -> dict:
    source = resolve_path(root, source_path)
    target = resolve_path(root, destination_path)
    _require_file(source, source_path)
    if target.exists() and not overwrite:
        raise ToolFailure(f"destination already exists: {destination_path} (pass overwrite=true)")
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, target)
    return {
        "source_path": relative(root, source),
        "destination_path": relative(root, target),
        "bytes": target.stat().st_size,
    }


def get_file_info(root: Path, path: str) -> dict:
    resolved = resolve_path(root, path)
    if not resolved.exists():
        raise ToolFailure(f"path does not exist: {path}")
    st = resolved.stat()
    info = {
        "path": relative(root, resolved),
        "type": "folder" if resolved.is_dir() else "file",
        "size": st.st_size,
        "modified": _timestamp(st.st_mtime),
        "created": _timestamp(st.st_ctime),
    }
    if resolved.is_file():
        info["extension"] = resolved.suffix
    else:
        info["entries"] = sum(1 for _ in resolved.iterdir())
    return info


SEARCH_TYPES = ("files", "folders", "content", "all")


def _name_matches(name: str, pattern: str) -> bool:
    if any(ch in pattern for ch in "*?["):
        return fnmatch.fnmatch(name.lower(), pattern.lower())
    return pattern.lower() in name.lower()


def find_files(
    root: Path,
    pattern: str,
    path: str = ".",
    search_type: str = "files",
    file_type: str | None = None,
    max_results: int = 50,
) -> dict:
    """Search the workspace by name (glob or substring) or by file content."""
    if search_type not in SEARCH_TYPES:
        raise ValidationError(f"search_type must be one of {', '.join(SEARCH_TYPES)}")
    if not isinstance(pattern, str) or not pattern:
        raise ValidationError("pattern must be a non-empty string")
    if not isinstance(max_results, int) or max_results < 1:
        raise ValidationError("max_results must be a positive integer")
    max_results = min(max_results, MAX_FIND_RESULTS)
    resolved = resolve_path(root, path)
    _require_dir(resolved, path)
    if file_type and not file_type.startswith("."):
        file_type = "." + file_type

    results = []
    truncated = False
    for entry in sorted(resolved.rglob("*")):
        if len(results) >= max_results:
            truncated = True
            break
        is_dir = entry.is_dir()
        if file_type and (is_dir or entry.suffix.lower() != file_type.lower()):
            continue
        rel = relative(root, entry)
        if search_type in ("files", "all") and not is_dir and _name_matches(entry.name, pattern):
            results.append({"path": rel, "type": "file"})
        elif search_type in ("folders", "all") and is_dir and _name_matches(entry.name, pattern):
            results.append({"path": rel, "type": "folder"})
        elif search_type in ("content", "all") and not is_dir:
            try:
                text = read_text(entry, rel)
            except (ToolFailure, OSError):
                continue
            needle = pattern.lower()
            matches = [
                {"line": n, "text": line.strip()[:200]}
                for n, line in enumerate(text.splitlines(), start=1)
                if needle in line.lower()
            ]
            if matches:
                results.append({"path": rel, "type": "content", "matches": matches[:10]})
    return {"pattern": pattern, "results": results, "count": len(results), "truncated": truncated}


def _path_property(description: str) -> dict:
    return {"type": "string", "description": description}


FILE_TOOLS = [
    ToolDescriptor(
        name="list_files",
        description="List the files (not folders) in a workspace directory.",
        parameters={
            "type": "object",
            "properties": {
                "path": _path_property('Directory to list. Defaults to "." (workspace root).'),
                "extension": {
                    "type": "string",
                    "description": 'Only list files with this extension, e.g. ".csv".',
                },
            },
        },
        func=list_files,
        summarize=lambda a, r: f"Found {r['count']} file(s) in {r['path']}",
    ),
    ToolDescriptor(
        name="list_folders",
        description="List the sub-folders of a workspace directory.",
        parameters={
            "type": "object",
            "properties": {
                "path": _path_property('Directory to list. Defaults to "." (workspace root).'),
            },
        },
        func=list_folders,
        summarize=lambda a, r: f"Found {r['count']} folder(s) in {r['path']}",
    ),
    ToolDescriptor(
        name="read_file",
        description="Read the full text content of a file.",
        parameters={
            "type": "object",
            "properties": {"path": _path_property("Path of the file to read.")},
            "required": ["path"],
        },
        func=read_file,
        summarize=lambda a, r: f"Read {r['path']} ({r['lines']} lines, {r['chars']} chars)",
    ),
    ToolDescriptor(
        name="write_file",
        description=(
            "Create or overwrite a file with the given content, "
            "creating parent folders as needed."
        ),
        parameters={
            "type": "object",
            "properties": {
                "path": _path_property("Path of the file to write."),
                "content": {"type": "string", "description": "Full file content."},
            },
            "required": ["path", "content"],
        },
        func=write_file,
        summarize=lambda a, r: f"Wrote {r['path']} ({r['bytes']} bytes)",
    ),
    ToolDescriptor(
        name="update_file",
        description=(
            "Edit an existing text file by line. operation is one of replace, "
            "insert, append, prepend. insert places content before start_line; "
            "replace swaps lines start_line..end_line (1-based, inclusive)."
        ),
        parameters={
            "type": "object",
            "properties": {
                "path": _path_property("Path of the file to update."),
                "content": {"type": "string", "description": "Text to add or substitute."},
                "operation": {
                    "type": "string",
                    "enum": list(UPDATE_OPERATIONS),
                    "default": "append",
                },
                "start_line": {"type": "integer", "description": "1-based first line."},
                "end_line": {"type": "integer", "description": "1-based last line (replace)."},
            },
            "required": ["path", "content"],
        },
        func=update_file,
        summarize=lambda a, r: f"Updated {r['path']} ({r['operation']}, now {r['lines']} lines)",
    ),
    ToolDescriptor(
        name="delete_file",
        description="Delete a file.",
        parameters={
            "type": "object",
            "properties": {"path": _path_property("Path of the file to delete.")},
            "required": ["path"],
        },
        func=delete_file,
        summarize=lambda a, r: f"Deleted {r['path']}",
    ),
    ToolDescriptor(
        name="create_folder",
        description="Create a folder, including missing parent folders.",
        parameters={
            "type": "object",
            "properties": {"path": _path_property("Path of the folder to create.")},
            "required": ["path"],
        },
        func=create_folder,
        summarize=lambda a, r: (
            f"Created folder {r['path']}" if r["created"] else f"Folder {r['path']} already exists"
        ),
    ),
    ToolDescriptor(
        name="delete_folder",
        description="Delete a folder. Non-empty folders require recursive=true.",
        parameters={
            "type": "object",
            "properties": {
                "path": _path_property("Path of the folder to delete."),
                "recursive": {"type": "boolean", "default": False},
            },
            "required": ["path"],
        },
        func=delete_folder,
        summarize=lambda a, r: f"Deleted folder {r['path']}",
    ),
    ToolDescriptor(
        name="rename_path",
        description="Rename or move a file or folder within the workspace.",
        parameters={
            "type": "object",
            "properties": {
                "old_path": _path_property("Current path."),
                "new_path": _path_property("New path."),
            },
            "required": ["old_path", "new_path"],
        },
        func=rename_path,
        summarize=lambda a, r: f"Renamed {r['old_path']} to {r['new_path']}",
    ),
    ToolDescriptor(
        name="copy_file",
        description="Copy a file to a new location.",
        parameters={
            "type": "object",
            "properties": {
                "source_path": _path_property("File to copy."),
                "destination_path": _path_property("Where to copy it."),
                "overwrite": {"type": "boolean", "default": False},
            },
            "required": ["source_path", "destination_path"],
        },
        func=copy_file,
        summarize=lambda a, r: f"Copied {r['source_path']} to {r['destination_path']}",
    ),
    ToolDescriptor(
        name="get_file_info",
        description="Get size, type and timestamps of a file or folder.",
        parameters={
            "type": "object",
            "properties": {"path": _path_property("Path to inspect.")},
            "required": ["path"],
        },
        func=get_file_info,
        summarize=lambda a, r: f"Info for {r['path']} ({r['type']}, {r['size']} bytes)",
    ),
    ToolDescriptor(
        name="find_files",
        description=(
            "Search the workspace. pattern is a glob (*.csv) or a substring; "
            "search_type picks files, folders, content or all."
        ),
        parameters={
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Glob or substring to look for."},
                "path": _path_property('Directory to search. Defaults to ".".'),
                "search_type": {
                    "type": "string",
                    "enum": list(SEARCH_TYPES),
                    "default": "files",
                },
                "file_type": {
                    "type": "string",
                    "description": 'Only consider files with this extension, e.g. ".md".',
                },
                "max_results": {"type": "integer", "default": 50},
            },
            "required": ["pattern"],
        },
        func=find_files,
        summarize=lambda a, r: f"Found {r['count']} match(es) for {r['pattern']!r}",
    ),
]
