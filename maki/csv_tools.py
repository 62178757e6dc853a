"""CSV tools operating on files inside the workspace."""

from __future__ import annotations

import csv
import io
from pathlib import Path

from .errors import ToolFailure, ValidationError
from .tools import ToolDescriptor, read_text, relative, resolve_path

PREVIEW_ROWS = 5
SAMPLE_VALUES = 3

FILTER_OPERATORS = ("equals", "contains", "starts_with", "ends_with", "greater_than", "less_than")
AGGREGATIONS = ("sum", "count", "average", "min", "max")


class Table:
    """A CSV file held as a header list plus one dict per row."""

    def __init__(self, headers: list[str], rows: list[dict], has_headers: bool = True):
        self.headers = headers
        self.rows = rows
        self.has_headers = has_headers

    @classmethod
    def parse(cls, text: str, has_headers: bool = True) -> Table:
        if not text.strip():
            raise ToolFailure("invalid CSV: file is empty")
        records = [r for r in csv.reader(io.StringIO(text)) if r]
        width = len(records[0])
        if any(len(r) != width for r in records[:PREVIEW_ROWS]):
            raise ToolFailure("invalid CSV: inconsistent number of columns")
        if has_headers:
            headers, body = records[0], records[1:]
        else:
            headers, body = [f"Column{i + 1}" for i in range(width)], records
        rows = [dict(zip(headers, r + [""] * (len(headers) - len(r)))) for r in body]
        return cls(headers, rows, has_headers)

    @classmethod
    def load(cls, root: Path, path: str, has_headers: bool = True) -> tuple[Table, Path]:
        resolved = resolve_path(root, path)
        return cls.parse(read_text(resolved, path), has_headers), resolved

    def dump(self) -> str:
        buf = io.StringIO()
        writer = csv.DictWriter(
            buf, fieldnames=self.headers, extrasaction="ignore", lineterminator="\n"
        )
        if self.has_headers:
            writer.writeheader()
        for row in self.rows:
            writer.writerow({h: row.get(h, "") for h in self.headers})
        return buf.getvalue()

    def save(self, resolved: Path) -> None:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_text(self.dump(), encoding="utf-8")

    def column(self, name: str) -> str:
        """Resolve a column by name, or by zero-based index given as text."""
        if name in self.headers:
            return name
        try:
            idx = int(name)
        except (TypeError, ValueError):
            idx = -1
        if 0 <= idx < len(self.headers):
            return self.headers[idx]
        raise ValidationError(
            f"invalid column {name!r}. Available columns: {', '.join(self.headers)}"
        )

    def check_row(self, row_index) -> int:
        if not isinstance(row_index, int) or not 0 <= row_index < len(self.rows):
            raise ValidationError(
                f"invalid row index {row_index}. File has {len(self.rows)} rows."
            )
        return row_index


def _as_number(value) -> float | None:
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _format_number(value: float) -> str:
    return str(int(value)) if value == int(value) else str(round(value, 6))


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


def parse_csv(root: Path, path: str, has_headers: bool = True) -> dict:
    table, resolved = Table.load(root, path, has_headers)
    return {
        "path": relative(root, resolved),
        "headers": table.headers,
        "row_count": len(table.rows),
        "column_count": len(table.headers),
        "preview": table.rows[:PREVIEW_ROWS],
        "structure": [
            {
                "name": h,
                "sample_values": [
                    r[h] for r in table.rows[:SAMPLE_VALUES] if r.get(h) not in (None, "")
                ],
            }
            for h in table.headers
        ],
    }


def update_csv_cell(
    root: Path, path: str, row_index: int, column: str, value: str, has_headers: bool = True
) -> dict:
    table, resolved = Table.load(root, path, has_headers)
    idx = table.check_row(row_index)
    key = table.column(str(column))
    table.rows[idx][key] = "" if value is None else str(value)
    table.save(resolved)
    return {"path": relative(root, resolved), "row_index": idx, "column": key, "value": value}


def add_csv_row(root: Path, path: str, row_data: dict, has_headers: bool = True) -> dict:
    if not isinstance(row_data, dict):
        raise ValidationError("row_data must be an object mapping column names to values")
    table, resolved = Table.load(root, path, has_headers)
    unknown = [k for k in row_data if k not in table.headers]
    if unknown:
        raise ValidationError(
            f"unknown column(s) {', '.join(unknown)}. Available columns: {', '.join(table.headers)}"
        )
    table.rows.append({h: str(row_data.get(h, "")) for h in table.headers})
    table.save(resolved)
    return {"path": relative(root, resolved), "row_count": len(table.rows)}


def remove_csv_row(root: Path, path: str, row_index: int, has_headers: bool = True) -> dict:
    table, resolved = Table.load(root, path, has_headers)
    removed = table.rows.pop(table.check_row(row_index))
    table.save(resolved)
    return {"path": relative(root, resolved), "removed_row": removed, "row_count": len(table.rows)}


def _matches(cell: str, operator: str, value: str) -> bool:
    if operator == "equals":
        return cell == value
    if operator == "contains":
        return value.lower() in cell.lower()
    if operator == "starts_with":
        return cell.lower().startswith(value.lower())
    if operator == "ends_with":
        return cell.lower().endswith(value.lower())
    a, b = _as_number(cell), _as_number(value)
    if a is None or b is None:
        return False
    return a > b if operator == "greater_than" else a < b


def filter_csv(
    root: Path,
    source_path: str,
    target_path: str,
    column: str,
    operator: str,
    value: str,
    has_headers: bool = True,
) -> dict:
    if operator not in FILTER_OPERATORS:
        raise ValidationError(f"operator must be one of {', '.join(FILTER_OPERATORS)}")
    table, source = Table.load(root, source_path, has_headers)
    target = resolve_path(root, target_path)
    key = table.column(str(column))
    value = str(value)
    kept = [r for r in table.rows if _matches(r.get(key, ""), operator, value)]
    Table(table.headers, kept, has_headers).save(target)
    return {
        "source_path": relative(root, source),
        "target_path": relative(root, target),
        "matched": len(kept),
        "total": len(table.rows),
    }


def _sort_key(value: str):
    num = _as_number(value)
    # numbers before text, text compared case-insensitively
    return (0, num, "") if num is not None else (1, 0.0, value.lower())


def sort_csv(root: Path, path: str, sort_columns: list, has_headers: bool = True) -> dict:
    if not isinstance(sort_columns, list) or not sort_columns:
        raise ValidationError("sort_columns must be a non-empty list")
    table, resolved = Table.load(root, path, has_headers)
    specs = []
    for spec in sort_columns:
        if not isinstance(spec, dict) or "column" not in spec:
            raise ValidationError("each sort column needs a 'column' field")
        direction = spec.get("direction", "asc")
        if direction not in ("asc", "desc"):
            raise ValidationError(f"direction must be asc or desc, got {direction!r}")
        specs.append((table.column(str(spec["column"])), direction == "desc"))
    # stable sort, least significant key first
    for key, reverse in reversed(specs):
        table.rows.sort(key=lambda r, k=key: _sort_key(r.get(k, "")), reverse=reverse)
    table.save(resolved)
    return {
        "path": relative(root, resolved),
        "sorted_by": [f"{k} {'desc' if rev else 'asc'}" for k, rev in specs],
        "row_count": len(table.rows),
    }


def add_csv_column(
    root: Path,
    path: str,
    column_name: str,
    default_value: str = "",
    position: int | None = None,
    has_headers: bool = True,
) -> dict:
    table, resolved = Table.load(root, path, has_headers)
    if not has_headers:
        column_name = f"Column{len(table.headers) + 1}"
    if column_name in table.headers:
        raise ValidationError(f"column {column_name!r} already exists")
    if position is None:
        position = len(table.headers)
    if not isinstance(position, int) or not 0 <= position <= len(table.headers):
        raise ValidationError(f"position must be between 0 and {len(table.headers)}")
    table.headers.insert(position, column_name)
    for row in table.rows:
        row[column_name] = str(default_value)
    table.save(resolved)
    return {"path": relative(root, resolved), "column": column_name, "headers": table.headers}


def remove_csv_column(root: Path, path: str, column: str, has_headers: bool = True) -> dict:
    table, resolved = Table.load(root, path, has_headers)
    key = table.column(str(column))
    if len(table.headers) == 1:
        raise ValidationError("cannot remove the only column")
    table.headers.remove(key)
    for row in table.rows:
        row.pop(key, None)
    table.save(resolved)
    return {"path": relative(root, resolved), "column": key, "headers": table.headers}


def _aggregate(values: list[str], operation: str) -> str:
    if operation == "count":
        return str(len(values))
    numbers = [n for n in (_as_number(v) for v in values) if n is not None]
    if not numbers:
        return ""
    if operation == "sum":
        result = sum(numbers)
    elif operation == "average":
        result = sum(numbers) / len(numbers)
    elif operation == "min":
        result = min(numbers)
    else:
        result = max(numbers)
    return _format_number(result)


def aggregate_csv(
    root: Path,
    source_path: str,
    target_path: str,
    group_by_columns: list,
    aggregations: list,
    has_headers: bool = True,
) -> dict:
    if not isinstance(group_by_columns, list):
        raise ValidationError("group_by_columns must be a list")
    if not isinstance(aggregations, list) or not aggregations:
        raise ValidationError("aggregations must be a non-empty list")
    table, source = Table.load(root, source_path, has_headers)
    target = resolve_path(root, target_path)
    group_keys = [table.column(str(c)) for c in group_by_columns]

    specs = []
    for agg in aggregations:
        if not isinstance(agg, dict) or "column" not in agg:
            raise ValidationError("each aggregation needs 'column' and 'operation'")
        operation = agg.get("operation")
        if operation not in AGGREGATIONS:
            raise ValidationError(f"operation must be one of {', '.join(AGGREGATIONS)}")
        col = table.column(str(agg["column"]))
        specs.append((col, operation, agg.get("alias") or f"{operation}_{col}"))

    groups: dict[tuple, list[dict]] = {}
    for row in table.rows:
        groups.setdefault(tuple(row.get(k, "") for k in group_keys), []).append(row)

    headers = group_keys + [alias for _, _, alias in specs]
    out_rows = []
    for key, rows in groups.items():
        out = dict(zip(group_keys, key))
        for col, operation, alias in specs:
            out[alias] = _aggregate([r.get(col, "") for r in rows], operation)
        out_rows.append(out)
    Table(headers, out_rows).save(target)
    return {
        "source_path": relative(root, source),
        "target_path": relative(root, target),
        "groups": len(out_rows),
        "headers": headers,
    }


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------

_PATH = {"type": "string", "description": "CSV file path inside the workspace."}
_HAS_HEADERS = {
    "type": "boolean",
    "description": "Whether the first row holds column names. Defaults to true.",
    "default": True,
}
_ROW_INDEX = {"type": "integer", "description": "Zero-based row index, not counting the header."}

TOOLS = [
    ToolDescriptor(
        name="parse_csv",
        description="Parse a CSV file and return its headers, row count, a preview and sample values.",
        parameters={
            "type": "object",
            "properties": {"path": _PATH, "has_headers": _HAS_HEADERS},
            "required": ["path"],
        },
        func=parse_csv,
        summarize=lambda a, r: (
            f"Parsed {r['path']} ({r['row_count']} rows, {r['column_count']} columns)"
        ),
    ),
    ToolDescriptor(
        name="update_csv_cell",
        description="Set one cell of a CSV file, addressed by row index and column name or index.",
        parameters={
            "type": "object",
            "properties": {
                "path": _PATH,
                "row_index": _ROW_INDEX,
                "column": {"type": "string", "description": "Column name or zero-based index."},
                "value": {"type": "string", "description": "New cell value."},
                "has_headers": _HAS_HEADERS,
            },
            "required": ["path", "row_index", "column", "value"],
        },
        func=update_csv_cell,
        summarize=lambda a, r: f"Updated {r['path']} row {r['row_index']}, column {r['column']}",
    ),
    ToolDescriptor(
        name="add_csv_row",
        description="Append a row to a CSV file.",
        parameters={
            "type": "object",
            "properties": {
                "path": _PATH,
                "row_data": {"type": "object", "description": "Column name to cell value."},
                "has_headers": _HAS_HEADERS,
            },
            "required": ["path", "row_data"],
        },
        func=add_csv_row,
        summarize=lambda a, r: f"Added a row to {r['path']} (now {r['row_count']} rows)",
    ),
    ToolDescriptor(
        name="remove_csv_row",
        description="Remove a row from a CSV file by index.",
        parameters={
            "type": "object",
            "properties": {"path": _PATH, "row_index": _ROW_INDEX, "has_headers": _HAS_HEADERS},
            "required": ["path", "row_index"],
        },
        func=remove_csv_row,
        summarize=lambda a, r: f"Removed a row from {r['path']} (now {r['row_count']} rows)",
    ),
    ToolDescriptor(
        name="filter_csv",
        description="Write the rows of a CSV file that match a condition to a new CSV file.",
        parameters={
            "type": "object",
            "properties": {
                "source_path": _PATH,
                "target_path": {"type": "string", "description": "Where to write the result."},
                "column": {"type": "string", "description": "Column to test."},
                "operator": {"type": "string", "enum": list(FILTER_OPERATORS)},
                "value": {"type": "string", "description": "Value to compare against."},
                "has_headers": _HAS_HEADERS,
            },
            "required": ["source_path", "target_path", "column", "operator", "value"],
        },
        func=filter_csv,
        summarize=lambda a, r: (
            f"Filtered {r['matched']} of {r['total']} rows into {r['target_path']}"
        ),
    ),
    ToolDescriptor(
        name="sort_csv",
        description="Sort a CSV file in place by one or more columns.",
        parameters={
            "type": "object",
            "properties": {
                "path": _PATH,
                "sort_columns": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "column": {"type": "string"},
                            "direction": {"type": "string", "enum": ["asc", "desc"]},
                        },
                        "required": ["column"],
                    },
                },
                "has_headers": _HAS_HEADERS,
            },
            "required": ["path", "sort_columns"],
        },
        func=sort_csv,
        summarize=lambda a, r: f"Sorted {r['path']} by {', '.join(r['sorted_by'])}",
    ),
    ToolDescriptor(
        name="add_csv_column",
        description="Add a column to a CSV file, filling existing rows with a default value.",
        parameters={
            "type": "object",
            "properties": {
                "path": _PATH,
                "column_name": {"type": "string"},
                "default_value": {"type": "string", "default": ""},
                "position": {"type": "integer", "description": "Zero-based position. Defaults to last."},
                "has_headers": _HAS_HEADERS,
            },
            "required": ["path", "column_name"],
        },
        func=add_csv_column,
        summarize=lambda a, r: f"Added column {r['column']} to {r['path']}",
    ),
    ToolDescriptor(
        name="remove_csv_column",
        description="Remove a column from a CSV file.",
        parameters={
            "type": "object",
            "properties": {
                "path": _PATH,
                "column": {"type": "string", "description": "Column name or zero-based index."},
                "has_headers": _HAS_HEADERS,
            },
            "required": ["path", "column"],
        },
        func=remove_csv_column,
        summarize=lambda a, r: f"Removed column {r['column']} from {r['path']}",
    ),
    ToolDescriptor(
        name="aggregate_csv",
        description=(
            "Group a CSV file by columns and compute sum, count, average, min or max, "
            "writing the result to a new CSV file."
        ),
        parameters={
            "type": "object",
            "properties": {
                "source_path": _PATH,
                "target_path": {"type": "string", "description": "Where to write the result."},
                "group_by_columns": {"type": "array", "items": {"type": "string"}},
                "aggregations": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "column": {"type": "string"},
                            "operation": {"type": "string", "enum": list(AGGREGATIONS)},
                            "alias": {"type": "string"},
                        },
                        "required": ["column", "operation"],
                    },
                },
                "has_headers": _HAS_HEADERS,
            },
            "required": ["source_path", "target_path", "group_by_columns", "aggregations"],
        },
        func=aggregate_csv,
        summarize=lambda a, r: f"Aggregated into {r['target_path']} ({r['groups']} groups)",
    ),
]
