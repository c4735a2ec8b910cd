"""Output formatting helpers for the CLI."""

from __future__ import annotations

import json
import sys
from typing import Any

import yaml


def format_cell(value: Any) -> str:
    """Render one table cell; lists are comma-joined and ``None`` is blank."""
    if value is None:
        return ""
    if isinstance(value, dict):
        return str(value.get("id") or value.get("name") or json.dumps(value, default=str))
    if isinstance(value, (list, tuple)):
        return ", ".join(format_cell(v) for v in value)
    return str(value)


def print_table(headers: list[str], rows: list[list[Any]], *, json_mode: bool = False) -> None:
    """Print rows as an aligned text table, or as a JSON array of objects."""
    if json_mode:
        print(json.dumps([dict(zip(headers, row)) for row in rows], indent=2, default=str))
        return
    if not rows:
        return

    cells = [[format_cell(v) for v in row] for row in rows]
    widths = [max([len(h)] + [len(row[i]) for row in cells]) for i, h in enumerate(headers)]
    print("  ".join(h.ljust(w) for h, w in zip(headers, widths)).rstrip())
    print("  ".join("-" * w for w in widths))
    for row in cells:
        print("  ".join(v.ljust(w) for v, w in zip(row, widths)).rstrip())


def print_object(data: dict[str, Any] | list[Any], *, json_mode: bool = False) -> None:
    """Print a mapping as ``key: value`` lines, or as JSON."""
    if json_mode:
        print(json.dumps(data, indent=2, default=str))
        return
    items = data if isinstance(data, list) else [data]
    for n, item in enumerate(items):
        if n:
            print()
        if not isinstance(item, dict):
            print(item)
            continue
        for k, v in item.items():
            print(f"{k}: {format_cell(v) if isinstance(v, (list, tuple)) else v}")


def print_document(data: Any, fmt: str = "json") -> None:
    """Dump a whole document as JSON or YAML."""
    if fmt == "yaml":
        data = json.loads(json.dumps(data, default=str))
        print(yaml.safe_dump(data, default_flow_style=False, sort_keys=False), end="")
    else:
        print(json.dumps(data, indent=2, default=str))


def print_error(msg: str) -> None:
    """Print an error message to stderr."""
    print(f"Error: {msg}", file=sys.stderr)


def print_warning(msg: str) -> None:
    print(f"Warning: {msg}", file=sys.stderr)
