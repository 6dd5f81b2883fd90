"""Plain-text extraction from saved documents, for full-text indexing."""

import json
import re
from typing import Any

# Inline keys handled explicitly, in this order, before any other string value
_INLINE_KEYS = ("text", "url", "href")
_QUOTES_RE = re.compile(r"[\"'’]")


def _inline_strings(item: Any, include_all: bool) -> list[str]:
    if isinstance(item, str):
        return [item]
    if not isinstance(item, dict):
        return []

    parts = [item[key] for key in _INLINE_KEYS if isinstance(item.get(key), str) and item[key]]
    for key, value in item.items():
        if key in _INLINE_KEYS or not isinstance(value, str):
            continue
        if key == "type" and not include_all:
            continue
        parts.append(value)

    # Links nest their own inline content
    nested = item.get("content")
    if isinstance(nested, list):
        for child in nested:
            parts.extend(_inline_strings(child, include_all))
    return parts


def _content_items(content: Any) -> list:
    if isinstance(content, list):
        return content
    if isinstance(content, dict):
        items = []
        for row in _table_rows(content):
            for cell in row:
                cell_items = cell.get("content") if isinstance(cell, dict) else cell
                if isinstance(cell_items, list):
                    items.extend(cell_items)
        return items
    return []


def _table_rows(content: dict) -> list[list]:
    """Cell lists of a table's rows; rows of any other shape are skipped."""
    rows = content.get("rows")
    if not isinstance(rows, list):
        return []
    return [
        row["cells"] for row in rows if isinstance(row, dict) and isinstance(row.get("cells"), list)
    ]


def _collect(block: Any, parts: list[str], include_block_fields: bool) -> None:
    if not isinstance(block, dict):
        return

    if include_block_fields:
        if isinstance(block.get("type"), str):
            parts.append(block["type"])
        for key, value in block.items():
            if key in ("id", "type", "content", "children"):
                continue
            if isinstance(value, str):
                parts.append(value)
            elif isinstance(value, list):
                parts.extend(v for v in value if isinstance(v, str))
        props = block.get("props")
        if isinstance(props, dict):
            parts.extend(v for v in props.values() if isinstance(v, str))

    for item in _content_items(block.get("content")):
        parts.extend(_inline_strings(item, include_block_fields))

    children = block.get("children")
    if isinstance(children, list):
        for child in children:
            _collect(child, parts, include_block_fields)


def _extract(content: str, include_block_fields: bool) -> str:
    try:
        blocks = json.loads(content)
    except (TypeError, ValueError):
        return ""
    if not isinstance(blocks, list):
        return ""

    parts: list[str] = []
    for block in blocks:
        _collect(block, parts, include_block_fields)
    return " ".join(parts).strip()


def extract_searchable_text(content: str) -> str:
    """Text, link targets and other inline strings of a saved document.

    Blocks are walked depth-first with parents before children. Content
    that is not a JSON list of blocks yields an empty string.
    """
    return _extract(content, include_block_fields=False)


def extract_index_text(content: str) -> str:
    """Like ``extract_searchable_text`` but also indexes block types and
    string-valued block properties."""
    return _extract(content, include_block_fields=True)


def build_searchable_text(
    title: str | None, content: str | None, include_block_fields: bool = False
) -> str:
    extracted = _extract(content, include_block_fields) if content else ""
    return f"{title or ''} {extracted}".strip()


def normalize_search_term(query: str | None) -> str:
    """Search input with surrounding whitespace and quote characters removed."""
    return _QUOTES_RE.sub("", (query or "").strip()).strip()


def highlight_search_term(text: str, term: str) -> str:
    """Wrap case-insensitive occurrences of ``term`` in ``<mark>`` tags."""
    if not term or not text:
        return text
    pattern = re.compile(f"({re.escape(term)})", re.IGNORECASE)
    return pattern.sub(r"<mark>\1</mark>", text)
