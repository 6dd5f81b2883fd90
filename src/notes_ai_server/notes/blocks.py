"""Block-structured document helpers.

Documents are the JSON the block editor saves: a list of blocks, each a
dict with ``id``, ``type``, ``props``, ``content`` and ``children``. Inline
content is a list of styled text runs and links; tables keep their rows
under ``content["rows"]``.
"""

import copy
import json
import re
import uuid
from typing import Any, Iterable, Iterator

Block = dict[str, Any]
StyledText = dict[str, Any]

HEADING_RE = re.compile(r"^(#{1,6})\s+(.*)$")
DIVIDER_RE = re.compile(r"^\s*(-{3,}|\*{3,}|_{3,})\s*$")
BULLET_RE = re.compile(r"^\s*[-*+]\s+(.*)$")
CHECK_RE = re.compile(r"^\s*[-*+]\s+\[([ xX])\]\s+(.*)$")
NUMBERED_RE = re.compile(r"^\s*\d+[.)]\s+(.*)$")
QUOTE_RE = re.compile(r"^>\s?(.*)$")
FENCE_RE = re.compile(r"^```(.*)$")
INLINE_RE = re.compile(
    r"\*\*(?P<bold>.+?)\*\*"
    r"|~~(?P<strike>.+?)~~"
    r"|`(?P<code>[^`]+)`"
    r"|\*(?P<italic>[^*]+?)\*"
    r"|\[(?P<label>[^\]]+)\]\((?P<href>[^)\s]+)\)"
)

DEFAULT_PROPS = {
    "textColor": "default",
    "backgroundColor": "default",
    "textAlignment": "left",
}


def styled_text(text: str, **styles: Any) -> StyledText:
    """Build one styled text run."""
    return {"type": "text", "text": text, "styles": styles}


def new_block(
    block_type: str = "paragraph",
    content: Any = None,
    props: dict | None = None,
    block_id: str | None = None,
    children: list[Block] | None = None,
) -> Block:
    return {
        "id": block_id or str(uuid.uuid4()),
        "type": block_type,
        "props": {**DEFAULT_PROPS, **(props or {})},
        "content": [] if content is None else content,
        "children": children or [],
    }


def empty_document() -> list[Block]:
    """Content of a freshly created page: a single empty paragraph."""
    return [new_block()]


def _inline_to_string(items: Iterable[Any]) -> str:
    parts = []
    for item in items:
        if isinstance(item, str):
            parts.append(item)
        elif isinstance(item, dict):
            if item.get("type") == "link":
                parts.append(_inline_to_string(item.get("content") or []))
            elif isinstance(item.get("text"), str):
                parts.append(item["text"])
    return "".join(parts)


def _cell_items(cell: Any) -> list:
    items = cell.get("content") if isinstance(cell, dict) else cell
    return items if isinstance(items, list) else []


def _table_rows(content: dict) -> Iterator[list]:
    """Cell lists of a table's rows; malformed rows are skipped."""
    rows = content.get("rows")
    if not isinstance(rows, list):
        return
    for row in rows:
        cells = row.get("cells") if isinstance(row, dict) else None
        if isinstance(cells, list):
            yield cells


def block_to_string(block: Block | None) -> str:
    """Plain text of a single block (children excluded)."""
    if not block:
        return ""
    content = block.get("content")
    if not content:
        return ""

    if isinstance(content, dict):
        # Tables: one leading space per non-empty cell, first inline item only
        text = ""
        for row in _table_rows(content):
            for cell in row:
                items = _cell_items(cell)
                if not items:
                    continue
                first = items[0]
                cell_text = ""
                if isinstance(first, dict) and first.get("type") == "text" and isinstance(first.get("text"), str):
                    cell_text = first["text"]
                text += " " + cell_text
        return text

    if not isinstance(content, list):
        return ""
    return _inline_to_string(content)


def _prepare(block: Block) -> Block:
    if not isinstance(block, dict):
        raise ValueError(f"block must be an object, got {type(block).__name__}")
    block.setdefault("id", str(uuid.uuid4()))
    if block["id"] is None:
        block["id"] = str(uuid.uuid4())
    block.setdefault("type", "paragraph")
    block.setdefault("props", {})
    block.setdefault("content", [])
    block.setdefault("children", [])
    if not isinstance(block["children"], list):
        raise ValueError("block children must be a list")
    for child in block["children"]:
        _prepare(child)
    return block


def _walk(blocks: list[Block]) -> Iterator[Block]:
    for block in blocks:
        yield block
        yield from _walk(block.get("children") or [])


class BlockDocument:
    """An ordered, nestable list of blocks with editor-style operations.

    Block ids are unique within a document; operations that would
    introduce a duplicate raise ``ValueError``.
    """

    def __init__(self, blocks: list[Block] | None = None):
        self.blocks: list[Block] = [_prepare(b) for b in copy.deepcopy(blocks or [])]
        seen: set[str] = set()
        for block in _walk(self.blocks):
            if block["id"] in seen:
                raise ValueError(f"duplicate block id: {block['id']}")
            seen.add(block["id"])

    @classmethod
    def from_json(cls, content: str) -> "BlockDocument":
        blocks = json.loads(content)
        if not isinstance(blocks, list):
            raise ValueError("document JSON must be a list of blocks")
        return cls(blocks)

    def to_json(self) -> str:
        return json.dumps(self.blocks)

    def copy(self) -> "BlockDocument":
        return BlockDocument(self.blocks)

    def __len__(self) -> int:
        return len(self.blocks)

    def for_each_block(self) -> Iterator[Block]:
        """Depth-first iteration, parents before children."""
        return _walk(self.blocks)

    def ids(self) -> list[str]:
        return [b["id"] for b in self.for_each_block()]

    def _locate(self, block_id: str, blocks: list[Block] | None = None) -> tuple[list[Block], int] | None:
        blocks = self.blocks if blocks is None else blocks
        for i, block in enumerate(blocks):
            if block["id"] == block_id:
                return blocks, i
            found = self._locate(block_id, block.get("children") or [])
            if found:
                return found
        return None

    def get_block(self, block_id: str) -> Block | None:
        found = self._locate(block_id)
        if found is None:
            return None
        container, index = found
        return container[index]

    def update_block(self, block_id: str, **changes: Any) -> Block:
        """Apply changes to a block in place; ``props`` are merged.

        Raises:
            KeyError: If no block has this id.
        """
        block = self.get_block(block_id)
        if block is None:
            raise KeyError(block_id)
        for key, value in changes.items():
            if key == "props":
                block["props"] = {**block.get("props", {}), **value}
            elif key == "children":
                self._check_new_ids(value, ignore={c["id"] for c in _walk(block["children"]) if "id" in c})
                block["children"] = [_prepare(c) for c in copy.deepcopy(value)]
            else:
                block[key] = copy.deepcopy(value)
        return block

    def _check_new_ids(self, blocks: list[Block], ignore: set[str] = frozenset()) -> None:
        existing = set(self.ids()) - set(ignore)
        for block in _walk(blocks):
            block_id = block.get("id")
            if block_id is None:
                continue
            if block_id in existing:
                raise ValueError(f"duplicate block id: {block_id}")
            existing.add(block_id)

    def insert_blocks(self, blocks: list[Block], reference_id: str, placement: str = "after") -> list[Block]:
        """Insert blocks before or after a reference block, at its nesting level."""
        if placement not in ("before", "after"):
            raise ValueError(f"invalid placement: {placement}")
        found = self._locate(reference_id)
        if found is None:
            raise KeyError(reference_id)
        self._check_new_ids(blocks)
        prepared = [_prepare(b) for b in copy.deepcopy(blocks)]
        container, index = found
        at = index if placement == "before" else index + 1
        container[at:at] = prepared
        return prepared

    def append_blocks(self, blocks: list[Block]) -> list[Block]:
        self._check_new_ids(blocks)
        prepared = [_prepare(b) for b in copy.deepcopy(blocks)]
        self.blocks.extend(prepared)
        return prepared

    def remove_blocks(self, block_ids: Iterable[str]) -> None:
        for block_id in block_ids:
            found = self._locate(block_id)
            if found is not None:
                container, index = found
                del container[index]

    def _detach(self, target: Block, blocks: list[Block] | None = None) -> bool:
        blocks = self.blocks if blocks is None else blocks
        for i, block in enumerate(blocks):
            if block is target:
                del blocks[i]
                return True
            if self._detach(target, block.get("children") or []):
                return True
        return False

    def replace_blocks(self, block_ids: list[str], blocks: list[Block]) -> list[Block]:
        """Replace the listed blocks with new ones at the position of the first.

        New blocks may reuse the ids of the blocks they replace. When none of
        the ids exist the new blocks are appended.
        """
        targets = [b for b in (self.get_block(i) for i in block_ids) if b is not None]
        self._check_new_ids(blocks, ignore={b["id"] for b in _walk(targets)})
        prepared = [_prepare(b) for b in copy.deepcopy(blocks)]

        if targets:
            container, index = self._locate(targets[0]["id"])
            container[index:index] = prepared
        else:
            self.blocks.extend(prepared)

        for target in targets:
            self._detach(target)
        return prepared

    def flatten(self) -> None:
        """Lift nested children to the top level, keeping document order."""
        flat = []
        for block in _walk(self.blocks):
            flat.append(block)
        for block in flat:
            block["children"] = []
        self.blocks = flat


def update_block_text(doc: BlockDocument, block_id: str, text: str, color: str = "black") -> None:
    """Replace a block's content with one coloured run; missing ids are ignored."""
    if doc.get_block(block_id) is None:
        return
    doc.update_block(block_id, content=[styled_text(text, textColor=color)])


def add_block(
    doc: BlockDocument,
    reference_id: str,
    text: str,
    color: str = "black",
    placement: str = "after",
    block_id: str | None = None,
) -> Block | None:
    if doc.get_block(reference_id) is None:
        return None
    block = new_block(content=[styled_text(text, textColor=color)], block_id=block_id)
    return doc.insert_blocks([block], reference_id, placement)[0]


def editor_block_ids(doc: BlockDocument) -> list[str]:
    """Ids of every block that carries text, depth-first."""
    return [b["id"] for b in doc.for_each_block() if block_to_string(b) != ""]


def duplicate_document(source: BlockDocument, placeholder: str, color: str = "black") -> tuple[BlockDocument, list[str]]:
    """Copy a document, swapping every text block's content for a placeholder run."""
    duplicate = source.copy()
    ids = editor_block_ids(source)
    for block_id in ids:
        update_block_text(duplicate, block_id, placeholder, color)
    return duplicate, ids


# --- Markdown ---


def _inline_to_markdown(items: Iterable[Any]) -> str:
    parts = []
    for item in items:
        if isinstance(item, str):
            parts.append(item)
            continue
        if not isinstance(item, dict):
            continue
        if item.get("type") == "link":
            label = _inline_to_markdown(item.get("content") or [])
            parts.append(f"[{label}]({item.get('href', '')})")
            continue
        text = item.get("text", "")
        styles = item.get("styles") or {}
        if not text.strip():
            parts.append(text)
            continue
        if styles.get("code"):
            text = f"`{text}`"
        if styles.get("bold"):
            text = f"**{text}**"
        if styles.get("italic"):
            text = f"*{text}*"
        if styles.get("strike"):
            text = f"~~{text}~~"
        parts.append(text)
    return "".join(parts)


def _block_to_markdown(block: Block, depth: int = 0) -> list[str]:
    indent = "  " * depth
    block_type = block.get("type")
    content = block.get("content") or []
    props = block.get("props") or {}

    if block_type == "table" and isinstance(content, dict):
        lines = []
        for i, row_cells in enumerate(_table_rows(content)):
            cells = [_inline_to_markdown(_cell_items(c)) for c in row_cells]
            lines.append("| " + " | ".join(cells) + " |")
            if i == 0:
                lines.append("|" + "|".join(" --- " for _ in cells) + "|")
        out = ["\n".join(lines)] if lines else []
    else:
        text = _inline_to_markdown(content) if isinstance(content, list) else ""
        if block_type == "heading":
            out = [f"{'#' * int(props.get('level', 1))} {text}"]
        elif block_type == "bulletListItem":
            out = [f"{indent}- {text}"]
        elif block_type == "numberedListItem":
            out = [f"{indent}1. {text}"]
        elif block_type == "checkListItem":
            mark = "x" if props.get("checked") else " "
            out = [f"{indent}- [{mark}] {text}"]
        elif block_type == "quote":
            out = [f"> {text}"]
        elif block_type == "divider":
            out = ["---"]
        elif block_type == "codeBlock":
            out = [f"```{props.get('language', '')}\n{text}\n```"]
        elif block_type == "image":
            out = [f"![{props.get('caption', '')}]({props.get('url', '')})"]
        else:
            out = [text]

    for child in block.get("children") or []:
        out.extend(_block_to_markdown(child, depth + 1))
    return out


def blocks_to_markdown(blocks: Iterable[Block]) -> str:
    """Render blocks as markdown. Lossy: colours, alignment and ids are dropped."""
    lines = []
    for block in blocks:
        lines.extend(_block_to_markdown(block))
    return "\n\n".join(lines)


def parse_inline_markdown(text: str) -> list[StyledText]:
    runs: list[StyledText] = []
    pos = 0
    for match in INLINE_RE.finditer(text):
        if match.start() > pos:
            runs.append(styled_text(text[pos:match.start()]))
        if match.group("bold") is not None:
            runs.append(styled_text(match.group("bold"), bold=True))
        elif match.group("strike") is not None:
            runs.append(styled_text(match.group("strike"), strike=True))
        elif match.group("code") is not None:
            runs.append(styled_text(match.group("code"), code=True))
        elif match.group("italic") is not None:
            runs.append(styled_text(match.group("italic"), italic=True))
        else:
            runs.append(
                {
                    "type": "link",
                    "href": match.group("href"),
                    "content": [styled_text(match.group("label"))],
                }
            )
        pos = match.end()
    if pos < len(text):
        runs.append(styled_text(text[pos:]))
    return runs


def markdown_to_blocks(text: str) -> list[Block]:
    """Parse markdown into editor blocks."""
    blocks: list[Block] = []
    paragraph: list[str] = []
    fence: list[str] | None = None
    fence_lang = ""

    def flush_paragraph() -> None:
        if paragraph:
            blocks.append(new_block(content=parse_inline_markdown("\n".join(paragraph))))
            paragraph.clear()

    for raw in text.splitlines():
        line = raw.rstrip()

        if fence is not None:
            if FENCE_RE.match(line.strip()):
                blocks.append(
                    new_block("codeBlock", [styled_text("\n".join(fence))], {"language": fence_lang})
                )
                fence = None
            else:
                fence.append(raw)
            continue

        m = FENCE_RE.match(line.strip())
        if m:
            flush_paragraph()
            fence, fence_lang = [], m.group(1).strip()
            continue

        if not line.strip():
            flush_paragraph()
            continue

        if m := HEADING_RE.match(line):
            flush_paragraph()
            blocks.append(
                new_block("heading", parse_inline_markdown(m.group(2).strip()), {"level": len(m.group(1))})
            )
        elif DIVIDER_RE.match(line):
            flush_paragraph()
            blocks.append(new_block("divider"))
        elif m := CHECK_RE.match(line):
            flush_paragraph()
            blocks.append(
                new_block("checkListItem", parse_inline_markdown(m.group(2)), {"checked": m.group(1) != " "})
            )
        elif m := BULLET_RE.match(line):
            flush_paragraph()
            blocks.append(new_block("bulletListItem", parse_inline_markdown(m.group(1))))
        elif m := NUMBERED_RE.match(line):
            flush_paragraph()
            blocks.append(new_block("numberedListItem", parse_inline_markdown(m.group(1))))
        elif m := QUOTE_RE.match(line):
            flush_paragraph()
            blocks.append(new_block("quote", parse_inline_markdown(m.group(1))))
        else:
            paragraph.append(line)

    if fence is not None:
        blocks.append(new_block("codeBlock", [styled_text("\n".join(fence))], {"language": fence_lang}))
    flush_paragraph()
    return blocks
