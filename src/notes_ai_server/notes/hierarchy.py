"""Page tree construction and drag-and-drop reordering."""

from enum import Enum
from typing import Callable, Iterable, Sequence
from uuid import UUID

from pydantic import BaseModel

from .models import PageNode, PageSummary

# Fractions of a sidebar row's height that separate the three drop zones
TOP_ZONE = 0.3
BOTTOM_ZONE = 0.7


class DropPosition(str, Enum):
    TOP = "top"
    MIDDLE = "middle"
    BOTTOM = "bottom"


class MoveTarget(BaseModel):
    order: int
    parent_id: UUID | None = None


class OrderUpdate(BaseModel):
    page_id: UUID
    order: int
    parent_id: UUID | None = None


def _walk(nodes: Iterable[PageNode]) -> Iterable[PageNode]:
    for node in nodes:
        yield node
        yield from _walk(node.children)


def organize_hierarchy(pages: Sequence[PageSummary]) -> list[PageNode]:
    """Turn a flat page list into a forest.

    Pages whose parent is unset or not in the list become roots, so
    children of a deleted page surface at the top level. Children keep
    their relative input order. Pages caught in a parent cycle are promoted
    to roots as well, so every input page appears exactly once.
    """
    fields = set(PageSummary.model_fields)
    nodes = [PageNode(**page.model_dump(include=fields)) for page in pages]
    by_id = {node.id: node for node in nodes}

    roots: list[PageNode] = []
    for node in nodes:
        parent = by_id.get(node.parent_id) if node.parent_id else None
        if parent is not None and parent is not node:
            parent.children.append(node)
        else:
            roots.append(node)

    reachable = {id(n) for n in _walk(roots)}
    for node in nodes:
        if id(node) in reachable:
            continue
        parent = by_id[node.parent_id]
        parent.children = [c for c in parent.children if c is not node]
        roots.append(node)
        reachable.update(id(n) for n in _walk([node]))

    return roots


def drop_position(relative_y: float, height: float) -> DropPosition:
    """Classify a drop by where the cursor sits within the target row."""
    if relative_y < height * TOP_ZONE:
        return DropPosition.TOP
    if relative_y > height * BOTTOM_ZONE:
        return DropPosition.BOTTOM
    return DropPosition.MIDDLE


def resolve_drop(moved_id: UUID, target: PageSummary, position: DropPosition) -> MoveTarget | None:
    """Where a page dropped onto ``target`` ends up. None for a self-drop."""
    if moved_id == target.id:
        return None
    if position == DropPosition.MIDDLE:
        return MoveTarget(order=0, parent_id=target.id)
    if position == DropPosition.TOP:
        return MoveTarget(order=target.order, parent_id=target.parent_id)
    return MoveTarget(order=target.order + 1, parent_id=target.parent_id)


def would_create_cycle(pages: Sequence[PageSummary], page_id: UUID, new_parent_id: UUID | None) -> bool:
    """True when ``new_parent_id`` is the page itself or one of its descendants."""
    parents = {p.id: p.parent_id for p in pages}
    current = new_parent_id
    seen: set[UUID] = set()
    while current is not None and current not in seen:
        if current == page_id:
            return True
        seen.add(current)
        current = parents.get(current)
    return False


def plan_reorder(
    pages: Sequence[PageSummary],
    page_id: UUID,
    new_order: int,
    new_parent_id: UUID | None,
) -> list[OrderUpdate]:
    """Compute the order writes for moving one page.

    Phase 1 closes the gap under the old parent, phase 2 opens one under
    the new parent, phase 3 places the moved page. Every value is derived
    from the ``pages`` snapshot; a sibling touched by both phases takes its
    phase-2 value.

    Raises:
        ValueError: If ``page_id`` is not in ``pages``.
    """
    moved = next((p for p in pages if p.id == page_id), None)
    if moved is None:
        raise ValueError(f"page {page_id} not found among siblings")
    old_parent_id, old_order = moved.parent_id, moved.order

    opening = [
        OrderUpdate(page_id=p.id, order=p.order + 1, parent_id=p.parent_id)
        for p in pages
        if p.id != page_id and p.parent_id == new_parent_id and p.order >= new_order
    ]
    opened = {u.page_id for u in opening}
    closing = [
        OrderUpdate(page_id=p.id, order=p.order - 1, parent_id=p.parent_id)
        for p in pages
        if p.id != page_id
        and p.id not in opened
        and p.parent_id == old_parent_id
        and p.order > old_order
    ]

    return [
        *closing,
        *opening,
        OrderUpdate(page_id=page_id, order=new_order, parent_id=new_parent_id),
    ]


def breadcrumb_chain(
    page_id: UUID, lookup: Callable[[UUID], PageSummary | None]
) -> list[PageSummary]:
    """Ancestors of a page followed by the page itself, root first.

    The walk stops at a missing parent or when a page repeats.
    """
    chain: list[PageSummary] = []
    seen: set[UUID] = set()
    current: UUID | None = page_id
    while current is not None and current not in seen:
        page = lookup(current)
        if page is None:
            break
        seen.add(current)
        chain.insert(0, page)
        current = page.parent_id
    return chain
