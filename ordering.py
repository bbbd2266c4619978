from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

from models import Category


@dataclass(frozen=True)
class ReorderPlan:
    dragged_id: int
    parent_id: Optional[int]
    parent_changed: bool
    # category id -> new sort_order, for every sibling set touched by the move
    sort_orders: dict[int, int] = field(default_factory=dict)


def _sibling_order(category: Category) -> tuple[int, str, int]:
    return (category.sort_order, category.name.lower(), category.id)


def _siblings(
    categories: Sequence[Category], group_name, parent_id: Optional[int]
) -> list[Category]:
    return sorted(
        (
            c
            for c in categories
            if c.group_name == group_name
            and c.parent_id == parent_id
            and not c.archived
        ),
        key=_sibling_order,
    )


def resolve_drop_parent(
    categories: Sequence[Category], dragged: Category, target: Category
) -> tuple[Optional[int], bool]:
    """Return the parent the dragged category ends up under and whether the
    move is allowed at all."""
    has_children = any(c.parent_id == dragged.id for c in categories)
    parent_id = target.parent_id
    if target.parent_id is None and dragged.parent_id is not None and not has_children:
        # dropping a child onto a top-level row files it under that row
        parent_id = target.id
    if has_children and parent_id is not None:
        return parent_id, False
    return parent_id, True


def plan_reorder(
    categories: Sequence[Category], dragged_id: int, target_id: int
) -> Optional[ReorderPlan]:
    """Compute contiguous sort orders after dropping ``dragged_id`` on ``target_id``.

    ``categories`` is every category of the user (archived ones included, so
    that hidden children still count). Returns ``None`` for a no-op drop.
    """
    if dragged_id == target_id:
        return None
    by_id = {c.id: c for c in categories}
    dragged = by_id.get(dragged_id)
    target = by_id.get(target_id)
    if dragged is None or target is None:
        return None
    if dragged.group_name != target.group_name:
        return None

    parent_id, allowed = resolve_drop_parent(categories, dragged, target)
    if not allowed:
        return None

    same_parent = dragged.parent_id == parent_id
    siblings = _siblings(categories, dragged.group_name, parent_id)
    from_index = next(
        (i for i, c in enumerate(siblings) if c.id == dragged.id), -1
    )
    to_index = next((i for i, c in enumerate(siblings) if c.id == target.id), -1)
    if to_index == -1:
        to_index = len(siblings)

    ordered = list(siblings)
    if same_parent and from_index != -1:
        moved = ordered.pop(from_index)
        ordered.insert(to_index, moved)
    else:
        ordered.insert(to_index, dragged)

    sort_orders = {c.id: i + 1 for i, c in enumerate(ordered)}
    if not same_parent:
        left_behind = [
            c
            for c in _siblings(categories, dragged.group_name, dragged.parent_id)
            if c.id != dragged.id
        ]
        sort_orders.update({c.id: i + 1 for i, c in enumerate(left_behind)})

    return ReorderPlan(
        dragged_id=dragged.id,
        parent_id=parent_id,
        parent_changed=not same_parent,
        sort_orders=sort_orders,
    )
