# search.py
# -----------------------------
# Inventory search filter (the browser applies the same rule, debounced)
# -----------------------------

from __future__ import annotations

from typing import Any, Iterable


def _item_name(item: Any) -> str:
    return item if isinstance(item, str) else item.name


def filter_inventory(items: Iterable[Any], query: str | None) -> list:
    """Case-insensitive substring match on item names; a blank query keeps everything."""
    items = list(items)
    needle = (query or "").strip().lower()
    if not needle:
        return items
    return [item for item in items if needle in _item_name(item).lower()]
