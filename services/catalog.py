"""
Catalog collaborator.

The core only reads items: item_by_id() for cooldown policy and display,
all_items() for the panel. CatalogCache wraps an external loader (the
catalog service, a list export) in a SnapshotCache so a catalog change is
picked up only on an explicit reload().

Loader rows are mappings with "item_id" (or "appId"), "name" and optional
"high_demand" / "highDemand". Rows without a name or a valid positive id, and
duplicate ids, are dropped.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from domain.catalog import Item
from services.snapshot_cache import SnapshotCache

logger = logging.getLogger(__name__)

MAX_SEARCH_RESULTS: int = 25


class Catalog(Protocol):
    def item_by_id(self, item_id: int) -> Optional[Item]: ...

    def all_items(self) -> List[Item]: ...


def _truthy(value: Any) -> bool:
    return value is True or (isinstance(value, str) and value.strip().lower() == "true")


def normalize_items(rows: Iterable[Mapping[str, Any]]) -> Dict[int, Item]:
    items: Dict[int, Item] = {}
    for row in rows:
        raw_id = row.get("item_id", row.get("appId"))
        name = str(row.get("name") or "").strip()
        try:
            item_id = int(raw_id)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            continue
        if not name or item_id <= 0 or item_id in items:
            continue
        high_demand = _truthy(row.get("high_demand", row.get("highDemand", False)))
        items[item_id] = Item(item_id=item_id, name=name, high_demand=high_demand)
    return items


class CatalogCache:
    def __init__(self, loader: Callable[[], Iterable[Mapping[str, Any]]]):
        self._cache: SnapshotCache[Dict[int, Item]] = SnapshotCache(lambda: normalize_items(loader()))

    def item_by_id(self, item_id: int) -> Optional[Item]:
        return self._cache.get().get(item_id)

    def all_items(self) -> List[Item]:
        return sorted(self._cache.get().values(), key=lambda item: item.name.lower())

    def search(self, query: str) -> List[Item]:
        """Case-insensitive substring search; short queries return the first page."""

        items = self.all_items()
        if not query or len(query.strip()) < 2:
            return items[:MAX_SEARCH_RESULTS]
        needle = query.strip().lower()
        return [item for item in items if needle in item.name.lower()][:MAX_SEARCH_RESULTS]

    def reload(self) -> int:
        items = self._cache.reload()
        logger.info("Catalog reloaded (%d items)", len(items))
        return len(items)


class StaticCatalog(CatalogCache):
    """Catalog over a fixed list of items."""

    def __init__(self, items: Iterable[Item]):
        fixed = list(items)
        super().__init__(
            lambda: [
                {"item_id": item.item_id, "name": item.name, "high_demand": item.high_demand}
                for item in fixed
            ]
        )


def catalog_file_loader(path: str | Path) -> Callable[[], List[Mapping[str, Any]]]:
    """Loader reading a JSON list of item rows; re-read on every reload()."""

    def load() -> List[Mapping[str, Any]]:
        with open(path, encoding="utf-8") as f:
            rows = json.load(f)
        if not isinstance(rows, list):
            raise ValueError(f"Catalog file {path} must contain a JSON list")
        return rows

    return load
