"""Read-only view of the product catalog used for matching.

The catalog itself (items, stock, suppliers) belongs to the host
application. Items are plain dicts with at least a "name"; "sku",
"description", "listingName" and "alternativeNames" are used when present.
"""

from typing import Any, Protocol


class ProductCatalog(Protocol):
    """Lookups the product matcher needs from the host catalog."""

    async def get_item_by_sku(self, sku: str) -> dict[str, Any] | None: ...

    async def get_all_items(self) -> list[dict[str, Any]]: ...


class InMemoryProductCatalog:
    """Catalog over a list of item dicts, for tests and the CLI."""

    def __init__(self, items: list[dict[str, Any]] | None = None) -> None:
        self._items = list(items or [])

    async def get_item_by_sku(self, sku: str) -> dict[str, Any] | None:
        wanted = sku.strip().lower()
        for item in self._items:
            if str(item.get("sku", "")).strip().lower() == wanted:
                return item
        return None

    async def get_all_items(self) -> list[dict[str, Any]]:
        return list(self._items)
