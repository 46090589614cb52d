"""Fuzzy matching of extracted line items against the product catalog.

An exact SKU hit scores 1.0 and short-circuits. Otherwise the description is
reduced to search terms and every catalog item is scored by the share of
terms found in its text, with partial credit for known synonyms.
"""

import logging
import re
from typing import Any

from invoice_pipeline.extraction.schema import LineItem, ProductSuggestion
from invoice_pipeline.matching.catalog import ProductCatalog
from invoice_pipeline.shared.config import Settings

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset({"the", "and", "for", "with", "size"})
MIN_TERM_LENGTH = 3
SYNONYM_CREDIT = 0.8

SYNONYM_GROUPS: dict[str, tuple[str, ...]] = {
    "bunion": ("hallux valgus", "bunion pad", "bunion protector"),
    "orthotic": ("insole", "arch support", "foot support"),
    "gel": ("silicone", "soft gel"),
    "protector": ("pad", "cushion", "shield"),
}

_PUNCTUATION = re.compile(r"[^\w\s]")


def extract_search_terms(description: str | None) -> list[str]:
    """Lowercase, strip punctuation, drop stop-words and terms under 3 characters."""
    if not description:
        return []
    words = _PUNCTUATION.sub(" ", description.lower()).split()
    return [w for w in words if len(w) >= MIN_TERM_LENGTH and w not in STOP_WORDS]


def product_text(product: dict[str, Any]) -> str:
    parts = [
        product.get("name") or "",
        product.get("description") or "",
        product.get("listingName") or "",
        *(product.get("alternativeNames") or []),
    ]
    return " ".join(str(part) for part in parts).lower()


def match_score(terms: list[str], product: dict[str, Any]) -> float:
    """Share of terms found in the product text, synonyms counting 0.8."""
    if not terms:
        return 0.0
    text = product_text(product)
    hits = 0.0
    for term in terms:
        if term in text:
            hits += 1
            continue
        for key, variations in SYNONYM_GROUPS.items():
            if key in term or any(v in term for v in variations):
                if key in text or any(v in text for v in variations):
                    hits += SYNONYM_CREDIT
                    break
    return min(hits / len(terms), 1.0)


class ProductMatcher:
    """Attaches best match and ranked suggestions to each line item."""

    def __init__(self, settings: Settings, catalog: ProductCatalog) -> None:
        self.settings = settings
        self.catalog = catalog

    async def match_items(self, items: list[LineItem]) -> list[LineItem]:
        """Return copies of the items with matching fields filled in.

        Catalog errors are logged and leave the item flagged as a new product.
        """
        matched = []
        for item in items:
            matched.append(await self.match_item(item))
        return matched

    async def match_item(self, item: LineItem) -> LineItem:
        if item.code:
            try:
                product = await self.catalog.get_item_by_sku(item.code)
            except Exception as e:
                logger.error(f"Catalog SKU lookup failed for {item.code!r}: {e}")
                product = None
            if product is not None:
                return item.model_copy(
                    update={"matched_product": product, "match_score": 1.0, "suggestions": []}
                )

        try:
            suggestions = await self.suggest(item.description)
        except Exception as e:
            logger.error(f"Catalog search failed for {item.description!r}: {e}")
            return item.model_copy(update={"is_new_product": True})

        if not suggestions:
            return item.model_copy(update={"suggestions": [], "is_new_product": True})
        best = suggestions[0]
        return item.model_copy(
            update={
                "matched_product": best.product,
                "match_score": best.score,
                "suggestions": suggestions,
                "is_new_product": False,
            }
        )

    async def suggest(self, description: str) -> list[ProductSuggestion]:
        """Rank catalog items scoring above the threshold, best first."""
        terms = extract_search_terms(description)
        if not terms:
            return []
        scored = []
        for product in await self.catalog.get_all_items():
            score = match_score(terms, product)
            if score > self.settings.match_score_threshold:
                scored.append(ProductSuggestion(product=product, score=score))
        scored.sort(key=lambda suggestion: suggestion.score, reverse=True)
        return scored[: self.settings.max_match_suggestions]
