# ──────────────────────────────────────────────────────────────────────────────
# File: services/search_service.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Search pipeline over saved items.

parse query -> apply filters -> Claude ranks the semantic remainder.
Degrades in three tiers so an AI outage still returns results:
1. ranking fails      -> literal keyword match over the filtered items
2. anything else fails -> plain substring match over the unfiltered items,
                         flagged with ``fallback: True``
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from services.claude_client import ClaudeClient
from services.errors import CaptureValidationError, ClassificationError
from services.item_repository import ItemRepository
from services.query_parser import apply_filters, parse

logger = logging.getLogger(__name__)


def _searchable_text(item: Mapping[str, Any]) -> List[str]:
    metadata = item.get("metadata") or {}
    fields = [str(metadata.get("title") or ""), str(item.get("rawContent") or "")]
    fields.extend(str(k) for k in item.get("keywords") or [])
    fields.extend(str(t) for t in item.get("tags") or [])
    return [f.lower() for f in fields if f]


def keyword_match(items: Iterable[Mapping[str, Any]], terms: Sequence[str]) -> List[Mapping[str, Any]]:
    """Items where any term is a case-insensitive substring of title, content, keywords or tags."""

    needles = [t.lower() for t in terms if t and t.strip()]
    if not needles:
        return []
    return [
        item for item in items
        if any(needle in text for text in _searchable_text(item) for needle in needles)
    ]


class SearchService:
    def __init__(self, classifier: Optional[ClaudeClient] = None,
                 repository: Optional[ItemRepository] = None):
        self.classifier = classifier
        self.repository = repository

    async def search(
        self,
        query: str,
        items: Optional[Iterable[Mapping[str, Any]]] = None,
        use_ai: bool = True,
    ) -> Dict[str, Any]:
        if not query or not query.strip():
            raise CaptureValidationError("Search query is required")

        if items is None:
            items = [item.to_api() for item in self.repository.list()] if self.repository else []
        items = list(items)
        if not items:
            return {
                "results": [],
                "parsed": None,
                "stats": {"total": 0, "filtered": 0, "returned": 0, "strategy": "filter"},
            }

        try:
            return await self._search(query, items, use_ai)
        except Exception as e:
            logger.error(f"Search pipeline failed, using substring fallback: {e}")
            return {"results": keyword_match(items, [query.strip()]), "fallback": True}

    async def _search(self, query: str, items: List[Mapping[str, Any]], use_ai: bool) -> Dict[str, Any]:
        parsed = await parse(query, use_ai=use_ai, client=self.classifier)
        filtered = apply_filters(items, parsed.filters)

        if parsed.semantic and filtered:
            try:
                results = await self._rank(parsed.semantic, filtered)
                strategy = "semantic"
            except ClassificationError as e:
                logger.warning(f"Semantic ranking failed, using keyword match: {e}")
                results = keyword_match(filtered, parsed.keywords or [parsed.semantic])
                strategy = "keyword"
        else:
            # No semantic remainder: the filtered set is the answer
            results = filtered
            strategy = "filter"

        return {
            "results": results,
            "parsed": parsed.to_api(),
            "stats": {
                "total": len(items),
                "filtered": len(filtered),
                "returned": len(results),
                "strategy": strategy,
            },
        }

    async def _rank(self, semantic: str, items: List[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
        if self.classifier is None:
            raise ClassificationError("No classifier configured for ranking")
        return await self.classifier.rank(semantic, items)
