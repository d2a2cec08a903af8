# ──────────────────────────────────────────────────────────────────────────────
# File: services/search_router.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Natural-language search endpoint.

Accepts either a caller-supplied item list (client-side stores) or searches
the server's saved items when ``items`` is omitted.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import AliasChoices, BaseModel, Field

from services.dependencies import get_search_service
from services.search_service import SearchService

router = APIRouter(prefix="/api/search", tags=["search"])


class SearchRequest(BaseModel):
    query: str = ""
    items: Optional[List[Dict[str, Any]]] = None
    use_ai: bool = Field(True, validation_alias=AliasChoices("useAI", "use_ai"))


@router.post("")
async def search(body: SearchRequest, service: SearchService = Depends(get_search_service)):
    return await service.search(body.query, items=body.items, use_ai=body.use_ai)
