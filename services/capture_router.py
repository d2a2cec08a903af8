# ──────────────────────────────────────────────────────────────────────────────
# File: services/capture_router.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Capture endpoints: save, classify, voice.

All routes here accept a bearer key (when keys are configured) and share the
capture rate limit.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from pydantic import AliasChoices, BaseModel, Field

from services.dependencies import (
    capture_rate_limit,
    get_repository,
    get_save_workflow,
    get_voice_service,
    limiter,
    require_capture_key,
)
from services.errors import BlobStoreError, CaptureValidationError, ItemNotFoundError
from services.item_repository import ItemRepository
from services.save_workflow import SaveWorkflow
from services.voice_service import VoiceService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["capture"], dependencies=[Depends(require_capture_key)])


class SaveRequest(BaseModel):
    content: Optional[str] = None
    url: Optional[str] = None
    image_data: Optional[str] = Field(None, validation_alias=AliasChoices("imageData", "image_data"))
    run_async: bool = Field(False, validation_alias=AliasChoices("async", "run_async"))
    metadata: Optional[Dict[str, Any]] = None


class ClassifyRequest(BaseModel):
    content: Optional[str] = None
    url: Optional[str] = None
    image_data: Optional[str] = Field(None, validation_alias=AliasChoices("imageData", "image_data"))


@router.post("/save")
@limiter.limit(capture_rate_limit)
async def save_item(
    request: Request,
    body: SaveRequest,
    workflow: SaveWorkflow = Depends(get_save_workflow),
):
    """Save a capture; enrichment runs on the job queue."""
    return await workflow.save(
        body.content,
        body.url,
        body.image_data,
        metadata=body.metadata,
        wait=not body.run_async,
    )


@router.get("/save")
@limiter.limit(capture_rate_limit)
async def list_items(
    request: Request,
    type: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    repository: ItemRepository = Depends(get_repository),
):
    return {"items": [item.to_api() for item in repository.list(item_type=type, limit=limit)]}


@router.delete("/save/{item_id}")
@limiter.limit(capture_rate_limit)
async def delete_item(
    request: Request,
    item_id: str,
    repository: ItemRepository = Depends(get_repository),
):
    if not repository.delete(item_id):
        raise ItemNotFoundError(f"Item not found: {item_id}")

    blob_store = getattr(request.app.state, "blob_store", None)
    if blob_store is not None and blob_store.configured:
        try:
            await blob_store.delete_item_assets(item_id)
        except BlobStoreError as e:
            logger.warning(f"Could not delete stored assets for {item_id}: {e}")
    return {"success": True, "id": item_id}


@router.post("/classify")
@limiter.limit(capture_rate_limit)
async def classify(
    request: Request,
    body: ClassifyRequest,
    workflow: SaveWorkflow = Depends(get_save_workflow),
):
    classification = await workflow.classify_now(body.content, body.url, body.image_data)
    return {"classification": classification}


@router.post("/voice")
@limiter.limit(capture_rate_limit)
async def voice(
    request: Request,
    audio: UploadFile = File(...),
    save: bool = Form(False),
    voice_service: VoiceService = Depends(get_voice_service),
    workflow: SaveWorkflow = Depends(get_save_workflow),
):
    """Transcribe and analyse a voice note; ``save=true`` also stores it as an item."""
    data = await audio.read()
    if not data:
        raise CaptureValidationError("No audio file provided")

    content_type = audio.content_type or "audio/webm"
    result = await voice_service.process(data, audio.filename or "audio.webm", content_type)
    if save and result["transcript"]:
        item = await workflow.save_voice_note(result["transcript"], result["analysis"], data, content_type)
        result["item"] = item.to_api()
    return result
