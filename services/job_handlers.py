"""Built-in job handlers: Claude classification and image upload."""

from __future__ import annotations

from typing import Any, Dict

from services.blob_store import BlobStore
from services.claude_client import ClaudeClient
from services.errors import CaptureValidationError
from services.job_queue import JobHandler, JobType


def build_job_handlers(classifier: ClaudeClient, blob_store: BlobStore) -> Dict[str, JobHandler]:
    """Handlers keyed by job type, ready to pass to ``JobQueue``."""

    async def handle_classify(payload: Dict[str, Any]) -> Dict[str, Any]:
        return await classifier.classify_content(
            payload.get("content"),
            payload.get("url"),
            payload.get("imageData"),
        )

    async def handle_image_upload(payload: Dict[str, Any]) -> Dict[str, Any]:
        image_data = payload.get("imageData")
        item_id = payload.get("itemId")
        if not image_data or not item_id:
            raise CaptureValidationError("image_upload jobs need imageData and itemId")
        url = await blob_store.upload_image(image_data, item_id)
        return {"imageUrl": url}

    return {
        JobType.CLASSIFY.value: handle_classify,
        JobType.IMAGE_UPLOAD.value: handle_image_upload,
    }
