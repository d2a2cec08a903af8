"""
Capture workflow: save first, enrich asynchronously.

1. write a placeholder item (status ``processing``)
2. submit a ``classify`` job, plus ``image_upload`` when an image is attached
3. either wait for enrichment (bounded) or hand back the job ids right away
4. a reconcile task merges the job results into the item once they finish

Enrichment never loses a capture: a failed classification falls back to a
default classification and a failed upload keeps the image inline.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from config import settings
from services.blob_store import BlobStore, inline_image_url
from services.claude_client import ClaudeClient, fallback_classification
from services.errors import BlobStoreError, CaptureValidationError, ClassificationError, ItemNotFoundError
from services.item_repository import Item, ItemRepository, ItemStatus, new_item_id
from services.job_queue import JobQueue, JobStatus, JobType

logger = logging.getLogger(__name__)

PLACEHOLDER_TITLE = "Processing..."

_METADATA_FIELDS = ("author", "price", "date", "source", "imageUrl", "description")
_IMAGE_ANALYSIS_FIELDS = ("imageAnalysis", "extractedText", "colors", "visualType")


def strip_data_url(image_data: Optional[str]) -> Optional[str]:
    """Accept either raw base64 or a ``data:image/...;base64,`` URL."""
    if image_data and image_data.startswith("data:") and "," in image_data:
        return image_data.split(",", 1)[1]
    return image_data or None


def build_classify_content(content: Optional[str], url: Optional[str], image_data: Optional[str]) -> str:
    full = content or ""
    if image_data:
        full += "\n[Image attached - analyze visual content]"
    if url:
        full += f"\nURL: {url}"
    return full


def classification_metadata(classification: Dict[str, Any]) -> Dict[str, Any]:
    raw = classification.get("metadata") or {}
    metadata = {
        "title": classification.get("title"),
        "summary": classification.get("summary"),
    }
    for key in _METADATA_FIELDS + _IMAGE_ANALYSIS_FIELDS:
        metadata[key] = raw.get(key)
    return {k: v for k, v in metadata.items() if v not in (None, "")}


def classification_to_api(classification: Dict[str, Any]) -> Dict[str, Any]:
    """Response shape of /api/classify."""
    return {
        "contentType": classification.get("contentType"),
        "metadata": classification_metadata(classification),
        "tags": classification.get("tags") or [],
        "keywords": classification.get("keywords") or [],
        "visualFormat": classification.get("visualFormat") or "card",
    }


class SaveWorkflow:
    def __init__(
        self,
        queue: JobQueue,
        repository: ItemRepository,
        classifier: Optional[ClaudeClient] = None,
        blob_store: Optional[BlobStore] = None,
        wait_timeout: Optional[float] = None,
    ):
        self.queue = queue
        self.repository = repository
        self.classifier = classifier
        self.blob_store = blob_store
        self.wait_timeout = settings.job_wait_timeout_seconds if wait_timeout is None else wait_timeout
        self._tasks: set[asyncio.Task] = set()

    async def save(
        self,
        content: Optional[str] = None,
        url: Optional[str] = None,
        image_data: Optional[str] = None,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        wait: bool = True,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Persist a capture and schedule its enrichment."""

        content = (content or "").strip() or None
        url = (url or "").strip() or None
        image_data = strip_data_url(image_data)
        if not content and not url and not image_data:
            raise CaptureValidationError("Content, URL, or image is required")

        extra = {k: v for k, v in (metadata or {}).items() if v not in (None, "")}
        item = Item(
            id=new_item_id(),
            type="image" if image_data else "note",
            raw_content=content or url or "",
            url=url,
            metadata={**extra, "title": PLACEHOLDER_TITLE},
            status=ItemStatus.PROCESSING.value,
        )
        self.repository.create(item)

        jobs = {
            "classify": self.queue.submit(JobType.CLASSIFY, {
                "content": build_classify_content(content, url, image_data),
                "url": url,
                "imageData": image_data,
                "itemId": item.id,
            })
        }
        if image_data and self.blob_store is not None and self.blob_store.configured:
            jobs["imageUpload"] = self.queue.submit(JobType.IMAGE_UPLOAD, {
                "imageData": image_data,
                "itemId": item.id,
            })

        task = asyncio.get_running_loop().create_task(
            self._reconcile(item.id, jobs, content, image_data, extra)
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_reconciled)

        if wait:
            timeout = self.wait_timeout if timeout is None else timeout
            try:
                final = await asyncio.wait_for(asyncio.shield(task), timeout)
            except asyncio.TimeoutError:
                logger.info(f"Item {item.id} still enriching after {timeout:g}s; answering async")
            else:
                return {
                    "success": True,
                    "item": final.to_api(),
                    "classification": {
                        "contentType": final.type,
                        "metadata": final.metadata,
                        "tags": final.tags,
                        "keywords": final.keywords,
                    },
                    "jobs": jobs,
                }

        return {"success": True, "async": True, "item": item.to_api(), "jobs": jobs}

    async def _reconcile(
        self,
        item_id: str,
        jobs: Dict[str, str],
        content: Optional[str],
        image_data: Optional[str],
        extra_metadata: Dict[str, Any],
    ) -> Item:
        classify_job = await self.queue.wait_for(jobs["classify"])
        if classify_job.status is JobStatus.COMPLETED:
            classification = classify_job.result
        else:
            logger.warning(f"Classification failed for item {item_id}: {classify_job.error}")
            classification = fallback_classification(content, has_image=bool(image_data))

        changes: Dict[str, Any] = {
            "type": classification.get("contentType") or "note",
            "metadata": {**extra_metadata, **classification_metadata(classification)},
            "tags": list(classification.get("tags") or []),
            "keywords": list(classification.get("keywords") or []),
            "status": ItemStatus.READY.value,
        }

        if image_data:
            upload_id = jobs.get("imageUpload")
            image_url = None
            if upload_id:
                upload_job = await self.queue.wait_for(upload_id)
                if upload_job.status is JobStatus.COMPLETED:
                    image_url = upload_job.result.get("imageUrl")
                else:
                    logger.warning(f"Image upload failed for item {item_id}: {upload_job.error}")
            changes["image"] = image_url or inline_image_url(image_data)

        if self.repository.get(item_id) is None:
            raise ItemNotFoundError(f"Item {item_id} was deleted before enrichment finished")
        return self.repository.update(item_id, **changes)

    def _on_reconciled(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Reconciling capture failed: {exc}")

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def classify_now(
        self,
        content: Optional[str] = None,
        url: Optional[str] = None,
        image_data: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Classify without saving. Falls back to the default classification."""

        image_data = strip_data_url(image_data)
        if not content and not url and not image_data:
            raise CaptureValidationError("Content, URL, or image is required")
        if self.classifier is None:
            return classification_to_api(fallback_classification(content, bool(image_data)))
        try:
            classification = await self.classifier.classify_content(
                build_classify_content(content, url, image_data), url, image_data
            )
        except ClassificationError as e:
            logger.warning(f"Classification failed, using default: {e}")
            classification = fallback_classification(content, bool(image_data))
        return classification_to_api(classification)

    async def save_voice_note(
        self,
        transcript: str,
        analysis: Dict[str, Any],
        audio: Optional[bytes] = None,
        content_type: str = "audio/webm",
    ) -> Item:
        """Store a transcribed voice note; the audio upload is best-effort."""

        summary = analysis.get("summary") or transcript[:100]
        item = Item(
            id=new_item_id(),
            type="note",
            raw_content=transcript,
            metadata={"title": summary[:80] or "Voice note", "summary": summary},
            keywords=list(analysis.get("keywords") or []),
            tags=["voice"],
            voice=dict(analysis),
        )
        if audio and self.blob_store is not None and self.blob_store.configured:
            try:
                item.voice["audioUrl"] = await self.blob_store.upload_voice_audio(
                    audio, item.id, content_type
                )
            except BlobStoreError as e:
                logger.warning(f"Voice audio upload failed for {item.id}: {e}")
        return self.repository.create(item)
