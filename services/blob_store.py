"""Supabase Storage client for captured images and voice audio.

Talks to the Storage REST API directly; uploads are upserts keyed by item id
and return the object's public URL.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Optional

import httpx

from config import settings
from services.errors import BlobStoreError, ErrorCategory

logger = logging.getLogger(__name__)


class BlobStore:
    """Upload and delete binary assets in Supabase Storage buckets."""

    def __init__(
        self,
        url: Optional[str] = None,
        key: Optional[str] = None,
        *,
        image_bucket: Optional[str] = None,
        audio_bucket: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = (url if url is not None else settings.supabase_url or "").rstrip("/")
        self.key = key if key is not None else settings.supabase_key
        self.image_bucket = image_bucket or settings.supabase_image_bucket
        self.audio_bucket = audio_bucket or settings.supabase_audio_bucket
        self._client = http_client
        self._owns_client = http_client is None
        if not self.configured:
            logger.warning("Supabase credentials not found. File upload will not work.")

    @property
    def configured(self) -> bool:
        return bool(self.url and self.key)

    def _headers(self, content_type: str) -> dict[str, str]:
        return {
            "apikey": self.key or "",
            "Authorization": f"Bearer {self.key}",
            "Content-Type": content_type,
            "x-upsert": "true",
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0))
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    def public_url(self, bucket: str, name: str) -> str:
        return f"{self.url}/storage/v1/object/public/{bucket}/{name}"

    async def _upload(self, bucket: str, name: str, data: bytes, content_type: str) -> str:
        if not self.configured:
            raise BlobStoreError("Supabase not configured", category=ErrorCategory.CONFIGURATION)

        upload_url = f"{self.url}/storage/v1/object/{bucket}/{name}"
        try:
            resp = await self._get_client().post(
                upload_url, headers=self._headers(content_type), content=data
            )
        except httpx.HTTPError as e:
            raise BlobStoreError(f"Upload of {name} failed: {e}") from e
        if resp.status_code not in (200, 201):
            raise BlobStoreError(
                f"Upload of {name} failed: {resp.status_code}",
                details={"status": resp.status_code, "body": resp.text[:300]},
            )
        return self.public_url(bucket, name)

    async def upload_image(self, base64_data: str, item_id: str) -> str:
        """Upload a base64 PNG (no data: prefix) and return its public URL."""

        try:
            data = base64.b64decode(base64_data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise BlobStoreError(f"Image data is not valid base64: {e}") from e
        return await self._upload(self.image_bucket, f"{item_id}.png", data, "image/png")

    async def upload_voice_audio(self, audio: bytes, item_id: str, content_type: str = "audio/webm") -> str:
        return await self._upload(self.audio_bucket, f"{item_id}.webm", audio, content_type)

    async def delete(self, bucket: str, name: str) -> None:
        if not self.configured:
            raise BlobStoreError("Supabase not configured", category=ErrorCategory.CONFIGURATION)
        try:
            resp = await self._get_client().request(
                "DELETE",
                f"{self.url}/storage/v1/object/{bucket}",
                headers=self._headers("application/json"),
                json={"prefixes": [name]},
            )
        except httpx.HTTPError as e:
            raise BlobStoreError(f"Delete of {name} failed: {e}") from e
        if resp.status_code != 200:
            raise BlobStoreError(f"Delete of {name} failed: {resp.status_code}")

    async def delete_item_assets(self, item_id: str) -> None:
        await self.delete(self.image_bucket, f"{item_id}.png")
        await self.delete(self.audio_bucket, f"{item_id}.webm")


def inline_image_url(base64_data: str) -> str:
    """Data-URL fallback when the blob store is unavailable."""
    return f"data:image/png;base64,{base64_data}"
