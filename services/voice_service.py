"""Voice capture: Whisper transcription followed by Claude transcript analysis."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from config import settings
from services.claude_client import ClaudeClient
from services.errors import ErrorCategory, TranscriptionError

logger = logging.getLogger(__name__)


class TranscriptionService:
    """OpenAI audio transcription (``whisper-1`` by default)."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self.model = model or settings.whisper_model
        self._client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(120.0, connect=10.0))
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def transcribe(self, audio: bytes, filename: str = "audio.webm",
                         content_type: str = "audio/webm") -> str:
        if not self.api_key:
            raise TranscriptionError(
                "OpenAI API key not configured",
                category=ErrorCategory.CONFIGURATION,
                details={"message": "Set OPENAI_API_KEY for voice transcription"},
            )
        try:
            resp = await self._get_client().post(
                f"{self.base_url}/v1/audio/transcriptions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                files={"file": (filename, audio, content_type)},
                data={"model": self.model},
            )
        except httpx.HTTPError as e:
            raise TranscriptionError(f"Failed to transcribe audio: {e}") from e
        if resp.status_code != 200:
            logger.error(f"Whisper API error {resp.status_code}: {resp.text}")
            raise TranscriptionError(
                "Failed to transcribe audio",
                details={"status": resp.status_code, "body": resp.text[:300]},
            )
        return (resp.json().get("text") or "").strip()


class VoiceService:
    """Transcribe a voice note and analyse the transcript."""

    def __init__(self, transcriber: TranscriptionService, classifier: ClaudeClient):
        self.transcriber = transcriber
        self.classifier = classifier

    async def process(self, audio: bytes, filename: str = "audio.webm",
                      content_type: str = "audio/webm") -> Dict[str, Any]:
        transcript = await self.transcriber.transcribe(audio, filename, content_type)
        analysis = await self.classifier.analyze_voice_transcript(transcript)
        tone = analysis.get("tone") or "casual"
        return {
            "success": True,
            "transcript": transcript,
            "analysis": {
                "keywords": analysis.get("keywords") or [],
                "tone": tone,
                "sentiment": analysis.get("tone") or "neutral",
                "summary": analysis.get("summary") or transcript[:100],
                "actionItems": analysis.get("categories") or [],
            },
        }
