"""
Anthropic Claude client for Synapse.

Classifies captured content, ranks saved items against a search query, and
answers free-form prompts (used by the AI query parser and voice analysis).
Every failure mode (missing key, HTTP error, timeout, unparseable reply) is
raised as ClassificationError so callers can retry or fall back.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

import httpx

from config import settings
from services.errors import ClassificationError
from services.item_repository import CONTENT_TYPES

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\n?")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_ARRAY_RE = re.compile(r"\[[\s\S]*\]")

CLASSIFY_PROMPT = """Analyze this content and return ONLY valid JSON (no markdown, no backticks):

Content: {content}
{url_line}
{image_block}
Return this exact structure:
{{
  "contentType": "{types}",
  "title": "extracted or generated title",
  "summary": "one sentence summary",
  "metadata": {{
    "author": "if available",
    "price": "if product",
    "date": "if available",
    "source": "website/platform name",
    "imageUrl": "if available",
    "description": "brief description",
    "imageAnalysis": "detailed description of image content (if image provided)",
    "extractedText": "any text found in image (if applicable)",
    "colors": ["dominant", "colors"] (if image),
    "visualType": "screenshot|diagram|photo|design|chart|meme|other" (if image)
  }},
  "tags": ["relevant", "tags"],
  "keywords": ["searchable", "keywords", "phrases"],
  "visualFormat": "card|list|gallery|player|document"
}}"""

IMAGE_INSTRUCTIONS = """
IMPORTANT: An image is attached. Analyze the visual content including:
- Any text visible in the image (OCR)
- Diagrams, charts, or flowcharts
- Color schemes and design elements
- Objects, people, or scenes
- Technical content (code, screenshots, UI designs)
- Overall context and purpose

Include image analysis in your classification.
"""

RANK_PROMPT = """Given this search query: "{query}"

And these saved items:
{items}

Return ONLY a JSON array of item IDs that match, ordered by relevance:
["id1", "id2", "id3"]

Match based on semantic meaning, keywords, tags, and metadata.
Return empty array [] if no matches."""

VOICE_PROMPT = """Analyze this voice note transcript:

"{transcript}"

Return ONLY valid JSON:
{{
  "keywords": ["key", "concepts"],
  "tone": "excited|important|casual|urgent|thoughtful",
  "summary": "one sentence",
  "categories": ["topics"]
}}"""


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def extract_json_object(text: str) -> Dict[str, Any]:
    """Parse the first {...} span of a model reply."""

    match = _OBJECT_RE.search(strip_code_fences(text))
    if not match:
        raise ClassificationError("No JSON object found in model response")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ClassificationError(f"Malformed JSON in model response: {e}") from e
    if not isinstance(data, dict):
        raise ClassificationError("Model response is not a JSON object")
    return data


def fallback_classification(content: Optional[str], has_image: bool = False) -> Dict[str, Any]:
    """Classification used when Claude is unavailable."""

    return {
        "contentType": "image" if has_image else "note",
        "title": "Uploaded Image" if has_image else "Untitled",
        "summary": content[:100] if content else "Image content",
        "metadata": {},
        "tags": [],
        "keywords": [],
        "visualFormat": "card",
    }


def default_voice_analysis(transcript: str) -> Dict[str, Any]:
    return {
        "keywords": [],
        "tone": "casual",
        "summary": transcript[:100],
        "categories": [],
    }


class ClaudeClient:
    """
    Thin async wrapper over the Anthropic Messages API.

    Pass ``http_client`` to reuse a configured httpx.AsyncClient (tests use
    one with a MockTransport).
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.anthropic_api_key
        self.base_url = base_url or settings.anthropic_base_url
        self.model = model or settings.anthropic_model
        self.timeout = timeout or settings.anthropic_timeout_seconds
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def available(self) -> bool:
        return bool(self.api_key) or not self._owns_client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                headers={
                    "x-api-key": self.api_key or "",
                    "Authorization": f"Bearer {self.api_key or ''}",
                    "anthropic-version": settings.anthropic_version,
                    "content-type": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def complete(self, messages: Sequence[Dict[str, Any]] | str, max_tokens: int = 1024) -> str:
        """Send messages (or a single user prompt) and return the reply text."""

        if not self.available:
            raise ClassificationError("Anthropic API key not configured")
        if isinstance(messages, str):
            messages = [{"role": "user", "content": messages}]

        try:
            response = await self._get_client().post(
                "/v1/messages",
                json={"model": self.model, "max_tokens": max_tokens, "messages": list(messages)},
            )
        except httpx.TimeoutException as e:
            raise ClassificationError(f"Claude request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ClassificationError(f"Claude request failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"Claude API error {response.status_code}: {response.text}")
            raise ClassificationError(
                f"Claude API error: {response.status_code}",
                details={"status": response.status_code, "body": response.text[:500]},
            )

        try:
            blocks = response.json().get("content") or []
            text = "\n".join(
                block.get("text", "") for block in blocks if block.get("type") == "text"
            )
        except (ValueError, AttributeError, TypeError) as e:
            logger.error(f"Malformed Claude response: {response.text[:200]}")
            raise ClassificationError(
                f"Malformed Claude response: {e}",
                details={"body": response.text[:500]},
            ) from e
        if not text:
            raise ClassificationError("Claude returned an empty response")
        return text

    async def classify_content(
        self,
        content: Optional[str],
        url: Optional[str] = None,
        image_data: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Classify content into a type, title, summary, metadata, tags and keywords."""

        prompt = CLASSIFY_PROMPT.format(
            content=content or "",
            url_line=f"URL: {url}" if url else "",
            image_block=IMAGE_INSTRUCTIONS if image_data else "",
            types="|".join(CONTENT_TYPES),
        )
        message_content: List[Dict[str, Any]] = []
        if image_data:
            message_content.append({
                "type": "image",
                "source": {"type": "base64", "media_type": "image/png", "data": image_data},
            })
        message_content.append({"type": "text", "text": prompt})

        reply = await self.complete([{"role": "user", "content": message_content}], max_tokens=2048)
        result = extract_json_object(reply)

        content_type = str(result.get("contentType") or "").strip().lower()
        if not content_type:
            raise ClassificationError("Classification is missing contentType")
        result["contentType"] = content_type
        result.setdefault("title", "Untitled")
        result.setdefault("summary", "")
        result["metadata"] = result.get("metadata") or {}
        result["tags"] = list(result.get("tags") or [])
        result["keywords"] = list(result.get("keywords") or [])
        return result

    async def rank(self, query: str, items: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Return the items matching ``query``, most relevant first."""

        if not items:
            return []
        listing = "\n---\n".join(
            f"\nID: {item.get('id')}\n"
            f"Type: {item.get('type')}\n"
            f"Title: {(item.get('metadata') or {}).get('title') or 'Untitled'}\n"
            f"Keywords: {', '.join(item.get('keywords') or [])}\n"
            f"Tags: {', '.join(item.get('tags') or [])}\n"
            for item in items
        )
        reply = await self.complete(RANK_PROMPT.format(query=query, items=listing), max_tokens=1024)

        match = _ARRAY_RE.search(strip_code_fences(reply))
        if not match:
            raise ClassificationError("No JSON array found in ranking response")
        try:
            ids = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ClassificationError(f"Malformed ranking response: {e}") from e
        if not isinstance(ids, list):
            raise ClassificationError("Ranking response is not a list")

        by_id = {str(item.get("id")): item for item in items}
        ranked = []
        seen = set()
        for item_id in ids:
            key = str(item_id)
            if key in by_id and key not in seen:
                ranked.append(by_id[key])
                seen.add(key)
        return ranked

    async def analyze_voice_transcript(self, transcript: str) -> Dict[str, Any]:
        """Extract keywords, tone and a summary. Falls back to a neutral default."""

        try:
            reply = await self.complete(VOICE_PROMPT.format(transcript=transcript), max_tokens=512)
            return extract_json_object(reply)
        except ClassificationError as e:
            logger.warning(f"Voice analysis failed, using default: {e}")
            return default_voice_analysis(transcript)
