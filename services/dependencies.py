"""Request-scoped accessors for the components owned by the app lifespan."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Header, HTTPException, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from config import settings
from services.item_repository import ItemRepository
from services.job_queue import JobQueue
from services.save_workflow import SaveWorkflow
from services.search_service import SearchService
from services.voice_service import VoiceService

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)


def capture_rate_limit() -> str:
    return f"{settings.rate_limit_per_minute}/minute"


def get_queue(request: Request) -> JobQueue:
    return request.app.state.queue


def get_repository(request: Request) -> ItemRepository:
    return request.app.state.repository


def get_search_service(request: Request) -> SearchService:
    return request.app.state.search_service


def get_save_workflow(request: Request) -> SaveWorkflow:
    return request.app.state.save_workflow


def get_voice_service(request: Request) -> VoiceService:
    return request.app.state.voice_service


async def require_capture_key(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> Optional[str]:
    """Bearer key check for capture routes. No configured keys means open dev mode."""

    valid_keys = request.app.state.settings.capture_api_keys_list
    if not valid_keys:
        return None
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")
    key = authorization[len("Bearer "):].strip()
    if key not in valid_keys:
        logger.warning(f"Rejected capture request from {get_remote_address(request)}: invalid API key")
        raise HTTPException(status_code=401, detail="Invalid API key")
    return key
