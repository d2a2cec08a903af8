"""
Synapse HTTP API.

Components (item repository, Claude client, blob store, job queue) are owned
by the app: they are created when the app starts and closed when it stops.
Tests pass their own instances to ``create_app``.
"""

import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from config import Settings, settings as default_settings
from services.blob_store import BlobStore
from services.capture_router import router as capture_router
from services.claude_client import ClaudeClient
from services.dependencies import limiter
from services.errors import register_error_handlers
from services.item_repository import ItemRepository
from services.job_handlers import build_job_handlers
from services.job_queue import JobQueue
from services.jobs_router import router as jobs_router
from services.save_workflow import SaveWorkflow
from services.search_router import router as search_router
from services.search_service import SearchService
from services.voice_service import TranscriptionService, VoiceService

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    classifier: Optional[ClaudeClient] = None,
    blob_store: Optional[BlobStore] = None,
    transcriber: Optional[TranscriptionService] = None,
    repository: Optional[ItemRepository] = None,
    queue: Optional[JobQueue] = None,
) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Synapse API...")
        state = app.state
        state.classifier = classifier or ClaudeClient()
        state.blob_store = blob_store or BlobStore()
        state.transcriber = transcriber or TranscriptionService()
        state.repository = repository or ItemRepository(settings.db_path)
        state.queue = queue or JobQueue(build_job_handlers(state.classifier, state.blob_store))
        state.search_service = SearchService(state.classifier, state.repository)
        state.save_workflow = SaveWorkflow(
            state.queue,
            state.repository,
            state.classifier,
            state.blob_store,
            wait_timeout=settings.job_wait_timeout_seconds,
        )
        state.voice_service = VoiceService(state.transcriber, state.classifier)

        if not state.classifier.available:
            logger.warning("ANTHROPIC_API_KEY not set; classification and ranking will use fallbacks")
        state.queue.start()
        logger.info("Synapse API started")

        yield

        logger.info("Shutting down Synapse API...")
        await state.save_workflow.stop()
        await state.queue.stop()
        await state.classifier.close()
        await state.blob_store.close()
        await state.transcriber.close()

    app = FastAPI(
        title="Synapse",
        description="AI-powered second brain: capture, classify, search",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    register_error_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=settings.cors_credentials,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept", "Origin", "X-Requested-With"],
    )

    app.include_router(jobs_router)
    app.include_router(search_router)
    app.include_router(capture_router)

    @app.get("/api/health")
    async def health(request: Request):
        """Health check endpoint."""
        state = request.app.state
        try:
            item_count = state.repository.count()
            database = "connected"
        except sqlite3.Error as e:
            logger.error(f"Health check could not reach the database: {e}")
            item_count = None
            database = "error"
        return {
            "status": "healthy" if database == "connected" else "degraded",
            "database": database,
            "itemCount": item_count,
            "queue": state.queue.get_stats(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app:app", host="0.0.0.0", port=8000, reload=not default_settings.is_production)
