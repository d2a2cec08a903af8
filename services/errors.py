# ──────────────────────────────────────────────────────────────────────────────
# File: services/errors.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Error taxonomy for Synapse.

Every error raised across a service boundary carries an ErrorCategory so the
HTTP layer can pick a status code without knowing which service failed.
Transient upstream failures (ClassificationError, BlobStoreError,
TranscriptionError) are retried by the job queue; validation failures never are.
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Categories of errors for appropriate handling strategies."""
    VALIDATION = "validation"              # Structurally invalid request
    EXTERNAL_SERVICE = "external_service"  # LLM / transcription / blob store
    STORAGE = "storage"                    # Item repository
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"                    # Caller-side wait expired
    CONFIGURATION = "configuration"        # Missing API keys, buckets


STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.TIMEOUT: 504,
    ErrorCategory.CONFIGURATION: 503,
    ErrorCategory.EXTERNAL_SERVICE: 502,
    ErrorCategory.STORAGE: 502,
}


class SynapseError(Exception):
    category = ErrorCategory.EXTERNAL_SERVICE

    def __init__(self, message: str, *, category: Optional[ErrorCategory] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category
        self.details = details or {}

    def to_api(self) -> Dict[str, Any]:
        payload = {"error": self.message, "category": self.category.value}
        if self.details:
            payload["details"] = self.details
        return payload


class CaptureValidationError(SynapseError):
    """Missing content, missing query, or an unknown job type at the HTTP surface."""
    category = ErrorCategory.VALIDATION


class ClassificationError(SynapseError):
    """Claude call failed, timed out, or returned output we could not parse."""
    category = ErrorCategory.EXTERNAL_SERVICE


class BlobStoreError(SynapseError):
    category = ErrorCategory.EXTERNAL_SERVICE


class TranscriptionError(SynapseError):
    category = ErrorCategory.EXTERNAL_SERVICE


class ItemNotFoundError(SynapseError):
    category = ErrorCategory.NOT_FOUND


class JobNotFoundError(SynapseError):
    category = ErrorCategory.NOT_FOUND


class JobTimeoutError(SynapseError):
    """Raised to a waiting caller; the job itself keeps running."""
    category = ErrorCategory.TIMEOUT


class UnknownJobTypeError(SynapseError):
    """No handler registered for a job type. Raised inside job execution."""
    category = ErrorCategory.VALIDATION


async def synapse_error_handler(request: Request, exc: SynapseError) -> JSONResponse:
    status_code = STATUS_BY_CATEGORY.get(exc.category, 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_api())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SynapseError, synapse_error_handler)
