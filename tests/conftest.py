"""
Shared test fixtures: a controllable clock and retry scheduler for the job
queue, stub Claude/blob-store collaborators, and a temporary item database.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from services.claude_client import ClaudeClient
from services.item_repository import ItemRepository


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class _Handle:
    def __init__(self, scheduler, due, callback):
        self.scheduler = scheduler
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualRetryScheduler:
    """Records retry delays; callbacks fire only when ``advance`` passes them."""

    def __init__(self):
        self.elapsed = 0.0
        self.delays = []
        self.handles = []

    def call_later(self, delay, callback):
        self.delays.append(delay)
        handle = _Handle(self, self.elapsed + delay, callback)
        self.handles.append(handle)
        return handle

    def advance(self, seconds):
        self.elapsed += seconds
        due = [h for h in self.handles if not h.cancelled and h.due <= self.elapsed]
        for handle in due:
            self.handles.remove(handle)
            handle.callback()

    @property
    def pending(self):
        return [h for h in self.handles if not h.cancelled]


async def drain(rounds=10):
    """Let queued tasks run until they block again."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler():
    return ManualRetryScheduler()


@pytest.fixture
def repository(tmp_path):
    return ItemRepository(tmp_path / "items.db")


@pytest.fixture
def classifier():
    """ClaudeClient stand-in that classifies everything as a note."""
    client = Mock(spec=ClaudeClient)
    client.available = True
    client.classify_content = AsyncMock(return_value={
        "contentType": "note",
        "title": "A note",
        "summary": "Summary",
        "metadata": {},
        "tags": ["misc"],
        "keywords": ["note"],
    })
    client.rank = AsyncMock(side_effect=lambda query, items: list(items))
    client.complete = AsyncMock(return_value="{}")
    client.analyze_voice_transcript = AsyncMock(return_value={
        "keywords": ["groceries"],
        "tone": "casual",
        "summary": "Shopping list",
        "categories": ["buy milk"],
    })
    client.close = AsyncMock()
    return client
