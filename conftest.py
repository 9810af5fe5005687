"""Shared fixtures: an in-memory provider and short relay timings."""

from __future__ import annotations

import asyncio
from typing import List, Optional

import pytest

from relay.errors import ProviderUnavailable
from relay.provider import ProviderGateway, StartedJob
from relay.settings import RenderSettings, Settings


class FakeGateway(ProviderGateway):
    """Provider stand-in: records calls and replays pushed events."""

    def __init__(self, project_id: str = "P1"):
        self.next_project_id = project_id
        self.started: List[tuple] = []
        self.cancelled: List[str] = []
        self.result_lookups: List[tuple] = []
        self.result_urls = {}
        self.result_delays = {}
        self.start_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self.closed = False
        self._queue: Optional[asyncio.Queue] = None

    def _events_queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    def push(self, event) -> None:
        self._events_queue().put_nowait(event)

    async def start_job(self, prompts, render: RenderSettings, seed=None) -> StartedJob:
        if self.start_error is not None:
            raise self.start_error
        self.started.append((list(prompts), render, seed))
        project_id = self.next_project_id
        return StartedJob(project_id, [f"{project_id}-J{i}" for i in range(render.number_of_images)])

    async def cancel_job(self, project_id: str) -> None:
        self.cancelled.append(project_id)
        if self.cancel_error is not None:
            raise self.cancel_error

    async def fetch_result_url(self, project_id: str, job_id: str) -> Optional[str]:
        self.result_lookups.append((project_id, job_id))
        delay = self.result_delays.get(job_id)
        if delay:
            await asyncio.sleep(delay)
        url = self.result_urls.get(job_id)
        if isinstance(url, Exception):
            raise url
        return url

    async def events(self):
        queue = self._events_queue()
        while True:
            yield await queue.get()

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def relay_settings():
    return Settings(
        provider_env="staging",
        app_id="render-relay-test",
        completion_delay_ms=100,
        cleanup_delay_ms=300,
        keepalive_s=0,
        subscriber_queue_size=8,
    )


@pytest.fixture
def provider_down():
    return ProviderUnavailable("Project creation failed: HTTP 503")
