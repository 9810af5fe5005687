"""
Event bridge between the provider gateway and live subscribers.

The bridge holds the single subscription to the gateway's event stream and
applies the terminal-state policy:
- job progress and job completion are broadcast as soon as they arrive
- project completion is held for a grace window so late job completions can
  still reach subscribers, then broadcast
- project failure is broadcast at once
After a terminal event the project's streams are closed and the reaper is
asked to drop the project later.

Each project has its own work queue drained by its own task. Events of one
project are handled one at a time in the order the gateway produced them,
while a slow result lookup for one project never holds back another. A job
completion that arrives after its project already finished is dropped; that
job's result is then lost to subscribers.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Union

from relay.errors import ProviderUnavailable, classify_provider_error
from relay.hub import FanoutHub
from relay.logging_utils import get_logger
from relay.models import Project, ProjectState
from relay.provider import ProviderGateway
from relay.reaper import LifecycleReaper
from relay.registry import ProjectRegistry
from relay.settings import DEFAULT_CLEANUP_DELAY_MS, DEFAULT_COMPLETION_DELAY_MS
from shared.schemas import (
    CompletedEvent,
    FailedEvent,
    JobCompleted,
    JobCompletedEvent,
    JobProgress,
    ProgressEvent,
    ProjectCompleted,
    ProjectFailed,
    ProviderEvent,
)

log = logging.getLogger("render-relay.bridge")
slog = get_logger()

STREAM_RETRY_S = 1.0
CANCELLED_REASON = "Project cancelled"


class EventBridge:
    def __init__(
        self,
        gateway: ProviderGateway,
        registry: ProjectRegistry,
        hub: FanoutHub,
        reaper: LifecycleReaper,
        completion_delay: float = DEFAULT_COMPLETION_DELAY_MS / 1000.0,
        cleanup_delay: float = DEFAULT_CLEANUP_DELAY_MS / 1000.0,
    ):
        self._gateway = gateway
        self._registry = registry
        self._hub = hub
        self._reaper = reaper
        self.completion_delay = completion_delay
        self.cleanup_delay = cleanup_delay
        self._pending_completion: Dict[str, asyncio.TimerHandle] = {}
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------
    def start(self) -> asyncio.Task:
        """Subscribe to the gateway's event stream. Calling twice is a no-op."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="event-bridge")
        return self._task

    async def stop(self) -> None:
        for handle in self._pending_completion.values():
            handle.cancel()
        self._pending_completion.clear()
        tasks = list(self._workers.values())
        if self._task is not None:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
        self._task = None

    async def _run(self) -> None:
        while True:
            try:
                async for event in self._gateway.events():
                    self.submit(event)
                log.warning("Provider event stream ended; resubscribing")
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Provider event stream failed; resubscribing")
            await asyncio.sleep(STREAM_RETRY_S)

    def submit(self, event: ProviderEvent) -> None:
        """Queue an event behind earlier events of the same project."""
        project_id = event.project_id
        queue = self._queues.get(project_id)
        if queue is None:
            if project_id not in self._registry:
                log.debug("Dropping event for unknown project %s", project_id)
                return
            queue = self._queues[project_id] = asyncio.Queue()
        queue.put_nowait(event)
        worker = self._workers.get(project_id)
        if worker is None or worker.done():
            self._workers[project_id] = asyncio.create_task(
                self._drain(project_id, queue), name=f"event-bridge-{project_id}"
            )

    async def _drain(self, project_id: str, queue: asyncio.Queue) -> None:
        while not queue.empty():
            event = queue.get_nowait()
            try:
                await self.dispatch(event)
            except Exception:
                log.exception("Failed to handle provider event %s for %s", event.kind, project_id)
        # No await between the empty check and here, so nothing was queued meanwhile
        if self._queues.get(project_id) is queue:
            del self._queues[project_id]
            self._workers.pop(project_id, None)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def _live_project(self, project_id: str) -> Optional[Project]:
        project = self._registry.get(project_id)
        if project is None:
            log.debug("Dropping event for unknown project %s", project_id)
            return None
        if project.is_terminal:
            log.debug("Dropping event for finished project %s", project_id)
            return None
        return project

    async def dispatch(self, event: ProviderEvent) -> None:
        project = self._live_project(event.project_id)
        if project is None:
            return

        if isinstance(event, JobProgress):
            self._on_job_progress(project, event)
        elif isinstance(event, JobCompleted):
            await self._on_job_completed(project, event)
        elif isinstance(event, ProjectCompleted):
            self._on_project_completed(project)
        elif isinstance(event, ProjectFailed):
            self._on_project_failed(project, event.error)

    def _mark_running(self, project: Project) -> None:
        if project.mark_running():
            slog.info("project_running", project_id=project.id)

    def _on_job_progress(self, project: Project, event: JobProgress) -> None:
        job = project.job(event.job_id) or project.add_job(event.job_id)
        self._mark_running(project)
        job.update_progress(event.progress)
        self._hub.broadcast(project.id, ProgressEvent(job_id=job.id, percent=job.percent))

    async def _on_job_completed(self, project: Project, event: JobCompleted) -> None:
        job = project.job(event.job_id) or project.add_job(event.job_id)
        self._mark_running(project)

        result_ref = event.result_url
        if not result_ref:
            try:
                result_ref = await self._gateway.fetch_result_url(project.id, job.id)
            except ProviderUnavailable as exc:
                slog.warning("result_lookup_failed", project_id=project.id, job_id=job.id, error=str(exc))

        # The project may have failed or been cancelled while we were waiting
        if self._live_project(project.id) is not project:
            return

        job.complete(result_ref, event.positive_prompt)
        self._hub.broadcast(
            project.id,
            JobCompletedEvent(job_id=job.id, result_ref=job.result_ref, prompt=job.prompt),
        )

    def _on_project_completed(self, project: Project) -> None:
        if project.id in self._pending_completion:
            log.debug("Completion for %s already scheduled", project.id)
            return
        loop = asyncio.get_running_loop()
        self._pending_completion[project.id] = loop.call_later(
            self.completion_delay, self._finish_completed, project.id
        )
        slog.info("project_completion_scheduled", project_id=project.id, delay_s=self.completion_delay)

    def _finish_completed(self, project_id: str) -> None:
        self._pending_completion.pop(project_id, None)
        project = self._live_project(project_id)
        if project is None:
            return
        project.transition(ProjectState.COMPLETED)
        self._announce(project, CompletedEvent())
        slog.info(
            "project_completed",
            project_id=project_id,
            jobs=len(project.jobs),
            jobs_completed=sum(1 for job in project.jobs if job.completed),
        )
        self._detach(project_id)

    def _on_project_failed(self, project: Project, error: str) -> None:
        self._disarm_completion(project.id)
        project.transition(ProjectState.FAILED)
        classified = classify_provider_error(error)
        self._announce(project, FailedEvent(reason=error or classified["short"], category=classified["category"]))
        slog.warning("project_failed", project_id=project.id, error=error, category=classified["category"])
        self._detach(project.id)

    def _announce(self, project: Project, event: Union[CompletedEvent, FailedEvent]) -> None:
        """Record and broadcast the project's terminal event."""
        project.terminal_event = event
        self._hub.broadcast(project.id, event)

    def _disarm_completion(self, project_id: str) -> None:
        handle = self._pending_completion.pop(project_id, None)
        if handle is not None:
            handle.cancel()

    def _detach(self, project_id: str) -> None:
        self._hub.close_project(project_id)
        self._reaper.schedule_cleanup(project_id, self.cleanup_delay)

    def completion_pending(self, project_id: str) -> bool:
        return project_id in self._pending_completion

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    async def cancel(self, project_id: str) -> bool:
        """
        Cancel a project upstream and tear it down locally right away.

        Returns False for unknown projects. A failed upstream cancel is
        re-raised after the local teardown has finished.
        """
        if self._registry.get(project_id) is None:
            return False

        upstream_error: Optional[ProviderUnavailable] = None
        try:
            await self._gateway.cancel_job(project_id)
        except ProviderUnavailable as exc:
            upstream_error = exc
            slog.error("project_cancel_upstream_failed", project_id=project_id, error=str(exc))

        project = self._registry.get(project_id)
        if project is not None:
            self._disarm_completion(project_id)
            if project.transition(ProjectState.FAILED):
                project.cancelled = True
                self._announce(project, FailedEvent(reason=CANCELLED_REASON, category="cancelled", cancelled=True))
            self._hub.close_project(project_id)
            self._reaper.reap_now(project_id)
            slog.info("project_cancelled", project_id=project_id)

        if upstream_error is not None:
            raise upstream_error
        return True
