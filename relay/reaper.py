from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from relay.hub import FanoutHub
from relay.logging_utils import get_logger
from relay.registry import ProjectRegistry
from relay.settings import DEFAULT_CLEANUP_DELAY_MS

log = logging.getLogger("render-relay.reaper")
slog = get_logger()


class LifecycleReaper:
    """
    Owns the deferred cleanup timers for finished projects.

    Every removal of a project from the registry goes through here, either
    when its timer fires or immediately via reap_now(). At most one timer is
    armed per project.
    """

    def __init__(
        self,
        registry: ProjectRegistry,
        hub: FanoutHub,
        default_delay: float = DEFAULT_CLEANUP_DELAY_MS / 1000.0,
    ):
        self._registry = registry
        self._hub = hub
        self._default_delay = default_delay
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def schedule_cleanup(self, project_id: str, delay: Optional[float] = None) -> asyncio.TimerHandle:
        """Arm (or re-arm) the one-shot cleanup for a project. ``delay`` is in seconds."""
        self.cancel(project_id)
        delay = self._default_delay if delay is None else delay
        loop = asyncio.get_running_loop()
        handle = loop.call_later(delay, self._fire, project_id)
        self._timers[project_id] = handle
        log.debug("Cleanup for %s armed in %.1fs", project_id, delay)
        return handle

    def cancel(self, project_id: str) -> bool:
        handle = self._timers.pop(project_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_scheduled(self, project_id: str) -> bool:
        return project_id in self._timers

    def reap_now(self, project_id: str) -> bool:
        """Disarm any pending timer and remove the project right away."""
        self.cancel(project_id)
        return self._remove(project_id, reason="immediate")

    def _fire(self, project_id: str) -> None:
        self._timers.pop(project_id, None)
        self._remove(project_id, reason="scheduled")

    def _remove(self, project_id: str, reason: str) -> bool:
        self._hub.close_project(project_id)
        removed = self._registry.remove(project_id)
        if removed:
            slog.info("project_reaped", project_id=project_id, reason=reason, active_projects=len(self._registry))
        return removed

    def shutdown(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def __len__(self) -> int:
        return len(self._timers)
