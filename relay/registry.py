from __future__ import annotations

import logging
from typing import Dict, List, Optional

from relay.errors import DuplicateProjectError
from relay.models import Project

log = logging.getLogger("render-relay.registry")


class ProjectRegistry:
    """Table of in-flight projects keyed by provider project id."""

    def __init__(self):
        self._projects: Dict[str, Project] = {}

    def create(self, project_id: str, job_ids: List[str], prompts: Optional[List[str]] = None) -> Project:
        if project_id in self._projects:
            raise DuplicateProjectError(f"Project {project_id} is already registered")
        project = Project.from_job_ids(project_id, job_ids, prompts)
        self._projects[project_id] = project
        log.debug("Registered project %s with %d jobs", project_id, len(job_ids))
        return project

    def get(self, project_id: str) -> Optional[Project]:
        return self._projects.get(project_id)

    def remove(self, project_id: str) -> bool:
        """Drop a project. Returns False when it was already gone."""
        return self._projects.pop(project_id, None) is not None

    def ids(self) -> List[str]:
        return list(self._projects)

    def __contains__(self, project_id: object) -> bool:
        return project_id in self._projects

    def __len__(self) -> int:
        return len(self._projects)
