"""
In-memory Project and Job state.

A Project moves pending -> running -> completed | failed and never back.
Jobs live and die with their Project; their progress only ever grows.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from shared.schemas import JobStatus, ProjectStatus, RelayEvent


class ProjectState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({ProjectState.COMPLETED, ProjectState.FAILED})

_STATE_ORDER = {
    ProjectState.PENDING: 0,
    ProjectState.RUNNING: 1,
    ProjectState.COMPLETED: 2,
    ProjectState.FAILED: 2,
}


def clamp01(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, value))


def to_percent(progress: float) -> int:
    """Round a [0, 1] fraction to an integer percent, halves rounding up."""
    return int(math.floor(clamp01(progress) * 100 + 0.5))


@dataclass
class Job:
    id: str
    project_id: str
    index: int
    progress: float = 0.0
    result_ref: Optional[str] = None
    prompt: Optional[str] = None
    completed: bool = False

    def update_progress(self, raw: float) -> float:
        """Clamp and store progress; a lower value than the stored one is ignored."""
        value = clamp01(float(raw))
        if value > self.progress:
            self.progress = value
        return self.progress

    @property
    def percent(self) -> int:
        return to_percent(self.progress)

    def complete(self, result_ref: Optional[str], prompt: Optional[str]) -> None:
        self.completed = True
        self.progress = 1.0
        if result_ref:
            self.result_ref = result_ref
        if prompt:
            self.prompt = prompt


@dataclass
class Project:
    id: str
    jobs: List[Job] = field(default_factory=list)
    state: ProjectState = ProjectState.PENDING
    created_at: float = field(default_factory=time.time)
    prompts: List[str] = field(default_factory=list)
    cancelled: bool = False
    # The completed/failed event that was broadcast when the project finished
    terminal_event: Optional[RelayEvent] = None
    _jobs_by_id: Dict[str, Job] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        self._jobs_by_id = {job.id: job for job in self.jobs}

    @classmethod
    def from_job_ids(cls, project_id: str, job_ids: List[str], prompts: Optional[List[str]] = None) -> "Project":
        prompts = list(prompts or [])
        # The provider renders every job from the first variation
        default_prompt = prompts[0] if prompts else None
        jobs = [
            Job(id=job_id, project_id=project_id, index=index, prompt=default_prompt)
            for index, job_id in enumerate(job_ids)
        ]
        return cls(id=project_id, jobs=jobs, prompts=prompts)

    def job(self, job_id: str) -> Optional[Job]:
        return self._jobs_by_id.get(job_id)

    def add_job(self, job_id: str) -> Job:
        """Register a job the provider reported after the project was created."""
        existing = self._jobs_by_id.get(job_id)
        if existing is not None:
            return existing
        job = Job(
            id=job_id,
            project_id=self.id,
            index=len(self.jobs),
            prompt=self.prompts[0] if self.prompts else None,
        )
        self.jobs.append(job)
        self._jobs_by_id[job_id] = job
        return job

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: ProjectState) -> bool:
        """
        Move to ``new_state`` if that is a forward step.

        Returns False (and changes nothing) for backward moves, repeats,
        and any move out of a terminal state.
        """
        if self.is_terminal:
            return False
        if _STATE_ORDER[new_state] <= _STATE_ORDER[self.state]:
            return False
        self.state = new_state
        return True

    def mark_running(self) -> bool:
        return self.transition(ProjectState.RUNNING)

    def status(self) -> ProjectStatus:
        return ProjectStatus(
            projectId=self.id,
            state=self.state.value,
            cancelled=self.cancelled,
            createdAt=self.created_at,
            jobs=[
                JobStatus(
                    id=job.id,
                    index=job.index,
                    progress=job.percent,
                    completed=job.completed,
                    resultUrl=job.result_ref,
                    positivePrompt=job.prompt,
                )
                for job in self.jobs
            ],
        )
