from __future__ import annotations

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ----- HTTP bodies -----
class GenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Optional here so a missing prompt becomes our own 400, not a 422
    prompt: Optional[str] = None
    character: str = ""
    scene_type: str = Field(default="", alias="sceneType")
    seed: Optional[int] = None


class JobRef(BaseModel):
    id: str
    index: int


class GenerateResponse(BaseModel):
    projectId: str
    jobs: List[JobRef] = Field(default_factory=list)


class JobStatus(BaseModel):
    id: str
    index: int
    progress: int
    completed: bool = False
    resultUrl: Optional[str] = None
    positivePrompt: Optional[str] = None


class ProjectStatus(BaseModel):
    projectId: str
    state: str
    cancelled: bool = False
    createdAt: float
    jobs: List[JobStatus] = Field(default_factory=list)


# ----- Provider events (inbound, parsed at the gateway) -----
class JobProgress(BaseModel):
    kind: Literal["jobProgress"] = "jobProgress"
    project_id: str
    job_id: str
    progress: float


class JobCompleted(BaseModel):
    kind: Literal["jobCompleted"] = "jobCompleted"
    project_id: str
    job_id: str
    result_url: Optional[str] = None
    positive_prompt: Optional[str] = None


class ProjectCompleted(BaseModel):
    kind: Literal["projectCompleted"] = "projectCompleted"
    project_id: str


class ProjectFailed(BaseModel):
    kind: Literal["projectFailed"] = "projectFailed"
    project_id: str
    error: str = ""


ProviderEvent = Annotated[
    Union[JobProgress, JobCompleted, ProjectCompleted, ProjectFailed],
    Field(discriminator="kind"),
]


# ----- Relay events (outbound, to subscribers) -----
class ProgressEvent(BaseModel):
    type: Literal["progress"] = "progress"
    job_id: str
    percent: int = Field(ge=0, le=100)

    def wire_fields(self) -> Dict[str, Any]:
        return {"jobId": self.job_id, "progress": self.percent}


class JobCompletedEvent(BaseModel):
    type: Literal["jobCompleted"] = "jobCompleted"
    job_id: str
    result_ref: Optional[str] = None
    prompt: Optional[str] = None

    def wire_fields(self) -> Dict[str, Any]:
        # The web client reads job.resultUrl / job.positivePrompt
        return {
            "jobId": self.job_id,
            "job": {"id": self.job_id, "resultUrl": self.result_ref, "positivePrompt": self.prompt},
        }


class CompletedEvent(BaseModel):
    type: Literal["completed"] = "completed"

    def wire_fields(self) -> Dict[str, Any]:
        return {}


class FailedEvent(BaseModel):
    type: Literal["failed"] = "failed"
    reason: str = ""
    category: str = "unknown"
    cancelled: bool = False

    def wire_fields(self) -> Dict[str, Any]:
        return {"error": self.reason, "category": self.category, "cancelled": self.cancelled}


RelayEvent = Union[ProgressEvent, JobCompletedEvent, CompletedEvent, FailedEvent]


def event_payload(project_id: str, event: RelayEvent) -> Dict[str, Any]:
    return {"projectId": project_id, "type": event.type, **event.wire_fields()}


def to_sse(project_id: str, event: RelayEvent) -> str:
    """Serialize one event as a single text/event-stream message."""
    return f"data: {json.dumps(event_payload(project_id, event))}\n\n"
