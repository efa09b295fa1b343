from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ----- Defaults -----
DEFAULT_GENERATION_PARAMS: Dict[str, Any] = {
    "steps": 25,
    "sampler_name": "Euler a",
    "cfg_scale": 10,
    "width": 512,
    "height": 512,
    "batch_size": 1,
    "save_images": False,
    "prompt": "",
    "negative_prompt": "",
    "scheduler": "Automatic",
    # Hires.fix
    "hr_resize_x": 0,
    "hr_resize_y": 0,
    "hr_denoising_strength": 0.7,
    "hr_second_pass_steps": 20,
    "hr_upscaler": "",
    # SD upscale script
    "upscale_tile_overlap": 64,
    "upscale_scale_factor": 2.5,
    "upscale_upscaler": "",
    "upscale_denoising_strength": 0.15,
}

# Keys that drive the queue itself and never go to txt2img.
QUEUE_ONLY_KEYS = ("id", "name", "model")


# ----- Jobs -----
class JobKind(str, Enum):
    GENERATION = "generation"
    UPSCALE = "upscale"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class Job(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=new_id)
    kind: JobKind
    name: str
    status: JobStatus = JobStatus.QUEUED
    payload: Dict[str, Any] = Field(default_factory=dict)
    submitted_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    progress: Optional[float] = None
    result: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    error_category: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


# ----- Continuous configs -----
class ConfigStatus(str, Enum):
    ACTIVE = "active"
    PROCESSING = "processing"
    STOPPED = "stopped"


class ContinuousConfig(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=new_id)
    name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    status: ConfigStatus = ConfigStatus.ACTIVE
    completed_runs: int = 0
    failed_runs: int = 0
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_category: Optional[str] = None
    last_artifacts: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


# ----- Snapshots -----
class JobSummary(WireModel):
    id: str
    kind: JobKind
    name: str
    status: JobStatus
    progress: Optional[float] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


class QueueSnapshot(WireModel):
    queue_depth: int = 0
    upscale_queue_length: int = 0
    generation_queue_length: int = 0
    active_job_id: Optional[str] = None
    processing: bool = False
    jobs: List[JobSummary] = Field(default_factory=list)
    configs: List[ContinuousConfig] = Field(default_factory=list)


# ----- Saved recipes (config store) -----
class SavedConfig(WireModel):
    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    model: Optional[str] = None


# ----- Call payloads -----
class QueueUpscaleRequest(WireModel):
    image_path: str = Field(min_length=1)
    config: Dict[str, Any] = Field(default_factory=dict)


class JobIdRequest(WireModel):
    job_id: str = Field(min_length=1)


class ConfigIdRequest(WireModel):
    config_id: str = Field(min_length=1)


class ConfigNameRequest(WireModel):
    name: str = Field(min_length=1)


class UpdateSavedConfigRequest(WireModel):
    name: str = Field(min_length=1)
    parameters: Optional[Dict[str, Any]] = None
    model: Optional[str] = None


class SetModelRequest(WireModel):
    model_name: str = Field(min_length=1)
