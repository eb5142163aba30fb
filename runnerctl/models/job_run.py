"""
Job Run Model
=============
Pydantic model for one CI job execution, keyed by the upstream
``workflow_job.id``.

State machine:
    queued    : initial; no record yet, or the last provisioning attempt failed
    running   : a runner container was created, started and registered
    completed : terminal and absorbing

Fields:
    run_id         : workflow_job.id, stable across every event of the job
    state          : JobState
    runner_name    : name of the container spawned for this run
    assigned_runner: runner GitHub reported as executing the job (in_progress)
    conclusion     : upstream outcome, set only on completed
    last_error     : last provisioning failure seen for this run
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"


class JobRun(BaseModel):
    run_id: int
    state: JobState = JobState.QUEUED
    runner_name: Optional[str] = None
    assigned_runner: Optional[str] = None
    conclusion: Optional[str] = None
    last_error: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def touch(self) -> None:
        self.updated_at = utcnow()
