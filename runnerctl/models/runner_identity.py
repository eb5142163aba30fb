"""
Runner Identity Model
Binds a generated runner name to the Docker container id it runs in.
"""
from datetime import datetime

from pydantic import BaseModel, Field

from runnerctl.models.job_run import utcnow


class RunnerIdentity(BaseModel):
    name: str
    instance_handle: str
    run_id: int
    created_at: datetime = Field(default_factory=utcnow)
