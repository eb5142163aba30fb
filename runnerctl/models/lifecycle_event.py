"""
Lifecycle Event Models
======================
``WorkflowJobPayload`` mirrors the subset of GitHub's ``workflow_job``
webhook body the controller reads. ``LifecycleEvent`` is the flattened
domain event handed to the lifecycle controller.

GitHub sends ``runner_name: null`` for jobs that never got a runner
(e.g. cancelled while queued), so it stays optional.
"""
from typing import List, Optional

from pydantic import BaseModel


class WorkflowJob(BaseModel):
    id: int
    run_id: Optional[int] = None
    name: str = ""
    status: Optional[str] = None
    conclusion: Optional[str] = None
    labels: List[str] = []
    runner_name: Optional[str] = None
    html_url: Optional[str] = None


class Repository(BaseModel):
    full_name: str = ""
    html_url: str = ""


class WorkflowJobPayload(BaseModel):
    action: str
    workflow_job: WorkflowJob
    repository: Optional[Repository] = None


class LifecycleEvent(BaseModel):
    action: str
    run_id: int
    runner_name: Optional[str] = None
    conclusion: Optional[str] = None
    job_name: str = ""
    repository_url: str = ""
    labels: List[str] = []
    delivery_id: str = ""

    @classmethod
    def from_payload(cls, payload: WorkflowJobPayload, delivery_id: str = "") -> "LifecycleEvent":
        job = payload.workflow_job
        return cls(
            action=payload.action,
            run_id=job.id,
            runner_name=job.runner_name or None,
            conclusion=job.conclusion,
            job_name=job.name,
            repository_url=payload.repository.html_url if payload.repository else "",
            labels=job.labels,
            delivery_id=delivery_id,
        )
