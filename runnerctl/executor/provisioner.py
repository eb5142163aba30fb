"""
Compute Provisioner
===================
The narrow interface the lifecycle controller drives. Implementations
create, start and remove runner instances and answer the two startup
questions (is the image here, which instances do we already own).

BOUNDARY RULES:
    - Provisioner NEVER tracks job runs or runner names.
    - Provisioner NEVER retries; the controller decides what a failure means.
    - Every failure is raised as ProvisionerError. ``remove`` of an unknown
      handle is NOT a failure: it returns False.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class BindMount:
    source: str
    target: str
    read_only: bool = False


@dataclass
class ManagedInstance:
    """An instance found on the provisioner that carries our labels."""
    handle: str
    name: str
    labels: dict = field(default_factory=dict)
    status: str = ""
    created_at: Optional[datetime] = None


class ComputeProvisioner(ABC):

    @abstractmethod
    def create(
        self,
        image: str,
        environment: dict[str, str],
        *,
        name: str,
        labels: Optional[dict[str, str]] = None,
        mounts: Optional[list[BindMount]] = None,
    ) -> str:
        """Create (but do not start) an instance. Returns its handle."""

    @abstractmethod
    def start(self, handle: str) -> None:
        ...

    @abstractmethod
    def remove(self, handle: str) -> bool:
        """Force-remove an instance. False if it was already gone."""

    @abstractmethod
    def has_image(self, image: str) -> bool:
        ...

    @abstractmethod
    def pull_image(self, image: str, auth_config: Optional[dict] = None) -> None:
        ...

    @abstractmethod
    def list_instances(self, labels: dict[str, str]) -> list[ManagedInstance]:
        """Instances (running or not) carrying every given label."""
