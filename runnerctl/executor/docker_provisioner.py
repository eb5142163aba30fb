"""
Docker Provisioner
==================
ComputeProvisioner backed by the local Docker daemon (docker SDK).

DOCKER STRATEGY:
    - One container per queued job, created and started separately so a
      start failure leaves a handle the controller can clean up.
    - Container name == hostname == generated runner name. GitHub reports
      completion by that name, and a container whose create call timed
      out can still be removed by it.
    - Containers carry runnerctl.* labels so a restarted controller can
      find the ones it owns.
    - Removal is always forced: the runner may still be shutting down when
      the completion webhook arrives.

Every Docker call shares the client's HTTP timeout; the controller adds its
own asyncio deadline on top.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

import docker
from docker.errors import (
    APIError,
    DockerException,
    ImageNotFound,
    NotFound,
)
from docker.types import Mount

from runnerctl.core.errors import ProvisionerError
from runnerctl.executor.provisioner import BindMount, ComputeProvisioner, ManagedInstance

logger = logging.getLogger(__name__)


def _provisioner_error(operation: str, exc: Exception) -> ProvisionerError:
    """
    Map a docker SDK / transport exception to a ProvisionerError.

    Daemon-side 5xx answers and transport errors (connection refused, read
    timeout) are transient; everything else is fatal for the operation.
    """
    if isinstance(exc, APIError):
        transient = exc.is_server_error()
        return ProvisionerError(f"docker {operation} failed: {exc.explanation or exc}", fatal=not transient)
    if isinstance(exc, DockerException):
        return ProvisionerError(f"docker {operation} failed: {exc}", fatal=True)
    return ProvisionerError(f"docker {operation} failed: {type(exc).__name__}: {exc}", fatal=False)


def _parse_created(value: str) -> Optional[datetime]:
    """Parse Docker's RFC 3339 timestamp (nanosecond precision, 'Z' suffix)."""
    if not value:
        return None
    try:
        stamp = value.rstrip("Z")
        if "." in stamp:
            whole, frac = stamp.split(".", 1)
            stamp = f"{whole}.{frac[:6]}"
        return datetime.fromisoformat(stamp).replace(tzinfo=timezone.utc)
    except ValueError:
        logger.debug("Unparseable container timestamp: %r", value)
        return None


class DockerProvisioner(ComputeProvisioner):

    def __init__(self, client: "docker.DockerClient") -> None:
        self.client = client

    @classmethod
    def from_env(cls, timeout: float = 60) -> "DockerProvisioner":
        """Connect using DOCKER_HOST / the default socket."""
        try:
            client = docker.from_env(timeout=int(timeout))
        except DockerException as e:
            raise ProvisionerError(f"cannot connect to Docker daemon: {e}", fatal=True) from e
        return cls(client)

    # ------------------------------------------------------------------
    # Instance lifecycle
    # ------------------------------------------------------------------
    def create(
        self,
        image: str,
        environment: dict[str, str],
        *,
        name: str,
        labels: Optional[dict[str, str]] = None,
        mounts: Optional[list[BindMount]] = None,
    ) -> str:
        docker_mounts = [
            Mount(target=m.target, source=m.source, type="bind", read_only=m.read_only)
            for m in (mounts or [])
        ]
        logger.info(
            "Creating container | name=%s | image=%s | mounts=%d",
            name, image, len(docker_mounts),
        )
        try:
            container = self.client.containers.create(
                image=image,
                name=name,
                hostname=name,
                environment=environment,
                labels=labels or {},
                mounts=docker_mounts,
                detach=True,
            )
        except Exception as e:
            raise _provisioner_error("create", e) from e
        return container.id

    def start(self, handle: str) -> None:
        try:
            self.client.containers.get(handle).start()
        except Exception as e:
            raise _provisioner_error("start", e) from e
        logger.info("Container %s started", handle[:12])

    def remove(self, handle: str) -> bool:
        try:
            self.client.containers.get(handle).remove(force=True)
        except NotFound:
            logger.info("Container %s already gone", handle[:12])
            return False
        except APIError as e:
            # 409: removal already in progress (raced with --rm or another remove)
            if e.status_code == 409:
                logger.info("Container %s removal already in progress", handle[:12])
                return False
            raise _provisioner_error("remove", e) from e
        except Exception as e:
            raise _provisioner_error("remove", e) from e
        logger.info("Container %s destroyed", handle[:12])
        return True

    # ------------------------------------------------------------------
    # Startup helpers
    # ------------------------------------------------------------------
    def has_image(self, image: str) -> bool:
        try:
            self.client.images.get(image)
        except ImageNotFound:
            return False
        except Exception as e:
            raise _provisioner_error("image inspect", e) from e
        return True

    def pull_image(self, image: str, auth_config: Optional[dict] = None) -> None:
        logger.info("Pulling image %s (auth=%s)", image, "yes" if auth_config else "no")
        try:
            self.client.images.pull(image, auth_config=auth_config)
        except Exception as e:
            raise _provisioner_error("pull", e) from e

    def list_instances(self, labels: dict[str, str]) -> list[ManagedInstance]:
        filters = {"label": [f"{key}={value}" for key, value in labels.items()]}
        try:
            containers = self.client.containers.list(all=True, filters=filters)
        except Exception as e:
            raise _provisioner_error("list", e) from e

        return [
            ManagedInstance(
                handle=c.id,
                name=c.name,
                labels=dict(c.labels or {}),
                status=c.status or "",
                created_at=_parse_created(c.attrs.get("Created", "")),
            )
            for c in containers
        ]
