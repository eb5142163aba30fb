"""
Shared fixtures. No Docker daemon is required: the controller is driven
against an in-memory provisioner that records every call.
"""
import itertools
import threading
import time

import pytest

from runnerctl.agents.lifecycle_controller import RunnerLifecycleController
from runnerctl.core.errors import ProvisionerError
from runnerctl.executor.provisioner import ComputeProvisioner, ManagedInstance
from runnerctl.models.lifecycle_event import LifecycleEvent
from runnerctl.services.identity_registry import IdentityRegistry


class FakeProvisioner(ComputeProvisioner):
    """
    Thread-safe recording provisioner.

    Handles are H1, H2, ... in creation order. Set ``fail_on`` to an
    operation name ("create", "start", "remove") to make it raise, and
    ``delay`` / ``start_delay`` to slow create / start down. Remove failures
    are transient unless ``remove_fatal`` is set.
    """

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.live: dict[str, str] = {}          # handle → name
        self.images: set[str] = set()
        self.instances: list[ManagedInstance] = []
        self.fail_on: set[str] = set()
        self.delay = 0.0
        self.start_delay = 0.0
        self.remove_fatal = False
        self._lock = threading.Lock()
        self._counter = itertools.count(1)

    def _record(self, *call) -> None:
        with self._lock:
            self.calls.append(call)

    def ops(self) -> list[str]:
        return [c[0] for c in self.calls]

    def create(self, image, environment, *, name, labels=None, mounts=None):
        self._record("create", image, dict(environment), name, dict(labels or {}), list(mounts or []))
        if self.delay:
            time.sleep(self.delay)
        if "create" in self.fail_on:
            raise ProvisionerError("create exploded")
        with self._lock:
            handle = f"H{next(self._counter)}"
            self.live[handle] = name
        return handle

    def start(self, handle):
        self._record("start", handle)
        if self.start_delay:
            time.sleep(self.start_delay)
        if "start" in self.fail_on:
            raise ProvisionerError("start exploded")

    def remove(self, handle):
        self._record("remove", handle)
        if "remove" in self.fail_on:
            raise ProvisionerError("remove exploded", fatal=self.remove_fatal)
        with self._lock:
            return self.live.pop(handle, None) is not None

    def has_image(self, image):
        self._record("has_image", image)
        return image in self.images

    def pull_image(self, image, auth_config=None):
        self._record("pull_image", image, auth_config)
        if "pull" in self.fail_on:
            raise ProvisionerError("pull exploded")
        self.images.add(image)

    def list_instances(self, labels):
        self._record("list_instances", dict(labels))
        if "list" in self.fail_on:
            raise ProvisionerError("list exploded")
        return list(self.instances)


def make_event(action: str, run_id: int = 42, runner_name=None, conclusion=None) -> LifecycleEvent:
    return LifecycleEvent(
        action=action,
        run_id=run_id,
        runner_name=runner_name,
        conclusion=conclusion,
        job_name="build",
        repository_url="https://github.com/octo/repo",
    )


@pytest.fixture
def provisioner():
    return FakeProvisioner()


@pytest.fixture
def registry():
    return IdentityRegistry(completed_ttl=3600, max_completed=100)


@pytest.fixture
def controller(provisioner, registry):
    names = (f"runner-{i:04d}" for i in itertools.count(1))
    return RunnerLifecycleController(
        provisioner,
        registry,
        image="example/runner:1",
        github_token="ghs_test",
        allow_dind=False,
        provisioner_timeout=5,
        source_env={},
        name_factory=lambda: next(names),
    )
