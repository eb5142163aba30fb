"""
Runner Environment
==================
Builds the environment and mounts handed to every runner container.

    GITHUB_TOKEN                : always set (may be empty)
    RUNNER_NAME                 : the generated runner name
    RUNNER_ENTERPRISE_URL        ┐
    RUNNER_ORGANIZATION_URL      ├ forwarded verbatim, only when non-empty
    RUNNER_REPOSITORY_URL        ┘

With ALLOW_DIND the host's docker socket is bind-mounted, giving a
"docker-beside-docker" setup: containers started inside the runner are
siblings on the host daemon. Root-equivalent on the host; off by default.
"""
import logging
import os
from typing import Mapping, Optional

from runnerctl.core.constants import DOCKER_SOCKET, OPTIONAL_RUNNER_URL_VARS
from runnerctl.executor.provisioner import BindMount

logger = logging.getLogger(__name__)


def build_runner_environment(
    runner_name: str,
    github_token: str,
    source_env: Optional[Mapping[str, str]] = None,
) -> dict[str, str]:
    """Environment for one runner container; optional URLs read from ``source_env``."""
    source = os.environ if source_env is None else source_env
    environment = {
        "GITHUB_TOKEN": github_token,
        "RUNNER_NAME": runner_name,
    }
    for var in OPTIONAL_RUNNER_URL_VARS:
        value = source.get(var, "")
        if value:
            logger.debug("Forwarding %s to runner %s", var, runner_name)
            environment[var] = value
    return environment


def runtime_socket_mounts(allow_dind: bool) -> list[BindMount]:
    if not allow_dind:
        return []
    return [BindMount(source=DOCKER_SOCKET, target=DOCKER_SOCKET)]
