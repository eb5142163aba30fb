"""
Image Bootstrap
===============
Runs once before the controller accepts webhooks: makes sure the runner
image is available locally.

The only fail-fast path in the service: BootstrapFailure aborts startup
before any job run exists.
"""
import logging
from typing import Optional

from runnerctl.core.errors import BootstrapFailure, ProvisionerError
from runnerctl.executor.provisioner import ComputeProvisioner

logger = logging.getLogger(__name__)


def ensure_runner_image(
    provisioner: ComputeProvisioner,
    image: str,
    auth_config: Optional[dict] = None,
    always_pull: bool = False,
) -> None:
    """
    Make ``image`` available locally or raise BootstrapFailure.

    Parameters
    ----------
    provisioner : ComputeProvisioner
        Provisioner whose image store is checked.
    image : str
        Image reference, optionally with tag.
    auth_config : dict | None
        Registry credentials for the pull.
    always_pull : bool
        Pull even when a local copy exists. A failed refresh falls back to
        the local copy with a warning.
    """
    try:
        present = provisioner.has_image(image)
    except ProvisionerError as e:
        raise BootstrapFailure(f"cannot inspect runner image {image}: {e}") from e

    if present and not always_pull:
        logger.info("Runner image %s present locally", image)
        return

    try:
        provisioner.pull_image(image, auth_config=auth_config)
    except ProvisionerError as e:
        if present:
            logger.warning("Failed to refresh runner image %s (using local copy): %s", image, e)
            return
        raise BootstrapFailure(f"runner image {image} is not retrievable: {e}") from e

    logger.info("Runner image %s pulled", image)
