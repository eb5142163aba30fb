"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    RUNNER_IMAGE           : Image spawned for every queued job
                              (default: ghcr.io/naikrovek/actions-runner:0.7)
    WEBHOOK_SECRET         : Shared secret configured on the GitHub webhook
    ALLOW_DIND             : Bind-mount the host docker socket into runners (default: false)
    GITHUB_TOKEN           : Token injected into each runner for self-registration
    RUNNER_ENTERPRISE_URL  : Optional registration scope, forwarded when set
    RUNNER_ORGANIZATION_URL: Optional registration scope, forwarded when set
    RUNNER_REPOSITORY_URL  : Optional registration scope, forwarded when set
    REGISTRY_USERNAME      : Optional credentials for pulling RUNNER_IMAGE
    REGISTRY_PASSWORD
    ALWAYS_PULL_IMAGE      : Refresh the image at startup even if present (default: false)

Timeouts:
    PROVISIONER_TIMEOUT bounds every single Docker call (create, start,
    remove, list). A hung daemon must not stall webhook intake, so the
    controller gives up after this many seconds and treats the call as failed.

    Webhooks are handled inline, so a ``queued`` delivery is answered only
    after create and start (worst case about three times this value, with the
    cleanup remove). GitHub gives up on a delivery after 10 seconds and marks
    it failed in the webhook log, but does not redeliver it, so a slow answer
    changes nothing in the controller's state. Keep the value at or below 10
    to keep delivery logs clean on a healthy daemon; raise it for daemons
    that create containers slowly.

    DOCKER_CLIENT_TIMEOUT is the Docker SDK's own HTTP timeout. It also bounds
    the startup image pull, which has no PROVISIONER_TIMEOUT deadline.

    SHUTDOWN_GRACE_PERIOD is how long in-flight webhook handlers may keep
    running after a shutdown signal. An interrupted completion handler
    would leak a container.

Retention:
    COMPLETED_RUN_TTL and MAX_COMPLETED_RUNS bound how many completed job
    runs are remembered for duplicate detection. RUNNER_MAX_AGE is the age
    after which a tracked runner container is considered orphaned and removed.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


RUNNER_IMAGE = os.getenv("RUNNER_IMAGE", "ghcr.io/naikrovek/actions-runner:0.7")
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
ALLOW_DIND = _env_bool("ALLOW_DIND", False)
GITHUB_TOKEN = os.getenv("GITHUB_TOKEN", "")

# Private registry credentials (anonymous pull when unset)
REGISTRY_USERNAME = os.getenv("REGISTRY_USERNAME", "")
REGISTRY_PASSWORD = os.getenv("REGISTRY_PASSWORD", "")
ALWAYS_PULL_IMAGE = _env_bool("ALWAYS_PULL_IMAGE", False)

# Seconds
PROVISIONER_TIMEOUT = float(os.getenv("PROVISIONER_TIMEOUT", 10))
DOCKER_CLIENT_TIMEOUT = float(os.getenv("DOCKER_CLIENT_TIMEOUT", 120))
SHUTDOWN_GRACE_PERIOD = float(os.getenv("SHUTDOWN_GRACE_PERIOD", 30))
COMPLETED_RUN_TTL = float(os.getenv("COMPLETED_RUN_TTL", 3600))
RUNNER_MAX_AGE = float(os.getenv("RUNNER_MAX_AGE", 21600))
MAINTENANCE_INTERVAL = float(os.getenv("MAINTENANCE_INTERVAL", 300))

MAX_COMPLETED_RUNS = int(os.getenv("MAX_COMPLETED_RUNS", 1000))

# Server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8080))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_DIR = os.getenv("LOG_DIR", "logs")


def registry_auth_config() -> dict | None:
    """Return docker-py auth_config for the image pull, or None for anonymous."""
    if REGISTRY_USERNAME and REGISTRY_PASSWORD:
        return {"username": REGISTRY_USERNAME, "password": REGISTRY_PASSWORD}
    return None
