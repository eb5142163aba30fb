"""
Constants
Centralised storage for webhook headers, lifecycle actions and container labels.
"""
# GitHub webhook headers
EVENT_HEADER = "X-GitHub-Event"
DELIVERY_HEADER = "X-GitHub-Delivery"
SIGNATURE_256_HEADER = "X-Hub-Signature-256"
SIGNATURE_SHA1_HEADER = "X-Hub-Signature"

# The only event kind acted upon
WORKFLOW_JOB_EVENT = "workflow_job"

# workflow_job actions
ACTION_QUEUED = "queued"
ACTION_IN_PROGRESS = "in_progress"
ACTION_COMPLETED = "completed"

# Environment forwarded into runners only when non-empty
OPTIONAL_RUNNER_URL_VARS = (
    "RUNNER_ENTERPRISE_URL",
    "RUNNER_ORGANIZATION_URL",
    "RUNNER_REPOSITORY_URL",
)

# Container labels (used to rebuild the registry after a restart)
LABEL_MANAGED = "runnerctl.managed"
LABEL_RUN_ID = "runnerctl.run-id"
LABEL_RUNNER_NAME = "runnerctl.runner-name"

DOCKER_SOCKET = "/var/run/docker.sock"
RUNNER_NAME_PREFIX = "runner-"
