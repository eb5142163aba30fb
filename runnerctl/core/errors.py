"""
Errors
======
Exception taxonomy for the runner controller.

Propagation policy:
    - ValidationError      : bad signature/body/kind; discard, no state change.
    - DuplicateTransition  : retried or reordered delivery; discard.
    - DuplicateName        : registry refused to overwrite a live runner name.
    - ProvisioningFailure  : create/start/remove failed for ONE run; logged,
                              never takes down the listener.
    - BootstrapFailure     : runner image unavailable at startup; fatal.

ProvisionerError is raised at the provisioner boundary and is opaque to the
controller beyond its ``fatal`` / ``timed_out`` flags.
"""
from typing import Optional


class RunnerControllerError(Exception):
    """Base class for every error raised by the controller core."""


# ---------------------------------------------------------------------------
# Event validation
# ---------------------------------------------------------------------------
class ValidationError(RunnerControllerError):
    pass


class InvalidSignature(ValidationError):
    pass


class UnparseableBody(ValidationError):
    pass


class UnsupportedEventKind(ValidationError):
    def __init__(self, kind: str) -> None:
        super().__init__(f"unsupported event kind: {kind or '<missing>'}")
        self.kind = kind


# ---------------------------------------------------------------------------
# State machine / registry
# ---------------------------------------------------------------------------
class DuplicateTransition(RunnerControllerError):
    def __init__(self, run_id: int, state: str, action: str) -> None:
        super().__init__(f"run {run_id} is {state}; '{action}' is a no-op")
        self.run_id = run_id
        self.state = state
        self.action = action


class DuplicateName(RunnerControllerError):
    def __init__(self, name: str) -> None:
        super().__init__(f"runner name already registered: {name}")
        self.name = name


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------
class ProvisioningFailure(RunnerControllerError):
    def __init__(self, message: str, run_id: int, runner_name: Optional[str] = None) -> None:
        super().__init__(message)
        self.run_id = run_id
        self.runner_name = runner_name

    def __str__(self) -> str:
        return f"run={self.run_id} runner={self.runner_name or '-'}: {self.args[0]}"


class BootstrapFailure(RunnerControllerError):
    pass


class ProvisionerError(Exception):
    """
    Raised by a ComputeProvisioner. ``fatal`` is False for transient failures.

    On a timeout the underlying call keeps running in its worker thread;
    ``pending`` is that call's future, resolved once the thread returns.
    """

    def __init__(self, message: str, fatal: bool = True, timed_out: bool = False,
                 pending=None) -> None:
        super().__init__(message)
        self.fatal = fatal
        self.timed_out = timed_out
        self.pending = pending
