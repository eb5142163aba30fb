"""
Runner Name Generator
=====================
Every spawned container gets a locally generated name. GitHub reports job
completion by this name (the runner's self-reported hostname), so the
Identity Registry relies on names never colliding.

64 bits from the OS CSPRNG keep collisions out of reach for any realistic
number of live runners; the registry still refuses duplicates.
"""
import secrets

from runnerctl.core.constants import RUNNER_NAME_PREFIX

_TOKEN_BYTES = 8


def generate_runner_name(prefix: str = RUNNER_NAME_PREFIX) -> str:
    """
    Return a new runner name such as ``runner-9f1c2a7b04d3e6aa``.

    Lowercase hex only, so the result is valid both as a container name
    and as a hostname.
    """
    return f"{prefix}{secrets.token_hex(_TOKEN_BYTES)}"
