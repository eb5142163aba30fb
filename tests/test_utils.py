"""
Unit Tests — Helpers
====================
Per-key locking, runner naming, the runner container environment and log
level names.
"""
import asyncio
import logging
import re

import pytest

from runnerctl.core.constants import DOCKER_SOCKET
from runnerctl.services.runner_environment import build_runner_environment, runtime_socket_mounts
from runnerctl.utils.keyed_lock import KeyedLock
from runnerctl.utils.logging_config import resolve_log_level
from runnerctl.utils.runner_name import generate_runner_name


# ---------------------------------------------------------------------------
# 1. KeyedLock
# ---------------------------------------------------------------------------
class TestKeyedLock:

    def test_same_key_serialises_in_arrival_order(self):
        async def scenario():
            locks = KeyedLock()
            order = []

            async def worker(i):
                async with locks.hold("run-1"):
                    order.append(("enter", i))
                    await asyncio.sleep(0.01)
                    order.append(("exit", i))

            await asyncio.gather(*(worker(i) for i in range(5)))
            return order, len(locks)

        order, remaining = asyncio.run(scenario())
        assert order == [(step, i) for i in range(5) for step in ("enter", "exit")]
        assert remaining == 0

    def test_different_keys_do_not_block(self):
        async def scenario():
            locks = KeyedLock()
            async with locks.hold("a"):
                assert locks.locked("a")
                assert not locks.locked("b")
                await asyncio.wait_for(_enter(locks, "b"), timeout=1)

        async def _enter(locks, key):
            async with locks.hold(key):
                return True

        asyncio.run(scenario())

    def test_entry_dropped_after_exception(self):
        async def scenario():
            locks = KeyedLock()
            try:
                async with locks.hold(1):
                    raise ValueError("boom")
            except ValueError:
                pass
            return len(locks), locks.locked(1)

        assert asyncio.run(scenario()) == (0, False)


# ---------------------------------------------------------------------------
# 2. Runner names
# ---------------------------------------------------------------------------
def test_runner_name_format():
    name = generate_runner_name()
    assert re.fullmatch(r"runner-[0-9a-f]{16}", name)


def test_runner_names_are_unique():
    assert len({generate_runner_name() for _ in range(500)}) == 500


def test_runner_name_custom_prefix():
    assert generate_runner_name(prefix="ci-").startswith("ci-")


# ---------------------------------------------------------------------------
# 3. Runner environment
# ---------------------------------------------------------------------------
def test_environment_minimal():
    env = build_runner_environment("runner-1", "ghs_token", source_env={})
    assert env == {"GITHUB_TOKEN": "ghs_token", "RUNNER_NAME": "runner-1"}


def test_environment_forwards_only_set_urls():
    source = {
        "RUNNER_ORGANIZATION_URL": "https://github.com/octo",
        "RUNNER_REPOSITORY_URL": "",
        "UNRELATED": "x",
    }
    env = build_runner_environment("runner-1", "", source_env=source)
    assert env == {
        "GITHUB_TOKEN": "",
        "RUNNER_NAME": "runner-1",
        "RUNNER_ORGANIZATION_URL": "https://github.com/octo",
    }


def test_environment_reads_process_env_by_default(monkeypatch):
    monkeypatch.setenv("RUNNER_ENTERPRISE_URL", "https://ghe.example.com/enterprises/acme")
    monkeypatch.delenv("RUNNER_ORGANIZATION_URL", raising=False)
    monkeypatch.delenv("RUNNER_REPOSITORY_URL", raising=False)
    env = build_runner_environment("runner-1", "t")
    assert env["RUNNER_ENTERPRISE_URL"] == "https://ghe.example.com/enterprises/acme"
    assert "RUNNER_ORGANIZATION_URL" not in env


def test_socket_mounts():
    assert runtime_socket_mounts(False) == []
    mounts = runtime_socket_mounts(True)
    assert len(mounts) == 1
    assert mounts[0].source == DOCKER_SOCKET
    assert mounts[0].target == DOCKER_SOCKET
    assert mounts[0].read_only is False


# ---------------------------------------------------------------------------
# 4. Log level names
# ---------------------------------------------------------------------------
@pytest.mark.parametrize("name, expected", [
    ("DEBUG", logging.DEBUG),
    ("warning", logging.WARNING),
    (" error ", logging.ERROR),
    ("10", 10),
    ("LOUD", logging.INFO),
    ("", logging.INFO),
])
def test_resolve_log_level(name, expected):
    assert resolve_log_level(name) == expected


def test_resolve_log_level_custom_default():
    assert resolve_log_level("nope", default=logging.WARNING) == logging.WARNING
