"""
Runner Lifecycle Controller
===========================
Consumes LifecycleEvents and drives one state machine per job run:

    queued ──queued──▶ running ──completed──▶ completed (absorbing)
       └──────────────completed──────────────────▲

Dispatch is a table over (JobState, action). Every cell is either a real
transition or an explicit no-op, so duplicated and reordered deliveries are
safe:

    state \\ action │ queued     in_progress  completed
    ───────────────┼──────────────────────────────────
    queued         │ provision  progress     complete
    running        │ duplicate  progress     complete
    completed      │ duplicate  duplicate    duplicate

Any other action (``waiting``, future GitHub additions) is ignored.

CONCURRENCY:
    - Each webhook runs on its own asyncio task.
    - All work for one run_id happens under that run's KeyedLock, acquired
      before any other await, so two concurrent ``queued`` deliveries yield
      exactly one container and same-run events apply in delivery order.
    - Docker calls run in worker threads under PROVISIONER_TIMEOUT.

FAILURE HANDLING:
    - create fails         → run stays queued, last_error set, ProvisioningFailure.
      A timed-out create keeps running in its worker thread; a background
      task waits for it and removes whatever it produced.
    - start fails          → compensating remove of the created container,
      then ProvisioningFailure. No registry entry is left behind.
    - remove fails         → logged, run still completed, then
      ProvisioningFailure. A transient failure keeps the registry entry and
      the maintenance loop retries the removal; a fatal one drops it.
    - Failures never escape one event's handling path.

MAINTENANCE (every MAINTENANCE_INTERVAL):
    - retry removals that failed transiently
    - reap runners older than RUNNER_MAX_AGE
    - remove labelled containers the registry does not know about
    - evict expired completed-run records
"""
import asyncio
import logging
from typing import Awaitable, Callable, Mapping, NoReturn, Optional

from runnerctl.core.config import (
    ALLOW_DIND,
    GITHUB_TOKEN,
    PROVISIONER_TIMEOUT,
    RUNNER_IMAGE,
)
from runnerctl.core.constants import (
    ACTION_COMPLETED,
    ACTION_IN_PROGRESS,
    ACTION_QUEUED,
    LABEL_MANAGED,
    LABEL_RUN_ID,
    LABEL_RUNNER_NAME,
)
from runnerctl.core.errors import (
    DuplicateName,
    DuplicateTransition,
    ProvisionerError,
    ProvisioningFailure,
)
from runnerctl.executor.provisioner import ComputeProvisioner
from runnerctl.models.job_run import JobRun, JobState, utcnow
from runnerctl.models.lifecycle_event import LifecycleEvent
from runnerctl.services.identity_registry import IdentityRegistry
from runnerctl.services.runner_environment import build_runner_environment, runtime_socket_mounts
from runnerctl.utils.keyed_lock import KeyedLock
from runnerctl.utils.runner_name import generate_runner_name

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Outcomes returned by handle()
# ---------------------------------------------------------------------------
PROVISIONED = "provisioned"
DUPLICATE = "duplicate"
STATUS_UPDATED = "status_updated"
REMOVED = "removed"
UNTRACKED = "untracked"
IGNORED = "ignored"

# Container states worth re-adopting after a restart
_LIVE_CONTAINER_STATES = {"", "running", "restarting", "paused"}

Transition = Callable[[Optional[JobRun], LifecycleEvent], Awaitable[str]]


def _retrieve_outcome(future: asyncio.Future) -> None:
    # Marks a late failure as retrieved; whoever cares awaits the future.
    if not future.cancelled():
        future.exception()


class RunnerLifecycleController:
    """
    Owns the per-run state machine. The registry owns all shared state; the
    controller only holds a container handle for the duration of one
    transition.
    """

    def __init__(
        self,
        provisioner: ComputeProvisioner,
        registry: Optional[IdentityRegistry] = None,
        *,
        image: str = RUNNER_IMAGE,
        github_token: str = GITHUB_TOKEN,
        allow_dind: bool = ALLOW_DIND,
        provisioner_timeout: float = PROVISIONER_TIMEOUT,
        source_env: Optional[Mapping[str, str]] = None,
        name_factory: Callable[[], str] = generate_runner_name,
    ) -> None:
        self.provisioner = provisioner
        self.registry = registry if registry is not None else IdentityRegistry()
        self.image = image
        self.github_token = github_token
        self.allow_dind = allow_dind
        self.provisioner_timeout = provisioner_timeout
        self._source_env = source_env
        self._name_factory = name_factory

        self._run_locks = KeyedLock()
        self._inflight: set[asyncio.Task] = set()
        self._cleanup_tasks: set[asyncio.Task] = set()
        # runner names whose container removal failed transiently
        self._pending_removals: set[str] = set()

        self._transitions: dict[tuple[JobState, str], Transition] = {
            (JobState.QUEUED, ACTION_QUEUED): self._provision,
            (JobState.QUEUED, ACTION_IN_PROGRESS): self._record_progress,
            (JobState.QUEUED, ACTION_COMPLETED): self._complete,
            (JobState.RUNNING, ACTION_QUEUED): self._reject_duplicate,
            (JobState.RUNNING, ACTION_IN_PROGRESS): self._record_progress,
            (JobState.RUNNING, ACTION_COMPLETED): self._complete,
            (JobState.COMPLETED, ACTION_QUEUED): self._reject_duplicate,
            (JobState.COMPLETED, ACTION_IN_PROGRESS): self._reject_duplicate,
            (JobState.COMPLETED, ACTION_COMPLETED): self._reject_duplicate,
        }
        self._actions = {action for _, action in self._transitions}

        logger.info(
            "Lifecycle controller ready | image=%s | dind=%s | timeout=%.0fs",
            image, allow_dind, provisioner_timeout,
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    async def handle(self, event: LifecycleEvent) -> str:
        """
        Apply one lifecycle event.

        Returns
        -------
        str
            One of PROVISIONED, DUPLICATE, STATUS_UPDATED, REMOVED,
            UNTRACKED, IGNORED.

        Raises
        ------
        ProvisioningFailure
            A provisioner call failed for this run. The run's record carries
            the error; no other run is affected.
        """
        if event.action not in self._actions:
            logger.info("[run=%s] Ignoring action '%s'", event.run_id, event.action)
            return IGNORED

        task = asyncio.current_task()
        if task is not None:
            self._inflight.add(task)
        try:
            async with self._run_locks.hold(event.run_id):
                run = self.registry.get_run(event.run_id)
                state = run.state if run is not None else JobState.QUEUED
                transition = self._transitions[(state, event.action)]
                try:
                    return await transition(run, event)
                except DuplicateTransition as e:
                    logger.info("[run=%s] Duplicate delivery ignored: %s", event.run_id, e)
                    return DUPLICATE
        finally:
            if task is not None:
                self._inflight.discard(task)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    async def _provision(self, run: Optional[JobRun], event: LifecycleEvent) -> str:
        run = run or JobRun(run_id=event.run_id)
        name = self._name_factory()
        environment = build_runner_environment(name, self.github_token, self._source_env)
        labels = {
            LABEL_MANAGED: "true",
            LABEL_RUN_ID: str(event.run_id),
            LABEL_RUNNER_NAME: name,
        }

        logger.info(
            "[run=%s runner=%s] Job '%s' queued on %s, provisioning",
            event.run_id, name, event.job_name or "-", event.repository_url or "-",
        )

        try:
            handle = await self._call(
                "create", self.provisioner.create,
                self.image, environment,
                name=name, labels=labels, mounts=runtime_socket_mounts(self.allow_dind),
            )
        except ProvisionerError as e:
            if e.timed_out and e.pending is not None:
                self._track_cleanup(self._reclaim_late_create(event.run_id, name, e.pending))
            self._fail(run, name, f"create failed: {e}")

        try:
            await self._call("start", self.provisioner.start, handle)
        except ProvisionerError as e:
            await self._discard(event.run_id, name, handle)
            self._fail(run, name, f"start failed: {e}")

        try:
            self.registry.put(name, handle, event.run_id)
        except DuplicateName as e:
            await self._discard(event.run_id, name, handle)
            self._fail(run, name, str(e))

        run.state = JobState.RUNNING
        run.runner_name = name
        run.last_error = ""
        self.registry.save_run(run)
        logger.info("[run=%s runner=%s] Runner started in container %s", event.run_id, name, handle[:12])
        return PROVISIONED

    async def _record_progress(self, run: Optional[JobRun], event: LifecycleEvent) -> str:
        if run is None:
            logger.info(
                "[run=%s runner=%s] in_progress for a run this controller did not spawn",
                event.run_id, event.runner_name or "-",
            )
            return UNTRACKED
        run.assigned_runner = event.runner_name or run.assigned_runner
        self.registry.save_run(run)
        logger.info("[run=%s runner=%s] Job in progress", event.run_id, event.runner_name or "-")
        return STATUS_UPDATED

    async def _complete(self, run: Optional[JobRun], event: LifecycleEvent) -> str:
        run = run or JobRun(run_id=event.run_id)
        name = event.runner_name
        identity = self.registry.lookup(name) if name else None
        outcome = UNTRACKED
        failure = ""

        if identity is None:
            logger.info(
                "[run=%s runner=%s] Job completed (%s); no tracked container",
                event.run_id, name or "-", event.conclusion or "-",
            )
        else:
            logger.info(
                "[run=%s runner=%s] Job completed (%s); removing container %s",
                event.run_id, name, event.conclusion or "-", identity.instance_handle[:12],
            )
            try:
                await self._call("remove", self.provisioner.remove, identity.instance_handle)
            except ProvisionerError as e:
                failure = f"remove of {identity.instance_handle[:12]} failed: {e}"
                if e.fatal:
                    logger.error("[run=%s runner=%s] %s; dropping registry entry", event.run_id, name, failure)
                    self.registry.remove(name)
                else:
                    logger.error("[run=%s runner=%s] %s; will retry", event.run_id, name, failure)
                    self._pending_removals.add(name)
            else:
                outcome = REMOVED
                self.registry.remove(name)

        run.state = JobState.COMPLETED
        run.conclusion = event.conclusion
        run.completed_at = utcnow()
        if failure:
            run.last_error = failure
        self.registry.save_run(run)
        self.registry.purge_completed()

        if failure:
            raise ProvisioningFailure(failure, event.run_id, name)
        return outcome

    async def _reject_duplicate(self, run: Optional[JobRun], event: LifecycleEvent) -> str:
        raise DuplicateTransition(event.run_id, run.state.value if run else "unknown", event.action)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _call(self, operation: str, fn, *args, **kwargs):
        """
        Run a blocking provisioner call in a thread, bounded by the timeout.

        A worker thread cannot be interrupted, so on timeout the call goes on
        and its future is handed back as ``ProvisionerError.pending``.
        """
        future = asyncio.ensure_future(asyncio.to_thread(fn, *args, **kwargs))
        future.add_done_callback(_retrieve_outcome)
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=self.provisioner_timeout)
        except asyncio.TimeoutError as e:
            raise ProvisionerError(
                f"{operation} timed out after {self.provisioner_timeout:g}s",
                fatal=False,
                timed_out=True,
                pending=future,
            ) from e

    def _track_cleanup(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def _reclaim_late_create(self, run_id: int, name: str, pending: asyncio.Future) -> None:
        """Remove whatever a timed-out create eventually produces."""
        try:
            handle = await pending
        except ProvisionerError as e:
            # the daemon may have created it before the call failed
            logger.info("[run=%s runner=%s] Timed-out create failed late: %s", run_id, name, e)
            await self._discard(run_id, name, name)
            return
        logger.warning(
            "[run=%s runner=%s] Timed-out create finished late as %s, removing",
            run_id, name, handle[:12],
        )
        await self._discard(run_id, name, handle)

    async def _discard(self, run_id: int, name: str, handle: str) -> None:
        """Best-effort removal of a half-provisioned container. Never raises."""
        try:
            removed = await self._call("remove", self.provisioner.remove, handle)
        except ProvisionerError as e:
            logger.error(
                "[run=%s runner=%s] Cleanup failed, container may be orphaned: %s",
                run_id, name, e,
            )
            return
        logger.info("[run=%s runner=%s] Cleaned up failed attempt (removed=%s)", run_id, name, removed)

    def _fail(self, run: JobRun, name: str, message: str) -> NoReturn:
        run.last_error = message
        self.registry.save_run(run)
        logger.error("[run=%s runner=%s] Provisioning failed: %s", run.run_id, name, message)
        raise ProvisioningFailure(message, run.run_id, name)

    # ------------------------------------------------------------------
    # Restart recovery / maintenance
    # ------------------------------------------------------------------
    async def recover(self) -> int:
        """
        Rebuild the registry from containers labelled as ours.

        Live containers are re-registered with a ``running`` record for the
        run they were spawned for. Exited or never-started ones lost their
        completion event while we were down and are removed.

        Returns the number of runners re-adopted.
        """
        try:
            instances = await self._call(
                "list", self.provisioner.list_instances, {LABEL_MANAGED: "true"},
            )
        except ProvisionerError as e:
            logger.error("Registry recovery failed; earlier runners stay untracked: %s", e)
            return 0

        recovered = 0
        for instance in instances:
            name = instance.labels.get(LABEL_RUNNER_NAME) or instance.name.lstrip("/")
            try:
                run_id = int(instance.labels.get(LABEL_RUN_ID, ""))
            except ValueError:
                logger.warning("Container %s has no usable run id label, skipping", instance.handle[:12])
                continue

            if instance.status not in _LIVE_CONTAINER_STATES:
                logger.info(
                    "[run=%s runner=%s] Found %s container from a previous process, removing",
                    run_id, name, instance.status,
                )
                await self._discard(run_id, name, instance.handle)
                continue

            try:
                self.registry.put(name, instance.handle, run_id, created_at=instance.created_at)
            except DuplicateName:
                logger.warning("[run=%s runner=%s] Already registered, skipping", run_id, name)
                continue
            if self.registry.get_run(run_id) is None:
                self.registry.save_run(JobRun(run_id=run_id, state=JobState.RUNNING, runner_name=name))
            recovered += 1

        logger.info("Recovered %d runner(s) from container labels", recovered)
        return recovered

    async def reap_stale_runners(self, max_age: float, now=None) -> int:
        """
        Remove runners registered more than ``max_age`` seconds ago.

        Covers completion events that never arrive (lost delivery, job picked
        up elsewhere). A failed removal keeps the entry for the next pass.
        """
        reaped = 0
        for identity in self.registry.stale_identities(max_age, now):
            async with self._run_locks.hold(identity.run_id):
                if self.registry.get(identity.name) != identity.instance_handle:
                    continue
                logger.warning(
                    "[run=%s runner=%s] Runner older than %.0fs, removing",
                    identity.run_id, identity.name, max_age,
                )
                try:
                    await self._call("remove", self.provisioner.remove, identity.instance_handle)
                except ProvisionerError as e:
                    logger.error("[run=%s runner=%s] Stale runner removal failed: %s",
                                 identity.run_id, identity.name, e)
                    continue
                self.registry.remove(identity.name)
                self._pending_removals.discard(identity.name)

                run = self.registry.get_run(identity.run_id)
                if run is not None and run.state is not JobState.COMPLETED and run.runner_name == identity.name:
                    run.state = JobState.COMPLETED
                    run.completed_at = utcnow()
                    run.last_error = f"runner exceeded max age ({max_age:.0f}s)"
                    self.registry.save_run(run)
                reaped += 1
        return reaped

    async def retry_pending_removals(self) -> int:
        """Retry container removals that failed transiently on completion."""
        removed = 0
        for name in sorted(self._pending_removals):
            identity = self.registry.lookup(name)
            if identity is None:
                self._pending_removals.discard(name)
                continue
            async with self._run_locks.hold(identity.run_id):
                if self.registry.get(name) != identity.instance_handle:
                    self._pending_removals.discard(name)
                    continue
                try:
                    await self._call("remove", self.provisioner.remove, identity.instance_handle)
                except ProvisionerError as e:
                    if not e.fatal:
                        logger.warning("[run=%s runner=%s] Removal retry failed: %s",
                                       identity.run_id, name, e)
                        continue
                    logger.error("[run=%s runner=%s] Removal failed for good, dropping entry: %s",
                                 identity.run_id, name, e)
                else:
                    removed += 1
                self.registry.remove(name)
                self._pending_removals.discard(name)
        return removed

    async def sweep_orphans(self) -> int:
        """
        Remove containers labelled as ours that the registry does not track.

        Each container is checked under its run's lock, which a provision
        holds from create until the registry entry exists.
        """
        try:
            instances = await self._call(
                "list", self.provisioner.list_instances, {LABEL_MANAGED: "true"},
            )
        except ProvisionerError as e:
            logger.error("Orphan sweep skipped: %s", e)
            return 0

        swept = 0
        for instance in instances:
            try:
                run_id = int(instance.labels.get(LABEL_RUN_ID, ""))
            except ValueError:
                continue
            name = instance.labels.get(LABEL_RUNNER_NAME) or instance.name
            async with self._run_locks.hold(run_id):
                if self.registry.name_for_handle(instance.handle) is not None:
                    continue
                logger.warning("[run=%s runner=%s] Untracked container %s, removing",
                               run_id, name, instance.handle[:12])
                await self._discard(run_id, name, instance.handle)
                swept += 1
        return swept

    async def run_maintenance(self, interval: float, runner_max_age: float) -> None:
        """Periodic cleanup passes. Runs until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                retried = await self.retry_pending_removals()
                reaped = await self.reap_stale_runners(runner_max_age)
                swept = await self.sweep_orphans()
                evicted = self.registry.purge_completed()
                if retried or reaped or swept or evicted:
                    logger.info(
                        "Maintenance: %d removal(s) retried, %d stale and %d orphaned runner(s) "
                        "removed, %d run record(s) evicted",
                        retried, reaped, swept, evicted,
                    )
            except Exception:
                logger.exception("Maintenance pass failed")

    async def drain(self, grace_period: float) -> int:
        """
        Wait up to ``grace_period`` seconds for in-flight handlers and
        background cleanups.

        Returns the number still running afterwards.
        """
        current = asyncio.current_task()
        pending = {
            t for t in self._inflight | self._cleanup_tasks
            if not t.done() and t is not current
        }
        if not pending:
            return 0
        logger.info("Waiting up to %.0fs for %d in-flight handler(s)", grace_period, len(pending))
        _, still_running = await asyncio.wait(pending, timeout=grace_period)
        if still_running:
            logger.warning("%d handler(s) still running after grace period", len(still_running))
        return len(still_running)

    def status(self) -> dict:
        return {
            **self.registry.counts(),
            "in_flight": len(self._inflight),
            "pending_removals": len(self._pending_removals),
        }
