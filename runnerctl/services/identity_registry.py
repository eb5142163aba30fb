"""
Identity Registry
=================
Concurrency-safe store owning:

    name   → RunnerIdentity      (runner name → container handle)
    handle → name                (reverse index)
    run_id → JobRun              (per-run status)

GitHub reports completion by runner name; the container can only be removed
by its handle. The registry bridges the two.

Rules:
    - ``put`` never overwrites a live name (or handle): DuplicateName.
    - ``remove`` is idempotent.
    - Completed runs are kept for duplicate detection, bounded by a TTL and a
      count cap, oldest evicted first.
    - Every operation runs under one lock; callers only ever get copies.

In-memory only. After a restart the controller rebuilds it from container
labels (see RunnerLifecycleController.recover).
"""
import logging
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Optional

from runnerctl.core.errors import DuplicateName
from runnerctl.models.job_run import JobRun, JobState, utcnow
from runnerctl.models.runner_identity import RunnerIdentity

logger = logging.getLogger(__name__)


class IdentityRegistry:

    def __init__(self, completed_ttl: float = 3600, max_completed: int = 1000) -> None:
        self.completed_ttl = completed_ttl
        self.max_completed = max_completed

        self._lock = threading.Lock()
        self._identities: dict[str, RunnerIdentity] = {}
        self._names_by_handle: dict[str, str] = {}
        self._runs: dict[int, JobRun] = {}
        # run_id → completed_at, in completion order
        self._completed: "OrderedDict[int, datetime]" = OrderedDict()

    # ------------------------------------------------------------------
    # Runner identities
    # ------------------------------------------------------------------
    def put(self, name: str, handle: str, run_id: int,
            created_at: Optional[datetime] = None) -> RunnerIdentity:
        """Register ``name → handle``. Raises DuplicateName if either is live."""
        identity = RunnerIdentity(
            name=name,
            instance_handle=handle,
            run_id=run_id,
            created_at=created_at or utcnow(),
        )
        with self._lock:
            if name in self._identities:
                raise DuplicateName(name)
            if handle in self._names_by_handle:
                raise DuplicateName(self._names_by_handle[handle])
            self._identities[name] = identity
            self._names_by_handle[handle] = name
        logger.debug("Registered runner %s → %s (run=%s)", name, handle[:12], run_id)
        return identity.model_copy()

    def get(self, name: str) -> Optional[str]:
        """Return the instance handle registered for ``name``, or None."""
        with self._lock:
            identity = self._identities.get(name)
            return identity.instance_handle if identity else None

    def lookup(self, name: str) -> Optional[RunnerIdentity]:
        with self._lock:
            identity = self._identities.get(name)
            return identity.model_copy() if identity else None

    def name_for_handle(self, handle: str) -> Optional[str]:
        with self._lock:
            return self._names_by_handle.get(handle)

    def remove(self, name: str) -> Optional[RunnerIdentity]:
        """Drop ``name``. Returns the removed identity, None if it was absent."""
        with self._lock:
            identity = self._identities.pop(name, None)
            if identity is not None:
                self._names_by_handle.pop(identity.instance_handle, None)
        if identity is not None:
            logger.debug("Unregistered runner %s", name)
        return identity

    def identities(self) -> list[RunnerIdentity]:
        with self._lock:
            return [i.model_copy() for i in self._identities.values()]

    def stale_identities(self, max_age: float, now: Optional[datetime] = None) -> list[RunnerIdentity]:
        """Identities registered more than ``max_age`` seconds ago."""
        cutoff = (now or utcnow()) - timedelta(seconds=max_age)
        with self._lock:
            return [i.model_copy() for i in self._identities.values() if i.created_at < cutoff]

    # ------------------------------------------------------------------
    # Job runs
    # ------------------------------------------------------------------
    def get_run(self, run_id: int) -> Optional[JobRun]:
        with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy() if run else None

    def save_run(self, run: JobRun) -> None:
        """Store ``run`` (a copy). Completed runs enter the retention queue."""
        run.touch()
        with self._lock:
            self._runs[run.run_id] = run.model_copy()
            if run.state is JobState.COMPLETED:
                self._completed[run.run_id] = run.completed_at or run.updated_at
                self._completed.move_to_end(run.run_id)
            else:
                self._completed.pop(run.run_id, None)

    def runs(self) -> list[JobRun]:
        with self._lock:
            return [r.model_copy() for r in self._runs.values()]

    def purge_completed(self, now: Optional[datetime] = None) -> int:
        """Evict completed runs past the TTL or beyond the cap. Returns the count."""
        cutoff = (now or utcnow()) - timedelta(seconds=self.completed_ttl)
        evicted = 0
        with self._lock:
            while self._completed:
                run_id, completed_at = next(iter(self._completed.items()))
                if len(self._completed) <= self.max_completed and completed_at >= cutoff:
                    break
                del self._completed[run_id]
                self._runs.pop(run_id, None)
                evicted += 1
        if evicted:
            logger.debug("Evicted %d completed run record(s)", evicted)
        return evicted

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def counts(self) -> dict[str, int]:
        with self._lock:
            by_state = {state.value: 0 for state in JobState}
            for run in self._runs.values():
                by_state[run.state.value] += 1
            return {"active_runners": len(self._identities), **by_state}

    def __len__(self) -> int:
        with self._lock:
            return len(self._identities)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._identities
