"""
State Recorder: logical name -> ObservedState, backed by a StateBackend.

Each put/delete commits a complete new snapshot version before the change
becomes visible to get(), so a dependent never reads state that was not
durably written. Writes require the reconciliation lock.
"""
import copy
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional

from converge.errors import LockContentionError
from converge.models.state import ObservedState, StateSnapshot, utc_now
from converge.state.backend import LockInfo, StateBackend


class StateRecorder:
    def __init__(
        self,
        backend: StateBackend,
        lease_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.lease_seconds = lease_seconds
        self.clock = clock
        self._mutex = threading.RLock()
        self._snapshot: Optional[StateSnapshot] = None
        self._lock: Optional[LockInfo] = None

    # ------------------------------------------------------------ lifecycle

    def load(self) -> StateSnapshot:
        with self._mutex:
            snapshot = self.backend.read_latest()
            if snapshot is None:
                snapshot = StateSnapshot(serial=0, lineage=uuid.uuid4().hex)
            self._snapshot = snapshot
            return snapshot

    @property
    def lineage(self) -> str:
        return self._current().lineage

    @property
    def serial(self) -> int:
        return self._current().serial

    @property
    def lock_info(self) -> Optional[LockInfo]:
        return self._lock

    @contextmanager
    def lock(self, holder: str) -> Iterator["StateRecorder"]:
        """Hold the reconciliation lock and reload state for the duration."""
        info = self.backend.acquire_lock(holder, self.lease_seconds)
        with self._mutex:
            self._lock = info
        try:
            self.load()
            yield self
        finally:
            with self._mutex:
                held, self._lock = self._lock, None
            if held is not None:
                self.backend.release_lock(held)

    # ------------------------------------------------------------ reads

    def _current(self) -> StateSnapshot:
        if self._snapshot is None:
            return self.load()
        return self._snapshot

    def get(self, name: str) -> Optional[ObservedState]:
        with self._mutex:
            state = self._current().resources.get(name)
            return copy.deepcopy(state) if state is not None else None

    def names(self) -> List[str]:
        with self._mutex:
            return sorted(self._current().resources)

    # ------------------------------------------------------------ writes

    def _ensure_lease(self) -> None:
        if self._lock is None:
            raise LockContentionError("state writes require the reconciliation lock")
        remaining = self._lock.expires_at - self.clock()
        if remaining < self.lease_seconds / 2:
            self._lock = self.backend.renew_lock(self._lock, self.lease_seconds)

    def _commit(self, snapshot: StateSnapshot) -> None:
        snapshot.serial = self._current().serial + 1
        self.backend.write(snapshot)
        self._snapshot = snapshot

    def put(self, name: str, state: ObservedState) -> None:
        with self._mutex:
            self._ensure_lease()
            snapshot = copy.deepcopy(self._current())
            record = copy.deepcopy(state)
            record.name = name
            record.updated_at = utc_now()
            snapshot.resources[name] = record
            self._commit(snapshot)

    def delete(self, name: str) -> None:
        with self._mutex:
            self._ensure_lease()
            if name not in self._current().resources:
                return
            snapshot = copy.deepcopy(self._current())
            del snapshot.resources[name]
            self._commit(snapshot)
