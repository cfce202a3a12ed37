"""
Remote state backends: versioned snapshot storage plus a lease-based lock.

LocalStateBackend keeps one JSON file per snapshot version under
<directory>/state/ and the lock in <directory>/state.lock. Every file is
written to a temporary name first and renamed into place, so readers never
see a partial write. The lock file is published with a hard link, which fails
when the name is already taken, so exactly one contender creates it.
"""
import json
import os
import re
import tempfile
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from converge.errors import LockContentionError, StateCorruptionError
from converge.models.state import StateSnapshot

_VERSION_RE = re.compile(r"^(\d{6,})\.json$")


@dataclass(frozen=True)
class LockInfo:
    lock_id: str
    holder: str
    acquired_at: float
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict:
        return {
            "lock_id": self.lock_id,
            "holder": self.holder,
            "acquired_at": self.acquired_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LockInfo":
        return cls(
            lock_id=str(data["lock_id"]),
            holder=str(data["holder"]),
            acquired_at=float(data["acquired_at"]),
            expires_at=float(data["expires_at"]),
        )


class StateBackend(ABC):
    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    # ------------------------------------------------------------ snapshots

    @abstractmethod
    def read_latest(self) -> Optional[StateSnapshot]:
        """Most recent snapshot, or None if nothing was ever written."""

    @abstractmethod
    def write(self, snapshot: StateSnapshot) -> None:
        """Store snapshot as version snapshot.serial."""

    @abstractmethod
    def versions(self) -> List[int]:
        pass

    # ------------------------------------------------------------ lock storage

    @abstractmethod
    def _load_lock(self) -> Optional[LockInfo]:
        pass

    @abstractmethod
    def _create_lock(self, info: LockInfo) -> bool:
        """Store info only if no lock exists; False if one does."""

    @abstractmethod
    def _break_lock(self, stale: LockInfo) -> bool:
        """Remove the lock only if it is still stale; False if it changed."""

    @abstractmethod
    def _replace_lock(self, info: LockInfo) -> None:
        pass

    @abstractmethod
    def _remove_lock(self) -> None:
        pass

    # ------------------------------------------------------------ lock protocol

    def current_lock(self) -> Optional[LockInfo]:
        return self._load_lock()

    def acquire_lock(self, holder: str, lease_seconds: float) -> LockInfo:
        now = self.clock()
        info = LockInfo(
            lock_id=uuid.uuid4().hex,
            holder=holder,
            acquired_at=now,
            expires_at=now + lease_seconds,
        )
        for _ in range(3):
            if self._create_lock(info):
                return info
            existing = self._load_lock()
            if existing is None:
                continue
            if not existing.expired(now):
                raise LockContentionError(
                    f"state is locked by {existing.holder} (lock id {existing.lock_id}) "
                    f"until {time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(existing.expires_at))}",
                    holder=existing.holder,
                    lock_id=existing.lock_id,
                )
            # expired lease: only the contender that removes this exact lock goes on to create
            if not self._break_lock(existing):
                current = self._load_lock()
                raise LockContentionError(
                    "lost a race taking over an expired lock",
                    holder=current.holder if current else None,
                    lock_id=current.lock_id if current else None,
                )
        raise LockContentionError("state lock changed hands while acquiring it")

    def renew_lock(self, info: LockInfo, lease_seconds: float) -> LockInfo:
        existing = self._load_lock()
        if existing is None or existing.lock_id != info.lock_id:
            raise LockContentionError(
                f"lock {info.lock_id} is no longer held",
                holder=existing.holder if existing else None,
                lock_id=existing.lock_id if existing else None,
            )
        renewed = LockInfo(info.lock_id, info.holder, info.acquired_at, self.clock() + lease_seconds)
        self._replace_lock(renewed)
        return renewed

    def release_lock(self, info: LockInfo) -> None:
        existing = self._load_lock()
        if existing is not None and existing.lock_id == info.lock_id:
            self._remove_lock()

    def force_unlock(self, lock_id: str) -> LockInfo:
        existing = self._load_lock()
        if existing is None or existing.lock_id != lock_id:
            raise LockContentionError(
                f"no lock with id {lock_id}",
                holder=existing.holder if existing else None,
                lock_id=existing.lock_id if existing else None,
            )
        self._remove_lock()
        return existing


class MemoryStateBackend(StateBackend):
    def __init__(self, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self._mutex = threading.Lock()
        self._versions: Dict[int, dict] = {}
        self._lock: Optional[LockInfo] = None

    def read_latest(self) -> Optional[StateSnapshot]:
        with self._mutex:
            if not self._versions:
                return None
            return StateSnapshot.from_dict(json.loads(json.dumps(self._versions[max(self._versions)])))

    def write(self, snapshot: StateSnapshot) -> None:
        with self._mutex:
            if snapshot.serial in self._versions:
                raise StateCorruptionError(f"state version {snapshot.serial} already exists")
            self._versions[snapshot.serial] = json.loads(json.dumps(snapshot.to_dict()))

    def versions(self) -> List[int]:
        with self._mutex:
            return sorted(self._versions)

    def _load_lock(self):
        with self._mutex:
            return self._lock

    def _create_lock(self, info):
        with self._mutex:
            if self._lock is not None:
                return False
            self._lock = info
            return True

    def _break_lock(self, stale):
        with self._mutex:
            if self._lock is None or self._lock.lock_id != stale.lock_id:
                return False
            self._lock = None
            return True

    def _replace_lock(self, info):
        with self._mutex:
            self._lock = info

    def _remove_lock(self):
        with self._mutex:
            self._lock = None


class LocalStateBackend(StateBackend):
    def __init__(self, directory: str, keep_versions: int = 20, clock: Callable[[], float] = time.time,
                 lock_grace_seconds: float = 30.0):
        super().__init__(clock)
        self.directory = directory
        self.keep_versions = keep_versions
        self.lock_grace_seconds = lock_grace_seconds
        self.state_dir = os.path.join(directory, "state")
        self.lock_path = os.path.join(directory, "state.lock")

    def _version_path(self, serial: int) -> str:
        return os.path.join(self.state_dir, f"{serial:06d}.json")

    def _atomic_write(self, path: str, payload: dict) -> None:
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
                json.dump(payload, fh, indent=2, sort_keys=True)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def versions(self) -> List[int]:
        if not os.path.isdir(self.state_dir):
            return []
        found = []
        for fname in os.listdir(self.state_dir):
            m = _VERSION_RE.match(fname)
            if m:
                found.append(int(m.group(1)))
        return sorted(found)

    def read_latest(self) -> Optional[StateSnapshot]:
        versions = self.versions()
        if not versions:
            return None
        path = self._version_path(versions[-1])
        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
        except ValueError as exc:
            raise StateCorruptionError(f"{path} is not valid JSON: {exc}") from exc
        snapshot = StateSnapshot.from_dict(data)
        if snapshot.serial != versions[-1]:
            raise StateCorruptionError(f"{path} records serial {snapshot.serial}")
        return snapshot

    def write(self, snapshot: StateSnapshot) -> None:
        path = self._version_path(snapshot.serial)
        if os.path.exists(path):
            raise StateCorruptionError(f"state version {snapshot.serial} already exists")
        self._atomic_write(path, snapshot.to_dict())
        if self.keep_versions:
            for old in self.versions()[:-self.keep_versions]:
                os.unlink(self._version_path(old))

    def _load_lock(self):
        return self._read_lock_file(self.lock_path)

    def _read_lock_file(self, path: str) -> Optional[LockInfo]:
        try:
            with open(path, encoding="utf-8") as fh:
                raw = fh.read()
                st = os.fstat(fh.fileno())
        except FileNotFoundError:
            return None
        try:
            return LockInfo.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            # empty or partial: held until the grace period after its last write
            return LockInfo(
                lock_id=f"unreadable-{st.st_mtime_ns}",
                holder="unknown (unreadable lock file)",
                acquired_at=st.st_mtime,
                expires_at=st.st_mtime + self.lock_grace_seconds,
            )

    def _create_lock(self, info):
        os.makedirs(self.directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".lock-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(info.to_dict(), fh)
                fh.flush()
                os.fsync(fh.fileno())
            try:
                os.link(tmp, self.lock_path)
            except FileExistsError:
                return False
            return True
        finally:
            os.unlink(tmp)

    def _break_lock(self, stale):
        aside = f"{self.lock_path}.{uuid.uuid4().hex}.stale"
        try:
            os.rename(self.lock_path, aside)
        except FileNotFoundError:
            return True
        try:
            moved = self._read_lock_file(aside)
            if moved is not None and moved.lock_id != stale.lock_id:
                # another contender already took over; hand its lock back
                try:
                    os.link(aside, self.lock_path)
                except FileExistsError:
                    pass
                return False
            return True
        finally:
            os.unlink(aside)

    def _replace_lock(self, info):
        self._atomic_write(self.lock_path, info.to_dict())

    def _remove_lock(self):
        try:
            os.unlink(self.lock_path)
        except FileNotFoundError:
            pass
