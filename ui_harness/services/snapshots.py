from __future__ import annotations

import functools
import hashlib
import inspect
import json
import logging
import re
import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ui_harness.constants import SNAPSHOT_RECORD_FILENAME
from ui_harness.errors import TerminalSetupFailure

LOGGER = logging.getLogger("ui_harness.snapshots")


def _utcnow() -> str:
    """Return timezone-aware ISO timestamp."""
    return datetime.now(tz=timezone.utc).isoformat()


_IMMUTABLE_TYPES = (type(None), bool, int, float, complex, str, bytes, Path, Enum)
_UNSAFE_DIRECTORY_CHARACTERS = re.compile(r"[^\w.-]+")


def _stable_repr(value: Any) -> str:
    """Render a value the same way in every process.

    Immutable values contribute their repr, callables where they are defined. Anything else
    (lists, open resources, counters a test appends to) only contributes its type.
    """
    if isinstance(value, _IMMUTABLE_TYPES):
        return repr(value)
    if isinstance(value, (tuple, frozenset)):
        items = sorted(_stable_repr(item) for item in value) if isinstance(value, frozenset) else [
            _stable_repr(item) for item in value
        ]
        return f"{type(value).__name__}({', '.join(items)})"
    if isinstance(value, functools.partial):
        keywords = tuple(sorted(value.keywords.items()))
        return f"partial({_stable_repr(value.func)}, {_stable_repr(tuple(value.args))}, {_stable_repr(keywords)})"
    if inspect.isroutine(value) or inspect.isclass(value):
        return f"{getattr(value, '__module__', '')}.{getattr(value, '__qualname__', type(value).__qualname__)}"
    return f"<{type(value).__module__}.{type(value).__qualname__}>"


def compute_fingerprint(operation: Callable[..., Any], override: Optional[str] = None) -> str:
    """Derive a stable coordination key for a setup operation.

    The key depends on where the callable is defined plus the values it was built with: bound
    partial arguments, default arguments and the variables a closure captured. The same
    operation yields the same fingerprint in every process, while closures made by one factory
    with different arguments get different ones.
    """
    if override:
        return override
    parts = []
    target: Any = operation
    while isinstance(target, functools.partial):
        parts.append(_stable_repr(tuple(target.args)))
        parts.extend(f"{key}={_stable_repr(value)}" for key, value in sorted(target.keywords.items()))
        target = target.func
    target = inspect.unwrap(target)
    target = getattr(target, "__func__", target)
    parts.append(getattr(target, "__module__", "") or "")
    parts.append(getattr(target, "__qualname__", None) or type(target).__qualname__)
    code = getattr(target, "__code__", None)
    if code is not None:
        parts.append(code.co_filename)
        parts.append(str(code.co_firstlineno))
    parts.append(_stable_repr(tuple(getattr(target, "__defaults__", None) or ())))
    for key, value in sorted((getattr(target, "__kwdefaults__", None) or {}).items()):
        parts.append(f"{key}={_stable_repr(value)}")
    for name, cell in zip(getattr(code, "co_freevars", ()), getattr(target, "__closure__", None) or ()):
        try:
            contents = cell.cell_contents
        except ValueError:
            # Not bound yet.
            contents = None
        parts.append(f"{name}={_stable_repr(contents)}")
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return digest[:16]


def snapshot_directory_for(snapshots_root: Path, fingerprint: str) -> Path:
    """Return the directory holding the snapshot of one fingerprint under ``snapshots_root``."""
    return Path(snapshots_root) / (_UNSAFE_DIRECTORY_CHARACTERS.sub("_", fingerprint).strip(".") or "_")


@dataclass(frozen=True)
class SnapshotRecord:
    fingerprint: str
    directory: Path
    locator: str
    created_at: str = field(default_factory=_utcnow)

    @property
    def record_path(self) -> Path:
        return self.directory / SNAPSHOT_RECORD_FILENAME

    def to_dict(self) -> Dict[str, str]:
        return {
            "fingerprint": self.fingerprint,
            "locator": self.locator,
            "created_at": self.created_at,
        }

    def write(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp_path = self.record_path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(self.to_dict(), handle, indent=2, sort_keys=True)
        tmp_path.replace(self.record_path)

    @classmethod
    def read(cls, directory: Path) -> Optional["SnapshotRecord"]:
        path = directory / SNAPSHOT_RECORD_FILENAME
        if not path.is_file():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
            return cls(
                fingerprint=str(payload["fingerprint"]),
                directory=directory,
                locator=str(payload["locator"]),
                created_at=str(payload.get("created_at") or _utcnow()),
            )
        except (OSError, ValueError, KeyError, TypeError) as exc:
            LOGGER.warning("Ignoring unreadable snapshot record %s: %s", path, exc)
            return None


class FailureCounter:
    """Process-wide count of setup failures per fingerprint.

    Counts only ever grow; a later successful setup does not reset them.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = {}

    def increment(self, fingerprint: str) -> int:
        with self._lock:
            value = self._counts.get(fingerprint, 0) + 1
            self._counts[fingerprint] = value
            return value

    def get(self, fingerprint: str) -> int:
        with self._lock:
            return self._counts.get(fingerprint, 0)


class SetupSnapshotCoordinator:
    """Single-flight execution of expensive setup operations, keyed by fingerprint.

    Each fingerprint gets its own lock, so unrelated setups provision in parallel while callers
    sharing a fingerprint wait for the first one and then reuse its snapshot.
    """

    def __init__(self, failures: Optional[FailureCounter] = None) -> None:
        self._failures = failures or FailureCounter()
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._records: Dict[str, SnapshotRecord] = {}
        self._executions: Dict[str, int] = {}

    @property
    def failures(self) -> FailureCounter:
        return self._failures

    def _lock_for(self, fingerprint: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(fingerprint)
            if lock is None:
                lock = threading.Lock()
                self._locks[fingerprint] = lock
            return lock

    def executions(self, fingerprint: str) -> int:
        """Return how many times the operation actually ran for a fingerprint in this process."""
        with self._registry_lock:
            return self._executions.get(fingerprint, 0)

    def record_failure(self, fingerprint: str) -> int:
        count = self._failures.increment(fingerprint)
        LOGGER.info("Setup %s failed; failure count is now %s", fingerprint, count)
        return count

    def find_record(self, fingerprint: str, directory: Path) -> Optional[SnapshotRecord]:
        """Return the complete snapshot in ``directory`` if its record on disk belongs to ``fingerprint``."""
        directory = Path(directory)
        record = SnapshotRecord.read(directory)
        with self._registry_lock:
            cached = self._records.get(fingerprint)
            if record is None or record.fingerprint != fingerprint:
                if cached is not None and cached.directory == directory:
                    del self._records[fingerprint]
                return None
            if cached is not None and cached.directory == directory and cached.locator == record.locator:
                return cached
            self._records[fingerprint] = record
            return record

    def run_once(
        self,
        fingerprint: str,
        snapshots_root: Path,
        operation: Callable[[Path], str],
        *,
        max_failures: Optional[int] = None,
        lock_timeout: Optional[float] = None,
    ) -> SnapshotRecord:
        """Run ``operation`` at most once per fingerprint and return the resulting snapshot record.

        Every fingerprint owns ``snapshot_directory_for(snapshots_root, fingerprint)``. ``operation``
        receives that directory, fills it and returns the locator (relative URL or path) the test
        should continue from. Callers waiting on the same fingerprint get the record written by
        whoever ran first; if that run failed they try again themselves.
        """
        snapshot_directory = snapshot_directory_for(snapshots_root, fingerprint)
        lock = self._lock_for(fingerprint)
        acquired = lock.acquire(timeout=-1 if lock_timeout is None else lock_timeout)
        if not acquired:
            raise TimeoutError(f"Timed out after {lock_timeout}s waiting for setup {fingerprint} to finish")
        try:
            record = self.find_record(fingerprint, snapshot_directory)
            if record is not None:
                LOGGER.debug("Reusing setup snapshot %s from %s", fingerprint, record.directory)
                return record

            failure_count = self._failures.get(fingerprint)
            if max_failures is not None and failure_count > max_failures:
                raise TerminalSetupFailure(fingerprint, failure_count, max_failures)

            if snapshot_directory.exists():
                LOGGER.info("Removing incomplete setup snapshot at %s", snapshot_directory)
                shutil.rmtree(snapshot_directory)

            with self._registry_lock:
                self._executions[fingerprint] = self._executions.get(fingerprint, 0) + 1
            LOGGER.info("Running setup %s into %s", fingerprint, snapshot_directory)
            try:
                locator = operation(snapshot_directory)
            except Exception:
                self.record_failure(fingerprint)
                raise

            record = SnapshotRecord(
                fingerprint=fingerprint,
                directory=snapshot_directory,
                locator=str(locator or "/"),
            )
            # Written last: its presence marks the snapshot as complete.
            record.write()
            with self._registry_lock:
                self._records[fingerprint] = record
            LOGGER.info("Setup %s finished; snapshot saved to %s", fingerprint, snapshot_directory)
            return record
        finally:
            lock.release()


_coordinator: Optional[SetupSnapshotCoordinator] = None
_coordinator_lock = threading.Lock()


def get_coordinator() -> SetupSnapshotCoordinator:
    global _coordinator
    if _coordinator is None:
        with _coordinator_lock:
            if _coordinator is None:
                _coordinator = SetupSnapshotCoordinator()
    return _coordinator
