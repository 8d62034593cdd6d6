from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Depends

from ui_harness.constants import DEFAULT_RESULTS_PATH
from ui_harness.schemas import ResultStatus, TestResult

STATE_VERSION = 1


def _default_state() -> Dict[str, Any]:
    return {"version": STATE_VERSION, "results": {}}


class ResultStore:
    """Pass/fail outcome per logical test name, persisted to a JSON file.

    Test runs may finish in parallel threads, so all writes go through an internal lock.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._state = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return _default_state()
        with self._path.open("r", encoding="utf-8") as handle:
            state = json.load(handle)
        state.setdefault("version", STATE_VERSION)
        state.setdefault("results", {})
        return state

    def _persist(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as handle:
            json.dump(self._state, handle, indent=2, sort_keys=True)

    def record(self, result: TestResult) -> TestResult:
        with self._lock:
            self._state["results"][result.name] = result.model_dump(mode="json")
            self._persist()
        return result

    def get(self, name: str) -> Optional[TestResult]:
        with self._lock:
            payload = self._state["results"].get(name)
        return TestResult.model_validate(payload) if payload else None

    def list(self, status: Optional[ResultStatus] = None) -> List[TestResult]:
        with self._lock:
            payloads = list(self._state["results"].values())
        results = [TestResult.model_validate(item) for item in payloads]
        if status is not None:
            results = [item for item in results if item.status == status]
        return sorted(results, key=lambda item: item.completed_at, reverse=True)

    def delete(self, name: str) -> bool:
        with self._lock:
            if name not in self._state["results"]:
                return False
            del self._state["results"][name]
            self._persist()
            return True

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ResultStatus}
        for result in self.list():
            counts[result.status.value] += 1
        return counts


_result_store: Optional[ResultStore] = None


def get_result_store() -> ResultStore:
    """FastAPI dependency to retrieve the singleton result store."""
    global _result_store
    if _result_store is None:
        _result_store = ResultStore(DEFAULT_RESULTS_PATH)
    return _result_store


ResultStoreDep = Depends(get_result_store)
