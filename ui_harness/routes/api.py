from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import APIRouter, HTTPException

from ui_harness.schemas import DumpSummary, ResultStatus, TestResult
from ui_harness.services.artifacts import get_dump_store
from ui_harness.services.storage import ResultStore, ResultStoreDep

router = APIRouter(prefix="/api", tags=["api"])


@router.get("/results", response_model=List[TestResult])
async def list_results(
    status: Optional[ResultStatus] = None, store: ResultStore = ResultStoreDep
) -> List[TestResult]:
    return store.list(status=status)


@router.get("/results/summary")
async def results_summary(store: ResultStore = ResultStoreDep) -> Dict[str, int]:
    return store.counts()


@router.get("/results/{name}", response_model=TestResult)
async def get_result(name: str, store: ResultStore = ResultStoreDep) -> TestResult:
    result = store.get(name)
    if result is None:
        raise HTTPException(status_code=404, detail="Result not found")
    return result


@router.delete("/results/{name}", status_code=204)
async def delete_result(name: str, store: ResultStore = ResultStoreDep) -> None:
    if not store.delete(name):
        raise HTTPException(status_code=404, detail="Result not found")


@router.get("/dumps", response_model=List[DumpSummary])
async def list_dumps() -> List[DumpSummary]:
    return get_dump_store().list_dumps()


@router.get("/dumps/{folder}", response_model=DumpSummary)
async def get_dump(folder: str) -> DumpSummary:
    summary = get_dump_store().get_dump(folder)
    if summary is None:
        raise HTTPException(status_code=404, detail="Dump not found")
    return summary


@router.delete("/dumps/{folder}", status_code=204)
async def delete_dump(folder: str) -> None:
    if not get_dump_store().purge(folder):
        raise HTTPException(status_code=404, detail="Dump not found")
