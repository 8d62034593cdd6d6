from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse

from ui_harness.schemas import ResultStatus
from ui_harness.services.artifacts import get_dump_store
from ui_harness.services.storage import ResultStore, ResultStoreDep
from ui_harness.templating import templates

router = APIRouter(tags=["dashboard"])

STATUS_BADGES = {
    ResultStatus.passed.value: "success",
    ResultStatus.failed.value: "danger",
}


@router.get("/results", response_class=HTMLResponse)
async def results_page(request: Request, store: ResultStore = ResultStoreDep) -> HTMLResponse:
    dumps = {summary.folder: summary for summary in get_dump_store().list_dumps()}
    context = {
        "request": request,
        "results": store.list(),
        "counts": store.counts(),
        "dumps": dumps,
        "badges": STATUS_BADGES,
    }
    return templates.TemplateResponse(request, "results.html", context)
