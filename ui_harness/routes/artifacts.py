from __future__ import annotations

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from ui_harness.services.artifacts import get_dump_store

router = APIRouter(tags=["artifacts"])


@router.get("/dumps/{dump_path:path}")
async def read_dump_file(dump_path: str) -> FileResponse:
    target = get_dump_store().resolve(dump_path)
    if target is None:
        raise HTTPException(status_code=404, detail="Dump file not found")
    return FileResponse(path=target)
