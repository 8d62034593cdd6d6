from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from ui_harness.routes import api
from ui_harness.routes import artifacts
from ui_harness.routes import dashboard

app = FastAPI(title="UI Test Harness Results")
app.include_router(api.router)
app.include_router(dashboard.router)
app.include_router(artifacts.router)


@app.get("/")
async def root() -> RedirectResponse:
    """Redirect visitors to the results list as the primary entry point."""
    return RedirectResponse(url="/results", status_code=303)
