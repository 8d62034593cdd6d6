from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi.templating import Jinja2Templates

TEMPLATES_DIRECTORY = Path(__file__).resolve().parent / "templates"


def _format_timestamp(value: Any) -> str:
    if value in (None, ""):
        return "-"
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value))
        except ValueError:
            return str(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%d %b %y %H:%M:%S")


def _as_dict(item: Any) -> Dict[str, Any]:
    if isinstance(item, dict):
        return item
    if hasattr(item, "model_dump"):
        return item.model_dump()
    return dict(getattr(item, "__dict__", {}))


def get_violations(result: Any) -> List[Dict[str, Any]]:
    """Return the violations of an axe-style accessibility result as plain dicts."""
    if result is None:
        return []
    raw = result.get("violations") if isinstance(result, dict) else getattr(result, "violations", None)
    return [_as_dict(item) for item in (raw or [])]


templates = Jinja2Templates(directory=str(TEMPLATES_DIRECTORY))
templates.env.globals.update({"len": len})
templates.env.filters["format_ts"] = _format_timestamp


def render_accessibility_report(result: Any, path: Path, *, title: Optional[str] = None) -> Path:
    template = templates.get_template("accessibility_report.html")
    html = template.render(
        title=title or "Accessibility report",
        violations=get_violations(result),
        generated_at=datetime.now(tz=timezone.utc),
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(html, encoding="utf-8")
    return path
