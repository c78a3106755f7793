"""Report event and grouping API endpoints.

This is the thin FastAPI adapter. It parses JSON bodies into internal
models, keeps the in-memory store current and forwards events to the
grouping hooks.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from grouper.core.errors import ErrorContext, GroupingError, ValidationError
from grouper.core.models import Coordinate, Priority, Report, ReportMetadata, groups_to_geojson

router = APIRouter(prefix="/api/v1")

# Fields compared to work out what an update changed.
_TRACKED_FIELDS = ("title", "description", "category", "status", "priority", "location", "metadata")


def _parse_timestamp(value: str | None, field_name: str) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    try:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError, AttributeError) as exc:
        raise ValidationError(f"{field_name} is not an ISO-8601 timestamp") from exc
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _parse_location(data: dict | None) -> Coordinate | None:
    if not data:
        return None
    try:
        accuracy = data.get("accuracy_m")
        return Coordinate(
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            accuracy_m=float(accuracy) if accuracy is not None else None,
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError("location needs numeric latitude and longitude") from exc


def _parse_report(data: dict, report_id: str | None = None, previous: Report | None = None) -> Report:
    """Parse a report from JSON. Raises ValidationError on bad input.

    When replacing ``previous``, a missing ``created_at`` keeps the original
    creation time.
    """
    if not isinstance(data, dict):
        raise ValidationError("report body must be a JSON object")
    rid = report_id or data.get("id")
    if not rid:
        raise ValidationError("report id is required")
    for name in ("title", "category"):
        if not str(data.get(name) or "").strip():
            raise ValidationError(f"{name} is required", ErrorContext("parse_report", "api", report_id=rid))
    try:
        priority = Priority.parse(data.get("priority", "medium"))
    except ValueError as exc:
        raise ValidationError(f"unknown priority {data.get('priority')!r}") from exc

    if previous is not None and not data.get("created_at"):
        created_at = previous.created_at
    else:
        created_at = _parse_timestamp(data.get("created_at"), "created_at")
    if data.get("updated_at"):
        updated_at = _parse_timestamp(data["updated_at"], "updated_at")
    elif previous is not None:
        updated_at = datetime.now(timezone.utc)
    else:
        updated_at = created_at
    return Report(
        id=str(rid),
        title=str(data["title"]),
        description=str(data.get("description") or ""),
        category=str(data["category"]),
        status=str(data.get("status") or "open"),
        priority=priority,
        created_at=created_at,
        updated_at=updated_at,
        location=_parse_location(data.get("location")),
        user_id=data.get("user_id"),
        metadata=ReportMetadata.from_mapping(data.get("metadata")),
    )


def _changed_fields(before: Report, after: Report) -> list[str]:
    return [name for name in _TRACKED_FIELDS if getattr(before, name) != getattr(after, name)]


async def _read_json(request: Request) -> dict | Response:
    try:
        return json.loads(await request.body())
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JSONResponse(content={"accepted": False, "error": "invalid JSON"}, status_code=400)


def _rejected(error: GroupingError) -> JSONResponse:
    return JSONResponse(
        content={"accepted": False, "error": error.message, "category": error.category.value},
        status_code=422,
    )


@router.post("/reports")
async def create_report(request: Request) -> Response:
    """Register a new report and queue it for grouping analysis."""
    from grouper.main import get_hooks, get_store

    body = await _read_json(request)
    if isinstance(body, Response):
        return body
    try:
        report = _parse_report(body)
    except ValidationError as exc:
        return _rejected(exc)

    get_store().put(report)
    await get_hooks().report_created(report, user_id=report.user_id)
    return JSONResponse(content={"accepted": True, "report_id": report.id}, status_code=202)


@router.put("/reports/{report_id}")
async def update_report(report_id: str, request: Request) -> Response:
    """Replace a report. Only changes that can affect grouping are queued."""
    from grouper.main import get_hooks, get_store

    store = get_store()
    before = store.get(report_id)
    if before is None:
        return JSONResponse(content={"accepted": False, "error": "unknown report"}, status_code=404)

    body = await _read_json(request)
    if isinstance(body, Response):
        return body
    try:
        after = _parse_report(body, report_id, previous=before)
    except ValidationError as exc:
        return _rejected(exc)

    changed = _changed_fields(before, after)
    store.put(after)
    queued = await get_hooks().report_updated(after, changed, user_id=after.user_id)
    return JSONResponse(
        content={"accepted": True, "report_id": report_id, "changed": changed, "queued": queued},
        status_code=202,
    )


@router.delete("/reports/{report_id}")
async def delete_report(report_id: str) -> JSONResponse:
    from grouper.main import get_hooks, get_store

    existed = get_store().remove(report_id)
    was_pending = await get_hooks().report_deleted(report_id)
    return JSONResponse(content={"deleted": existed, "was_pending": was_pending})


@router.post("/reports/{report_id}/analyze")
async def analyze_report(report_id: str) -> JSONResponse:
    """Analyze one stored report right away, outside the batch."""
    from grouper.main import get_hooks, get_store

    report = get_store().get(report_id)
    if report is None:
        return JSONResponse(content={"error": "unknown report"}, status_code=404)
    try:
        analysis = await get_hooks().analyze_now(report)
    except GroupingError as exc:
        return JSONResponse(
            content={"error": exc.message, "category": exc.category.value},
            status_code=503 if exc.recoverable else 500,
        )
    return JSONResponse(content=analysis.to_dict())


@router.get("/groups")
async def get_groups() -> JSONResponse:
    """Return all report groups as a GeoJSON FeatureCollection."""
    from grouper.main import get_registry

    geojson = groups_to_geojson(get_registry().all())
    return JSONResponse(content=geojson, media_type="application/geo+json")


@router.get("/groups/{group_id}")
async def get_group(group_id: str) -> JSONResponse:
    from grouper.main import get_registry

    group = get_registry().get(group_id)
    if group is None:
        return JSONResponse(content={"error": "unknown group"}, status_code=404)
    return JSONResponse(content=group.to_dict())


@router.get("/batch")
async def batch_status() -> dict:
    from grouper.main import get_hooks

    return get_hooks().batch_status().to_dict()


@router.post("/batch/flush")
async def flush_batch() -> dict:
    """Process the pending batch now and return the analyses."""
    from grouper.main import get_hooks

    results = await get_hooks().flush()
    return {"analyzed": len(results), "results": {rid: a.to_dict() for rid, a in results.items()}}


@router.delete("/batch")
async def clear_batch() -> dict:
    from grouper.main import get_hooks

    return {"dropped": await get_hooks().clear()}
