"""Health check and monitoring endpoints."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Query

from grouper.core.analyzer import ALGORITHM_VERSION
from grouper.core.error_handler import LogLevel

router = APIRouter(prefix="/api/v1")


@router.get("/health")
async def health() -> dict:
    """Basic health check."""
    from grouper.main import get_hooks, get_stats, get_store

    snapshot = get_stats().snapshot()
    hooks = get_hooks()
    return {
        "status": "ok",
        "version": "0.1.0",
        "algorithm_version": ALGORITHM_VERSION,
        "uptime_seconds": snapshot["uptime_seconds"],
        "auto_detection": hooks.enabled,
        "batch_state": hooks.state.value,
        "reports_known": len(get_store()),
    }


@router.get("/stats")
async def stats() -> dict:
    """Grouping counters plus error statistics.

    The ``errors`` section comes from the error handler's in-memory log:
    - ``total_errors``: error and fatal entries currently kept
    - ``errors_by_category``: the same, split by error category
    - ``recent_error_rate_per_hour``: averaged over the last 24 hours
    """
    from grouper.main import get_error_handler, get_registry, get_stats

    snapshot = get_stats().snapshot()
    snapshot["groups_known"] = len(get_registry())
    snapshot["errors"] = get_error_handler().error_stats()
    return snapshot


@router.get("/logs")
async def recent_logs(
    limit: int = Query(default=100, ge=1, le=1000),
    level: LogLevel | None = None,
) -> dict:
    from grouper.main import get_error_handler

    entries = get_error_handler().recent_logs(limit=limit, level=level)
    return {"entries": [e.to_dict() for e in entries], "total": len(entries)}


@router.get("/config")
async def get_grouping_config() -> dict:
    """Effective grouping, batching and retry settings."""
    from grouper.main import get_config

    config = get_config()
    return {
        "grouping": asdict(config.grouping),
        "batching": asdict(config.batching),
        "retry": asdict(config.retry),
        "geo": asdict(config.geo),
    }
