"""Report grouping service: main entry point.

This is the only file that knows about concrete implementations.
It wires together the core, hooks, storage, and API layers.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from grouper.api.monitoring import router as monitoring_router
from grouper.api.reports import router as reports_router
from grouper.config import AppConfig, load_config
from grouper.core import geo
from grouper.core.analyzer import GroupingAnalyzer
from grouper.core.error_handler import ErrorHandler
from grouper.core.groups import GroupRegistry
from grouper.core.stats import GroupingStats
from grouper.hooks.batcher import GroupingHooks
from grouper.storage.memory_store import InMemoryReportStore

log = structlog.get_logger()

# Module-level singletons (set during startup)
_hooks: GroupingHooks | None = None
_store: InMemoryReportStore | None = None
_registry: GroupRegistry | None = None
_errors: ErrorHandler | None = None
_stats: GroupingStats | None = None
_config: AppConfig | None = None


def get_hooks() -> GroupingHooks:
    assert _hooks is not None, "Server not initialized"
    return _hooks


def get_store() -> InMemoryReportStore:
    assert _store is not None, "Server not initialized"
    return _store


def get_registry() -> GroupRegistry:
    assert _registry is not None, "Server not initialized"
    return _registry


def get_error_handler() -> ErrorHandler:
    assert _errors is not None, "Server not initialized"
    return _errors


def get_stats() -> GroupingStats:
    assert _stats is not None, "Server not initialized"
    return _stats


def get_config() -> AppConfig:
    assert _config is not None, "Server not initialized"
    return _config


def _setup_logging(config: AppConfig) -> None:
    """Configure structlog based on the logging config."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if config.logging.format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.logging.level.upper()),
        ),
    )


def build_components(config: AppConfig) -> dict:
    """Create every component from ``config``. Shared by the app and the tests."""
    stats = GroupingStats()
    errors = ErrorHandler(config.retry)
    tiers = geo.AccuracyTiers(
        high_below_m=config.geo.high_accuracy_below_m,
        medium_below_m=config.geo.medium_accuracy_below_m,
    )
    analyzer = GroupingAnalyzer(config.grouping, accuracy_tiers=tiers)
    registry = GroupRegistry(analyzer)
    store = InMemoryReportStore()
    hooks = GroupingHooks(
        analyzer, store, errors, config.batching,
        registry=registry, stats=stats,
    )
    return {
        "stats": stats,
        "errors": errors,
        "registry": registry,
        "store": store,
        "hooks": hooks,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global _hooks, _store, _registry, _errors, _stats, _config

    _config = load_config()
    _setup_logging(_config)

    log.info("server_starting",
             env=_config.server.env,
             batch_delay_ms=_config.batching.batch_processing_delay_ms,
             max_batch_size=_config.batching.max_batch_size)

    components = build_components(_config)
    _stats = components["stats"]
    _errors = components["errors"]
    _registry = components["registry"]
    _store = components["store"]
    _hooks = components["hooks"]

    _errors.install_asyncio_handler(asyncio.get_running_loop())

    log.info("server_started",
             host=_config.server.host,
             port=_config.server.port)

    yield

    # Shutdown
    await _hooks.shutdown()
    log.info("server_stopped")


app = FastAPI(
    title="Report Grouper",
    description="Duplicate hazard report detection and grouping",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(reports_router)
app.include_router(monitoring_router)
