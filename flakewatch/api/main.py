"""FastAPI backend for flakewatch.

Maps the engine's operations onto HTTP. The engine is built once at startup
and shared across requests; engine calls run in a worker thread because the
store is synchronous SQLite.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

import httpx
from fastapi import FastAPI, HTTPException, Query, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from flakewatch.config import get_settings
from flakewatch.engine.errors import (
    DataSourceUnavailableError,
    InvalidTransitionError,
    ResolutionNotFoundError,
)
from flakewatch.engine.history import build_timelines
from flakewatch.engine.models import (
    EffectivenessSummary,
    ExecutionRecord,
    FlakinessVerdict,
    ProactiveRecommendations,
    ProjectAnalysis,
    QuarantineAction,
    QuarantineEvent,
    QuarantineRecord,
    QuarantineStats,
    ReconcileSummary,
    ResolutionRecord,
    ResolutionRequest,
)
from flakewatch.engine.scheduler import run_reconciliation, start_scheduler, stop_scheduler
from flakewatch.engine.service import FlakinessEngine, build_engine
from flakewatch.observability.metrics import (
    APP_INFO,
    COMPONENT_HEALTHY,
    REQUEST_DURATION,
    REQUESTS_TOTAL,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

VERSION = "0.1.0"


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class IngestRequest(BaseModel):
    """Request body for POST /records."""

    records: list[ExecutionRecord]


class IngestResponse(BaseModel):
    """Response body for POST /records."""

    ingested: int


class ClassifyRequest(BaseModel):
    """Request body for POST /classify."""

    project_id: str = Field(min_length=1)
    records: list[ExecutionRecord]


class ClassifyResponse(BaseModel):
    """Response body for POST /classify: one verdict per test."""

    verdicts: list[FlakinessVerdict]


class TransitionRequest(BaseModel):
    """Request body for POST /quarantine/{test_id}/transitions."""

    action: QuarantineAction
    actor: str = Field(min_length=1)
    project_id: str | None = None
    reason: str | None = None


class QuarantineDetail(BaseModel):
    """Response body for GET /quarantine/{test_id}."""

    record: QuarantineRecord
    history: list[QuarantineEvent]


class RecordResolutionRequest(BaseModel):
    """Request body for POST /resolutions."""

    pattern_id: str = Field(min_length=1)
    organization_id: str = Field(min_length=1)
    actor: str = Field(min_length=1)
    resolution: ResolutionRequest


class ComponentHealth(BaseModel):
    """Health status of a single component."""

    name: str
    status: str
    detail: str | None = None


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str
    version: str
    components: list[ComponentHealth]


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the engine once at startup, tear down on shutdown."""
    APP_INFO.info({"version": VERSION})

    logger.info("Building flakewatch engine...")
    try:
        app.state.engine = build_engine()
        logger.info("Engine ready")
    except Exception:
        logger.exception("Failed to build engine at startup")
        raise

    start_scheduler(app.state.engine)
    yield
    stop_scheduler()
    logger.info("Shutting down flakewatch")


app = FastAPI(title="Flakewatch", lifespan=lifespan)


def _engine() -> FlakinessEngine:
    engine: FlakinessEngine = app.state.engine
    return engine


async def _call(endpoint: str, fn: Callable[..., T], *args: object, **kwargs: object) -> T:
    """Run an engine call in a worker thread, recording metrics and mapping errors to HTTP."""
    start = time.monotonic()
    status = "error"
    try:
        result = await asyncio.to_thread(fn, *args, **kwargs)
        status = "success"
        return result
    except ResolutionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except DataSourceUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Request to %s failed", endpoint)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    finally:
        REQUESTS_TOTAL.labels(endpoint=endpoint, status=status).inc()
        REQUEST_DURATION.labels(endpoint=endpoint).observe(time.monotonic() - start)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/records", response_model=IngestResponse)
async def ingest_records(request: IngestRequest) -> IngestResponse:
    """Store normalized execution records."""
    count = await _call("/records", _engine().ingest_records, request.records)
    return IngestResponse(ingested=count)


@app.post("/classify", response_model=ClassifyResponse)
async def classify(request: ClassifyRequest) -> ClassifyResponse:
    """Classify the supplied records, one verdict per test."""
    engine = _engine()

    def _classify_all() -> list[FlakinessVerdict]:
        timelines = build_timelines(request.project_id, request.records, limit=engine.timeline_limit)
        return [engine.classify(t) for t in timelines]

    verdicts = await _call("/classify", _classify_all)
    return ClassifyResponse(verdicts=verdicts)


@app.get("/projects/{project_id}/analysis", response_model=ProjectAnalysis)
async def project_analysis(project_id: str, auto_quarantine: bool = True) -> ProjectAnalysis:
    """Classify every test in a project from stored history."""
    return await _call(
        "/projects/analysis",
        _engine().analyze_project,
        project_id,
        auto_quarantine=auto_quarantine,
    )


@app.post("/quarantine/{test_id}/transitions", response_model=QuarantineRecord)
async def transition_quarantine(test_id: str, request: TransitionRequest) -> QuarantineRecord:
    """Apply a quarantine lifecycle action to a test."""
    return await _call(
        "/quarantine/transitions",
        _engine().transition_quarantine,
        test_id,
        request.action,
        request.actor,
        project_id=request.project_id,
        reason=request.reason,
    )


@app.get("/quarantine/{test_id}", response_model=QuarantineDetail)
async def get_quarantine(test_id: str) -> QuarantineDetail:
    """Current quarantine state of a test and its audit trail."""
    engine = _engine()
    record = await _call("/quarantine", engine.get_quarantine, test_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Test {test_id} is not tracked")
    history = await _call("/quarantine", engine.get_quarantine_history, test_id)
    return QuarantineDetail(record=record, history=history)


@app.get("/projects/{project_id}/quarantine/stats", response_model=QuarantineStats)
async def quarantine_stats(project_id: str) -> QuarantineStats:
    """Quarantine activity counts for a project."""
    return await _call("/projects/quarantine/stats", _engine().get_quarantine_stats, project_id)


@app.post("/resolutions", response_model=ResolutionRecord, status_code=201)
async def record_resolution(request: RecordResolutionRequest) -> ResolutionRecord:
    """Record a fix against a pattern and schedule its verification."""
    return await _call(
        "/resolutions",
        _engine().record_resolution,
        request.pattern_id,
        request.organization_id,
        request.actor,
        request.resolution,
    )


@app.get("/resolutions/{resolution_id}", response_model=ResolutionRecord)
async def get_resolution(resolution_id: str) -> ResolutionRecord:
    """Fetch a single resolution."""
    record = await _call("/resolutions", _engine().get_resolution, resolution_id)
    if record is None:
        raise HTTPException(status_code=404, detail=str(ResolutionNotFoundError(resolution_id)))
    return record


@app.post("/resolutions/{resolution_id}/verify", response_model=ResolutionRecord)
async def verify_resolution(resolution_id: str) -> ResolutionRecord:
    """Verify a resolution now. Not-yet-due or already verified resolutions are returned unchanged."""
    return await _call("/resolutions/verify", _engine().verify, resolution_id)


@app.post("/reconcile", response_model=ReconcileSummary)
async def reconcile() -> ReconcileSummary:
    """Run the verification reconciliation scan on demand."""
    start = time.monotonic()
    try:
        summary = await run_reconciliation(_engine(), trigger="manual")
    except Exception as exc:
        REQUESTS_TOTAL.labels(endpoint="/reconcile", status="error").inc()
        REQUEST_DURATION.labels(endpoint="/reconcile").observe(time.monotonic() - start)
        logger.exception("Manual reconciliation failed")
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    REQUESTS_TOTAL.labels(endpoint="/reconcile", status="success").inc()
    REQUEST_DURATION.labels(endpoint="/reconcile").observe(time.monotonic() - start)
    return summary


@app.get("/organizations/{organization_id}/effectiveness", response_model=EffectivenessSummary)
async def effectiveness(
    organization_id: str,
    period_days: int | None = Query(default=None, ge=1),
) -> EffectivenessSummary:
    """Resolution effectiveness rolled up over a period."""
    return await _call(
        "/organizations/effectiveness",
        _engine().get_effectiveness_metrics,
        organization_id,
        period_days,
    )


@app.get("/organizations/{organization_id}/recommendations", response_model=ProactiveRecommendations)
async def recommendations(organization_id: str) -> ProactiveRecommendations:
    """Proactive recommendations derived from resolution history."""
    return await _call(
        "/organizations/recommendations",
        _engine().get_proactive_recommendations,
        organization_id,
    )


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Check health of the store and the execution-record source."""
    settings = get_settings()
    components: list[ComponentHealth] = []

    # --- SQLite store ---
    try:
        await asyncio.to_thread(_engine().store.ping)
        components.append(ComponentHealth(name="store", status="healthy"))
    except Exception as exc:
        components.append(ComponentHealth(name="store", status="unhealthy", detail=str(exc)))

    # --- Remote execution-record source (optional) ---
    if settings.execution_source_url:
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(f"{settings.execution_source_url.rstrip('/')}/health")
                if resp.status_code == 200:
                    components.append(ComponentHealth(name="execution_source", status="healthy"))
                else:
                    components.append(
                        ComponentHealth(
                            name="execution_source",
                            status="unhealthy",
                            detail=f"HTTP {resp.status_code}",
                        )
                    )
        except Exception as exc:
            components.append(ComponentHealth(name="execution_source", status="unhealthy", detail=str(exc)))

    # --- Update Prometheus gauges ---
    for comp in components:
        COMPONENT_HEALTHY.labels(component=comp.name).set(1.0 if comp.status == "healthy" else 0.0)

    # --- Overall status ---
    healthy_count = sum(1 for c in components if c.status == "healthy")
    if healthy_count == len(components):
        overall = "healthy"
    elif healthy_count == 0:
        overall = "unhealthy"
    else:
        overall = "degraded"

    return HealthResponse(status=overall, version=VERSION, components=components)
