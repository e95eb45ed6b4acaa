# =============================================================================
# Page Generation Engine — FastAPI Backend
# =============================================================================
# Programmatic landing pages for location × service combinations
#
# Jobs:
#   1. Generation   — resolve selection, materialize missing pages in batches
#   2. Health scan  — re-run QA + duplicate detection over existing pages
#
# Run:  python main.py
# Test: curl http://localhost:8000/health
# =============================================================================

import logging
import time
from collections import defaultdict
from datetime import datetime
from typing import Any, Literal, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, ValidationError, field_validator

from config import (
    ALLOWED_ORIGINS,
    DATABASE_URL,
    GENERATE_RATE_LIMIT_PER_MIN,
    GENERATION_BATCH_SIZE,
    GENERATION_FAIL_FAST,
    LOG_LEVEL,
    PORT,
    SITE_URL,
)
from content_generator import GENERATOR_NAME, GENERATOR_VERSION
from database import DocumentStore, StoreWriteError, get_store, init_db
from generation_jobs import (
    GenerationJobRunner,
    InvalidSelectionError,
    ResolutionError,
    normalize_selection,
)
from health_scan import HealthScanRequest, HealthScanRunner
from page_admin import (
    LIST_DEFAULT_LIMIT,
    PUBLISH_MAX,
    health_list,
    health_summary,
    publish_by_filter,
    rows_to_csv,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger("pagegen")

# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Page Generation API",
    version="1.0.0",
    description="Programmatic page generation and content health engine",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    init_db()
    logger.info("Database tables ready")


# ---------------------------------------------------------------------------
# Job runners, one pair per store instance
# ---------------------------------------------------------------------------

_generation_runners: dict[int, GenerationJobRunner] = {}
_scan_runners: dict[int, HealthScanRunner] = {}


def get_generation_runner(store: DocumentStore = Depends(get_store)) -> GenerationJobRunner:
    runner = _generation_runners.get(id(store))
    if runner is None or runner.store is not store:
        runner = GenerationJobRunner(store)
        _generation_runners[id(store)] = runner
    return runner


def get_scan_runner(store: DocumentStore = Depends(get_store)) -> HealthScanRunner:
    runner = _scan_runners.get(id(store))
    if runner is None or runner.store is not store:
        runner = HealthScanRunner(store)
        _scan_runners[id(store)] = runner
    return runner


# ---------------------------------------------------------------------------
# Simple in-memory rate limiter for job submission
# ---------------------------------------------------------------------------

_rate_buckets: dict[str, list[float]] = defaultdict(list)


def generation_rate_limit(request: Request) -> None:
    ip = request.client.host if request.client else "unknown"
    now = time.time()
    _rate_buckets[ip] = [t for t in _rate_buckets[ip] if now - t < 60]

    if len(_rate_buckets[ip]) >= GENERATE_RATE_LIMIT_PER_MIN:
        raise HTTPException(429, "Rate limit exceeded — try again in a minute")

    _rate_buckets[ip].append(now)


# =============================================================================
# Request models
# =============================================================================

class PublishByFilterRequest(BaseModel):
    action: Literal["publish", "unpublish"]
    serviceKey: Optional[str] = None
    countySlug: Optional[str] = None
    max: Optional[int] = None

    @field_validator("max")
    @classmethod
    def clamp_max(cls, v: Optional[int]) -> Optional[int]:
        if v is None:
            return v
        return max(1, min(v, PUBLISH_MAX))


def _bad_request(code: str, message: str, **extra) -> HTTPException:
    return HTTPException(status_code=400, detail={"ok": False, "code": code, "message": message, **extra})


def _require_job_id(job_id: Optional[str]) -> str:
    if not job_id or not job_id.strip():
        raise _bad_request("missing_job_id", "jobId query parameter is required")
    return job_id.strip()


# =============================================================================
# Generation jobs
# =============================================================================

@app.post("/pages/generate", dependencies=[Depends(generation_rate_limit)])
async def generate_pages(
    body: Any = Body(default=None),
    runner: GenerationJobRunner = Depends(get_generation_runner),
):
    """
    Submit a generation job. Returns immediately with jobId.
    Poll GET /pages/generate/status?jobId=... for progress.
    """
    try:
        selection = normalize_selection(body)
    except InvalidSelectionError as e:
        raise _bad_request("invalid_payload", str(e), details=e.details)

    try:
        job = await runner.submit(selection)
    except ResolutionError as e:
        raise _bad_request(
            "unresolved_refs",
            "Some selected places or services could not be found.",
            missingLocationRefs=e.missing_location_refs,
            missingServiceRefs=e.missing_service_refs,
        )
    except StoreWriteError as e:
        logger.error(f"Could not create generation job ({e.code}): {e}", exc_info=True)
        raise HTTPException(status_code=503, detail={"ok": False, "code": e.code, "message": str(e)})

    return {"ok": True, **job}


@app.get("/pages/generate/status")
async def generation_status(
    job_id: Optional[str] = Query(default=None, alias="jobId"),
    runner: GenerationJobRunner = Depends(get_generation_runner),
):
    view = await runner.status(_require_job_id(job_id))
    if view is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return view


@app.post("/pages/generate/cancel")
async def generation_cancel(
    job_id: Optional[str] = Query(default=None, alias="jobId"),
    runner: GenerationJobRunner = Depends(get_generation_runner),
):
    """Request a cooperative stop. The job finishes its current sub-batch first."""
    view = await runner.cancel(_require_job_id(job_id))
    if view is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return view


@app.post("/pages/{page_id}/regenerate")
async def regenerate_page(page_id: str, runner: GenerationJobRunner = Depends(get_generation_runner)):
    page = await runner.regenerate_page(page_id)
    if page is None:
        raise HTTPException(status_code=404, detail="Page not found")
    return {"ok": True, "pageId": page_id, "generation": page.get("generation"), "seo": page.get("seo")}


# =============================================================================
# Health scans
# =============================================================================

@app.post("/pages/health/scan")
async def start_health_scan(
    body: Any = Body(default=None),
    runner: HealthScanRunner = Depends(get_scan_runner),
):
    try:
        request = HealthScanRequest.model_validate(body or {})
    except ValidationError as e:
        errors = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]
        raise _bad_request("invalid_payload", errors[0]["msg"] if errors else "Invalid scan scope", details={"errors": errors})

    job_id = await runner.submit(request)
    return {"ok": True, "jobId": job_id}


@app.get("/pages/health/status")
async def health_scan_status(
    job_id: Optional[str] = Query(default=None, alias="jobId"),
    runner: HealthScanRunner = Depends(get_scan_runner),
):
    view = await runner.status(_require_job_id(job_id))
    if view is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return view


@app.get("/pages/health/list")
async def list_page_health(
    status: Optional[Literal["ok", "warn", "fail"]] = None,
    serviceKey: Optional[str] = None,
    zip: Optional[str] = None,
    cursor: Optional[str] = None,
    limit: int = Query(default=LIST_DEFAULT_LIMIT, ge=1, le=200),
    format: Literal["json", "csv"] = "json",
    store: DocumentStore = Depends(get_store),
):
    result = await health_list(store, status=status, service_key=serviceKey, zip_code=zip, cursor=cursor, limit=limit)
    if format == "csv":
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        return Response(
            content=rows_to_csv(result["items"]),
            media_type="text/csv",
            headers={"Content-Disposition": f"attachment; filename=page-health-{stamp}.csv"},
        )
    return result


@app.get("/pages/health/summary")
async def page_health_summary(store: DocumentStore = Depends(get_store)):
    return await health_summary(store)


@app.post("/pages/publish-by-filter")
async def publish_pages_by_filter(body: PublishByFilterRequest, store: DocumentStore = Depends(get_store)):
    try:
        return await publish_by_filter(
            store,
            body.action,
            service_key=body.serviceKey,
            county_slug=body.countySlug,
            max_pages=body.max,
        )
    except StoreWriteError as e:
        logger.error(f"publish-by-filter failed ({e.code}): {e}", exc_info=True)
        raise HTTPException(status_code=503, detail={"ok": False, "code": e.code, "message": str(e)})


# =============================================================================
# Health & info
# =============================================================================

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "timestamp": datetime.now().isoformat(),
        "database": DATABASE_URL.split("://", 1)[0],
    }


@app.get("/info")
async def info():
    return {
        "name": "Page Generation API",
        "version": "1.0.0",
        "generator": {"name": GENERATOR_NAME, "version": GENERATOR_VERSION},
        "siteUrl": SITE_URL,
        "batchSize": GENERATION_BATCH_SIZE,
        "failFast": GENERATION_FAIL_FAST,
        "endpoints": {
            "generate": "POST /pages/generate",
            "generate_status": "GET /pages/generate/status?jobId=",
            "generate_cancel": "POST /pages/generate/cancel?jobId=",
            "regenerate": "POST /pages/{page_id}/regenerate",
            "health_scan": "POST /pages/health/scan",
            "health_status": "GET /pages/health/status?jobId=",
            "health_list": "GET /pages/health/list",
            "health_summary": "GET /pages/health/summary",
            "publish_by_filter": "POST /pages/publish-by-filter",
            "health": "GET /health",
        },
    }


# =============================================================================
# Run
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
