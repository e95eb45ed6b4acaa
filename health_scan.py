"""
health_scan.py — re-walks generated pages and writes a health snapshot onto each.

Scopes:
    all        every page
    serviceKey pages whose service.key matches
    zip        pages in one postal code
    pageIds    explicit id list (capped)

Per page: extract section text, run the QA rules, record one fingerprint per
required section (bucketed by service) plus one for the slug path (global),
collect sections whose fingerprint count exceeds 1, score, and merge the
result back onto the page.

A scan walks its targets twice: the first pass only records fingerprints, the
second scores. Every page in scope therefore sees the same duplicate counts
regardless of where it falls in the walk. Progress is written during both
passes (`phase` is "indexing" then "scoring").
"""

import asyncio
import logging
from typing import AsyncIterator, Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from config import HEALTH_SCAN_MAX_PAGE_IDS, HEALTH_SCAN_PAGE_SIZE
from database import DocumentStore, StoreWriteError, utcnow
from fingerprints import GLOBAL_SCOPE, SLUG_SECTION, FingerprintIndex, hash_text, normalize_text
from page_health import (
    PAGE_HEALTH_VERSION,
    REQUIRED_SECTIONS,
    derive_status,
    evaluate_page,
    page_service_key,
    page_stopwords,
    score_health,
)

logger = logging.getLogger("pagegen.health")

PAGES_COLLECTION = "pages"
SCAN_JOBS_COLLECTION = "page_health_jobs"

ID_CHUNK_SIZE = 100
DUPLICATE_SAMPLE_SIZE = 5


class HealthScanRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    scope: Literal["all", "serviceKey", "zip", "pageIds"] = "all"
    serviceKey: Optional[str] = None
    zip: Optional[str] = None
    pageIds: Optional[list[str]] = None

    @field_validator("serviceKey", "zip")
    @classmethod
    def strip_value(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() if isinstance(v, str) else v

    @field_validator("pageIds")
    @classmethod
    def unique_ids(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        if v is None:
            return v
        ids = list(dict.fromkeys(i.strip() for i in v if i and i.strip()))
        return ids[:HEALTH_SCAN_MAX_PAGE_IDS]

    @model_validator(mode="after")
    def scope_params(self) -> "HealthScanRequest":
        if self.scope == "serviceKey" and not self.serviceKey:
            raise ValueError("serviceKey is required for scope=serviceKey")
        if self.scope == "zip" and not self.zip:
            raise ValueError("zip is required for scope=zip")
        if self.scope == "pageIds" and not self.pageIds:
            raise ValueError("pageIds must be a non-empty list for scope=pageIds")
        return self

    def filters(self) -> list[tuple]:
        if self.scope == "serviceKey":
            return [("service.key", "==", self.serviceKey)]
        if self.scope == "zip":
            return [("zip", "==", self.zip)]
        return []

    def snapshot(self) -> dict:
        data = {"scope": self.scope}
        if self.scope == "serviceKey":
            data["serviceKey"] = self.serviceKey
        elif self.scope == "zip":
            data["zip"] = self.zip
        elif self.scope == "pageIds":
            data["pageIds"] = self.pageIds
        return data


def _percent(done: int, total: int) -> int:
    if total <= 0:
        return 100 if done else 0
    return min(100, round(done * 100 / total))


def build_health_patch(
    evaluation: dict, duplicates: list[dict], scanned_at: str
) -> dict:
    """Nested health snapshot plus the flattened fields list views filter on."""
    missing = evaluation["missingRequired"]
    qa_fails = evaluation["qaFails"]
    score = score_health(len(missing), qa_fails, len(duplicates))
    status = derive_status(len(missing), qa_fails, len(duplicates))
    return {
        "health": {
            "scannedAt": scanned_at,
            "version": PAGE_HEALTH_VERSION,
            "status": status,
            "missingRequired": missing,
            "qaFails": qa_fails,
            "duplicates": duplicates,
            "score": score,
            "summary": {
                "missingCount": len(missing),
                "duplicateCount": len(duplicates),
                "qaFailCount": len(qa_fails),
            },
        },
        "healthStatus": status,
        "healthScore": score,
        "missingCount": len(missing),
        "duplicateCount": len(duplicates),
        "qaFailCount": len(qa_fails),
        "healthMissingSections": missing,
        "healthDuplicateSections": [d["sectionKey"] for d in duplicates],
        "healthScannedAt": scanned_at,
    }


class HealthScanRunner:
    """Creates health scan jobs and runs them as background tasks."""

    def __init__(
        self,
        store: DocumentStore,
        page_size: int = HEALTH_SCAN_PAGE_SIZE,
        fingerprints: Optional[FingerprintIndex] = None,
        now: Callable[[], str] = utcnow,
    ):
        self.store = store
        self.page_size = page_size
        self.fingerprints = fingerprints or FingerprintIndex(store, clock=now)
        self._now = now
        self._tasks: set[asyncio.Task] = set()

    async def submit(self, request: HealthScanRequest) -> str:
        now = self._now()
        job_id = await self.store.add(SCAN_JOBS_COLLECTION, {
            "status": "queued",
            "input": request.snapshot(),
            "phase": None,
            "progress": {"done": 0, "indexed": 0, "total": 0, "percent": 0},
            "output": None,
            "createdAt": now,
            "updatedAt": now,
        })
        logger.info(f"[{job_id}] Health scan queued ({request.scope})")
        task = asyncio.create_task(self.run_scan(job_id, request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job_id

    async def wait(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def status(self, job_id: str) -> Optional[dict]:
        job = await self.store.get(SCAN_JOBS_COLLECTION, job_id)
        if job is None:
            return None
        return {
            "ok": True,
            "jobId": job_id,
            "status": job.get("status"),
            "phase": job.get("phase"),
            "progress": job.get("progress") or {"done": 0, "indexed": 0, "total": 0, "percent": 0},
            "input": job.get("input"),
            "output": job.get("output"),
            "errorMessage": job.get("errorMessage"),
            "errorCode": job.get("errorCode"),
            "createdAt": job.get("createdAt"),
            "updatedAt": job.get("updatedAt"),
            "finishedAt": job.get("finishedAt"),
        }

    async def _update_job(self, job_id: str, patch: dict) -> None:
        await self.store.set(SCAN_JOBS_COLLECTION, job_id, {**patch, "updatedAt": self._now()}, merge=True)

    async def _progress(self, job_id: str, phase: str, indexed: int, done: int, total: int) -> None:
        """`indexed` counts the first pass and `done` the second; percent spans both."""
        await self._update_job(job_id, {
            "phase": phase,
            "progress": {
                "done": done,
                "indexed": indexed,
                "total": total,
                "percent": _percent(indexed + done, 2 * total),
            },
        })

    def _fingerprints(self, page: dict, section_text: dict[str, str]) -> list[tuple[str, str, str]]:
        """(scope, sectionKey, hash) for every non-empty required section plus the slug path."""
        stopwords = page_stopwords(page)
        scope = page_service_key(page)
        out = []
        for key in REQUIRED_SECTIONS:
            normalized = normalize_text(section_text.get(key) or "", stopwords)
            if normalized:
                out.append((scope, key, hash_text(normalized)))
        slug_path = str(page.get("slugPath") or "").strip().lower()
        if slug_path:
            out.append((GLOBAL_SCOPE, SLUG_SECTION, hash_text(slug_path)))
        return out

    async def index_page(self, page: dict) -> None:
        """Record the page's fingerprints without touching the page itself."""
        evaluation = evaluate_page(page)
        for scope, key, fp in self._fingerprints(page, evaluation["sectionText"]):
            await self.fingerprints.record_occurrence(scope, key, fp, page["id"])

    async def scan_page(self, page: dict) -> dict:
        """Evaluate one page, record its fingerprints and merge the health snapshot onto it."""
        page_id = page["id"]
        evaluation = evaluate_page(page)

        duplicates = []
        for scope, key, fp in self._fingerprints(page, evaluation["sectionText"]):
            hit = await self.fingerprints.record_occurrence(scope, key, fp, page_id)
            if hit["count"] > 1:
                duplicates.append(self._duplicate(key, fp, hit, page_id))

        patch = build_health_patch(evaluation, duplicates, self._now())
        await self.store.set(PAGES_COLLECTION, page_id, patch, merge=True)
        return patch

    @staticmethod
    def _duplicate(section_key: str, fingerprint: str, hit: dict, page_id: str) -> dict:
        others = [p for p in hit["samplePageIds"] if p != page_id]
        return {
            "sectionKey": section_key,
            "fingerprint": fingerprint,
            "sameServiceCount": hit["count"],
            "samplePageIds": others[:DUPLICATE_SAMPLE_SIZE],
        }

    async def _targets(self, request: HealthScanRequest) -> AsyncIterator[tuple[list[dict], int]]:
        """Yield (pages, visited) per chunk; `visited` includes requested ids that no longer exist."""
        if request.scope == "pageIds":
            ids = request.pageIds or []
            for start in range(0, len(ids), ID_CHUNK_SIZE):
                chunk = ids[start:start + ID_CHUNK_SIZE]
                pages = [p for p in await self.store.get_all(PAGES_COLLECTION, chunk) if p is not None]
                yield pages, len(chunk)
            return

        filters = request.filters()
        cursor = None
        while True:
            batch = await self.store.query(PAGES_COLLECTION, filters, start_after=cursor, limit=self.page_size)
            if not batch:
                return
            yield batch, len(batch)
            cursor = batch[-1]["id"]
            if len(batch) < self.page_size:
                return

    async def run_scan(self, job_id: str, request: HealthScanRequest) -> None:
        counts = {"scanned": 0, "updated": 0, "warns": 0, "fails": 0}
        per_page = request.scope == "pageIds"

        try:
            if per_page:
                total = len(request.pageIds or [])
            else:
                total = await self.store.count(PAGES_COLLECTION, request.filters())
            await self._update_job(job_id, {
                "status": "running",
                "phase": "indexing",
                "startedAt": self._now(),
                "progress": {"done": 0, "indexed": 0, "total": total, "percent": 0},
            })
            logger.info(f"[{job_id}] Scanning {total} pages ({request.scope})")

            # Index every target first so duplicate counts don't depend on scan order
            indexed = 0
            async for pages, visited in self._targets(request):
                for page in pages:
                    await self.index_page(page)
                    if per_page:
                        indexed += 1
                        await self._progress(job_id, "indexing", indexed, 0, total)
                indexed += visited - (len(pages) if per_page else 0)
                total = max(total, indexed)
                await self._progress(job_id, "indexing", indexed, 0, total)

            done = 0
            async for pages, visited in self._targets(request):
                for page in pages:
                    patch = await self.scan_page(page)
                    counts["scanned"] += 1
                    counts["updated"] += 1
                    if patch["healthStatus"] == "warn":
                        counts["warns"] += 1
                    elif patch["healthStatus"] == "fail":
                        counts["fails"] += 1
                    if per_page:
                        done += 1
                        await self._progress(job_id, "scoring", indexed, done, total)
                done += visited - (len(pages) if per_page else 0)
                # Pages added mid-scan can push done past the initial count
                total = max(total, done)
                await self._progress(job_id, "scoring", indexed, done, total)

            await self._update_job(job_id, {
                "status": "succeeded",
                "phase": None,
                "output": counts,
                "progress": {"done": total, "indexed": total, "total": total, "percent": 100},
                "finishedAt": self._now(),
            })
            logger.info(
                f"[{job_id}] Health scan done: {counts['scanned']} scanned, "
                f"{counts['warns']} warn, {counts['fails']} fail"
            )

        except Exception as e:
            logger.error(f"[{job_id}] Health scan failed after {counts['scanned']} pages: {e}", exc_info=True)
            try:
                await self._update_job(job_id, {
                    "status": "error",
                    "phase": None,
                    "errorMessage": str(e) or type(e).__name__,
                    "errorCode": e.code if isinstance(e, StoreWriteError) else "scan_failed",
                    "output": counts,
                    "finishedAt": self._now(),
                })
            except StoreWriteError:
                logger.error(f"[{job_id}] Could not record scan error", exc_info=True)
