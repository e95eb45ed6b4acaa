"""
page_admin.py — admin-side reads and bulk actions over generated pages.

    health_list()        filtered, cursor-paginated health rows (+ CSV rendering)
    health_summary()     corpus-wide health totals and the most common problem sections
    publish_by_filter()  flip status for every matching page through bounded write batches
"""

import csv
import io
import logging
from collections import Counter
from typing import Optional

from database import DocumentStore, utcnow
from health_scan import PAGES_COLLECTION, SCAN_JOBS_COLLECTION

logger = logging.getLogger("pagegen.admin")

LIST_DEFAULT_LIMIT = 50
LIST_MAX_LIMIT = 200
PUBLISH_DEFAULT_MAX = 1000
PUBLISH_MAX = 5000
SUMMARY_SAMPLE = 200
SUMMARY_TOP = 5

CSV_COLUMNS = [
    "id", "slugPath", "zip", "serviceKey", "healthStatus",
    "missingCount", "qaFailCount", "duplicateCount", "scannedAt",
]


def _health_row(page: dict) -> dict:
    service = page.get("service") or {}
    health = page.get("health") or {}
    return {
        "id": page["id"],
        "slugPath": page.get("slugPath"),
        "zip": page.get("zip"),
        "serviceKey": service.get("key") or service.get("slug"),
        "status": page.get("status"),
        "healthStatus": page.get("healthStatus"),
        "healthScore": health.get("score"),
        "missingCount": page.get("missingCount") or 0,
        "qaFailCount": page.get("qaFailCount") or 0,
        "duplicateCount": page.get("duplicateCount") or 0,
        "missingSections": page.get("healthMissingSections") or [],
        "duplicateSections": page.get("healthDuplicateSections") or [],
        "scannedAt": health.get("scannedAt"),
    }


async def health_list(
    store: DocumentStore,
    status: Optional[str] = None,
    service_key: Optional[str] = None,
    zip_code: Optional[str] = None,
    cursor: Optional[str] = None,
    limit: int = LIST_DEFAULT_LIMIT,
) -> dict:
    filters = []
    if status:
        filters.append(("healthStatus", "==", status))
    if service_key:
        filters.append(("service.key", "==", service_key))
    if zip_code:
        filters.append(("zip", "==", zip_code))

    limit = max(1, min(limit, LIST_MAX_LIMIT))
    pages = await store.query(PAGES_COLLECTION, filters, start_after=cursor, limit=limit)
    return {
        "ok": True,
        "items": [_health_row(p) for p in pages],
        "nextCursor": pages[-1]["id"] if len(pages) == limit else None,
    }


def rows_to_csv(rows: list[dict]) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=CSV_COLUMNS, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return buf.getvalue()


async def health_summary(store: DocumentStore) -> dict:
    total = await store.count(PAGES_COLLECTION)
    scanned = await store.count(PAGES_COLLECTION, [("healthStatus", "in", ["ok", "warn", "fail"])])
    warn = await store.count(PAGES_COLLECTION, [("healthStatus", "==", "warn")])
    fail = await store.count(PAGES_COLLECTION, [("healthStatus", "==", "fail")])
    missing = await store.count(PAGES_COLLECTION, [("missingCount", ">", 0)])
    duplicates = await store.count(PAGES_COLLECTION, [("duplicateCount", ">", 0)])

    recent = await store.query(
        PAGES_COLLECTION,
        [("healthStatus", "in", ["warn", "fail"])],
        order_by="healthScannedAt",
        descending=True,
        limit=SUMMARY_SAMPLE,
    )
    missing_counter: Counter = Counter()
    duplicate_counter: Counter = Counter()
    for page in recent:
        missing_counter.update(page.get("healthMissingSections") or [])
        duplicate_counter.update(page.get("healthDuplicateSections") or [])

    last = await store.query(
        SCAN_JOBS_COLLECTION,
        [("status", "==", "succeeded")],
        order_by="finishedAt",
        descending=True,
        limit=1,
    )

    return {
        "ok": True,
        "totals": {
            "total": total,
            "scanned": scanned,
            "warn": warn,
            "fail": fail,
            "missing": missing,
            "duplicates": duplicates,
        },
        "topMissingSections": [{"sectionKey": k, "count": c} for k, c in missing_counter.most_common(SUMMARY_TOP)],
        "topDuplicateSections": [{"sectionKey": k, "count": c} for k, c in duplicate_counter.most_common(SUMMARY_TOP)],
        "lastScanAt": last[0].get("finishedAt") if last else None,
    }


async def publish_by_filter(
    store: DocumentStore,
    action: str,
    service_key: Optional[str] = None,
    county_slug: Optional[str] = None,
    max_pages: Optional[int] = None,
) -> dict:
    """Set `status` to published/draft on every matching page, up to `max_pages`."""
    if action not in ("publish", "unpublish"):
        raise ValueError("action must be 'publish' or 'unpublish'")
    cap = max(1, min(max_pages or PUBLISH_DEFAULT_MAX, PUBLISH_MAX))

    filters = []
    if service_key:
        filters.append(("service.key", "==", service_key))
    if county_slug:
        filters.append(("countySlug", "==", county_slug))

    publish = action == "publish"
    updated = 0
    cursor = None
    batch = store.batch()

    while updated < cap:
        pages = await store.query(
            PAGES_COLLECTION, filters, start_after=cursor, limit=min(store.batch_limit, cap - updated)
        )
        if not pages:
            break
        now = utcnow()
        for page in pages:
            batch.update(PAGES_COLLECTION, page["id"], {
                "status": "published" if publish else "draft",
                "publishedAt": now if publish else None,
                "updatedAt": now,
            })
            if batch.full:
                updated += await batch.commit()
        updated += await batch.commit()
        cursor = pages[-1]["id"]

    capped = False
    if updated >= cap and cursor is not None:
        capped = bool(await store.query(PAGES_COLLECTION, filters, start_after=cursor, limit=1))

    logger.info(f"publish-by-filter {action}: {updated} pages (service={service_key}, county={county_slug}, capped={capped})")
    return {"ok": True, "updated": updated, "capped": capped}
