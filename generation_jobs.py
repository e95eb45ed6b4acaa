"""
generation_jobs.py — batch generation of location × service landing pages.

Flow:
    normalize_selection(payload)        # alias mapping + validation, fails closed
    await runner.submit(selection)      # resolve refs, create job record, start task
    await runner.status(job_id)         # polling view
    await runner.cancel(job_id)         # cooperative cancel flag

The job task walks the (possibly capped) cross-product location-major,
service-minor, in sub-batches. The cancel flag is re-read before each
sub-batch; progress is written after every item.
"""

import asyncio
import logging
import re
import time
import traceback
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from config import (
    GENERATION_BATCH_SIZE,
    GENERATION_DEFAULT_MAX_PAGES,
    GENERATION_FAIL_FAST,
    GENERATION_MAX_PAGES_LIMIT,
)
from content_generator import (
    GENERATOR_NAME,
    GENERATOR_VERSION,
    compute_slug_path,
    generate_page_content,
    page_doc_id,
    slugify,
)
from database import DocumentStore, StoreWriteError, utcnow

logger = logging.getLogger("pagegen.jobs")

PAGES_COLLECTION = "pages"
JOBS_COLLECTION = "generation_jobs"
PLACES_COLLECTION = "geo_zip_places"
SERVICES_COLLECTION = "services"

TERMINAL_STATUSES = ("done", "canceled", "error")
FAILURE_SAMPLE_LIMIT = 20

# ---------------------------------------------------------------------------
# Selection payload
# ---------------------------------------------------------------------------

LOCATION_ALIASES = ("locationRefs", "zipPlaceIds", "placeIds", "selectedZipPlaceIds", "places")
SERVICE_ALIASES = ("serviceRefs", "serviceKeys", "serviceIds", "services", "selectedServices")
COUNTY_ALIASES = ("countySlug", "county")
PLAIN_FIELDS = ("publish", "maxPages")

_LOCATION_ITEM_KEYS = ("id", "placeId")
_SERVICE_ITEM_KEYS = ("key", "serviceKey", "id", "slug")


class InvalidSelectionError(ValueError):
    """Malformed generation payload. Never results in a job."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}


class ResolutionError(Exception):
    """Some location/service refs did not match anything in the store."""

    def __init__(self, missing_location_refs: list[str], missing_service_refs: list[str]):
        self.missing_location_refs = missing_location_refs
        self.missing_service_refs = missing_service_refs
        super().__init__(
            f"Unresolved refs: locations={missing_location_refs} services={missing_service_refs}"
        )


class GenerationSelection(BaseModel):
    """Canonical selection after alias mapping."""

    model_config = ConfigDict(extra="forbid")

    locationRefs: list[str]
    serviceRefs: list[str]
    publish: bool = False
    maxPages: int = GENERATION_DEFAULT_MAX_PAGES
    countySlug: Optional[str] = None

    @field_validator("locationRefs", "serviceRefs")
    @classmethod
    def refs_present(cls, v: list[str]) -> list[str]:
        refs = []
        for ref in v:
            ref = ref.strip()
            if ref and ref not in refs:
                refs.append(ref)
        if not refs:
            raise ValueError("At least one ref is required")
        return refs

    @field_validator("maxPages")
    @classmethod
    def max_pages_bounds(cls, v: int) -> int:
        if v < 1:
            raise ValueError("maxPages must be a positive integer")
        return min(v, GENERATION_MAX_PAGES_LIMIT)

    @field_validator("countySlug")
    @classmethod
    def county_lower(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().lower() if v else None


def _pick_alias(raw: dict, aliases: tuple) -> tuple[Optional[str], Any]:
    present = [a for a in aliases if a in raw]
    if len(present) > 1:
        raise InvalidSelectionError(f"Conflicting fields: {', '.join(present)}", {"fields": present})
    if not present:
        return None, None
    return present[0], raw[present[0]]


def _coerce_refs(field: str, value: Any, item_keys: tuple) -> list[str]:
    if not isinstance(value, list):
        raise InvalidSelectionError(f"{field} must be a list", {"field": field})
    refs = []
    for item in value:
        if isinstance(item, str):
            refs.append(item)
            continue
        if isinstance(item, dict):
            ref = next((item[k] for k in item_keys if isinstance(item.get(k), str) and item[k]), None)
            if ref:
                refs.append(ref)
                continue
        raise InvalidSelectionError(f"Unrecognised item in {field}", {"field": field, "item": item})
    return refs


def normalize_selection(raw: Any) -> GenerationSelection:
    """Map the accepted field aliases onto one canonical selection, rejecting anything else."""
    if not isinstance(raw, dict):
        raise InvalidSelectionError("Request body must be a JSON object.")

    known = set(LOCATION_ALIASES + SERVICE_ALIASES + COUNTY_ALIASES + PLAIN_FIELDS)
    unknown = sorted(k for k in raw if k not in known)
    if unknown:
        raise InvalidSelectionError(f"Unrecognised fields: {', '.join(unknown)}", {"fields": unknown})

    loc_field, loc_value = _pick_alias(raw, LOCATION_ALIASES)
    svc_field, svc_value = _pick_alias(raw, SERVICE_ALIASES)
    county_field, county_value = _pick_alias(raw, COUNTY_ALIASES)
    if loc_field is None:
        raise InvalidSelectionError("No places selected", {"accepted": list(LOCATION_ALIASES)})
    if svc_field is None:
        raise InvalidSelectionError("No services selected", {"accepted": list(SERVICE_ALIASES)})

    mapped: dict[str, Any] = {
        "locationRefs": _coerce_refs(loc_field, loc_value, _LOCATION_ITEM_KEYS),
        "serviceRefs": _coerce_refs(svc_field, svc_value, _SERVICE_ITEM_KEYS),
    }
    if county_value is not None:
        mapped["countySlug"] = county_value
    if "publish" in raw:
        if not isinstance(raw["publish"], bool):
            raise InvalidSelectionError("publish must be a boolean")
        mapped["publish"] = raw["publish"]
    if raw.get("maxPages") is not None:
        if isinstance(raw["maxPages"], bool) or not isinstance(raw["maxPages"], int):
            raise InvalidSelectionError("maxPages must be a positive integer")
        mapped["maxPages"] = raw["maxPages"]

    try:
        return GenerationSelection.model_validate(mapped)
    except ValidationError as e:
        errors = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]
        raise InvalidSelectionError(errors[0]["msg"] if errors else "Invalid payload", {"errors": errors}) from e


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

_TRAILING_ZIP = re.compile(r"(\d{5})$")


def extract_zip(ref: str) -> Optional[str]:
    m = _TRAILING_ZIP.search((ref or "").strip())
    return m.group(1) if m else None


async def resolve_location_ref(store: DocumentStore, ref: str) -> list[dict]:
    """Doc id, then slug, then key, then postal code (every place in that zip)."""
    ref = (ref or "").strip()
    if not ref:
        return []

    by_id = await store.get(PLACES_COLLECTION, ref)
    if by_id:
        return [by_id]

    for field in ("slug", "key"):
        hits = await store.query(PLACES_COLLECTION, [(field, "==", ref)], limit=1)
        if hits:
            return hits

    zip_code = extract_zip(ref)
    if zip_code:
        return await store.query(PLACES_COLLECTION, [("zip", "==", zip_code)])
    return []


def _service_record(doc: dict) -> dict:
    key = doc.get("key") or doc.get("slug") or doc.get("serviceKey") or doc["id"]
    return {
        "key": key,
        "name": doc.get("name") or doc.get("label") or key,
        "category": doc.get("category") or doc.get("groupKey"),
    }


async def resolve_service_ref(store: DocumentStore, ref: str) -> Optional[dict]:
    ref = (ref or "").strip()
    if not ref:
        return None
    doc = await store.get(SERVICES_COLLECTION, ref)
    if doc is None:
        for field in ("key", "slug"):
            hits = await store.query(SERVICES_COLLECTION, [(field, "==", ref)], limit=1)
            if hits:
                doc = hits[0]
                break
    return _service_record(doc) if doc else None


async def resolve_selection(store: DocumentStore, selection: GenerationSelection) -> tuple[list[dict], list[dict]]:
    """Canonical place docs and service records, de-duplicated, in selection order."""
    places: dict[str, dict] = {}
    missing_locations: list[str] = []
    for ref in selection.locationRefs:
        hits = await resolve_location_ref(store, ref)
        if not hits:
            missing_locations.append(ref)
        for place in hits:
            places.setdefault(place["id"], place)

    services: dict[str, dict] = {}
    missing_services: list[str] = []
    for ref in selection.serviceRefs:
        record = await resolve_service_ref(store, ref)
        if record is None:
            missing_services.append(ref)
        else:
            services.setdefault(record["key"], record)

    if missing_locations or missing_services:
        raise ResolutionError(missing_locations, missing_services)
    return list(places.values()), list(services.values())


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def plan_combinations(
    place_ids: list[str], service_keys: list[str], max_pages: Optional[int]
) -> tuple[list[tuple[str, str]], list[str], list[str]]:
    """
    Location-major cross-product truncated to `max_pages`, plus the distinct
    place ids and service keys the truncated list actually needs.
    """
    combos = [(p, s) for p in place_ids for s in service_keys]
    if max_pages is not None and max_pages < len(combos):
        combos = combos[:max_pages]
    needed_places = list(dict.fromkeys(p for p, _ in combos))
    needed_services = list(dict.fromkeys(s for _, s in combos))
    return combos, needed_places, needed_services


def page_identity(place: dict, service: dict) -> dict:
    """Naming fields and the deterministic doc id for one place/service pair."""
    place_name = place.get("placeName") or place.get("name") or "Place"
    place_slug = place.get("slug") or slugify(place_name)
    county_slug = place.get("countySlug") or ""
    zip_code = place.get("zip") or place.get("zipCode") or ""
    return {
        "docId": page_doc_id(county_slug, zip_code, place_slug, service["key"]),
        "slugPath": compute_slug_path(county_slug, zip_code, place_slug, service["key"]),
        "placeName": place_name,
        "placeSlug": place_slug,
        "countySlug": county_slug,
        "zip": zip_code,
    }


def build_page_document(place: dict, service: dict, publish: bool, now: str, generator=generate_page_content) -> tuple[str, dict]:
    """Identity key and full page document for one place/service pair."""
    ident = page_identity(place, service)
    doc_id = ident["docId"]
    slug_path = ident["slugPath"]
    place_name = ident["placeName"]
    place_slug = ident["placeSlug"]
    county_slug = ident["countySlug"]
    zip_code = ident["zip"]

    generated = generator(
        {"name": place_name, "slug": place_slug},
        {"name": service["name"], "slug": service["key"], "category": service.get("category")},
        slug_path=slug_path,
    )
    subheadline = ", ".join(v for v in (zip_code, place.get("countyName") or county_slug) if v)

    page = {
        "county": {"name": place.get("countyName"), "slug": county_slug, "countyId": place.get("countyId")},
        "zip": zip_code,
        "place": {"name": place_name, "slug": place_slug, "zipPlaceId": place["id"]},
        "placeName": place_name,
        "placeSlug": place_slug,
        "countyName": place.get("countyName"),
        "countySlug": county_slug,
        "locationLabel": place_name,
        "service": {
            "name": service["name"],
            "slug": service["key"],
            "key": service["key"],
            "category": service.get("category"),
        },
        "slugPath": slug_path,
        "status": "published" if publish else "draft",
        "seo": generated["seo"],
        "content": {
            "headline": f"{service['name']} in {place_name}",
            "subheadline": subheadline,
            "h1": generated["h1"],
            "sections": generated["sections"],
            "faqs": generated["faqs"],
            "ctas": generated["ctas"],
            "schemaJsonLd": generated["schemaJsonLd"],
        },
        "generation": {"version": GENERATOR_VERSION, "lastGeneratedAt": now, "generator": GENERATOR_NAME},
        "createdAt": now,
        "updatedAt": now,
        "publishedAt": now if publish else None,
    }
    return doc_id, page


def _elapsed_since(iso: Optional[str]) -> Optional[float]:
    if not iso:
        return None
    try:
        started = datetime.fromisoformat(iso)
    except ValueError:
        return None
    return max(0.0, (datetime.now(timezone.utc) - started).total_seconds())


def job_status_view(job_id: str, job: dict) -> dict:
    """Polling payload for a generation job record."""
    completed = job.get("completed") or 0
    total = job.get("total") or 0
    elapsed = _elapsed_since(job.get("startedAt"))
    if job.get("finishedAt") and job.get("startedAt"):
        try:
            elapsed = (
                datetime.fromisoformat(job["finishedAt"]) - datetime.fromisoformat(job["startedAt"])
            ).total_seconds()
        except ValueError:
            pass
    eta = job.get("estimatedSecondsRemaining")
    if not isinstance(eta, (int, float)):
        eta = max(0.0, (total - completed) * elapsed / completed) if completed and total and elapsed else None

    return {
        "ok": True,
        "jobId": job_id,
        "status": job.get("status"),
        "total": total,
        "completed": completed,
        "failed": job.get("failed") or 0,
        "estimatedSecondsRemaining": eta,
        "elapsedSeconds": elapsed,
        "currentOperation": job.get("currentOperation"),
        "canceled": bool(job.get("canceled")),
        "errorMessage": job.get("errorMessage"),
        "errorCode": job.get("errorCode"),
        "errorStack": job.get("errorStack"),
        "failures": job.get("failures") or [],
        "selectionSnapshot": job.get("selectionSnapshot"),
        "startedAt": job.get("startedAt"),
        "updatedAt": job.get("updatedAt"),
        "finishedAt": job.get("finishedAt"),
    }


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class GenerationJobRunner:
    """
    Creates generation jobs and drives them as background asyncio tasks.

    One task per job, items processed one at a time. `fail_fast=True` stops the
    whole job on the first item error; otherwise failures are counted and the
    loop carries on.
    """

    def __init__(
        self,
        store: DocumentStore,
        batch_size: int = GENERATION_BATCH_SIZE,
        fail_fast: bool = GENERATION_FAIL_FAST,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], str] = utcnow,
        generator: Callable[..., dict] = generate_page_content,
    ):
        self.store = store
        self.batch_size = batch_size
        self.fail_fast = fail_fast
        self._clock = clock
        self._now = now
        self._generator = generator
        self._tasks: set[asyncio.Task] = set()

    async def submit(self, selection: GenerationSelection) -> dict:
        """Resolve the selection, persist a running job and start it. Returns `{jobId, total}`."""
        places, services = await resolve_selection(self.store, selection)
        place_ids = [p["id"] for p in places]
        service_keys = [s["key"] for s in services]
        combos, needed_places, needed_services = plan_combinations(place_ids, service_keys, selection.maxPages)

        now = self._now()
        job_id = await self.store.add(JOBS_COLLECTION, {
            "status": "running",
            "total": len(combos),
            "completed": 0,
            "failed": 0,
            "canceled": False,
            "startedAt": now,
            "updatedAt": now,
            "finishedAt": None,
            "estimatedSecondsRemaining": None,
            "currentOperation": None,
            "errorMessage": None,
            "selectionSnapshot": {
                "countySlug": selection.countySlug,
                "zipPlaceIds": needed_places,
                "serviceKeys": needed_services,
                "maxPages": selection.maxPages,
                "publish": selection.publish,
            },
        })
        logger.info(
            f"[{job_id}] Generation job queued: {len(combos)} pages "
            f"({len(needed_places)} places × {len(needed_services)} services, cap {selection.maxPages})"
        )

        by_key = {s["key"]: s for s in services}
        task = asyncio.create_task(self.run_job(job_id, combos, selection.publish, services=by_key))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return {"jobId": job_id, "total": len(combos)}

    async def wait(self) -> None:
        """Block until every job started by this runner has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _load_inputs(
        self, combos: list[tuple[str, str]], services: Optional[dict[str, dict]] = None
    ) -> tuple[dict, dict]:
        """Place docs by id and service records by key. Records resolved at submit time are reused as-is."""
        place_ids = list(dict.fromkeys(p for p, _ in combos))
        place_docs = await self.store.get_all(PLACES_COLLECTION, place_ids)
        places = {d["id"]: d for d in place_docs if d}

        if services is not None:
            return places, services

        # Combos carry canonical keys, so match on the key field before any doc id
        services = {}
        for key in dict.fromkeys(s for _, s in combos):
            hits = await self.store.query(SERVICES_COLLECTION, [("key", "==", key)], limit=1)
            record = _service_record(hits[0]) if hits else await resolve_service_ref(self.store, key)
            if record and record["key"] == key:
                services[key] = record
        return places, services

    async def _update_job(self, job_id: str, patch: dict) -> None:
        await self.store.set(JOBS_COLLECTION, job_id, {**patch, "updatedAt": self._now()}, merge=True)

    async def run_job(
        self,
        job_id: str,
        combos: list[tuple[str, str]],
        publish: bool,
        services: Optional[dict[str, dict]] = None,
    ) -> None:
        total = len(combos)
        completed = 0
        failed = 0
        failures: list[dict] = []
        started = self._clock()
        logger.info(f"[{job_id}] Generation starting ({total} items, batch {self.batch_size})")

        try:
            places, services = await self._load_inputs(combos, services)

            for start in range(0, total, self.batch_size):
                job = await self.store.get(JOBS_COLLECTION, job_id)
                if job and job.get("canceled"):
                    logger.info(f"[{job_id}] Cancel observed after {completed}/{total}")
                    await self._update_job(job_id, {
                        "status": "canceled",
                        "completed": completed,
                        "finishedAt": self._now(),
                        "estimatedSecondsRemaining": None,
                    })
                    return

                for place_id, service_key in combos[start:start + self.batch_size]:
                    place = places.get(place_id)
                    service = services.get(service_key)
                    label = f"{(place or {}).get('countySlug', '?')} - {(place or {}).get('placeName') or place_id} - {(service or {}).get('name') or service_key}"
                    try:
                        if place is None or service is None:
                            raise LookupError(f"Input record vanished: place={place_id} service={service_key}")
                        await self._materialize(place, service, publish)
                    except Exception as e:
                        if self.fail_fast:
                            raise
                        failed += 1
                        if len(failures) < FAILURE_SAMPLE_LIMIT:
                            failures.append({"placeId": place_id, "serviceKey": service_key, "error": str(e)})
                        logger.warning(f"[{job_id}] Item failed, continuing: {label}: {type(e).__name__}: {e}")

                    completed += 1
                    elapsed = max(0.001, self._clock() - started)
                    eta = (total - completed) * (elapsed / completed)
                    patch = {
                        "completed": completed,
                        "estimatedSecondsRemaining": eta,
                        "currentOperation": label,
                    }
                    if failed:
                        patch.update({"failed": failed, "failures": failures})
                    await self._update_job(job_id, patch)

            await self._update_job(job_id, {
                "status": "done",
                "completed": completed,
                "failed": failed,
                "finishedAt": self._now(),
                "estimatedSecondsRemaining": 0,
            })
            logger.info(f"[{job_id}] Generation done: {completed}/{total} ({failed} failed)")

        except Exception as e:
            logger.error(f"[{job_id}] Generation failed after {completed}/{total}: {e}", exc_info=True)
            code = e.code if isinstance(e, StoreWriteError) else "generation_failed"
            try:
                await self._update_job(job_id, {
                    "status": "error",
                    "completed": completed,
                    "errorMessage": str(e) or type(e).__name__,
                    "errorCode": code,
                    "errorStack": traceback.format_exc(),
                    "finishedAt": self._now(),
                })
            except StoreWriteError:
                logger.error(f"[{job_id}] Could not record job error", exc_info=True)

    async def _materialize(self, place: dict, service: dict, publish: bool) -> bool:
        """Create the page for this pair unless one already exists. Returns True when created."""
        # Existing pages are skipped before the generator runs
        if await self.store.get(PAGES_COLLECTION, page_identity(place, service)["docId"]) is not None:
            return False
        doc_id, page = build_page_document(place, service, publish, self._now(), self._generator)
        await self.store.set(PAGES_COLLECTION, doc_id, page, merge=True)
        return True

    async def status(self, job_id: str) -> Optional[dict]:
        job = await self.store.get(JOBS_COLLECTION, job_id)
        return job_status_view(job_id, job) if job else None

    async def cancel(self, job_id: str) -> Optional[dict]:
        """Raise the cooperative cancel flag. Terminal jobs are left untouched."""
        job = await self.store.get(JOBS_COLLECTION, job_id)
        if job is None:
            return None
        if job.get("status") not in TERMINAL_STATUSES:
            await self._update_job(job_id, {"canceled": True, "cancelRequestedAt": self._now()})
            logger.info(f"[{job_id}] Cancel requested")
            job = await self.store.get(JOBS_COLLECTION, job_id)
        return job_status_view(job_id, job)

    async def regenerate_page(self, page_id: str) -> Optional[dict]:
        """Force a fresh generation for an existing page, keeping its identity and URL."""
        page = await self.store.get(PAGES_COLLECTION, page_id)
        if page is None:
            return None
        service = page.get("service") or {}
        place_name = page.get("placeName") or (page.get("place") or {}).get("name") or "Place"
        place_slug = page.get("placeSlug") or (page.get("place") or {}).get("slug") or slugify(place_name)
        service_key = service.get("key") or service.get("slug")
        generated = self._generator(
            {"name": place_name, "slug": place_slug},
            {"name": service.get("name") or service_key, "slug": service_key, "category": service.get("category")},
            slug_path=page.get("slugPath"),
        )
        now = self._now()
        version = int((page.get("generation") or {}).get("version") or 0) + 1
        patch = {
            "seo": generated["seo"],
            "content": {
                "h1": generated["h1"],
                "sections": generated["sections"],
                "faqs": generated["faqs"],
                "ctas": generated["ctas"],
                "schemaJsonLd": generated["schemaJsonLd"],
            },
            "generation": {"version": version, "lastGeneratedAt": now, "generator": GENERATOR_NAME},
            "updatedAt": now,
        }
        await self.store.set(PAGES_COLLECTION, page_id, patch, merge=True)
        logger.info(f"Regenerated page {page_id} (generation v{version})")
        return await self.store.get(PAGES_COLLECTION, page_id)
