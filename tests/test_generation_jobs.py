"""Tests for selection normalization, resolution and the generation job runner."""

import pytest

from database import StoreWriteError
from generation_jobs import (
    JOBS_COLLECTION,
    PAGES_COLLECTION,
    GenerationJobRunner,
    InvalidSelectionError,
    ResolutionError,
    normalize_selection,
    plan_combinations,
    resolve_location_ref,
    resolve_selection,
)
from content_generator import generate_page_content

WINNETKA_ROOF = "los-angeles__91306__winnetka-91306__roof-repair"
WINNETKA_KITCHEN = "los-angeles__91306__winnetka-91306__kitchen-remodel"
CANOGA_ROOF = "los-angeles__91303__canoga-park-91303__roof-repair"
CANOGA_KITCHEN = "los-angeles__91303__canoga-park-91303__kitchen-remodel"


def selection(**overrides):
    payload = {
        "locationRefs": ["p-winnetka", "p-canoga", "p-reseda"],
        "serviceRefs": ["roof-repair", "kitchen-remodel"],
    }
    payload.update(overrides)
    return normalize_selection(payload)


# ---------------------------------------------------------------------------
# Payload normalization
# ---------------------------------------------------------------------------

def test_aliases_map_to_canonical_fields():
    sel = normalize_selection({
        "zipPlaceIds": ["p-winnetka", {"id": "p-canoga"}, "p-winnetka"],
        "serviceKeys": [{"key": "roof-repair"}],
        "publish": True,
        "county": "Los-Angeles",
    })
    assert sel.locationRefs == ["p-winnetka", "p-canoga"]
    assert sel.serviceRefs == ["roof-repair"]
    assert sel.publish is True
    assert sel.countySlug == "los-angeles"
    assert sel.maxPages == 500


@pytest.mark.parametrize("payload", [
    {"locationRefs": ["a"], "placeIds": ["b"], "serviceRefs": ["s"]},
    {"locationRefs": ["a"], "serviceRefs": ["s"], "extra": 1},
    {"locationRefs": [], "serviceRefs": ["s"]},
    {"serviceRefs": ["s"]},
    {"locationRefs": ["a"], "serviceRefs": [42]},
    {"locationRefs": "a", "serviceRefs": ["s"]},
    {"locationRefs": ["a"], "serviceRefs": ["s"], "maxPages": 0},
    {"locationRefs": ["a"], "serviceRefs": ["s"], "maxPages": "10"},
    {"locationRefs": ["a"], "serviceRefs": ["s"], "maxPages": True},
    {"locationRefs": ["a"], "serviceRefs": ["s"], "publish": "yes"},
    ["not", "an", "object"],
])
def test_malformed_payloads_are_rejected(payload):
    with pytest.raises(InvalidSelectionError):
        normalize_selection(payload)


def test_max_pages_clamps_to_limit():
    assert selection(maxPages=5000).maxPages == 1000
    assert selection(maxPages=7).maxPages == 7


# ---------------------------------------------------------------------------
# Resolution and planning
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_location_resolution_ladder(seeded_store):
    assert [p["id"] for p in await resolve_location_ref(seeded_store, "p-canoga")] == ["p-canoga"]
    assert [p["id"] for p in await resolve_location_ref(seeded_store, "winnetka-91306")] == ["p-winnetka"]
    assert [p["id"] for p in await resolve_location_ref(seeded_store, "reseda")] == ["p-reseda"]
    by_zip = await resolve_location_ref(seeded_store, "Reseda CA 91335")
    assert sorted(p["id"] for p in by_zip) == ["p-reseda", "p-west-reseda"]
    assert await resolve_location_ref(seeded_store, "nowhere") == []


@pytest.mark.asyncio
async def test_unresolved_refs_are_listed(seeded_store):
    sel = normalize_selection({"locationRefs": ["p-winnetka", "atlantis"], "serviceRefs": ["roof-repair", "plumbing"]})
    with pytest.raises(ResolutionError) as exc:
        await resolve_selection(seeded_store, sel)
    assert exc.value.missing_location_refs == ["atlantis"]
    assert exc.value.missing_service_refs == ["plumbing"]
    assert await seeded_store.count(JOBS_COLLECTION) == 0


@pytest.mark.asyncio
async def test_service_resolves_by_slug(seeded_store):
    sel = normalize_selection({"locationRefs": ["p-winnetka"], "serviceRefs": ["kitchen-remodeling", "svc-roof"]})
    _, services = await resolve_selection(seeded_store, sel)
    assert [s["key"] for s in services] == ["kitchen-remodel", "roof-repair"]


def test_cap_truncation_is_location_major():
    combos, places, services = plan_combinations(["L1", "L2", "L3"], ["S1", "S2"], 4)
    assert combos == [("L1", "S1"), ("L1", "S2"), ("L2", "S1"), ("L2", "S2")]
    assert places == ["L1", "L2"]
    assert services == ["S1", "S2"]


def test_cap_shrinks_service_set():
    combos, places, services = plan_combinations(["L1", "L2"], ["S1", "S2", "S3"], 1)
    assert combos == [("L1", "S1")]
    assert places == ["L1"]
    assert services == ["S1"]


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_capped_job_materializes_first_pairs(seeded_store):
    runner = GenerationJobRunner(seeded_store)
    job = await runner.submit(selection(maxPages=4))
    await runner.wait()

    assert job["total"] == 4
    status = await runner.status(job["jobId"])
    assert status["status"] == "done"
    assert status["completed"] == status["total"] == 4
    assert status["estimatedSecondsRemaining"] == 0
    assert status["selectionSnapshot"]["zipPlaceIds"] == ["p-winnetka", "p-canoga"]

    pages = await seeded_store.query(PAGES_COLLECTION)
    assert sorted(p["id"] for p in pages) == sorted([WINNETKA_ROOF, WINNETKA_KITCHEN, CANOGA_ROOF, CANOGA_KITCHEN])


@pytest.mark.asyncio
async def test_page_document_shape(seeded_store):
    runner = GenerationJobRunner(seeded_store)
    await runner.submit(selection(locationRefs=["p-winnetka"], serviceRefs=["roof-repair"], publish=True))
    await runner.wait()

    page = await seeded_store.get(PAGES_COLLECTION, WINNETKA_ROOF)
    assert page["slugPath"] == "/los-angeles/91306/n/winnetka-91306/roof-repair"
    assert page["status"] == "published"
    assert page["service"]["key"] == "roof-repair"
    assert page["place"]["zipPlaceId"] == "p-winnetka"
    assert page["content"]["h1"] == "Roof Repair in Winnetka"
    assert page["generation"]["version"] == 1


@pytest.mark.asyncio
async def test_existing_pages_are_not_rewritten(seeded_store):
    runner = GenerationJobRunner(seeded_store)
    await runner.submit(selection(maxPages=2))
    await runner.wait()
    await seeded_store.set(PAGES_COLLECTION, WINNETKA_ROOF, {"content": {"h1": "Edited by hand"}}, merge=True)

    job = await runner.submit(selection(maxPages=6))
    await runner.wait()

    status = await runner.status(job["jobId"])
    assert status["status"] == "done"
    assert status["completed"] == 6
    assert await seeded_store.count(PAGES_COLLECTION) == 6
    page = await seeded_store.get(PAGES_COLLECTION, WINNETKA_ROOF)
    assert page["content"]["h1"] == "Edited by hand"


@pytest.mark.asyncio
async def test_job_created_with_cancel_flag_writes_nothing(seeded_store):
    runner = GenerationJobRunner(seeded_store)
    job_id = await seeded_store.add(JOBS_COLLECTION, {"status": "running", "total": 2, "completed": 0, "canceled": True})
    await runner.run_job(job_id, [("p-winnetka", "roof-repair"), ("p-canoga", "roof-repair")], False)

    status = await runner.status(job_id)
    assert status["status"] == "canceled"
    assert status["completed"] == 0
    assert await seeded_store.count(PAGES_COLLECTION) == 0


class CancelAfterFirstItem(GenerationJobRunner):
    job_id = None

    async def _materialize(self, place, service, publish):
        created = await super()._materialize(place, service, publish)
        if self.job_id:
            await self.cancel(self.job_id)
            self.job_id = None
        return created


@pytest.mark.asyncio
async def test_cancel_stops_at_sub_batch_boundary(seeded_store):
    runner = CancelAfterFirstItem(seeded_store, batch_size=2)
    job_id = await seeded_store.add(JOBS_COLLECTION, {"status": "running", "total": 6, "completed": 0, "canceled": False})
    runner.job_id = job_id
    combos, _, _ = plan_combinations(["p-winnetka", "p-canoga", "p-reseda"], ["roof-repair", "kitchen-remodel"], None)
    await runner.run_job(job_id, combos, False)

    status = await runner.status(job_id)
    assert status["status"] == "canceled"
    assert status["canceled"] is True
    assert status["completed"] == 2
    assert await seeded_store.count(PAGES_COLLECTION) == 2


@pytest.mark.asyncio
async def test_cancel_after_finish_is_a_no_op(seeded_store):
    runner = GenerationJobRunner(seeded_store)
    job = await runner.submit(selection(maxPages=1))
    await runner.wait()

    view = await runner.cancel(job["jobId"])
    assert view["status"] == "done"
    assert view["canceled"] is False
    assert await runner.cancel("missing-job") is None


def exploding_kitchen(location, service, **kwargs):
    if service["slug"] == "kitchen-remodel":
        raise KeyError("template block missing")
    return generate_page_content(location, service, **kwargs)


@pytest.mark.asyncio
async def test_item_error_fails_the_job(seeded_store):
    runner = GenerationJobRunner(seeded_store, generator=exploding_kitchen)
    job = await runner.submit(selection())
    await runner.wait()

    status = await runner.status(job["jobId"])
    assert status["status"] == "error"
    assert status["errorCode"] == "generation_failed"
    assert "template block missing" in status["errorMessage"]
    assert "KeyError" in status["errorStack"]
    assert status["completed"] == 1
    assert await seeded_store.count(PAGES_COLLECTION) == 1


@pytest.mark.asyncio
async def test_item_errors_recorded_when_not_fail_fast(seeded_store):
    runner = GenerationJobRunner(seeded_store, fail_fast=False, generator=exploding_kitchen)
    job = await runner.submit(selection())
    await runner.wait()

    status = await runner.status(job["jobId"])
    assert status["status"] == "done"
    assert status["completed"] == 6
    assert status["failed"] == 3
    assert {f["serviceKey"] for f in status["failures"]} == {"kitchen-remodel"}
    assert await seeded_store.count(PAGES_COLLECTION) == 3


class QuotaRunner(GenerationJobRunner):
    async def _materialize(self, place, service, publish):
        raise StoreWriteError("Quota exceeded for writes", code="quota_exceeded")


@pytest.mark.asyncio
async def test_store_quota_error_is_coded(seeded_store):
    runner = QuotaRunner(seeded_store)
    job = await runner.submit(selection(maxPages=1))
    await runner.wait()

    status = await runner.status(job["jobId"])
    assert status["status"] == "error"
    assert status["errorCode"] == "quota_exceeded"


@pytest.mark.asyncio
async def test_progress_reports_operation_and_timing(seeded_store):
    runner = GenerationJobRunner(seeded_store)
    job = await runner.submit(selection(locationRefs=["p-winnetka"], serviceRefs=["roof-repair"]))
    await runner.wait()

    status = await runner.status(job["jobId"])
    assert status["currentOperation"] == "los-angeles - Winnetka - Roof Repair"
    assert status["finishedAt"] is not None
    assert status["elapsedSeconds"] >= 0


@pytest.mark.asyncio
async def test_regenerate_bumps_version(seeded_store):
    runner = GenerationJobRunner(seeded_store)
    await runner.submit(selection(locationRefs=["p-winnetka"], serviceRefs=["roof-repair"]))
    await runner.wait()
    await seeded_store.set(PAGES_COLLECTION, WINNETKA_ROOF, {"content": {"h1": "stale"}}, merge=True)

    page = await runner.regenerate_page(WINNETKA_ROOF)
    assert page["generation"]["version"] == 2
    assert page["content"]["h1"] == "Roof Repair in Winnetka"
    assert page["slugPath"] == "/los-angeles/91306/n/winnetka-91306/roof-repair"
    assert await runner.regenerate_page("nope") is None


def offline_generator(*args, **kwargs):
    raise RuntimeError("generator offline")


@pytest.mark.asyncio
async def test_existing_page_skips_the_generator(seeded_store):
    first = GenerationJobRunner(seeded_store)
    await first.submit(selection(locationRefs=["p-winnetka"], serviceRefs=["roof-repair"]))
    await first.wait()

    runner = GenerationJobRunner(seeded_store, generator=offline_generator)
    job = await runner.submit(selection(locationRefs=["p-winnetka"], serviceRefs=["roof-repair"]))
    await runner.wait()

    status = await runner.status(job["jobId"])
    assert status["status"] == "done"
    assert status["completed"] == 1
    assert status["failed"] == 0
    assert status["failures"] == []


class PollingRunner(GenerationJobRunner):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.job_id = None
        self.polled = []

    async def _materialize(self, place, service, publish):
        view = await self.status(self.job_id)
        self.polled.append(view["completed"])
        return await super()._materialize(place, service, publish)


@pytest.mark.asyncio
async def test_completed_never_goes_backwards_while_polling(seeded_store):
    runner = PollingRunner(seeded_store, batch_size=4)
    job = await runner.submit(selection())
    runner.job_id = job["jobId"]
    await runner.wait()

    assert runner.polled == sorted(runner.polled)
    assert runner.polled == [0, 1, 2, 3, 4, 5]
    status = await runner.status(job["jobId"])
    assert status["completed"] == status["total"] == 6


@pytest.mark.asyncio
async def test_job_uses_service_resolved_at_submit(seeded_store):
    # A doc whose id collides with another service's key must not shadow it
    await seeded_store.set("services", "svc-gutters", {"key": "gutters", "name": "Gutter Service"})
    await seeded_store.set("services", "gutters", {"key": "gutter-cleaning", "name": "Gutter Cleaning"})

    runner = GenerationJobRunner(seeded_store)
    job = await runner.submit(selection(locationRefs=["p-winnetka"], serviceRefs=["svc-gutters"]))
    await runner.wait()

    status = await runner.status(job["jobId"])
    assert status["status"] == "done"
    assert status["failed"] == 0
    page = await seeded_store.get(PAGES_COLLECTION, "los-angeles__91306__winnetka-91306__gutters")
    assert page["service"] == {"name": "Gutter Service", "slug": "gutters", "key": "gutters", "category": None}
    assert await seeded_store.count(PAGES_COLLECTION) == 1


@pytest.mark.asyncio
async def test_direct_run_matches_services_by_key_field(seeded_store):
    await seeded_store.set("services", "roof-repair", {"key": "roof-coating", "name": "Roof Coating"})
    runner = GenerationJobRunner(seeded_store)
    job_id = await seeded_store.add(JOBS_COLLECTION, {"status": "running", "total": 1, "completed": 0, "canceled": False})
    await runner.run_job(job_id, [("p-winnetka", "roof-repair")], False)

    page = await seeded_store.get(PAGES_COLLECTION, WINNETKA_ROOF)
    assert page["service"]["name"] == "Roof Repair"
