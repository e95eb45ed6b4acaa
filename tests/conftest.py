"""Pytest configuration and shared fixtures."""

import asyncio
import os
import tempfile

import pytest

# Point the module-level engine at a throwaway file BEFORE importing the app
os.environ.setdefault("DATABASE_URL", f"sqlite:///{tempfile.mkdtemp()}/pages-test.db")
os.environ.setdefault("SITE_URL", "https://pros.example.com")

from database import DocumentStore

PLACES = {
    "p-winnetka": {
        "zip": "91306", "slug": "winnetka-91306", "key": "winnetka",
        "placeName": "Winnetka", "countySlug": "los-angeles", "countyName": "Los Angeles", "countyId": "c-la",
    },
    "p-canoga": {
        "zip": "91303", "slug": "canoga-park-91303", "key": "canoga-park",
        "placeName": "Canoga Park", "countySlug": "los-angeles", "countyName": "Los Angeles", "countyId": "c-la",
    },
    "p-reseda": {
        "zip": "91335", "slug": "reseda-91335", "key": "reseda",
        "placeName": "Reseda", "countySlug": "los-angeles", "countyName": "Los Angeles", "countyId": "c-la",
    },
    "p-west-reseda": {
        "zip": "91335", "slug": "west-reseda-91335", "key": "west-reseda",
        "placeName": "West Reseda", "countySlug": "los-angeles", "countyName": "Los Angeles", "countyId": "c-la",
    },
}

SERVICES = {
    "svc-roof": {"key": "roof-repair", "slug": "roof-repair", "name": "Roof Repair", "category": "Roofing"},
    "svc-kitchen": {"key": "kitchen-remodel", "slug": "kitchen-remodeling", "name": "Kitchen Remodel", "category": "Remodeling"},
}


async def seed_catalog(store: DocumentStore) -> None:
    for doc_id, data in PLACES.items():
        await store.set("geo_zip_places", doc_id, data)
    for doc_id, data in SERVICES.items():
        await store.set("services", doc_id, data)


@pytest.fixture
def store(tmp_path):
    """Isolated SQLite-backed store per test."""
    s = DocumentStore.from_url(f"sqlite:///{tmp_path}/store.db")
    yield s
    s.close()


@pytest.fixture
def seeded_store(store):
    asyncio.run(seed_catalog(store))
    return store


@pytest.fixture
def winnetka():
    return {"name": "Winnetka", "slug": "winnetka"}


@pytest.fixture
def roof_repair():
    return {"name": "Roof Repair", "slug": "roof-repair", "category": "Roofing"}
