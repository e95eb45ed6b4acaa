"""Tests for text normalization and the fingerprint reverse index."""

import pytest

from fingerprints import (
    FINGERPRINT_COLLECTION,
    FingerprintIndex,
    fingerprint_doc_id,
    hash_text,
    merge_occurrence,
    normalize_text,
)


def test_normalize_strips_stopwords_punctuation_and_numbers():
    text = "Roof Repair in Winnetka, CA 91306: fast & clean!"
    out = normalize_text(text, ["winnetka", "roof repair", "91306"])
    assert out == "in ca fast clean"


def test_normalize_matches_whole_words_only():
    assert normalize_text("Reseda and West Reseda and Resedaville", ["reseda"]) == "and west and resedaville"


def test_location_swap_normalizes_identically():
    a = normalize_text("Best Roof Repair in Winnetka since 1999.", ["winnetka", "roof repair"])
    b = normalize_text("Best Roof Repair in Reseda since 2004.", ["reseda", "roof repair"])
    assert a == b
    assert hash_text(a) == hash_text(b)


def test_merge_occurrence_caps_sample_but_counts():
    record = None
    for i in range(5):
        record = merge_occurrence(record, False, "s", "intro", "fp", f"p{i}", "t", sample_limit=3)
    assert record["count"] == 5
    assert record["pageIds"] == ["p0", "p1", "p2"]


@pytest.mark.asyncio
async def test_record_occurrence_is_idempotent(store):
    index = FingerprintIndex(store)
    for _ in range(4):
        result = await index.record_occurrence("roof-repair", "intro", "abc", "page-1")
    assert result == {"count": 1, "samplePageIds": ["page-1"]}


@pytest.mark.asyncio
async def test_record_occurrence_counts_distinct_pages(store):
    index = FingerprintIndex(store)
    await index.record_occurrence("roof-repair", "intro", "abc", "page-1")
    result = await index.record_occurrence("roof-repair", "intro", "abc", "page-2")
    assert result["count"] == 2
    assert result["samplePageIds"] == ["page-1", "page-2"]

    record = await store.get(FINGERPRINT_COLLECTION, fingerprint_doc_id("roof-repair", "intro", "abc"))
    assert record["count"] == 2


@pytest.mark.asyncio
async def test_idempotent_beyond_sample_cap(store):
    index = FingerprintIndex(store, sample_limit=2)
    for i in range(4):
        await index.record_occurrence("svc", "content", "h", f"p{i}")
    again = await index.record_occurrence("svc", "content", "h", "p3")
    assert again["count"] == 4
    assert len(again["samplePageIds"]) == 2


@pytest.mark.asyncio
async def test_scopes_do_not_cross_contaminate(store):
    index = FingerprintIndex(store)
    await index.record_occurrence("roof-repair", "intro", "same", "p1")
    other = await index.record_occurrence("kitchen-remodel", "intro", "same", "p2")
    assert other["count"] == 1


@pytest.mark.asyncio
async def test_empty_fingerprint_rejected(store):
    with pytest.raises(ValueError):
        await FingerprintIndex(store).record_occurrence("s", "intro", "", "p1")
