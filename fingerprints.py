"""
fingerprints.py — duplicate detection for generated page sections.

A section's text is normalized (lowercased, page-specific stopwords removed,
punctuation and bare numbers dropped) and hashed. The hash is recorded in a
reverse index bucketed by (scope, section); when more than one page lands on
the same bucket+hash, those pages share the same templated prose.

Usage:
    index = FingerprintIndex(store)
    result = await index.record_occurrence("roof-repair", "intro", hash_text(norm), page_id)
    if result["count"] > 1: ...
"""

import hashlib
import re
from typing import Iterable, Optional

from database import DocumentStore, utcnow

FINGERPRINT_COLLECTION = "page_fingerprints"
MEMBER_COLLECTION = "page_fingerprint_members"

SAMPLE_LIMIT = 50
GLOBAL_SCOPE = "global"
SLUG_SECTION = "slugPath"

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_DIGITS = re.compile(r"^\d+$")


def normalize_text(text: str, stopwords: Iterable[str] = ()) -> str:
    """Reduce section text to the template skeleton that should be unique per page."""
    lowered = (text or "").lower()
    # Longest first so "roof repair" goes before "roof"
    for word in sorted({w.lower() for w in stopwords if w}, key=len, reverse=True):
        lowered = re.sub(rf"\b{re.escape(word)}\b", " ", lowered)
    cleaned = _NON_ALNUM.sub(" ", lowered)
    tokens = [t for t in cleaned.split() if not _DIGITS.match(t)]
    return " ".join(tokens)


def hash_text(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def fingerprint_doc_id(scope: str, section_key: str, fingerprint: str) -> str:
    return f"{scope}_{section_key}_{fingerprint}"


def merge_occurrence(
    record: Optional[dict],
    already_member: bool,
    scope: str,
    section_key: str,
    fingerprint: str,
    page_id: str,
    now: str,
    sample_limit: int = SAMPLE_LIMIT,
) -> dict:
    """
    Next state of a fingerprint record after `page_id` is seen with this hash.

    The count only moves for a page that has never contributed to this hash
    before; the sample list stops growing at `sample_limit`.
    """
    record = record or {}
    page_ids = list(record.get("pageIds") or [])
    count = int(record.get("count") or 0)
    is_new = not already_member and page_id not in page_ids
    if is_new:
        count += 1
        if len(page_ids) < sample_limit:
            page_ids.append(page_id)
    return {
        "scope": scope,
        "sectionKey": section_key,
        "fingerprint": fingerprint,
        "pageIds": page_ids,
        "count": max(count, len(page_ids)),
        "createdAt": record.get("createdAt") or now,
        "updatedAt": now,
    }


class FingerprintIndex:
    """Reverse index from (scope, section, hash) to the pages that produced it."""

    def __init__(self, store: DocumentStore, sample_limit: int = SAMPLE_LIMIT, clock=utcnow):
        self.store = store
        self.sample_limit = sample_limit
        self._clock = clock

    async def record_occurrence(self, scope: str, section_key: str, fingerprint: str, page_id: str) -> dict:
        """
        Associate `page_id` with a section hash and return `{count, samplePageIds}`.

        Safe to repeat: a membership marker per (hash, page) is written in the
        same transaction as the record, so re-scanning a page never inflates the
        count, even after the sample list is full.
        """
        if not fingerprint:
            raise ValueError("Refusing to record an empty fingerprint")

        doc_id = fingerprint_doc_id(scope, section_key, fingerprint)
        record_ref = (FINGERPRINT_COLLECTION, doc_id)
        member_ref = (MEMBER_COLLECTION, f"{doc_id}__{page_id}")
        now = self._clock()

        def apply(current: dict) -> tuple:
            record = merge_occurrence(
                current[record_ref],
                current[member_ref] is not None,
                scope,
                section_key,
                fingerprint,
                page_id,
                now,
                self.sample_limit,
            )
            writes = {record_ref: record}
            if current[member_ref] is None:
                writes[member_ref] = {"fingerprintId": doc_id, "pageId": page_id, "createdAt": now}
            return writes, {"count": record["count"], "samplePageIds": record["pageIds"]}

        return await self.store.transact([record_ref, member_ref], apply)

    async def lookup(self, scope: str, section_key: str, fingerprint: str) -> Optional[dict]:
        return await self.store.get(FINGERPRINT_COLLECTION, fingerprint_doc_id(scope, section_key, fingerprint))
