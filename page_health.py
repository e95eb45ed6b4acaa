# =============================================================================
# Page Health — structural QA rules + weighted health score
# =============================================================================
#
# Pure functions, re-run from scratch on every scan:
# - extract_section_text(): pull one required section's text out of a page
# - missing_sections(): required sections with no text at all
# - detect_qa_fails(): severity-tagged rule failures
# - score_health() / derive_status(): 0-100 score and ok | warn | fail
# - evaluate_page(): all of the above for one page, minus duplication
# =============================================================================

import re
from typing import Optional

PAGE_HEALTH_VERSION = 1

REQUIRED_SECTIONS = ["hero", "intro", "content", "faqs", "cta"]

MIN_LENGTHS: dict[str, int] = {
    "intro": 200,
    "content": 300,
    "faqs": 80,
}

MIN_TOTAL_LENGTH = 1200
MIN_FAQS = 3

QA_RULES: dict[str, str] = {
    "missing_title": "fail",
    "missing_h1": "fail",
    "slug_invalid": "fail",
    "missing_faq": "warn",
    "faqs_too_few": "warn",
    "missing_schema": "warn",
    "content_too_short": "warn",
}

# Score penalties
MISSING_SECTION_PENALTY = 12
FAIL_PENALTY = 15
WARN_PENALTY = 6
DUPLICATE_PENALTY = 4

_SLUG_PATH = re.compile(r"^/\S+$")


def _join(*parts) -> str:
    return " ".join(str(p) for p in parts if p)


def _content(page: dict) -> dict:
    content = page.get("content") or page.get("sections") or {}
    return content if isinstance(content, dict) else {}


def extract_section_text(page: dict, key: str) -> str:
    """Text for one required section, using key-specific rules."""
    content = _content(page)

    if key == "hero":
        return _join(content.get("headline"), content.get("subheadline"), content.get("h1"))

    if key == "faqs":
        faqs = content.get("faqs") if isinstance(content.get("faqs"), list) else []
        return " ".join(
            _join(f.get("q"), f.get("question"), f.get("a"), f.get("answer"))
            for f in faqs if isinstance(f, dict)
        )

    if key == "cta":
        ctas = content.get("ctas") if isinstance(content.get("ctas"), list) else []
        return " ".join(
            _join(c.get("title"), c.get("label"), c.get("text"), c.get("body"))
            for c in ctas if isinstance(c, dict)
        )

    direct = content.get(key)
    if isinstance(direct, str):
        return direct
    if isinstance(direct, dict):
        return _join(direct.get("title"), direct.get("subtitle"), direct.get("body"), direct.get("text"))

    sections = content.get("sections")
    if isinstance(sections, list):
        return " ".join(
            _join(s.get("title"), s.get("headline"), s.get("body"), s.get("text"))
            for s in sections if isinstance(s, dict)
        )
    return ""


def extract_all_sections(page: dict) -> dict[str, str]:
    return {key: extract_section_text(page, key) for key in REQUIRED_SECTIONS}


def missing_sections(section_text: dict[str, str]) -> list[str]:
    return [key for key in REQUIRED_SECTIONS if not (section_text.get(key) or "").strip()]


def _fail(code: str, msg: str) -> dict:
    return {"code": code, "msg": msg, "severity": QA_RULES[code]}


def detect_qa_fails(page: dict, section_text: dict[str, str]) -> list[dict]:
    """Structural and length checks. Identical (code, msg) pairs collapse to one entry."""
    content = _content(page)
    seo = page.get("seo") if isinstance(page.get("seo"), dict) else {}
    title = seo.get("title") or page.get("title")
    h1 = content.get("h1") or page.get("h1")
    slug_path = page.get("slugPath") or page.get("slug")
    faqs = content.get("faqs") if isinstance(content.get("faqs"), list) else []
    schema = content.get("schemaJsonLd") or content.get("schema") or page.get("schemaJsonLd")
    total_len = len(" ".join(t for t in section_text.values() if t))

    fails: list[dict] = []
    if not title:
        fails.append(_fail("missing_title", "Missing SEO title."))
    if not h1:
        fails.append(_fail("missing_h1", "Missing H1."))
    if not slug_path or not _SLUG_PATH.match(str(slug_path)):
        fails.append(_fail("slug_invalid", "Slug path is invalid."))
    if not faqs:
        fails.append(_fail("missing_faq", "FAQ section missing."))
    elif len(faqs) < MIN_FAQS:
        fails.append(_fail("faqs_too_few", "FAQ count below minimum."))
    if not schema:
        fails.append(_fail("missing_schema", "Schema markup missing."))
    if 0 < total_len < MIN_TOTAL_LENGTH:
        fails.append(_fail("content_too_short", "Overall content too short."))

    for key, min_len in MIN_LENGTHS.items():
        length = len(section_text.get(key) or "")
        # Empty sections are reported as missing, not short
        if 0 < length < min_len:
            fails.append(_fail("content_too_short", f"{key} below {min_len} chars."))

    seen: set[tuple[str, str]] = set()
    unique = []
    for f in fails:
        k = (f["code"], f["msg"])
        if k in seen:
            continue
        seen.add(k)
        unique.append(f)
    return unique


def score_health(missing_count: int, qa_fails: list[dict], duplicate_count: int) -> int:
    """100 minus weighted penalties, clamped to 0..100."""
    score = 100
    score -= missing_count * MISSING_SECTION_PENALTY
    for f in qa_fails:
        score -= FAIL_PENALTY if f["severity"] == "fail" else WARN_PENALTY
    score -= duplicate_count * DUPLICATE_PENALTY
    return max(0, min(100, score))


def derive_status(missing_count: int, qa_fails: list[dict], duplicate_count: int) -> str:
    if missing_count > 0 or any(f["severity"] == "fail" for f in qa_fails):
        return "fail"
    if any(f["severity"] == "warn" for f in qa_fails) or duplicate_count > 0:
        return "warn"
    return "ok"


def evaluate_page(page: dict, section_text: Optional[dict[str, str]] = None) -> dict:
    """Stateless QA for one page: `{sectionText, missingRequired, qaFails}`."""
    if section_text is None:
        section_text = extract_all_sections(page)
    return {
        "sectionText": section_text,
        "missingRequired": missing_sections(section_text),
        "qaFails": detect_qa_fails(page, section_text),
    }


def page_stopwords(page: dict) -> list[str]:
    """Page-specific terms left out of fingerprints so location swaps still look like duplicates."""
    service = page.get("service") if isinstance(page.get("service"), dict) else {}
    city = page.get("city") if isinstance(page.get("city"), dict) else {}
    county = page.get("county") if isinstance(page.get("county"), dict) else {}
    candidates = [
        page.get("zip"),
        page.get("placeName"),
        city.get("name"),
        county.get("name"),
        page.get("countyName"),
        service.get("name"),
        page_service_key(page),
    ]
    return [c.lower() for c in candidates if isinstance(c, str) and c]


def page_service_key(page: dict) -> str:
    service = page.get("service") if isinstance(page.get("service"), dict) else {}
    return service.get("key") or page.get("serviceKey") or page.get("serviceSlug") or "unknown"
