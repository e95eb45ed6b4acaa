# =============================================================================
# Content Generator — deterministic templated landing-page content
# =============================================================================
#
# Pure functions, no I/O:
# - generate_page_content(): (location, service) -> sections, FAQs, CTAs,
#   schema markup and SEO metadata
# - hash_seed(): stable integer seed for a location/service pair
# - page_doc_id() / compute_slug_path(): identity key and URL for a page
#
# Every variation (sentence choice, optional sections, FAQ count) comes from
# `seed % N` against the fixed pools below, so the same pair always yields the
# same structure and different pairs drift apart.
# =============================================================================

import re
from typing import Optional

from config import DEFAULT_REGION, SITE_NAME, SITE_URL

GENERATOR_NAME = "template-v2"
GENERATOR_VERSION = 1
SEO_DESCRIPTION_MAX = 170

# ---------------------------------------------------------------------------
# Section layout
# ---------------------------------------------------------------------------

REQUIRED_SECTION_IDS = [
    "overview",
    "what_includes",
    "local_considerations",
    "cost",
    "timeline",
    "permits",
    "how_to_choose",
    "our_process",
]

OPTIONAL_SECTION_IDS = ["warranties", "materials", "common_mistakes"]

# ---------------------------------------------------------------------------
# Template pools: {place}, {service} and {region} are substituted per page
# ---------------------------------------------------------------------------

SENTENCE_BANKS: dict[str, list[str]] = {
    "overview": [
        "Our {service} crews in {place} pair careful planning with steady on-site craftsmanship so the finished work holds up for years.",
        "{service} in {place} means coordinating trades, neighbors and inspectors, and we run that coordination as a calm, repeatable routine.",
        "Homeowners in {place} call us for {service} because we scope honestly, schedule tightly and clean up every single day.",
    ],
    "what_includes": [
        "The scope covers a site walk, measurements, material guidance, the build itself and a final punch walk with you.",
        "We handle survey, layout, material vetting, scheduling, installation and close-out so progress stays visible week to week.",
        "Every project includes a written scope, a named project lead, protected work areas and a documented final inspection.",
    ],
    "local_considerations": [
        "Housing in {place} ranges from older cottages to recent builds, so we match methods to the framing and utilities we find.",
        "Lot sizes, easements and street parking in {place} shape access plans, so we stage deliveries to keep the block moving.",
        "Microclimates around {place} affect material choices and cure times, and we plan the sequence around them.",
    ],
    "cost": [
        "Pricing depends on existing conditions, selections and access, and we share a low and high range before any contract.",
        "Budgets move with hidden conditions and material tiers, so we publish allowances early and let you steer the spend.",
        "We quote labor and materials separately so you can see exactly where each dollar of your {service} budget goes.",
    ],
    "timeline": [
        "Most {service} projects run in clear phases: prep, removal, rough work, inspection, finishes and walk-through.",
        "We sequence trades to cut idle days and book inspections early to absorb typical review windows in {region}.",
        "A typical schedule is confirmed in writing before mobilization and updated whenever a decision changes the plan.",
    ],
    "permits": [
        "Permitting in {place} can add review cycles; we prepare clean submittals and track corrections until approval.",
        "We follow local energy, structural and fire requirements for {service} and pre-check plans to avoid rework.",
        "When a permit is required we pull it, schedule the inspections and keep the signed cards with your project file.",
    ],
    "how_to_choose": [
        "Choose a contractor with verifiable references, written change orders and supervision that actually shows up on site.",
        "Look for a team that documents selections, answers questions quickly and owns the schedule from start to finish.",
        "Ask every bidder for license details, insurance certificates and two recent {service} clients you can call.",
    ],
    "our_process": [
        "We map milestones, lock in procurement, notify neighbors and send weekly photo reports with clear next steps.",
        "Expect upfront discovery, firm cost controls, daily supervision and a tidy site that respects your home.",
        "After the estimate we confirm scope, order long-lead items, schedule crews and keep one point of contact for you.",
    ],
    "warranties": [
        "Our labor is backed by a written warranty and we pass along every manufacturer warranty for installed products.",
        "At close-out you receive care guidance, warranty documents and a direct line for anything that needs adjusting.",
        "Warranty terms are explained before work begins so there are no surprises about what is and is not covered.",
    ],
    "materials": [
        "We recommend materials suited to the local climate and favor options with short lead times to protect the schedule.",
        "Material choices balance appearance, maintenance and availability, with code-compliant assemblies for {service}.",
        "Samples are reviewed on site in your own light so colors and finishes look the way you expect once installed.",
    ],
    "common_mistakes": [
        "Common mistakes include skipping exploratory work, choosing long-lead fixtures late and ignoring HOA notice windows.",
        "Rushing permits or underestimating hidden damage can add weeks; we sequence decisions to avoid those delays.",
        "Picking the lowest bid without a written scope is the most expensive mistake we see in {service} projects.",
    ],
}

FILLER_SENTENCES = [
    "Clients in {place} often bundle {service} with related upgrades, so we align the scopes to keep inspections efficient.",
    "We plan parking, hauling and quiet hours so {service} work fits the rhythm of the neighborhood.",
    "Coordination with utilities, inspectors and neighbors stays transparent, with clear owners and dates every week.",
    "We flag allowance-driven price swings early and never promise outcomes that site conditions cannot support.",
]

FAQ_TEMPLATES = [
    "How long does {service_lower} take in {place}?",
    "Do I need a permit for {service_lower} in {place}?",
    "Can you work with my designer or architect in {place}?",
    "How do you handle noise, debris and neighbor notices?",
    "What causes the price of {service_lower} to change?",
    "Do you help with material sourcing and lead times?",
    "How do inspections work for projects in {place}?",
    "What does communication look like week to week?",
    "How quickly can you start a {service_lower} project?",
    "How do you prevent delays on projects in {region}?",
]

# ---------------------------------------------------------------------------
# Seeds and slugs
# ---------------------------------------------------------------------------


def slugify(text: str) -> str:
    """Lowercase, hyphen-separated, ASCII alphanumerics only."""
    s = (text or "").strip().lower()
    s = re.sub(r"\s+", "-", s)
    s = re.sub(r"[^a-z0-9-]", "-", s)
    s = re.sub(r"-+", "-", s)
    return s.strip("-")


def hash_seed(key: str) -> int:
    """32-bit rolling hash (h*31 + c), returned as a non-negative int."""
    h = 0
    for ch in key:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def _pick(options: list, seed: int):
    return options[seed % len(options)]


def page_doc_id(county_slug: str, zip_code: str, place_slug: str, service_key: str) -> str:
    """Identity key for a generated page. Lookups by this id are what keep generation idempotent."""
    return f"{county_slug}__{zip_code}__{place_slug}__{service_key}"


def compute_slug_path(county_slug: str, zip_code: str, place_slug: str, service_key: str) -> str:
    return f"/{county_slug or DEFAULT_REGION.lower()}/{zip_code}/n/{place_slug}/{service_key}"


# ---------------------------------------------------------------------------
# Prose
# ---------------------------------------------------------------------------


def _fill(template: str, place: str, service: str, region: str) -> str:
    return (
        template.replace("{place}", place)
        .replace("{service_lower}", service.lower())
        .replace("{service}", service)
        .replace("{region}", region)
    )


def _paragraph(section: str, place: str, service: str, region: str, seed: int, sentences: int = 4) -> str:
    bank = SENTENCE_BANKS[section]
    lead = _pick(bank, seed + sentences)
    follow = bank[(seed + sentences + 1) % len(bank)]
    filler = [FILLER_SENTENCES[(seed + i) % len(FILLER_SENTENCES)] for i in range(len(FILLER_SENTENCES))]
    items = [lead, follow, *filler][:sentences]
    return " ".join(_fill(s, place, service, region) for s in items)


def _section_title(section_id: str, place: str, service: str, seed: int) -> str:
    label = section_id.replace("_", " ")
    return _pick(
        [
            f"{service} {label}",
            label.capitalize(),
            f"{place} {service}: {label}",
        ],
        seed + len(section_id),
    )


def _bullets(section_id: str, place: str) -> Optional[list[str]]:
    if section_id == "what_includes":
        return [
            f"Dedicated project lead in {place}",
            "Trades scheduled in tight windows to reduce downtime",
            "Transparent change tracking and photo updates",
        ]
    if section_id == "cost":
        return [
            "Ranges shared before contract and refined after selections",
            "No absolute guarantees; discoveries can adjust scope",
            "Labor and materials billed per approved milestone",
        ]
    return None


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


def generate_page_content(
    location: dict,
    service: dict,
    slug_path: Optional[str] = None,
    site_url: Optional[str] = None,
    site_name: str = SITE_NAME,
    region: str = DEFAULT_REGION,
) -> dict:
    """
    Build the full content payload for one location/service page.

    `location` needs `name` and `slug`; `service` needs `name` and `slug` and may
    carry `category`. Output keys: h1, sections, faqs, ctas, schemaJsonLd, seo.
    """
    place = location["name"]
    service_name = service["name"]
    seed = hash_seed(f"{location['slug']}-{service['slug']}")
    base_url = (site_url if site_url is not None else SITE_URL).rstrip("/")

    optional = OPTIONAL_SECTION_IDS[: 2 + (seed % 2)]
    section_ids = REQUIRED_SECTION_IDS + optional

    sections = []
    for idx, section_id in enumerate(section_ids):
        section = {
            "id": section_id,
            "title": _section_title(section_id, place, service_name, seed),
            "body": _paragraph(section_id, place, service_name, region, seed + idx, sentences=6),
        }
        bullets = _bullets(section_id, place)
        if bullets:
            section["bullets"] = bullets
        sections.append(section)

    faq_count = 6 + (seed % 4)
    faqs = [
        {
            "q": _fill(q, place, service_name, region),
            "a": _paragraph("overview", place, service_name, region, seed + i + 20, sentences=3),
        }
        for i, q in enumerate(FAQ_TEMPLATES[:faq_count])
    ]

    path = slug_path or f"/{region.lower()}/{location['slug']}/{service['slug']}"
    canonical = f"{base_url}{path}"
    h1 = f"{service_name} in {place}"
    title = f"{place} {service_name} | {site_name}"
    description = (
        f"Trusted {service_name.lower()} specialists serving {place} with transparent pricing, "
        f"clean job sites and local permitting know-how."
    )[:SEO_DESCRIPTION_MAX]

    schema = {
        "@context": "https://schema.org",
        "@type": "Service",
        "name": h1,
        "serviceType": service_name,
        "category": service.get("category") or "Home Services",
        "url": canonical,
        "areaServed": {
            "@type": "City",
            "name": place,
            "address": {"addressLocality": place, "addressRegion": region, "addressCountry": "US"},
        },
        "offers": {
            "@type": "AggregateOffer",
            "priceCurrency": "USD",
            "availability": "https://schema.org/InStock",
            "description": "Estimates vary; inspection findings and selections can adjust price.",
        },
        "hasOfferCatalog": {
            "@type": "OfferCatalog",
            "name": f"{service_name} options in {place}",
            "itemListElement": [{"@type": "Offer", "itemOffered": s["title"]} for s in sections[:4]],
        },
        "provider": {
            "@type": "LocalBusiness",
            "name": site_name,
            "address": {
                "@type": "PostalAddress",
                "addressLocality": place,
                "addressRegion": region,
                "addressCountry": "US",
            },
        },
    }

    return {
        "h1": h1,
        "sections": sections,
        "faqs": faqs,
        "ctas": [
            {
                "label": "Start an estimate",
                "href": f"/estimate?place={location['slug']}&service={service['slug']}",
            },
            {"label": "Request a call back", "href": "/estimate"},
        ],
        "schemaJsonLd": schema,
        "seo": {
            "title": title,
            "description": description,
            "canonical": canonical,
            "ogTitle": title,
            "ogDescription": description,
        },
    }
