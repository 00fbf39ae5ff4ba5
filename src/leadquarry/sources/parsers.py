"""
Default page parser.

Business listings on directory pages almost always carry schema.org JSON-LD, so
the default parser reads ``LocalBusiness``-shaped objects from
``<script type="application/ld+json">`` blocks and falls back to ``mailto:``
and ``tel:`` links when a page has no structured data. Site-specific field
extraction lives outside the engine and plugs in through ``PageParser``.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterator, List, Optional

import structlog
from selectolax.parser import HTMLParser

from leadquarry.protocols import BusinessCandidate

logger = structlog.get_logger(__name__)

EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

BUSINESS_TYPES = {
    "localbusiness",
    "organization",
    "dentist",
    "physician",
    "medicalbusiness",
    "legalservice",
    "attorney",
    "restaurant",
    "foodestablishment",
    "store",
    "homeandconstructionbusiness",
    "professionalservice",
    "automotivebusiness",
    "healthandbeautybusiness",
}


def _is_business(obj: Dict[str, Any]) -> bool:
    types = obj.get("@type")
    if isinstance(types, str):
        types = [types]
    if not isinstance(types, list):
        return False
    return any(isinstance(t, str) and t.lower() in BUSINESS_TYPES for t in types)


def _walk(data: Any) -> Iterator[Dict[str, Any]]:
    if isinstance(data, list):
        for item in data:
            yield from _walk(item)
    elif isinstance(data, dict):
        if _is_business(data):
            yield data
        for key in ("@graph", "itemListElement", "item"):
            if key in data:
                yield from _walk(data[key])


def _format_address(address: Any) -> Optional[str]:
    if isinstance(address, str):
        return address.strip() or None
    if not isinstance(address, dict):
        return None
    parts = [
        address.get("streetAddress"),
        address.get("addressLocality"),
        " ".join(p for p in (address.get("addressRegion"), address.get("postalCode")) if p),
    ]
    text = ", ".join(str(p).strip() for p in parts if p and str(p).strip())
    return text or None


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(float(value)) if value is not None else None
    except (TypeError, ValueError):
        return None


def candidate_from_json_ld(obj: Dict[str, Any], source: str) -> Optional[BusinessCandidate]:
    name = obj.get("name")
    if not isinstance(name, str) or not name.strip():
        return None

    rating = obj.get("aggregateRating") or {}
    email = obj.get("email")
    if isinstance(email, str):
        email = email.replace("mailto:", "").strip().lower() or None
    else:
        email = None

    website = obj.get("url") or obj.get("sameAs")
    if isinstance(website, list):
        website = website[0] if website else None

    return BusinessCandidate(
        name=name.strip(),
        source=source,
        website=website if isinstance(website, str) else None,
        phone=obj.get("telephone") if isinstance(obj.get("telephone"), str) else None,
        address=_format_address(obj.get("address")),
        rating=_to_float(rating.get("ratingValue")) if isinstance(rating, dict) else None,
        review_count=_to_int(rating.get("reviewCount") or rating.get("ratingCount")) if isinstance(rating, dict) else None,
        email=email,
        email_confidence=0.7 if email else 0.5,
    )


def parse_json_ld(tree: HTMLParser, source: str) -> List[BusinessCandidate]:
    candidates: List[BusinessCandidate] = []
    for node in tree.css('script[type="application/ld+json"]'):
        raw = node.text(deep=True, strip=True)
        if not raw:
            continue
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed JSON-LD block", source=source)
            continue
        for obj in _walk(data):
            candidate = candidate_from_json_ld(obj, source)
            if candidate is not None:
                candidates.append(candidate)
    return candidates


def extract_contacts(tree: HTMLParser) -> Dict[str, Optional[str]]:
    """First ``mailto:`` address and ``tel:`` number on the page."""
    email: Optional[str] = None
    phone: Optional[str] = None
    for node in tree.css("a[href]"):
        href = (node.attributes.get("href") or "").strip()
        if email is None and href.lower().startswith("mailto:"):
            match = EMAIL_RE.search(href)
            email = match.group(0).lower() if match else None
        elif phone is None and href.lower().startswith("tel:"):
            phone = href[4:].strip() or None
        if email and phone:
            break
    return {"email": email, "phone": phone}


def parse_listing_page(content: str, source: str) -> List[BusinessCandidate]:
    """The engine's default ``PageParser``."""
    if not content:
        return []
    tree = HTMLParser(content)
    candidates = parse_json_ld(tree, source)
    if candidates:
        return candidates

    contacts = extract_contacts(tree)
    if not contacts["email"] and not contacts["phone"]:
        return []
    title = tree.css_first("title")
    name = title.text(strip=True) if title else ""
    if not name:
        return []
    return [
        BusinessCandidate(
            name=name.split("|")[0].split(" - ")[0].strip(),
            source=source,
            phone=contacts["phone"],
            email=contacts["email"],
            email_confidence=0.6 if contacts["email"] else 0.5,
        )
    ]
