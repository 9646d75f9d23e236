"""
Pure helpers that turn a member's raw tag payload into a paid/free
classification and the list of purchase tags it carries.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, List, Mapping, Sequence

from ..models.purchase import PurchaseTag, TagClassification


PURCHASE_TAG_PATTERN = re.compile(r"^\$?([0-9]+)$")
DEFAULT_MIN_PURCHASE_CREDITS = 1
DEFAULT_MAX_PURCHASE_CREDITS = 10000

_TAG_FIELDS = ("tags", "labels", "member_tags")
_TAG_OBJECT_KEYS = ("name", "label", "title")


def extract_raw_tags(payload: Mapping[str, Any]) -> Any:
    """Return the first non-empty tag field of a raw profile payload."""
    for field in _TAG_FIELDS:
        value = payload.get(field)
        if value:
            return value
    return []


def _tag_text(tag: Any) -> str:
    if isinstance(tag, str):
        return tag
    if isinstance(tag, Mapping):
        for key in _TAG_OBJECT_KEYS:
            if tag.get(key):
                return str(tag[key])
        return str(tag)
    for key in _TAG_OBJECT_KEYS:
        value = getattr(tag, key, None)
        if value:
            return str(value)
    return str(tag)


def normalize_tags(raw: Any) -> List[str]:
    """
    Normalize a tag payload into a list of plain strings.

    Accepts a comma-separated string, a list of strings, or a list of tag
    objects (dicts or objects exposing name/label/title). Anything else,
    including None, is treated as no tags.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        items: Iterable[Any] = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        items = raw
    else:
        return []

    tags: List[str] = []
    for item in items:
        if item is None:
            continue
        text = _tag_text(item).strip()
        if text:
            tags.append(text)
    return tags


def is_paid(tags: Sequence[str], paid_keywords: Sequence[str]) -> bool:
    """True when any tag contains any paid keyword, ignoring case."""
    keywords = [k.strip().lower() for k in paid_keywords if k and k.strip()]
    return any(keyword in tag.lower() for tag in tags for keyword in keywords)


def extract_purchase_tags(
    tags: Sequence[str],
    min_credits: int = DEFAULT_MIN_PURCHASE_CREDITS,
    max_credits: int = DEFAULT_MAX_PURCHASE_CREDITS,
) -> List[PurchaseTag]:
    purchases: List[PurchaseTag] = []
    for tag in tags:
        text = tag.strip()
        match = PURCHASE_TAG_PATTERN.match(text)
        if not match:
            continue
        digits = match.group(1).lstrip("0") or "0"
        # Longer than the maximum can only be out of range; skip before int()
        if len(digits) > len(str(max_credits)):
            continue
        credits = int(digits)
        # Out-of-range amounts are not purchases
        if min_credits <= credits <= max_credits:
            purchases.append(PurchaseTag(tag=text, credits=credits))
    return purchases


def classify(
    raw_tags: Any,
    paid_keywords: Sequence[str],
    min_credits: int = DEFAULT_MIN_PURCHASE_CREDITS,
    max_credits: int = DEFAULT_MAX_PURCHASE_CREDITS,
) -> TagClassification:
    tags = normalize_tags(raw_tags)
    return TagClassification(
        tags=tuple(tags),
        is_paid=is_paid(tags, paid_keywords),
        purchases=tuple(extract_purchase_tags(tags, min_credits, max_credits)),
    )
