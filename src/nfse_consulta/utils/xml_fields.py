"""Lenient tag extraction for loosely specified portal XML.

Government XML arrives with varying prefixes, namespaces and optional
sections, so fields are located by scanning for tag names instead of
validating against a schema. Lookups are first-match-wins and return an
empty string when nothing matches; they never raise.
"""

from __future__ import annotations

import re
from functools import lru_cache
from xml.sax.saxutils import unescape

_ENTITIES = {"&quot;": '"', "&apos;": "'"}


@lru_cache(maxsize=128)
def _leaf_pattern(tag: str) -> re.Pattern[str]:
    return re.compile(
        rf"<(?:[\w.-]+:)?{re.escape(tag)}(?:\s[^>]*)?>([^<]*)</(?:[\w.-]+:)?{re.escape(tag)}\s*>",
        re.IGNORECASE,
    )


@lru_cache(maxsize=64)
def _section_pattern(tag: str) -> re.Pattern[str]:
    return re.compile(
        rf"<(?:[\w.-]+:)?{re.escape(tag)}(?:\s[^>]*)?>(.*?)</(?:[\w.-]+:)?{re.escape(tag)}\s*>",
        re.IGNORECASE | re.DOTALL,
    )


def section(xml: str, tag: str) -> str:
    """Return the inner text of the first ``<tag>...</tag>`` block, or ""."""
    match = _section_pattern(tag).search(xml or "")
    return match.group(1) if match else ""


def extract(xml: str, *tags: str, within: str | None = None) -> str:
    """Return the text of the first leaf element matching any of *tags*.

    Tags are tried in order; the first one present wins. With *within*, the
    search is limited to the first ``<within>`` section.
    """
    scope = section(xml, within) if within else (xml or "")
    if not scope:
        return ""
    for tag in tags:
        match = _leaf_pattern(tag).search(scope)
        if match:
            value = match.group(1).strip()
            if value:
                return unescape(value, _ENTITIES)
    return ""
