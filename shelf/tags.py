"""
Tag string canonicalization.

Three forms are in play:
- display form, "Capitalized-Hyphenated" (``format_tag``), which is what
  gets stored on items
- comparison form, lowercase kebab (``normalize_tag``), used for mapping
  lookups and rule matching
- compact form, lowercase alphanumerics only (``compact_tag``), used to
  detect raw tags that duplicate a master category
"""

import re
from collections.abc import Iterable
from typing import Optional

_SEPARATOR_RUN_RE = re.compile(r"[\s_]+")
_DISALLOWED_RE = re.compile(r"[^a-z0-9\-.]")
_EDGE_HYPHENS_RE = re.compile(r"^-+|-+$")
_WORD_SPLIT_RE = re.compile(r"[\s_,-]+")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")


def normalize_tag(tag: str) -> str:
    """
    Canonical comparison form: "Sci Fi " -> "sci-fi".

    Lowercases, collapses whitespace/underscore runs to a hyphen, drops
    anything outside ``[a-z0-9-.]`` (dots survive for names like ".net")
    and trims leading/trailing hyphens.
    """
    t = tag.lower()
    t = _SEPARATOR_RUN_RE.sub("-", t)
    t = _DISALLOWED_RE.sub("", t)
    return _EDGE_HYPHENS_RE.sub("", t)


def kebab_tag(tag: str) -> str:
    """Lowercase with whitespace/underscore runs turned into hyphens; nothing stripped."""
    return _SEPARATOR_RUN_RE.sub("-", tag.lower())


def format_tag(tag: Optional[str]) -> str:
    """
    Display form: "machine learning" -> "Machine-Learning".

    Commas count as word breaks; the stored tag field is comma-joined.
    """
    if not tag:
        return ""
    words = [w for w in _WORD_SPLIT_RE.split(tag.strip()) if w]
    return "-".join(w[:1].upper() + w[1:].lower() for w in words)


def compact_tag(tag: str) -> str:
    """Lowercase alphanumerics only: "Science-Fiction" -> "sciencefiction"."""
    return _NON_ALNUM_RE.sub("", tag.lower())


def split_tags(tags: Optional[str]) -> list[str]:
    """Split a stored comma-joined tag string, dropping empties."""
    if not tags:
        return []
    return [t.strip() for t in tags.split(",") if t.strip()]


def join_tags(tags: Iterable[str]) -> str:
    return ", ".join(tags)


def has_tag(tags: Optional[str], tag: str) -> bool:
    """True if ``tag`` appears in ``tags`` under normalized comparison."""
    wanted = normalize_tag(tag)
    return any(normalize_tag(t) == wanted for t in split_tags(tags))
