"""
Deterministic tag classification.

Maps a free-form tag onto the fixed master-category vocabulary using an
ordered list of pattern rules. The first matching rule wins. Tags no rule
recognizes are left for the model to classify in batch.
"""

import re
from dataclasses import dataclass
from typing import Optional

from .tags import normalize_tag


FICTION = "Fiction"
NON_FICTION = "Non-Fiction"
SUPER_TYPES = (FICTION, NON_FICTION)

MASTER_CATEGORIES = [
    FICTION, NON_FICTION,
    "Science-Fiction", "Fantasy", "Mystery-Thriller", "Horror", "Literature", "History",
    "Biography-Memoir", "Science-Technology", "Computer-Science", "Programming",
    "Artificial-Intelligence", "Business-Economics", "Finance", "Self-Help",
    "Psychology", "Philosophy", "Education", "Arts-Design", "Politics-Society",
    "Health-Medicine", "Cooking-Food", "Travel", "Religion-Spirituality",
]

# Category -> super-type. Every category has an entry.
CATEGORY_SUPER_TYPES = {
    "Science-Fiction": FICTION,
    "Fantasy": FICTION,
    "Mystery-Thriller": FICTION,
    "Horror": FICTION,
    "Literature": FICTION,
    FICTION: FICTION,

    "History": NON_FICTION,
    "Biography-Memoir": NON_FICTION,
    "Science-Technology": NON_FICTION,
    "Computer-Science": NON_FICTION,
    "Programming": NON_FICTION,
    "Artificial-Intelligence": NON_FICTION,
    "Business-Economics": NON_FICTION,
    "Finance": NON_FICTION,
    "Self-Help": NON_FICTION,
    "Psychology": NON_FICTION,
    "Philosophy": NON_FICTION,
    "Education": NON_FICTION,
    "Arts-Design": NON_FICTION,
    "Politics-Society": NON_FICTION,
    "Health-Medicine": NON_FICTION,
    "Cooking-Food": NON_FICTION,
    "Travel": NON_FICTION,
    "Religion-Spirituality": NON_FICTION,
    NON_FICTION: NON_FICTION,
}

_NORMALIZED_CATEGORIES = {normalize_tag(c): c for c in MASTER_CATEGORIES}


@dataclass(frozen=True)
class CategoryRule:
    """A pattern searched against the normalized tag, and the category it yields."""
    pattern: re.Pattern
    category: str

    def matches(self, normalized: str) -> bool:
        return self.pattern.search(normalized) is not None


def _contains(*words: str) -> re.Pattern:
    return re.compile("|".join(re.escape(w) for w in words))


def _segment(*words: str) -> re.Pattern:
    """Match words only at the start of a hyphen-separated segment ("war" but not "software")."""
    return re.compile(r"(?:^|-)(?:" + "|".join(re.escape(w) for w in words) + ")")


CATEGORY_RULES: list[CategoryRule] = [
    # History: years and eras (1990s, 1980s-culture, 1984, 19th-century), subjects, wars
    CategoryRule(re.compile(r"^\d{4}s?(-.*)?$"), "History"),
    CategoryRule(re.compile(r"^\d{1,2}(th|st|nd|rd)-century"), "History"),

    CategoryRule(_contains("history", "biography", "memoir"), "History"),
    CategoryRule(_segment("war", "military", "battle"), "History"),

    # Languages and technology
    CategoryRule(
        re.compile(r"^(js|javascript|typescript|python|rust|cpp|java|ruby|php|sql|css|html)(\d*|script)?(-|$)"),
        "Computer-Science",
    ),
    CategoryRule(re.compile(r"\.net"), "Programming"),
    CategoryRule(_contains("programming", "software", "coding"), "Programming"),
    CategoryRule(
        _contains("algorithm", "data-science", "machine-learning", "deep-learning", "artificial-intelligence"),
        "Computer-Science",
    ),

    # Society, politics, religion
    CategoryRule(_contains("politics", "government", "election"), "Politics-Society"),
    CategoryRule(
        _contains("religion", "spirituality", "bible", "church", "buddhism", "taoism", "christianity", "islam"),
        "Religion-Spirituality",
    ),

    # Arts and culture
    CategoryRule(_segment("art", "design", "music", "cinema", "film"), "Arts-Design"),
    CategoryRule(_contains("photography", "architecture"), "Arts-Design"),

    # Business and money
    CategoryRule(_contains("business", "management", "leadership"), "Business-Economics"),
    CategoryRule(_contains("finance", "economics", "investing"), "Finance"),

    # Fiction suffixes, after every subject keyword: Military-Fiction is History
    CategoryRule(_contains("non-fiction", "nonfiction"), NON_FICTION),
    CategoryRule(re.compile(r"science.*fiction$"), "Science-Fiction"),
    CategoryRule(re.compile(r"fiction$"), FICTION),

    # Genres and other keywords
    CategoryRule(_contains("fantasy"), "Fantasy"),
    CategoryRule(_contains("thriller", "mystery"), "Mystery-Thriller"),
    CategoryRule(_contains("horror"), "Horror"),
    CategoryRule(_contains("cooking", "recipe", "cookbook"), "Cooking-Food"),
    CategoryRule(_contains("psychology"), "Psychology"),
    CategoryRule(_contains("education", "tutorial"), "Education"),
]


def category_for_name(tag: str) -> Optional[str]:
    """The vocabulary entry ``tag`` names, if it names one (after normalization)."""
    return _NORMALIZED_CATEGORIES.get(normalize_tag(tag))


def classify_tag(tag: str) -> Optional[str]:
    """
    Classify a tag by rules alone.

    A tag that already is a category name maps to itself; otherwise the
    ordered rules are tried top-to-bottom.

    Returns:
        The master category, or None when no rule applies.
    """
    t = normalize_tag(tag)
    if not t:
        return None

    direct = _NORMALIZED_CATEGORIES.get(t)
    if direct:
        return direct

    for rule in CATEGORY_RULES:
        if rule.matches(t):
            return rule.category
    return None
