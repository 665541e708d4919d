"""
Taxonomy engine.

Maps the free-form tags the model produces onto the fixed master-category
vocabulary and keeps every item's master tags in step with that mapping.

The mapping lives in a flat JSON file ({"Space-Opera": "Science-Fiction",
...}). It only grows: learned entries are never overwritten, and each
learning batch is written to disk before the next one starts, so an
interrupted sync loses at most the batch in flight.
"""

import json
import logging
import os
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from .errors import AIResponseMalformed, EngineUnavailable
from .protocol import GeneratorProtocol, LibraryStoreProtocol
from .providers.base import TAXONOMY_SYSTEM_PROMPT, build_taxonomy_prompt
from .rules import CATEGORY_SUPER_TYPES, MASTER_CATEGORIES, SUPER_TYPES, category_for_name, classify_tag
from .tags import compact_tag, join_tags, normalize_tag, split_tags
from .types import ProgressEvent

logger = logging.getLogger(__name__)

Emit = Callable[[ProgressEvent], None]

TAXONOMY_MAX_TOKENS = 1000
TAXONOMY_TEMPERATURE = 0.1
APPLY_PROGRESS_EVERY = 50

# Rough token cost of one tag in a learning batch: the tag in the prompt
# plus its "Tag": "Category" line in the reply
_TOKENS_PER_TAG = 18
_PROMPT_OVERHEAD_TOKENS = 512


def _no_emit(event: ProgressEvent) -> None:
    pass


# -----------------------------------------------------------------------------
# Mapping file
# -----------------------------------------------------------------------------

class MappingStore:
    """Persistent tag -> category mapping, rewritten wholesale on every save."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> dict[str, str]:
        """
        Read the mapping; a missing file is an empty mapping.

        Raises:
            ValueError: If the file is not a JSON object of strings
        """
        if not self.path.exists():
            return {}
        with open(self.path, encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Taxonomy mapping is not a JSON object: {self.path}")
        return {str(k): str(v) for k, v in data.items()}

    def save(self, mapping: Mapping[str, str]) -> None:
        """Write via a temp file and rename so a crash never leaves half a file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(dict(mapping), f, indent=2, ensure_ascii=False)
        os.replace(tmp, self.path)

    def merge(self, additions: Mapping[str, str]) -> dict[str, str]:
        """
        Add new entries and persist. Existing entries win.

        Returns:
            The full mapping after the merge
        """
        mapping = self.load()
        added = 0
        for tag, category in additions.items():
            if tag not in mapping:
                mapping[tag] = category
                added += 1
        if added:
            self.save(mapping)
        return mapping


class TaxonomyIndex:
    """Lookup over a mapping: exact key first, then normalized form."""

    def __init__(self, mapping: Mapping[str, str]):
        self.mapping = mapping
        self._normalized: dict[str, str] = {}
        for tag, category in mapping.items():
            self._normalized.setdefault(normalize_tag(tag), category)

    def resolve(self, tag: str) -> Optional[str]:
        category = self.mapping.get(tag)
        if category is not None:
            return category
        return self._normalized.get(normalize_tag(tag))

    def knows(self, tag: str) -> bool:
        return tag in self.mapping or normalize_tag(tag) in self._normalized


# -----------------------------------------------------------------------------
# Master tags
# -----------------------------------------------------------------------------

def compute_master_tags(raw_tags: str | Iterable[str] | None,
                        mapping: Mapping[str, str] | TaxonomyIndex) -> str:
    """
    Derive the 1-3 master labels for a set of raw tags.

    Categories are ranked by how many raw tags map to them (ties keep
    first-seen order). The first ranked category with a super-type gives
    Fiction/Non-Fiction; up to two ranked categories other than the
    super-types follow.

    Returns:
        e.g. "Fiction, Science-Fiction, Computer-Science"; "" if no tag maps
    """
    index = mapping if isinstance(mapping, TaxonomyIndex) else TaxonomyIndex(mapping)
    tags = split_tags(raw_tags) if raw_tags is None or isinstance(raw_tags, str) else list(raw_tags)

    counts: dict[str, int] = {}
    for tag in tags:
        category = index.resolve(tag)
        if category:
            counts[category] = counts.get(category, 0) + 1
    if not counts:
        return ""

    ranked = sorted(counts, key=lambda c: -counts[c])
    super_type = next((CATEGORY_SUPER_TYPES[c] for c in ranked if c in CATEGORY_SUPER_TYPES), None)
    specific = [c for c in ranked if c not in SUPER_TYPES][:2]

    labels: list[str] = []
    for label in ([super_type] if super_type else []) + specific:
        if label not in labels:
            labels.append(label)
    return join_tags(labels)


def prune_redundant_tags(raw_tags: str | None, master_tags: str | None) -> str:
    """Drop raw tags that duplicate a master tag (compared as lowercase alphanumerics)."""
    masters = {compact_tag(m) for m in split_tags(master_tags)}
    return join_tags(t for t in split_tags(raw_tags) if compact_tag(t) not in masters)


def derive_master_tags(raw_tags: str | None,
                       mapping: Mapping[str, str] | TaxonomyIndex) -> tuple[str, str]:
    """
    Master tags plus the pruned raw tags, at a fixed point.

    Pruning can change the category tally, so master tags are recomputed
    on the pruned list until pruning removes nothing. Re-running on the
    output is a no-op.

    Returns:
        (master_tags, pruned_raw_tags)
    """
    index = mapping if isinstance(mapping, TaxonomyIndex) else TaxonomyIndex(mapping)
    tags = join_tags(split_tags(raw_tags))
    while True:
        master = compute_master_tags(tags, index)
        pruned = prune_redundant_tags(tags, master)
        if pruned == tags:
            return master, tags
        tags = pruned


# -----------------------------------------------------------------------------
# Learning
# -----------------------------------------------------------------------------

def parse_mapping_response(raw: str, batch: list[str]) -> dict[str, str]:
    """
    Validate a learning reply against the batch that was asked.

    Keys are matched back to batch tags by normalized form; values must
    name a vocabulary category. Anything else is dropped.

    Raises:
        AIResponseMalformed: Not a JSON object
    """
    try:
        data: Any = json.loads(raw)
    except json.JSONDecodeError as e:
        raise AIResponseMalformed(f"Invalid JSON from AI: {e.msg}", raw) from e
    if not isinstance(data, dict):
        raise AIResponseMalformed("AI response is not a JSON object", raw)

    asked = {normalize_tag(t): t for t in batch}
    result: dict[str, str] = {}
    for key, value in data.items():
        tag = asked.get(normalize_tag(str(key)))
        category = category_for_name(value) if isinstance(value, str) else None
        if tag is not None and category is not None:
            result.setdefault(tag, category)
    return result


@dataclass(frozen=True)
class ImplicationRule:
    """Items tagged ``child`` must also carry ``parent``."""
    child: str
    parent: str


_IMPLICATION_RE = re.compile(r"If .*?`([^`]+)`.*?ensures?.*?`([^`]+)`", re.IGNORECASE)
_ARROW_RE = re.compile(r"^\s*(?:[-*]\s+)?`?([^`>]+?)`?\s*->\s*`?([^`]+?)`?\s*$")


def parse_implication_rules(text: str) -> list[ImplicationRule]:
    """
    Find implication statements in free-form rule text.

    Recognized, one per line:
        If a book is about `Machine-Learning`, ensure it is also tagged `Artificial-Intelligence`
        Machine-Learning -> Artificial-Intelligence

    Other lines are ignored (the same file also carries prose rules for
    the tagging prompt).
    """
    rules: list[ImplicationRule] = []
    for line in text.splitlines():
        match = _IMPLICATION_RE.search(line) or _ARROW_RE.match(line)
        if not match:
            continue
        child, parent = match.group(1).strip(), match.group(2).strip()
        if "," in child or "," in parent:
            continue
        if child and parent and normalize_tag(child) != normalize_tag(parent):
            rules.append(ImplicationRule(child, parent))
    return rules


class TaxonomyEngine:
    """
    Corpus-wide classification and maintenance.

    ``sync`` is the long-running operation; it reports progress through
    an ``emit`` callback and is driven by the job engine, which enforces
    that only one sync runs at a time.
    """

    def __init__(
        self,
        store: LibraryStoreProtocol,
        generator: GeneratorProtocol,
        mapping_store: MappingStore,
        *,
        learn_batch_size: int = 500,
    ):
        self.store = store
        self.generator = generator
        self.mapping_store = mapping_store
        self.learn_batch_size = learn_batch_size

    def collect_tags(self) -> list[str]:
        """Distinct raw tags across the corpus, first-seen order."""
        seen: dict[str, None] = {}
        for item in self.store.items_with_tags():
            for tag in split_tags(item.tags):
                seen.setdefault(tag, None)
        return list(seen)

    @staticmethod
    def unknown_tags(tags: Iterable[str], index: TaxonomyIndex) -> list[str]:
        """Tags with no mapping entry, one per normalized form."""
        unknown: dict[str, str] = {}
        for tag in tags:
            if not index.knows(tag):
                unknown.setdefault(normalize_tag(tag), tag)
        return [t for key, t in unknown.items() if key]

    def batch_size(self) -> int:
        """Learning batch size, shrunk to what the loaded context can hold."""
        context = self.generator.context_size
        if not context:
            return self.learn_batch_size
        fits = max(1, (context - _PROMPT_OVERHEAD_TOKENS) // _TOKENS_PER_TAG)
        return max(1, min(self.learn_batch_size, fits))

    def learn_batch(self, batch: list[str]) -> dict[str, str]:
        """
        Ask the model to classify one batch.

        Returns:
            Validated tag -> category entries (possibly empty)

        Raises:
            EngineUnavailable: The model cannot be used at all
            AIResponseMalformed: The reply was not a JSON object
        """
        generation = self.generator.generate(
            TAXONOMY_SYSTEM_PROMPT,
            build_taxonomy_prompt(batch, MASTER_CATEGORIES),
            json_output=True,
            max_tokens=max(TAXONOMY_MAX_TOKENS, 12 * len(batch)),
            temperature=TAXONOMY_TEMPERATURE,
        )
        return parse_mapping_response(generation.text, batch)

    def sync(self, emit: Optional[Emit] = None) -> int:
        """
        Learn mappings for unknown tags, then re-derive every item's master tags.

        Events: start, progress_learning (per batch), phase_applying,
        progress_applying (every 50 items and at the end), complete.

        Returns:
            Number of items whose tags or master tags changed

        Raises:
            EngineUnavailable: Unknown tags remain and no model can be used.
                Entries resolved so far are saved and applied to every item
                before this is raised.
        """
        emit = emit or _no_emit
        all_tags = self.collect_tags()
        emit(ProgressEvent("start", {"totalTags": len(all_tags)}))

        mapping = self.mapping_store.load()
        unknown = self.unknown_tags(all_tags, TaxonomyIndex(mapping))
        logger.info("Taxonomy sync: %d distinct tags, %d unknown", len(all_tags), len(unknown))

        # Rules first; whatever they resolve is saved before any model call
        by_rule: dict[str, str] = {}
        remaining: list[str] = []
        for tag in unknown:
            category = classify_tag(tag)
            if category:
                by_rule[tag] = category
            else:
                remaining.append(tag)
        if by_rule:
            mapping = self.mapping_store.merge(by_rule)
            logger.info("Auto-classified %d tags using rules", len(by_rule))

        if remaining:
            try:
                mapping = self._learn(remaining, len(all_tags) - len(remaining), len(all_tags), emit)
            except EngineUnavailable as e:
                logger.warning("Taxonomy learning stopped, applying saved mapping: %s", e)
                emit(ProgressEvent("phase_applying"))
                self._apply(TaxonomyIndex(self.mapping_store.load()), emit)
                raise

        emit(ProgressEvent("phase_applying"))
        count = self._apply(TaxonomyIndex(mapping), emit)
        logger.info("Taxonomy sync updated %d items", count)
        emit(ProgressEvent("complete", {"count": count}))
        return count

    def _learn(self, remaining: list[str], known: int, total: int, emit: Emit) -> dict[str, str]:
        # Batch size depends on the context the model actually got
        self.generator.ensure_loaded()
        size = self.batch_size()
        batches = [remaining[i:i + size] for i in range(0, len(remaining), size)]
        mapping = self.mapping_store.load()
        processed = known

        for number, batch in enumerate(batches, 1):
            processed += len(batch)
            emit(ProgressEvent("progress_learning", {"processedGlobal": processed, "totalGlobal": total}))
            try:
                learned = self.learn_batch(batch)
            except EngineUnavailable:
                raise
            except Exception as e:
                logger.warning("Taxonomy batch %d/%d failed, skipping: %s", number, len(batches), e)
                continue
            mapping = self.mapping_store.merge(learned)
            logger.info("Taxonomy batch %d/%d: learned %d of %d tags",
                        number, len(batches), len(learned), len(batch))
        return mapping

    def _apply(self, index: TaxonomyIndex, emit: Emit) -> int:
        def apply(store: LibraryStoreProtocol) -> int:
            items = store.items_with_tags()
            total = len(items)
            changed = 0
            for position, item in enumerate(items, 1):
                master, pruned = derive_master_tags(item.tags, index)
                touched = False
                if master != (item.master_tags or ""):
                    store.update_master_tags(item.filepath, master)
                    touched = True
                if pruned != (item.tags or ""):
                    store.update_raw_tags(item.filepath, pruned)
                    touched = True
                changed += touched
                if position % APPLY_PROGRESS_EVERY == 0 or position == total:
                    emit(ProgressEvent("progress_applying", {"current": position, "total": total}))
            return changed

        return self.store.run_in_transaction(apply)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def master_tags_for(self, raw_tags: str | None) -> str:
        """Master tags for one item under the current mapping."""
        return compute_master_tags(raw_tags, self.mapping_store.load())

    def re_evaluate(self, tag: str) -> int:
        """Reset every item carrying ``tag`` so the next default scan re-tags it."""
        count = self.store.reset_tag(tag)
        logger.info("Re-evaluating tag %r: reset %d items", tag, count)
        return count

    def apply_implications(self, text: str) -> tuple[int, list[str]]:
        """
        Apply every implication rule found in ``text``.

        Returns:
            (total items changed, ["Child -> Parent (n books)", ...])
        """
        changes = 0
        applied: list[str] = []
        for rule in parse_implication_rules(text):
            n = self.store.add_tag_where_missing(rule.child, rule.parent)
            if n:
                changes += n
                applied.append(f"{rule.child} -> {rule.parent} ({n} books)")
                logger.info("Applied implication %s -> %s (%d updated)", rule.child, rule.parent, n)
        return changes, applied
