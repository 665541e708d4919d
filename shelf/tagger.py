"""
Tagging pipeline: extract an excerpt, ask the model for tags and a
summary, and normalize what comes back.
"""

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .errors import AIResponseMalformed, EngineUnavailable, ExtractionError
from .protocol import ExtractorProtocol, GeneratorProtocol
from .providers.base import build_tagging_system_prompt, build_tagging_user_prompt
from .tags import format_tag, join_tags

logger = logging.getLogger(__name__)

TAGGING_MAX_TOKENS = 500
TAGGING_TEMPERATURE = 0.3

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


@dataclass
class ParsedTags:
    """Validated model output."""
    tags: list[str]
    summary: str


@dataclass
class TaggingResult:
    """
    Outcome of tagging one item.

    Either ``tags``/``summary`` are set, or ``error`` carries the reason
    the pipeline stopped (extraction failure, unusable model output).
    """
    tags: str = ""
    summary: str = ""
    error: Optional[str] = None
    total_tokens: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_tagging_response(raw: str) -> ParsedTags:
    """
    Parse the model's JSON reply into formatted tags and a summary.

    Accepts ``{"tags": [...], "summary": "..."}``, optionally wrapped in
    a markdown code fence. Tags are reformatted to Capitalized-Hyphenated
    form and empties dropped.

    Raises:
        AIResponseMalformed: Not JSON, wrong shape, or no usable tags
    """
    text = raw.strip()
    fenced = _CODE_FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)

    try:
        data: Any = json.loads(text)
    except json.JSONDecodeError as e:
        raise AIResponseMalformed(f"Invalid JSON from AI: {e.msg}", raw) from e
    if not isinstance(data, dict):
        raise AIResponseMalformed("AI response is not a JSON object", raw)

    raw_tags = data.get("tags")
    if not isinstance(raw_tags, list):
        raise AIResponseMalformed("AI response has no tags list", raw)

    tags = []
    for tag in raw_tags:
        if not isinstance(tag, str):
            continue
        formatted = format_tag(tag)
        if formatted and formatted not in tags:
            tags.append(formatted)
    if not tags:
        raise AIResponseMalformed("AI response contained no usable tags", raw)

    summary = data.get("summary") or ""
    if not isinstance(summary, str):
        raise AIResponseMalformed("AI summary is not a string", raw)

    return ParsedTags(tags=tags, summary=summary.strip())


def read_rules(path: Optional[Path]) -> str:
    """User-maintained rule text, or "" if there is no rules file."""
    if path is None or not path.exists():
        return ""
    return path.read_text(encoding="utf-8")


class TaggingPipeline:
    """
    Per-item tagging: extract -> infer -> normalize.

    The rules file is re-read on every item so edits take effect
    mid-job.
    """

    def __init__(
        self,
        extractor: ExtractorProtocol,
        generator: GeneratorProtocol,
        *,
        rules_path: Optional[Path] = None,
        min_chars: int = 5,
    ):
        self.extractor = extractor
        self.generator = generator
        self.rules_path = rules_path
        self.min_chars = min_chars

    def process(self, filepath: str) -> Optional[TaggingResult]:
        """
        Tag one file.

        Returns:
            TaggingResult with tags or an error reason; None when the
            file yielded too little text to tag

        Raises:
            EngineUnavailable: No model selected or the model cannot be loaded
        """
        name = Path(filepath).name
        try:
            text = self.extractor.extract(filepath)
        except ExtractionError as e:
            logger.warning("Extraction failed for %s: %s", name, e)
            return TaggingResult(error=str(e))

        text = text.strip()
        if len(text) < self.min_chars:
            logger.info("Not enough text extracted from %s", name)
            return None

        system = build_tagging_system_prompt(read_rules(self.rules_path))
        logger.debug("Sending %d chars from %s to the model", len(text), name)
        try:
            generation = self.generator.generate(
                system,
                build_tagging_user_prompt(text),
                json_output=True,
                max_tokens=TAGGING_MAX_TOKENS,
                temperature=TAGGING_TEMPERATURE,
            )
        except EngineUnavailable:
            raise
        except Exception as e:
            logger.warning("AI request failed for %s: %s", name, e)
            return TaggingResult(error=f"AI request failed: {e}")

        try:
            parsed = parse_tagging_response(generation.text)
        except AIResponseMalformed as e:
            logger.warning("%s for %s: %r", e, name, e.raw[:200])
            return TaggingResult(error=str(e), total_tokens=generation.total_tokens)

        return TaggingResult(
            tags=join_tags(parsed.tags),
            summary=parsed.summary,
            total_tokens=generation.total_tokens,
        )
