"""
Data types for shelf.
"""

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


# Sentinel prefixes written into an item's tags when processing did not
# produce real tags. Items carrying them are excluded from default batches.
ERROR_PREFIX = "Error:"
SKIPPED_PREFIX = "Skipped:"

SKIPPED_NO_CONTENT = "Skipped: No Content"
SKIPPED_SUMMARY = "Insufficient text extracted from file."
ERROR_SUMMARY = "AI connection or processing failed."
ITEM_CRASH_TAGS = "Error: Scan Failed"
PROCESS_CRASH_TAGS = "Error: Crashed Server"


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SS."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def epoch_ms() -> int:
    """Milliseconds since the epoch, as reported in job status."""
    return int(time.time() * 1000)


def is_sentinel(tags: Optional[str]) -> bool:
    """True if a tags string is an error/skip marker rather than real tags."""
    if not tags:
        return False
    stripped = tags.lstrip()
    return stripped.startswith(ERROR_PREFIX) or stripped.startswith(SKIPPED_PREFIX)


@dataclass
class LibraryItem:
    """
    One catalogued document, keyed by its file path.

    Attributes:
        filepath: Natural key
        tags: Raw tags as stored (comma-joined)
        master_tags: Derived categories (comma-joined, 1-3 labels)
        locked_fields: Field names excluded from automatic overwrite
    """
    filepath: str
    title: Optional[str] = None
    author: Optional[str] = None
    publication_year: Optional[int] = None
    tags: Optional[str] = None
    summary: Optional[str] = None
    master_tags: Optional[str] = None
    metadata_scanned: bool = False
    content_scanned: bool = False
    locked_fields: set[str] = field(default_factory=set)
    id: Optional[int] = None
    created_at: Optional[str] = None

    @property
    def raw_tags(self) -> list[str]:
        from .tags import split_tags
        return split_tags(self.tags)

    @classmethod
    def from_row(cls, row) -> "LibraryItem":
        keys = row.keys()
        locked: set[str] = set()
        if "locked_fields" in keys and row["locked_fields"]:
            try:
                locked = set(json.loads(row["locked_fields"]))
            except (json.JSONDecodeError, TypeError):
                locked = set()
        return cls(
            filepath=row["filepath"],
            title=row["title"] if "title" in keys else None,
            author=row["author"] if "author" in keys else None,
            publication_year=row["publication_year"] if "publication_year" in keys else None,
            tags=row["tags"] if "tags" in keys else None,
            summary=row["summary"] if "summary" in keys else None,
            master_tags=row["master_tags"] if "master_tags" in keys else None,
            metadata_scanned=bool(row["metadata_scanned"]) if "metadata_scanned" in keys else False,
            content_scanned=bool(row["content_scanned"]) if "content_scanned" in keys else False,
            locked_fields=locked,
            id=row["id"] if "id" in keys else None,
            created_at=row["created_at"] if "created_at" in keys else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filepath": self.filepath,
            "title": self.title,
            "author": self.author,
            "publication_year": self.publication_year,
            "tags": self.tags,
            "summary": self.summary,
            "master_tags": self.master_tags,
            "metadata_scanned": self.metadata_scanned,
            "content_scanned": self.content_scanned,
            "locked_fields": sorted(self.locked_fields),
        }


@dataclass
class ProgressEvent:
    """
    One state transition streamed out of a running job.

    ``type`` is the event discriminator ("start", "progress", "complete",
    "error", "progress_learning", "phase_applying", "progress_applying");
    ``data`` holds the type-specific fields.
    """
    type: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, **self.data}

    def to_sse(self) -> str:
        """Encode as one server-sent-events frame."""
        return f"data: {json.dumps(self.to_dict())}\n\n"


@dataclass(frozen=True)
class JobSnapshot:
    """Read-only view of the job state."""
    active: bool
    processed: int
    total: int
    current_file: Optional[str]
    start_time: Optional[int]
    total_tokens: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "processed": self.processed,
            "total": self.total,
            "currentFile": self.current_file,
            "startTime": self.start_time,
            "totalTokens": self.total_tokens,
        }
