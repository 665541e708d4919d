"""
Job engine.

Runs the two long-running operations on a background thread:
- content scan: tag every unprocessed item (or an explicit target list)
- taxonomy sync: learn mappings and re-derive master tags

Each kind is single-flight: starting one while it is already running
raises JobConflict. Progress goes out through an EventChannel; a
consumer that stops reading detaches without affecting the job.
"""

import logging
import queue
import sys
import threading
from collections.abc import Iterator
from pathlib import Path
from typing import Callable, Optional

from .errors import EngineUnavailable, JobConflict, log_exception
from .protocol import LibraryStoreProtocol
from .tagger import TaggingPipeline, TaggingResult
from .taxonomy import TaxonomyEngine
from .types import (
    ERROR_PREFIX, ERROR_SUMMARY, ITEM_CRASH_TAGS, PROCESS_CRASH_TAGS,
    SKIPPED_NO_CONTENT, SKIPPED_SUMMARY, JobSnapshot, LibraryItem, ProgressEvent, epoch_ms,
)

logger = logging.getLogger(__name__)

_CLOSED = object()


def _offer(q: queue.Queue, item) -> None:
    """Put without blocking, evicting the oldest entries while full."""
    while True:
        try:
            q.put_nowait(item)
            return
        except queue.Full:
            try:
                q.get_nowait()
            except queue.Empty:
                pass


class EventChannel:
    """
    Fan-out of progress events to subscribers.

    Each subscriber gets its own queue of at most ``max_pending`` events.
    Publishing never blocks: when a queue is full its oldest event is
    dropped, so a slow or departed consumer costs bounded memory and
    still sees the final event and the close.
    """

    def __init__(self, max_pending: int = 1000):
        self.max_pending = max_pending
        self._lock = threading.Lock()
        self._subscribers: list[queue.Queue] = []
        self._closed = False

    def subscribe(self) -> Iterator[ProgressEvent]:
        """Events published from now on, ending when the channel closes."""
        q: queue.Queue = queue.Queue(maxsize=self.max_pending)
        with self._lock:
            if self._closed:
                q.put(_CLOSED)
            else:
                self._subscribers.append(q)

        def events() -> Iterator[ProgressEvent]:
            try:
                while True:
                    event = q.get()
                    if event is _CLOSED:
                        return
                    yield event
            finally:
                with self._lock:
                    if q in self._subscribers:
                        self._subscribers.remove(q)

        return events()

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for q in subscribers:
            _offer(q, event)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            subscribers = list(self._subscribers)
        for q in subscribers:
            _offer(q, _CLOSED)


class JobEngine:
    """
    Single-flight content scan and taxonomy sync.

    State is only mutated under ``_lock``; callers read it through
    ``status()`` snapshots.
    """

    def __init__(
        self,
        store: LibraryStoreProtocol,
        pipeline: TaggingPipeline,
        taxonomy: TaxonomyEngine,
        *,
        batch_size: int = 50,
    ):
        self.store = store
        self.pipeline = pipeline
        self.taxonomy = taxonomy
        self.batch_size = batch_size

        self._lock = threading.Lock()
        self._active = False
        self._stop_requested = False
        self._processed = 0
        self._total = 0
        self._current_path: Optional[str] = None
        self._start_time: Optional[int] = None
        self._total_tokens = 0
        self._scan_thread: Optional[threading.Thread] = None

        self._sync_active = False
        self._sync_thread: Optional[threading.Thread] = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def active(self) -> bool:
        return self._active

    @property
    def sync_active(self) -> bool:
        return self._sync_active

    @property
    def in_flight(self) -> Optional[str]:
        """Path of the item being processed right now, if any."""
        return self._current_path

    def status(self) -> JobSnapshot:
        with self._lock:
            return JobSnapshot(
                active=self._active,
                processed=self._processed,
                total=self._total,
                current_file=Path(self._current_path).name if self._current_path else None,
                start_time=self._start_time,
                total_tokens=self._total_tokens,
            )

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until background work started by this engine finishes."""
        for thread in (self._scan_thread, self._sync_thread):
            if thread is not None:
                thread.join(timeout)

    # -------------------------------------------------------------------------
    # Content scan
    # -------------------------------------------------------------------------

    def start(self, targets: Optional[list[str]] = None) -> Iterator[ProgressEvent]:
        """
        Start a content scan on a background thread.

        Args:
            targets: Explicit item keys (targeted mode), or None to work
                through every unprocessed item

        Returns:
            The scan's event stream: start, progress..., [error], complete

        Raises:
            JobConflict: A scan is already running
        """
        with self._lock:
            if self._active:
                raise JobConflict("Scan already in progress")
            self._active = True
            self._stop_requested = False
            self._processed = 0
            self._total = 0
            self._current_path = None
            self._start_time = epoch_ms()
            self._total_tokens = 0

        channel = EventChannel()
        events = channel.subscribe()
        self._scan_thread = threading.Thread(
            target=self._run_scan, args=(targets, channel),
            name="shelf-scan", daemon=True,
        )
        self._scan_thread.start()
        return events

    def stop(self) -> dict:
        """
        Ask a running scan to stop at the next batch boundary.

        The scan stays ``active`` until its worker has actually finished,
        so a new scan cannot start alongside the one winding down.
        """
        with self._lock:
            if not self._active:
                return {"success": False, "message": "No scan active"}
            self._stop_requested = True
        logger.info("Stop requested, scan will end after the current batch")
        return {"success": True, "message": "Scan stopping..."}

    def _run_scan(self, targets: Optional[list[str]], channel: EventChannel) -> None:
        emit = channel.publish
        try:
            if targets is not None:
                pending = self.store.find_by_keys(targets)
                total = len(pending)
            else:
                pending = None
                total = self.store.count_unprocessed()
            with self._lock:
                self._total = total
            logger.info("Scan started: %d items (%s)", total, "targeted" if targets is not None else "full")
            emit(ProgressEvent("start", {"total": total}))

            offset = 0
            while not self._stop_requested:
                if pending is not None:
                    batch = pending[offset:offset + self.batch_size]
                    offset += self.batch_size
                else:
                    batch = self.store.find_unprocessed(self.batch_size)
                if not batch:
                    break
                logger.debug("Processing batch of %d items", len(batch))
                for item in batch:
                    self._scan_item(item, emit)

        except EngineUnavailable as e:
            logger.error("Scan aborted: %s", e)
            emit(ProgressEvent("error", {"message": str(e)}))
        except Exception as e:
            log_exception(e, "content scan")
            logger.error("Scan failed: %s", e)
            emit(ProgressEvent("error", {"message": str(e)}))
        finally:
            with self._lock:
                self._active = False
                self._current_path = None
                processed = self._processed
            logger.info("Scan complete: %d items processed", processed)
            emit(ProgressEvent("complete"))
            channel.close()

    def _scan_item(self, item: LibraryItem, emit: Callable[[ProgressEvent], None]) -> None:
        with self._lock:
            self._current_path = item.filepath

        tags = self._tag_item(item.filepath)

        with self._lock:
            self._processed += 1
            # Items can be added while a full scan runs
            self._total = max(self._total, self._processed)
            data = {
                "processed": self._processed,
                "total": self._total,
                "current": Path(item.filepath).name,
                "startTime": self._start_time,
                "totalTokens": self._total_tokens,
                "tags": tags,
            }
        emit(ProgressEvent("progress", data))

    def _tag_item(self, filepath: str) -> str:
        """
        Run the pipeline on one item and write the outcome.

        Returns:
            The tags written (real tags or a sentinel)

        Raises:
            EngineUnavailable: Nothing is written for the item
        """
        name = Path(filepath).name
        try:
            result = self.pipeline.process(filepath)
            if result is None:
                logger.info("No content: %s", name)
                self.store.update_content(filepath, tags=SKIPPED_NO_CONTENT, summary=SKIPPED_SUMMARY)
                return SKIPPED_NO_CONTENT

            self._add_tokens(result)
            if not result.ok:
                tags = f"{ERROR_PREFIX} {result.error}"
                logger.warning("AI error for %s: %s", name, result.error)
                self.store.update_content(filepath, tags=tags, summary=ERROR_SUMMARY)
                return tags

            self.store.update_content(filepath, tags=result.tags, summary=result.summary)
            master = self.taxonomy.master_tags_for(result.tags)
            if master:
                self.store.update_master_tags(filepath, master)
            logger.info("Tagged %s: %s", name, result.tags)
            return result.tags

        except EngineUnavailable:
            raise
        except Exception as e:
            log_exception(e, filepath)
            logger.error("Error processing %s: %s", name, e)
            self.store.update_content(filepath, tags=ITEM_CRASH_TAGS, summary=str(e))
            return ITEM_CRASH_TAGS

    def _add_tokens(self, result: TaggingResult) -> None:
        if result.total_tokens:
            with self._lock:
                self._total_tokens += result.total_tokens

    def process_single(self, filepath: str) -> dict:
        """
        Tag one item immediately, outside the batch loop.

        Returns:
            {"tags", "summary"} as stored

        Raises:
            KeyError: Unknown item
            EngineUnavailable: No model can be used
        """
        if self.store.get(filepath) is None:
            raise KeyError(filepath)
        self._tag_item(filepath)
        item = self.store.get(filepath)
        return {"tags": item.tags, "summary": item.summary, "master_tags": item.master_tags}

    def mark_in_flight_crashed(self, exc: BaseException) -> Optional[str]:
        """
        Best-effort: tag the in-flight item as having crashed the process.

        Returns:
            The path marked, or None if nothing was in flight
        """
        filepath = self._current_path
        if filepath is None:
            return None
        try:
            self.store.update_content(filepath, tags=PROCESS_CRASH_TAGS, summary=f"Crash: {exc}")
        except Exception as db_error:
            logger.error("Failed to mark %s as crashed: %s", filepath, db_error)
            return None
        logger.error("Marked %s as crashed: %s", filepath, exc)
        return filepath

    # -------------------------------------------------------------------------
    # Taxonomy sync
    # -------------------------------------------------------------------------

    def start_sync(self) -> Iterator[ProgressEvent]:
        """
        Start a taxonomy sync on a background thread.

        Returns:
            The sync's event stream, ending with complete or error

        Raises:
            JobConflict: A sync is already running
        """
        with self._lock:
            if self._sync_active:
                raise JobConflict("Taxonomy sync already in progress")
            self._sync_active = True

        channel = EventChannel()
        events = channel.subscribe()
        self._sync_thread = threading.Thread(
            target=self._run_sync, args=(channel,),
            name="shelf-taxonomy", daemon=True,
        )
        self._sync_thread.start()
        return events

    def _run_sync(self, channel: EventChannel) -> None:
        try:
            self.taxonomy.sync(channel.publish)
        except Exception as e:
            if not isinstance(e, EngineUnavailable):
                log_exception(e, "taxonomy sync")
            logger.error("Taxonomy sync failed: %s", e)
            channel.publish(ProgressEvent("error", {"message": str(e)}))
        finally:
            with self._lock:
                self._sync_active = False
            channel.close()


def install_crash_handler(engine: JobEngine) -> None:
    """
    Route uncaught exceptions through ``engine`` before the default hooks.

    Whatever item was in flight gets marked so the next default scan
    skips it instead of crashing on it again.
    """
    previous_thread_hook = threading.excepthook
    previous_hook = sys.excepthook

    def thread_hook(args):
        if args.exc_value is not None and not isinstance(args.exc_value, SystemExit):
            engine.mark_in_flight_crashed(args.exc_value)
        previous_thread_hook(args)

    def hook(exc_type, exc_value, exc_tb):
        if not issubclass(exc_type, (KeyboardInterrupt, SystemExit)):
            engine.mark_in_flight_crashed(exc_value)
        previous_hook(exc_type, exc_value, exc_tb)

    threading.excepthook = thread_hook
    sys.excepthook = hook
