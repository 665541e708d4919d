"""
HTTP job control surface.

FastAPI routes under /api. Long-running jobs answer with a
server-sent-events stream, one ``data: <json>`` frame per progress event.
The job runs on its own thread; a client that disconnects only stops
receiving, the job carries on.
"""

import logging
from collections.abc import Iterator
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .api import Shelf
from .errors import EngineUnavailable, JobConflict
from .types import ProgressEvent

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


class ScanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_keys: Optional[list[str]] = Field(default=None, alias="targetKeys")


class SingleScanRequest(BaseModel):
    filepath: str


class TagRequest(BaseModel):
    tag: str = ""


class RulesRequest(BaseModel):
    content: str


class ActiveModelRequest(BaseModel):
    filepath: str


def _sse(events: Iterator[ProgressEvent]) -> Iterator[str]:
    for event in events:
        yield event.to_sse()


def _stream(events: Iterator[ProgressEvent]) -> StreamingResponse:
    return StreamingResponse(_sse(events), media_type="text/event-stream", headers=SSE_HEADERS)


def create_router(shelf: Shelf) -> APIRouter:
    router = APIRouter(prefix="/api")

    # -- Content scan --

    @router.post("/scan-content")
    def scan_content(request: Optional[ScanRequest] = None):
        """Start a content scan; streams start, progress..., complete."""
        targets = request.target_keys if request else None
        try:
            events = shelf.scan(targets)
        except JobConflict as e:
            return JSONResponse(status_code=409, content={"error": str(e)})
        return _stream(events)

    @router.post("/scan-content/stop")
    def stop_scan() -> dict[str, Any]:
        return shelf.stop()

    @router.get("/scan-content/status")
    def scan_status() -> dict[str, Any]:
        return shelf.status().to_dict()

    @router.post("/scan-content/single")
    def scan_single(request: SingleScanRequest) -> dict[str, Any]:
        try:
            result = shelf.scan_single(request.filepath)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown item: {request.filepath}")
        except EngineUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"success": True, **result}

    # -- Taxonomy --

    @router.post("/taxonomy/sync")
    def taxonomy_sync():
        """Start a taxonomy sync; streams learning and applying progress."""
        try:
            events = shelf.sync()
        except JobConflict as e:
            return JSONResponse(status_code=409, content={"error": str(e)})
        return _stream(events)

    @router.post("/taxonomy/re-eval")
    def re_evaluate(request: TagRequest) -> dict[str, Any]:
        if not request.tag.strip():
            raise HTTPException(status_code=400, detail="Tag required")
        return {"success": True, "count": shelf.re_evaluate(request.tag.strip())}

    @router.post("/taxonomy/apply-implications")
    def apply_implications() -> dict[str, Any]:
        return {"success": True, **shelf.apply_implications()}

    @router.get("/taxonomy/rules")
    def get_rules() -> dict[str, Any]:
        return {"success": True, "content": shelf.read_rules()}

    @router.post("/taxonomy/rules")
    def save_rules(request: RulesRequest) -> dict[str, Any]:
        shelf.write_rules(request.content)
        return {"success": True}

    # -- Maintenance --

    @router.post("/books/reset-failed-scans")
    def reset_failed() -> dict[str, Any]:
        return {"success": True, "count": shelf.reset_failed()}

    @router.post("/books/export-errors")
    def export_errors() -> dict[str, Any]:
        count, path = shelf.export_errors()
        if path is None:
            return {"success": True, "count": 0, "message": "No errors found."}
        return {"success": True, "count": count, "path": str(path)}

    # -- Models and health --

    @router.get("/config/llm")
    def get_llm_config() -> dict[str, Any]:
        return shelf.llm_config()

    @router.post("/config/llm")
    def update_llm_config(updates: dict[str, Any]) -> dict[str, Any]:
        try:
            return shelf.update_llm_config(updates)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @router.get("/models")
    def get_models() -> list[dict[str, Any]]:
        return [m.to_dict() for m in shelf.list_models()]

    @router.post("/models/active")
    def set_active_model(request: ActiveModelRequest) -> dict[str, Any]:
        try:
            active = shelf.set_active_model(request.filepath)
        except FileNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"success": True, "active_model": active}

    @router.get("/health")
    def health() -> dict[str, Any]:
        return shelf.health()

    return router


def create_app(shelf: Shelf) -> FastAPI:
    """Build the FastAPI application around an open Shelf."""
    app = FastAPI(
        title="Shelf API",
        description="Content tagging and taxonomy jobs for a local document library",
    )
    app.include_router(create_router(shelf))
    app.state.shelf = shelf
    return app
