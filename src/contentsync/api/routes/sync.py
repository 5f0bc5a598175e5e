"""Sync control-plane routes."""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel

from contentsync.runtime import get_orchestrator
from contentsync.sync.errors import SourceNotFound
from contentsync.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


class TriggerResponse(BaseModel):
    message: str
    source_id: str


class CycleLogResponse(BaseModel):
    provider: Optional[str]
    status: str
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    sources_synced: Optional[int]
    sources_failed: Optional[int]
    error_message: Optional[str]


async def _run_in_background(label: str, operation, source_id: str) -> None:
    """Background task wrapper: failures are already recorded on the sync record."""
    try:
        result = await operation(source_id)
        logger.info("Background %s for %s: %s", label, source_id, result.outcome.value)
    except Exception as exc:
        logger.error("Background %s for %s failed: %s", label, source_id, exc)


def _status_or_404(orchestrator: SyncOrchestrator, source_id: str) -> Dict[str, Any]:
    try:
        return orchestrator.get_sync_status(source_id)
    except SourceNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))


def _reject_if_running(status: Dict[str, Any]) -> None:
    if status["status"] == "in_progress" and not status["is_paused"]:
        raise HTTPException(status_code=409, detail="Sync already in progress")


@router.post("/sources/{source_id}/manual", status_code=202, response_model=TriggerResponse)
async def start_manual_sync(
    source_id: str,
    background_tasks: BackgroundTasks,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Run a sync for one source now. Returns immediately; sync runs in background."""
    _reject_if_running(_status_or_404(orchestrator, source_id))
    background_tasks.add_task(_run_in_background, "manual sync", orchestrator.start_manual_sync, source_id)
    return TriggerResponse(message="Sync started", source_id=source_id)


@router.post("/sources/{source_id}/full-resync", status_code=202, response_model=TriggerResponse)
async def trigger_full_resync(
    source_id: str,
    background_tasks: BackgroundTasks,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Recrawl every item of a source from the first page."""
    _reject_if_running(_status_or_404(orchestrator, source_id))
    background_tasks.add_task(_run_in_background, "full resync", orchestrator.trigger_full_resync, source_id)
    return TriggerResponse(message="Full resync started", source_id=source_id)


@router.post("/sources/{source_id}/resume", status_code=202, response_model=TriggerResponse)
async def resume_initial_sync(
    source_id: str,
    background_tasks: BackgroundTasks,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Continue an unfinished crawl from its persisted cursor."""
    status = _status_or_404(orchestrator, source_id)
    _reject_if_running(status)
    if status["mode"] == "incremental" and not status["is_paused"]:
        raise HTTPException(status_code=409, detail="Initial sync already completed")
    background_tasks.add_task(_run_in_background, "resume", orchestrator.resume_initial_sync, source_id)
    return TriggerResponse(message="Sync resumed", source_id=source_id)


@router.post("/sources/{source_id}/request", status_code=202, response_model=TriggerResponse)
def request_sync(
    source_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Flag a source for the next scheduled cycle."""
    try:
        orchestrator.request_sync(source_id)
    except SourceNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return TriggerResponse(message="Sync requested", source_id=source_id)


@router.get("/sources/{source_id}")
def get_sync_status(
    source_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    return _status_or_404(orchestrator, source_id)


@router.get("/stats")
def list_sync_stats(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    return orchestrator.list_sync_stats()


@router.get("/quota/{provider}")
def quota_summary(provider: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.get_quota_summary(provider).to_dict()
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.get("/cycles/latest", response_model=CycleLogResponse)
def latest_cycle(
    provider: Optional[str] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Return the most recent scheduled cycle, optionally for one provider."""
    log = orchestrator.latest_cycle(provider)
    if not log:
        return CycleLogResponse(
            provider=provider,
            status="never_run",
            started_at=None,
            finished_at=None,
            sources_synced=None,
            sources_failed=None,
            error_message=None,
        )
    return CycleLogResponse(
        provider=log.provider,
        status=log.status,
        started_at=log.started_at,
        finished_at=log.finished_at,
        sources_synced=log.sources_synced,
        sources_failed=log.sources_failed,
        error_message=log.error_message,
    )
