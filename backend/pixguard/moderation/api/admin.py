"""Administrative endpoints for the moderation task queue."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from pixguard.api.ops import require_admin
from pixguard.moderation.domain.container import get_processor
from pixguard.moderation.workers.queue_processor import QueueProcessor

router = APIRouter(prefix="/api/mod/v1/admin/queue", tags=["moderation-queue"], dependencies=[Depends(require_admin)])


class QueueStatusOut(BaseModel):
    pending: int
    processing: int
    completed: int
    failed: int
    error: int
    total: int
    is_processing: bool
    state: str


class RetryOut(BaseModel):
    reset: int


class ProcessorStateOut(BaseModel):
    state: str


def _processor_dep() -> QueueProcessor:
    return get_processor()


@router.get("", response_model=QueueStatusOut)
async def queue_status(processor: QueueProcessor = Depends(_processor_dep)) -> QueueStatusOut:
    snapshot = await processor.get_queue_status()
    return QueueStatusOut(**snapshot.to_dict())


@router.post("/retry", response_model=RetryOut)
async def retry_failed(processor: QueueProcessor = Depends(_processor_dep)) -> RetryOut:
    return RetryOut(reset=await processor.retry_failed_tasks())


@router.post("/start", response_model=ProcessorStateOut)
async def start_processor(processor: QueueProcessor = Depends(_processor_dep)) -> ProcessorStateOut:
    processor.start()
    return ProcessorStateOut(state=processor.state.value)


@router.post("/stop", response_model=ProcessorStateOut)
async def stop_processor(processor: QueueProcessor = Depends(_processor_dep)) -> ProcessorStateOut:
    processor.stop()
    return ProcessorStateOut(state=processor.state.value)
