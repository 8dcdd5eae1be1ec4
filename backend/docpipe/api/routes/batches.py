"""Batch processing endpoints - manual trigger and pipeline run logs."""

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from backend.docpipe.batch.processor import BatchMessageProcessor
from backend.docpipe.batch.service import get_processor
from backend.docpipe.config import get_settings
from backend.docpipe.db.engine import get_session_factory
from backend.docpipe.db.repositories import RunLogRepository
from backend.docpipe.db.sql_repositories import SqlRunLogRepository

router = APIRouter()


class RunBatchRequest(BaseModel):
    """Request body for POST /batches/run."""

    stream_id: str | None = Field(None, description="Process only this stream")


class RunBatchResponse(BaseModel):
    """Response for POST /batches/run."""

    processed: int
    skipped: bool = False


class PipelineRunResponse(BaseModel):
    """One pipeline run log entry."""

    id: int
    batch_id: str
    pipeline_id: str
    status: str
    input_messages: int
    steps: list[dict[str, Any]]
    output_threads: int | None
    output_proposals: int | None
    total_duration_ms: int | None
    llm_calls: int | None
    llm_tokens_used: int | None
    error_message: str | None
    created_at: datetime
    completed_at: datetime | None


def get_run_log_repository() -> RunLogRepository:
    """FastAPI dependency for the run log repository."""
    return SqlRunLogRepository(get_session_factory())


@router.post("/batches/run", response_model=RunBatchResponse)
async def run_batch(
    processor: Annotated[BatchMessageProcessor, Depends(get_processor)],
    request: RunBatchRequest | None = None,
) -> RunBatchResponse:
    """Process pending messages now.

    A call made while another batch is running returns immediately with
    skipped=true and processed=0.
    """
    if processor.is_processing:
        return RunBatchResponse(processed=0, skipped=True)

    stream_id = request.stream_id if request else None
    processed = await processor.process_batch(stream_id)
    return RunBatchResponse(processed=processed)


@router.get("/pipeline/runs", response_model=list[PipelineRunResponse])
async def list_pipeline_runs(
    run_log: Annotated[RunLogRepository, Depends(get_run_log_repository)],
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> list[PipelineRunResponse]:
    """Most recent pipeline runs for the configured tenant."""
    runs = await run_log.list_runs(get_settings().tenant_id, limit=limit)
    return [
        PipelineRunResponse(
            id=run.id,
            batch_id=run.batch_id,
            pipeline_id=run.pipeline_id,
            status=run.status,
            input_messages=run.input_messages,
            steps=run.steps,
            output_threads=run.output_threads,
            output_proposals=run.output_proposals,
            total_duration_ms=run.total_duration_ms,
            llm_calls=run.llm_calls,
            llm_tokens_used=run.llm_tokens_used,
            error_message=run.error_message,
            created_at=run.created_at,
            completed_at=run.completed_at,
        )
        for run in runs
    ]
