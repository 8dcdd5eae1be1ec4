"""Message and watermark domain models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class ProcessingStatus(str, Enum):
    """Processing state of an ingested message."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class Message(BaseModel):
    """A single chat message from one stream."""

    id: int
    stream_id: str
    timestamp: datetime
    author: str
    content: str
    message_id: str | None = None  # id assigned by the chat platform
    channel: str | None = None
    processing_status: ProcessingStatus = ProcessingStatus.PENDING


class ProcessingWatermark(BaseModel):
    """Per-stream boundary below which messages are durably processed."""

    stream_id: str
    watermark_time: datetime
    last_processed_batch_at: datetime | None = None


class BatchWindow(BaseModel):
    """Half-open time range [start, end) of one batch."""

    start: datetime
    end: datetime
    has_work: bool
