from sqlalchemy import Column, DateTime, JSON
from sqlmodel import SQLModel, Field
from typing import Any, Optional, Dict, List
from datetime import datetime, timezone
from enum import Enum
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    idle = "idle"
    processing = "processing"
    completed = "completed"
    error = "error"


TERMINAL_STATUSES = (JobStatus.completed, JobStatus.error)


class JobKind(str, Enum):
    adcopy = "adcopy"              # ad copy variations, workflow engine
    audience = "audience"          # audience analysis, automation platform
    workflow = "workflow"          # free-form workflow engine run
    conversation = "conversation"  # assistant chat, automation platform, keeps message history


class Job(SQLModel, table=True):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    owner: str = Field(index=True)
    kind: JobKind = JobKind.workflow
    title: Optional[str] = None
    status: JobStatus = JobStatus.idle
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    result: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON(none_as_null=True), nullable=True))
    # [{"role": "user"|"assistant", "content": str, "timestamp": iso8601}]
    messages: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    error: Optional[str] = None
    run_id: Optional[str] = None
    attempt: Optional[str] = None
    lease_expires_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    last_activity: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False, index=True)
    )
