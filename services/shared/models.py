"""Shared domain records: documents, code examples, sync runs, search hits."""
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Document:
    """One ingested file of one documentation version."""
    version_id: str
    path: str
    title: str
    content: str
    content_hash: str
    doc_type: str = "text"
    id: str = field(default_factory=new_id)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class CodeExample:
    document_id: str
    language: str
    code: str
    description: str = ""
    id: str = field(default_factory=new_id)


class SyncStatus(str, Enum):
    """Sync run status enumeration."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStatus.SUCCESS, SyncStatus.FAILED)


ACTIVE_SYNC_STATUSES = (SyncStatus.PENDING, SyncStatus.RUNNING)


class InvalidTransitionError(Exception):
    """Raised when a sync run is moved to a state its lifecycle does not allow."""


@dataclass
class SyncRun:
    """Sync run record.

    Lifecycle: PENDING -> RUNNING -> SUCCESS | FAILED. A run can also fail
    straight from PENDING when it never got to start.
    """
    version_id: str
    id: str = field(default_factory=new_id)
    status: SyncStatus = SyncStatus.PENDING
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    documents_processed: int = 0
    chunks_created: int = 0
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def start(self):
        if self.status != SyncStatus.PENDING:
            raise InvalidTransitionError(f"Cannot start sync run {self.id} in state {self.status.value}")
        self.status = SyncStatus.RUNNING
        self.started_at = utcnow()

    def succeed(self, documents_processed: int, chunks_created: int):
        if self.status != SyncStatus.RUNNING:
            raise InvalidTransitionError(f"Cannot complete sync run {self.id} in state {self.status.value}")
        self.status = SyncStatus.SUCCESS
        self.documents_processed = documents_processed
        self.chunks_created = chunks_created
        self.completed_at = utcnow()

    def fail(self, message: str):
        if self.status.is_terminal:
            raise InvalidTransitionError(f"Sync run {self.id} already finished as {self.status.value}")
        self.status = SyncStatus.FAILED
        self.documents_processed = 0
        self.chunks_created = 0
        self.error_message = message
        self.completed_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data['status'] = self.status.value
        for key in ('started_at', 'completed_at'):
            if data[key]:
                data[key] = data[key].isoformat()
        return data


class SyncRequest(BaseModel):
    """Request accepted from whatever triggers a GitHub sync."""
    version_id: str = Field(..., min_length=1)
    owner: str = Field(..., min_length=1)
    repo: str = Field(..., min_length=1)
    docs_path: str = "docs"
    ref: str = "main"


@dataclass
class SearchResult:
    document_id: str
    title: str
    path: str
    content: str
    score: float
    chunk_id: Optional[str] = None
    chunk_index: Optional[int] = None
    search_type: str = "lexical"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
