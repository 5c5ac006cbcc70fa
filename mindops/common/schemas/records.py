"""
Record Schemas

Structured payloads stored alongside chunks and collaboration tasks, and
the enums shared by the ORM layer and the HTTP surface.
"""

from typing import List, Optional

from enum import Enum
from pydantic import BaseModel, Field


# ============================================================================
# Enums
# ============================================================================

class SenderRole(str, Enum):
    USER = "user"
    AGENT = "agent"


class FollowStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TaskStatus(str, Enum):
    """Collaboration task lifecycle"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"
    CONSUMED = "consumed"  # requester has surfaced the response


class TaskPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class QueryMode(str, Enum):
    LOCAL = "local"
    SYNC_COLLABORATION = "sync_collaboration"
    ASYNC_TASK = "async_task"


class SourceType(str, Enum):
    CSV = "csv"
    TSV = "tsv"
    XLSX = "xlsx"


CHUNKING_STRATEGY = "recursive-v1"


# ============================================================================
# Sub-models
# ============================================================================

class ChunkMetadata(BaseModel):
    """Metadata written once with each chunk"""
    chunk_index: int
    total_chunks: int
    sheet_name: Optional[str] = None
    source_type: SourceType = SourceType.CSV
    strategy: str = CHUNKING_STRATEGY
    original_documents: int = 0  # rows in the sheet the chunk came from
    embedding_failed: bool = False


class UsedChunk(BaseModel):
    """A chunk that contributed context to an answer"""
    id: int
    similarity: float
    source_csv_name: str


class TaskProcessingMetadata(BaseModel):
    """What the target-side processor did for a task"""
    chunks_found: int = 0
    chunks_used: List[UsedChunk] = Field(default_factory=list)
    fallback_used: bool = False
    processed_by: Optional[str] = None
