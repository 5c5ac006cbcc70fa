"""
MindOps Schemas

Structured records stored with chunks and tasks, plus HTTP bodies.
"""

from .records import (
    CHUNKING_STRATEGY,
    ChunkMetadata,
    FollowStatus,
    QueryMode,
    SenderRole,
    SourceType,
    TaskPriority,
    TaskProcessingMetadata,
    TaskStatus,
    UsedChunk,
)
from .api import (
    DeleteDocumentRequest,
    DocumentList,
    DocumentSummary,
    FollowCreate,
    IngestionResponse,
    ProcessTaskRequest,
    QueryRequest,
    QueryResponse,
    WorkspaceUpdate,
)

__all__ = [
    "CHUNKING_STRATEGY",
    "ChunkMetadata",
    "FollowStatus",
    "QueryMode",
    "SenderRole",
    "SourceType",
    "TaskPriority",
    "TaskProcessingMetadata",
    "TaskStatus",
    "UsedChunk",
    "DeleteDocumentRequest",
    "DocumentList",
    "DocumentSummary",
    "FollowCreate",
    "IngestionResponse",
    "ProcessTaskRequest",
    "QueryRequest",
    "QueryResponse",
    "WorkspaceUpdate",
]
