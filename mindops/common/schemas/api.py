"""Request and response bodies for the HTTP surface."""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .records import QueryMode, TaskPriority


class QueryRequest(BaseModel):
    query: str = ""
    mode: QueryMode = QueryMode.LOCAL
    mindop_id: Optional[str] = None
    target_mindop_id: Optional[str] = None
    conversation_id: Optional[str] = None
    priority: TaskPriority = TaskPriority.NORMAL


class QueryResponse(BaseModel):
    success: bool
    response: Optional[str] = None
    conversation_id: Optional[str] = None
    collaboration_task_id: Optional[str] = None
    error: Optional[str] = None


class ProcessTaskRequest(BaseModel):
    action_type: Literal["process_collaboration_task"] = "process_collaboration_task"
    collaboration_task_id: str


class DeleteDocumentRequest(BaseModel):
    mindop_id: str
    source_csv_name: str


class WorkspaceUpdate(BaseModel):
    mindop_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    mindop_description: Optional[str] = None


class FollowCreate(BaseModel):
    target_mindop_id: str


class IngestionResponse(BaseModel):
    success: bool = True
    chunks_created: int
    documents_processed: int
    source_file_name: str
    mindop_id: str
    average_chunk_tokens: int
    failed_embeddings: int


class DocumentSummary(BaseModel):
    source_csv_name: str
    chunk_count: int
    last_ingested_at: Optional[datetime] = None


class DocumentList(BaseModel):
    mindop_id: str
    documents: List[DocumentSummary]
