"""
MindOps Common Module

Shared infrastructure for ingestion, retrieval and collaboration.
"""

from .config import MindOpsConfig, load_config
from .database import Database
from .embedding_service import EmbeddingService
from .llm_client import LLMClient
from .retry import RetryOutcome, RetryPolicy, run_with_retry
from .store import ChunkStore, WorkspaceStore

__all__ = [
    "MindOpsConfig",
    "load_config",
    "Database",
    "EmbeddingService",
    "LLMClient",
    "RetryOutcome",
    "RetryPolicy",
    "run_with_retry",
    "ChunkStore",
    "WorkspaceStore",
]
