"""
MindOps

Personal knowledge agents over tabular data.

Components:
- Ingest: spreadsheet parsing, recursive chunking, batched embedding
- Retriever: similarity search with recency fallback, prompt synthesis
- Collaboration: approved follow connections, task state machine, poller

Usage:
    from mindops.common import load_config, EmbeddingService, ChunkStore
    from mindops.ingest import Chunker, IngestionPipeline
    from mindops.retriever import Retriever, Synthesizer, RAGPipeline
    from mindops.collaboration import TaskEngine, TaskPoller
"""

__version__ = "0.1.0"
