"""
MindOps Ingest

Spreadsheet parsing, recursive chunking and batched embedding.
"""

from .chunker import Chunker, estimate_tokens
from .parser import ParsedDocument, parse_table, sanitize_text
from .pipeline import IngestionPipeline, IngestionReport

__all__ = [
    "Chunker",
    "estimate_tokens",
    "ParsedDocument",
    "parse_table",
    "sanitize_text",
    "IngestionPipeline",
    "IngestionReport",
]
