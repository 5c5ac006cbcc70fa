"""
MindOps Retriever

Similarity search, answer synthesis and conversation history.
"""

from .searcher import Retriever, RetrievedChunk
from .synthesizer import HistoryTurn, SynthesizedAnswer, Synthesizer
from .conversation import ConversationManager
from .pipeline import RAGPipeline, RAGResult

__all__ = [
    "Retriever",
    "RetrievedChunk",
    "HistoryTurn",
    "SynthesizedAnswer",
    "Synthesizer",
    "ConversationManager",
    "RAGPipeline",
    "RAGResult",
]
