"""
Recursive Chunker

Splits flattened tabular text into token-bounded, overlapping chunks.

Sizes are estimated tokens: one token per 4 characters, rounded up. Text is
cut on the coarsest separator that occurs (paragraphs, lines, sentences,
clauses, words, then raw character slices), and the resulting units are
merged greedily. Each new chunk opens with a tail of the previous one.
"""

import logging
import math
from typing import List, Optional

logger = logging.getLogger("mindops.ingest.chunker")

CHARS_PER_TOKEN = 4

SEPARATORS = ["\n\n", "\n", ". ", "! ", "? ", "; ", ", ", " ", ""]


def estimate_tokens(text: str) -> int:
    """Approximate token count: 4 characters per token, rounded up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _split_keep(text: str, separator: str) -> List[str]:
    """Split on ``separator``, keeping it on the preceding piece."""
    parts = text.split(separator)
    pieces = [p + separator for p in parts[:-1]] + [parts[-1]]
    return [p for p in pieces if p]


class Chunker:
    """
    Hierarchical text splitter.

    Args:
        chunk_size: Target chunk size in estimated tokens
        chunk_overlap: Overlap carried into the next chunk, in estimated tokens
        min_chunk_tokens: Chunks smaller than this are dropped
    """

    def __init__(
        self,
        chunk_size: int = 450,
        chunk_overlap: int = 50,
        min_chunk_tokens: int = 3,
        separators: Optional[List[str]] = None,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap must be in [0, chunk_size)")

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.min_chunk_tokens = min_chunk_tokens
        self.separators = separators or SEPARATORS

    def chunk(self, text: str) -> List[str]:
        """
        Split ``text`` into chunks.

        Returns an empty list only when nothing survives the size floor.
        """
        if not text or not text.strip():
            return []

        if estimate_tokens(text) <= self.chunk_size:
            merged = [text]
        else:
            merged = self._merge(self._units(text, 0))

        chunks = []
        for raw in merged:
            piece = raw.strip()
            if not piece or estimate_tokens(piece) < self.min_chunk_tokens:
                continue
            chunks.append(piece)

        logger.debug("Split %d chars into %d chunks", len(text), len(chunks))
        return chunks

    def _units(self, text: str, level: int) -> List[str]:
        """Break ``text`` into pieces that each fit within chunk_size."""
        if estimate_tokens(text) <= self.chunk_size:
            return [text]

        for depth in range(level, len(self.separators)):
            separator = self.separators[depth]
            if separator == "":
                return self._slices(text)
            if separator not in text:
                continue

            units: List[str] = []
            for piece in _split_keep(text, separator):
                if estimate_tokens(piece) <= self.chunk_size:
                    units.append(piece)
                else:
                    units.extend(self._units(piece, depth + 1))
            return units

        return [text]

    def _slices(self, text: str) -> List[str]:
        """Fixed-width character slices; neighbours share chunk_overlap tokens."""
        width = self.chunk_size * CHARS_PER_TOKEN
        stride = width - self.chunk_overlap * CHARS_PER_TOKEN
        slices = []
        for start in range(0, len(text), stride):
            slices.append(text[start:start + width])
            if start + width >= len(text):
                break
        return slices

    def _merge(self, units: List[str]) -> List[str]:
        chunks: List[str] = []
        current: List[str] = []
        current_tokens = 0

        for unit in units:
            tokens = estimate_tokens(unit)
            if current and current_tokens + tokens > self.chunk_size:
                chunks.append("".join(current))
                current = self._overlap_tail(current)
                current_tokens = sum(estimate_tokens(u) for u in current)
                while current and current_tokens + tokens > self.chunk_size:
                    current_tokens -= estimate_tokens(current.pop(0))
            current.append(unit)
            current_tokens += tokens

        if current:
            chunks.append("".join(current))
        return chunks

    def _overlap_tail(self, units: List[str]) -> List[str]:
        """Trailing units whose size is close to chunk_overlap."""
        if self.chunk_overlap == 0:
            return []

        tail: List[str] = []
        total = 0
        for unit in reversed(units):
            tokens = estimate_tokens(unit)
            if total + tokens > self.chunk_overlap:
                break
            tail.insert(0, unit)
            total += tokens

        if not tail and units:
            suffix = self._suffix(units[-1], self.chunk_overlap)
            tail = [suffix] if suffix.strip() else []
        return tail

    def _suffix(self, text: str, budget: int) -> str:
        """
        Longest suffix of ``text`` within ``budget`` tokens, cut on the
        coarsest separator that yields one; raw characters as a last resort.
        """
        for separator in self.separators:
            if separator == "":
                return text[-budget * CHARS_PER_TOKEN:]
            if separator not in text:
                continue

            kept: List[str] = []
            total = 0
            for piece in reversed(_split_keep(text, separator)):
                tokens = estimate_tokens(piece)
                if total + tokens > budget:
                    break
                kept.insert(0, piece)
                total += tokens
            if kept and "".join(kept).strip():
                return "".join(kept)
        return ""
