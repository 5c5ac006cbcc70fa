"""
Synthesizer

Builds the answer prompt from retrieved chunks and recent conversation turns
and calls the generative model once per query.

Key principle: answer only from the supplied context.
- chunks found -> grounded answer, sources named
- no chunks -> explicit "no specific data found" context, never an error
- no model configured -> direct listing of the retrieved rows
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..common.errors import GenerationError
from ..common.llm_client import LLMClient
from ..common.retry import RetryPolicy, run_with_retry
from .searcher import RetrievedChunk

logger = logging.getLogger("mindops.retriever.synthesizer")

NO_DATA_CONTEXT = (
    "No specific data was found in this knowledge base for the question. "
    "Answer from general knowledge if appropriate and say that the uploaded "
    "documents do not cover it."
)

SYSTEM_PROMPT = (
    "You are a personal knowledge agent. You answer questions about the "
    "spreadsheets your owner has uploaded."
)

# Synthesis prompt template
SYNTHESIS_PROMPT = """{role}

Recent conversation:
{history}

Knowledge base context:
{context}

User question: {query}

Instructions:
1. ONLY use facts from the knowledge base context above. Do NOT make up data.
2. If the context does not contain the answer, say so explicitly.
3. Quote specific values (numbers, dates, names) exactly as they appear.
4. Mention the source file when you use information from it.
5. Prefer high-relevance rows; use lower-relevance rows only as support.
6. Keep the answer conversational and structured when it helps.

Answer:"""

FALLBACK_TEMPLATE = """## Results for: "{query}"

Found {count} relevant row group(s):

{formatted_results}

---
**Note**: This is a direct listing without LLM synthesis.
Configure GEMINI_API_KEY for natural language answers.
"""

NO_RESULTS_ANSWER = (
    "I could not find specific data about that in this knowledge base yet. "
    "Try uploading a spreadsheet that covers it, or rephrase the question."
)


@dataclass
class HistoryTurn:
    """One prior message in the conversation window"""
    role: str  # user | agent
    content: str


@dataclass
class SynthesizedAnswer:
    """Answer text plus the context that produced it"""
    answer: str
    sources: List[Dict[str, Any]] = field(default_factory=list)
    used_llm: bool = False
    warnings: List[str] = field(default_factory=list)


def relevance_label(similarity: float) -> str:
    if similarity > 0.8:
        return "high"
    if similarity > 0.6:
        return "medium"
    return "related"


class Synthesizer:
    """
    Synthesizes answers from retrieved chunks using an LLM.

    Falls back to simple formatting if no LLM is configured. A configured
    LLM that fails raises GenerationError.
    """

    def __init__(
        self,
        llm_client: Optional[LLMClient] = None,
        max_tokens: int = 1024,
        policy: Optional[RetryPolicy] = None,
        timeout: float = 45.0,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self._llm = llm_client
        self._max_tokens = max_tokens
        self._policy = policy or RetryPolicy(max_attempts=2, base_delay=1.0)
        self._timeout = timeout
        self._sleep = sleep

    @property
    def has_llm(self) -> bool:
        return self._llm is not None and self._llm.is_available

    def synthesize(
        self,
        query: str,
        chunks: List[RetrievedChunk],
        history: Optional[List[HistoryTurn]] = None,
    ) -> SynthesizedAnswer:
        """
        Produce an answer for ``query``.

        Raises:
            GenerationError: the configured model failed after retries
        """
        sources = [
            {"id": c.id, "source_csv_name": c.source_csv_name, "similarity": c.similarity}
            for c in chunks
        ]

        if not self.has_llm:
            return self._synthesize_fallback(query, chunks, sources)

        prompt = self.build_prompt(query, chunks, history or [])
        outcome = run_with_retry(
            lambda: self._llm.generate(
                prompt,
                system=SYSTEM_PROMPT,
                max_tokens=self._max_tokens,
                timeout=self._timeout,
            ),
            self._policy,
            sleep=self._sleep,
            label="answer generation",
        )
        if not outcome.ok or not outcome.value:
            raise GenerationError(
                f"Error generating response: {outcome.error_message or 'empty response'}"
            )

        warnings = []
        if not chunks:
            warnings.append("No matching data in knowledge base")
        elif any(c.fallback for c in chunks):
            warnings.append("Similarity search unavailable, used most recent rows")

        return SynthesizedAnswer(answer=outcome.value, sources=sources, used_llm=True, warnings=warnings)

    def build_prompt(
        self,
        query: str,
        chunks: List[RetrievedChunk],
        history: List[HistoryTurn],
    ) -> str:
        return SYNTHESIS_PROMPT.format(
            role=SYSTEM_PROMPT,
            history=self._format_history(history),
            context=self._format_context(chunks),
            query=query,
        )

    def _format_history(self, history: List[HistoryTurn]) -> str:
        if not history:
            return "(none)"
        lines = []
        for turn in history:
            label = "User" if turn.role == "user" else "Agent"
            lines.append(f"{label}: {turn.content}")
        return "\n".join(lines)

    def _format_context(self, chunks: List[RetrievedChunk]) -> str:
        """Group chunks by source file, best-scoring source first."""
        if not chunks:
            return NO_DATA_CONTEXT

        by_source: "OrderedDict[str, List[RetrievedChunk]]" = OrderedDict()
        for chunk in chunks:
            by_source.setdefault(chunk.source_csv_name, []).append(chunk)

        ordered = sorted(
            by_source.items(),
            key=lambda item: sum(c.similarity for c in item[1]) / len(item[1]),
            reverse=True,
        )

        formatted = []
        for source, group in ordered:
            avg = sum(c.similarity for c in group) / len(group)
            formatted.append(f'From file "{source}" (relevance {avg:.2f}):')
            for chunk in sorted(group, key=lambda c: c.similarity, reverse=True):
                formatted.append(
                    f"[source: {source} | similarity: {chunk.similarity:.2f} | "
                    f"{relevance_label(chunk.similarity)}]\n{chunk.content}"
                )
            formatted.append("---")
        return "\n\n".join(formatted)

    def _synthesize_fallback(
        self,
        query: str,
        chunks: List[RetrievedChunk],
        sources: List[Dict[str, Any]],
    ) -> SynthesizedAnswer:
        """Fallback synthesis without LLM"""
        if not chunks:
            return SynthesizedAnswer(
                answer=NO_RESULTS_ANSWER,
                warnings=["No matching data in knowledge base", "LLM not available"],
            )

        formatted_results = []
        for i, c in enumerate(chunks[:5], 1):
            formatted_results.append(
                f"### {i}. {c.source_csv_name} (score {c.similarity:.2f})\n\n"
                f"{c.content[:500]}{'...' if len(c.content) > 500 else ''}\n"
            )

        answer = FALLBACK_TEMPLATE.format(
            query=query,
            count=len(chunks),
            formatted_results="\n".join(formatted_results),
        )
        return SynthesizedAnswer(
            answer=answer,
            sources=sources,
            warnings=["LLM not available - showing raw results"],
        )
