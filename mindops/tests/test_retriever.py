"""
Tests for Retriever Agent

Tests similarity search, the recency fallback, synthesis and conversations.
"""

import pytest
from unittest.mock import Mock

from mindops.common.config import DatabaseConfig
from mindops.common.errors import AuthorizationError, GenerationError, RetrievalError
from mindops.common.retry import RetryPolicy
from mindops.common.schemas import ChunkMetadata
from mindops.common.store import ChunkStore, WorkspaceStore
from mindops.retriever import (
    ConversationManager,
    HistoryTurn,
    RAGPipeline,
    RetrievedChunk,
    Retriever,
    Synthesizer,
)
from mindops.retriever.searcher import fallback_score
from mindops.retriever.synthesizer import NO_DATA_CONTEXT

from .conftest import DIM, no_sleep


def _seed(store, embedding_service, mindop_id, texts, source="sales.csv"):
    vectors = embedding_service.embed_documents(texts, sleep=no_sleep)
    rows = [
        (t, v, ChunkMetadata(chunk_index=i, total_chunks=len(texts)))
        for i, (t, v) in enumerate(zip(texts, vectors))
    ]
    store.insert_chunks(mindop_id, "owner", source, rows)


@pytest.fixture
def workspace(db):
    return WorkspaceStore(db).get_or_create_for_owner("owner")


@pytest.fixture
def store(db):
    return ChunkStore(db)


class TestRetriever:
    def test_empty_workspace_skips_similarity(self):
        store = Mock(spec=ChunkStore)
        store.count_chunks.return_value = 0
        retriever = Retriever(store)

        assert retriever.search([1.0, 0.0], "mindop-1") == []
        store.match_chunks.assert_not_called()
        store.recent_chunks.assert_not_called()

    def test_ranks_by_similarity(self, store, workspace, embedding_service):
        _seed(store, embedding_service, workspace.id, [
            "widget sales north region",
            "employee vacation policy",
            "widget inventory warehouse",
        ])
        retriever = Retriever(store, topk=2, similarity_threshold=0.05)

        results = retriever.search(
            embedding_service.embed_query("widget sales north region"), workspace.id
        )

        assert len(results) <= 2
        assert results[0].content == "widget sales north region"
        assert results == sorted(results, key=lambda r: r.similarity, reverse=True)
        assert not any(r.fallback for r in results)

    def test_threshold_filters_unrelated(self, store, workspace, embedding_service):
        _seed(store, embedding_service, workspace.id, ["alpha beta gamma"])
        retriever = Retriever(store, similarity_threshold=0.99)

        assert retriever.search(embedding_service.embed_query("zzz qqq"), workspace.id) == []

    def test_restricted_to_workspace(self, db, store, workspace, embedding_service):
        other = WorkspaceStore(db).get_or_create_for_owner("someone-else")
        _seed(store, embedding_service, other.id, ["widget sales north region"])
        _seed(store, embedding_service, workspace.id, ["widget sales south region"])

        results = Retriever(store).search(embedding_service.embed_query("widget"), workspace.id)

        assert [r.content for r in results] == ["widget sales south region"]

    def test_fallback_when_native_similarity_disabled(self, db, workspace, embedding_service):
        store = ChunkStore(db, DatabaseConfig(url="sqlite://", native_similarity=False))
        _seed(store, embedding_service, workspace.id, ["first row", "second row", "third row"])

        results = Retriever(store, topk=2).search([0.0] * DIM, workspace.id)

        assert len(results) == 2
        assert all(r.fallback for r in results)
        assert [r.similarity for r in results] == [0.8, 0.78]
        assert [r.content for r in results] == ["third row", "second row"]

    def test_fallback_when_similarity_errors(self, store, workspace, embedding_service):
        _seed(store, embedding_service, workspace.id, ["some row"])

        results = Retriever(store).search([1.0, 2.0], workspace.id)

        assert len(results) == 1
        assert results[0].fallback

    def test_match_chunks_dimension_mismatch(self, store, workspace, embedding_service):
        _seed(store, embedding_service, workspace.id, ["some row"])
        with pytest.raises(RetrievalError):
            store.match_chunks([1.0, 2.0], workspace.id, 5, 0.0)

    def test_fallback_score_floor(self):
        assert fallback_score(0) == 0.8
        assert fallback_score(1) == 0.78
        assert fallback_score(100) == 0.01


def _chunk(content="Widget A | 120", source="sales.csv", similarity=0.9, **kw):
    return RetrievedChunk(id=1, content=content, source_csv_name=source, similarity=similarity, **kw)


class TestSynthesizer:
    def test_prompt_contains_history_context_and_query(self, llm):
        synthesizer = Synthesizer(llm)
        history = [
            HistoryTurn(role="user", content="What did we sell?"),
            HistoryTurn(role="agent", content="Widgets."),
        ]

        prompt = synthesizer.build_prompt("How many Widget A?", [_chunk()], history)

        assert "User: What did we sell?" in prompt
        assert "Agent: Widgets." in prompt
        assert "source: sales.csv" in prompt
        assert "similarity: 0.90" in prompt
        assert "Widget A | 120" in prompt
        assert "User question: How many Widget A?" in prompt
        assert "Do NOT make up data" in prompt

    def test_empty_context_uses_no_data_line(self, llm):
        prompt = Synthesizer(llm).build_prompt("Anything?", [], [])
        assert NO_DATA_CONTEXT in prompt

    def test_synthesize_calls_llm_once(self, llm):
        answer = Synthesizer(llm).synthesize("How many?", [_chunk()])

        assert answer.used_llm
        assert answer.answer == llm.generate.return_value
        assert answer.sources == [{"id": 1, "source_csv_name": "sales.csv", "similarity": 0.9}]
        llm.generate.assert_called_once()

    def test_llm_failure_raises_generation_error(self, llm):
        llm.generate.side_effect = RuntimeError("quota exceeded")
        synthesizer = Synthesizer(llm, policy=RetryPolicy(max_attempts=2), sleep=no_sleep)

        with pytest.raises(GenerationError, match="quota exceeded"):
            synthesizer.synthesize("How many?", [_chunk()])
        assert llm.generate.call_count == 2

    def test_fallback_without_llm(self):
        answer = Synthesizer(None).synthesize("How many?", [_chunk()])

        assert not answer.used_llm
        assert "Widget A | 120" in answer.answer
        assert "LLM not available - showing raw results" in answer.warnings

    def test_fallback_without_llm_and_no_chunks(self):
        answer = Synthesizer(None).synthesize("How many?", [])
        assert answer.answer
        assert not answer.sources


class TestRAGPipeline:
    @pytest.mark.asyncio
    async def test_empty_workspace_does_not_embed(self, store, workspace, llm):
        embedder = Mock()
        pipeline = RAGPipeline(embedder, Retriever(store), Synthesizer(llm))

        result = await pipeline.run("What sold best?", workspace.id)

        embedder.embed_query.assert_not_called()
        assert result.chunks == []
        assert result.text

    @pytest.mark.asyncio
    async def test_full_flow(self, store, workspace, embedding_service, llm):
        _seed(store, embedding_service, workspace.id, ["Widget A sold 120 units in the north"])
        pipeline = RAGPipeline(embedding_service, Retriever(store), Synthesizer(llm))

        result = await pipeline.run("How many Widget A units?", workspace.id)

        assert len(result.chunks) == 1
        assert not result.fallback_used
        prompt = llm.generate.call_args[0][0]
        assert "Widget A sold 120 units" in prompt


class TestConversationManager:
    def test_record_creates_conversation_with_title(self, db):
        manager = ConversationManager(db)
        query = "Which region had the highest widget sales in the first quarter of the year?"

        conversation_id = manager.record_exchange("u1", query, "North.", agent_mindop_id="m1")

        conversation = manager.get(conversation_id, "u1")
        assert conversation.title == query[:50] + "..."
        messages = manager.list_messages(conversation_id, "u1")
        assert [(m.sender_role, m.content) for m in messages] == [("user", query), ("agent", "North.")]
        assert messages[1].mindop_id == "m1"

    def test_history_window_is_bounded_and_ordered(self, db):
        manager = ConversationManager(db, history_turns=5)
        cid = manager.record_exchange("u1", "q0", "a0", agent_mindop_id="m1")
        for i in range(1, 4):
            manager.record_exchange("u1", f"q{i}", f"a{i}", agent_mindop_id="m1", conversation_id=cid)

        history = manager.load_history(cid, "u1")

        assert [h.content for h in history] == ["a1", "q2", "a2", "q3", "a3"]
        assert history[0].role == "agent"

    def test_no_conversation_means_no_history(self, db):
        assert ConversationManager(db).load_history(None, "u1") == []

    def test_other_users_conversation_rejected(self, db):
        manager = ConversationManager(db)
        cid = manager.record_exchange("u1", "q", "a", agent_mindop_id="m1")

        with pytest.raises(AuthorizationError):
            manager.load_history(cid, "u2")
