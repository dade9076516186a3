"""Tests for vector scoring, backoff merge, lexical fallback and score rules."""
import numpy as np
import pytest

from docqa.errors import ValidationError
from docqa.rag.retriever import (
    DEFAULT_RULES,
    RetrievalEngine,
    ScoredPassage,
    ScoreRule,
    cosine_scores,
    lexical_tokens,
    merge_ranked,
    rank,
)
from docqa.rag.store import MemoryRepository, VectorIndex, VectorRecord
from tests.fakes import FakeEmbedder


def build_index(*items):
    """items: (text, embedding) pairs in document order."""
    repo = MemoryRepository()
    index = VectorIndex(repo, "doc")
    index.append(
        [VectorRecord(id=f"p{i}", text=text, embedding=tuple(vec)) for i, (text, vec) in enumerate(items)]
    )
    return index


@pytest.fixture
def index():
    return build_index(
        ("Cats are small domesticated felines.", (1.0, 0.0, 0.0)),
        ("Dogs are loyal companions.", (0.0, 1.0, 0.0)),
        ("Parrots can imitate speech.", (0.0, 0.0, 1.0)),
    )


class TestCosineScores:
    def test_self_similarity_is_one(self):
        vector = np.array([0.3, -0.4, 0.5])

        assert cosine_scores(vector[None, :], vector)[0] == pytest.approx(1.0)

    def test_symmetric_and_bounded(self):
        a = np.array([0.2, 0.9, -0.1])
        b = np.array([-0.5, 0.3, 0.8])

        ab = cosine_scores(a[None, :], b)[0]
        ba = cosine_scores(b[None, :], a)[0]

        assert ab == pytest.approx(ba)
        assert -1.0 <= ab <= 1.0

    def test_zero_vector_scores_zero(self):
        assert cosine_scores(np.zeros((1, 3)), np.array([1.0, 0.0, 0.0]))[0] == 0.0


class TestRankingHelpers:
    def test_rank_is_stable_for_ties(self):
        passages = [ScoredPassage("a", 0.5), ScoredPassage("b", 0.9), ScoredPassage("c", 0.5)]

        assert [p.text for p in rank(passages, 3)] == ["b", "a", "c"]

    def test_merge_keeps_duplicate_once_at_higher_score(self):
        first = [ScoredPassage("shared passage", 0.4), ScoredPassage("only first", 0.3)]
        second = [ScoredPassage("shared passage", 0.8), ScoredPassage("only second", 0.2)]

        merged = merge_ranked(first, second, top_k=5)

        assert [(p.text, p.score) for p in merged] == [
            ("shared passage", 0.8),
            ("only first", 0.3),
            ("only second", 0.2),
        ]

    def test_merge_keys_on_text_prefix(self):
        merged = merge_ranked(
            [ScoredPassage("abcdef-1", 0.1)], [ScoredPassage("abcdef-2", 0.2)], top_k=5, key_chars=6
        )

        assert [p.text for p in merged] == ["abcdef-2"]

    def test_lexical_tokens_filter_dedupe_and_cap(self):
        tokens = lexical_tokens("What do cats eat? Cats EAT fish, and the cats sleep.", max_tokens=12)

        assert tokens == ["what", "cats", "fish", "sleep"]
        assert len(lexical_tokens(" ".join(f"word{i}" for i in range(30)))) == 12


class TestRetrievalEngine:
    @pytest.mark.asyncio
    async def test_top_one_returns_best_passage(self, index):
        embedder = FakeEmbedder(vectors={"Tell me about dogs": (0.1, 0.9, 0.1)})
        engine = RetrievalEngine(embedder, rules=[])

        result = await engine.retrieve(index, "Tell me about dogs", top_k=1)

        assert [p.text for p in result.passages] == ["Dogs are loyal companions."]
        assert result.diagnostics.mode == "vector"
        assert result.diagnostics.index_dimension == 3
        assert result.diagnostics.query_dimension == 3
        assert result.top_score == pytest.approx(result.passages[0].score)

    @pytest.mark.asyncio
    async def test_results_sorted_and_bounded_by_k(self, index):
        embedder = FakeEmbedder(vectors={"q": (0.9, 0.4, 0.1)})
        engine = RetrievalEngine(embedder, rules=[])

        result = await engine.retrieve(index, "q", top_k=2)

        scores = [p.score for p in result.passages]
        assert len(scores) == 2
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.asyncio
    async def test_dimension_mismatch_falls_back_to_lexical(self, index):
        embedder = FakeEmbedder(dimension=5)
        engine = RetrievalEngine(embedder, rules=[])

        result = await engine.retrieve(
            index, "Are dogs loyal companions?", retrieval_query="dogs loyal companions hints"
        )

        assert result.diagnostics.dimension_mismatch is True
        assert result.diagnostics.query_dimension == 5
        assert result.diagnostics.mode == "lexical"
        assert result.diagnostics.passes == ["lexical"]
        assert [(p.text, p.score) for p in result.passages] == [("Dogs are loyal companions.", 3.0)]
        # No backoff embedding once the mismatch is known
        assert len(embedder.calls) == 1

    @pytest.mark.asyncio
    async def test_provider_failure_falls_back_to_lexical(self, index):
        embedder = FakeEmbedder(fail_on_call=1)
        engine = RetrievalEngine(embedder, rules=[])

        result = await engine.retrieve(index, "parrots imitate")

        assert result.diagnostics.mode == "lexical"
        assert result.passages[0].text == "Parrots can imitate speech."

    @pytest.mark.asyncio
    async def test_empty_index_returns_nothing(self):
        engine = RetrievalEngine(FakeEmbedder())
        empty = VectorIndex(MemoryRepository(), "doc")

        result = await engine.retrieve(empty, "anything at all")

        assert result.passages == []
        assert result.diagnostics.mode == "none"
        assert result.diagnostics.index_dimension == 0

    @pytest.mark.asyncio
    async def test_low_confidence_triggers_backoff_with_plain_query(self, index):
        embedder = FakeEmbedder(
            vectors={
                "expanded parrots query": (0.3, 0.3, -0.9),
                "parrots": (0.0, 0.0, 1.0),
            }
        )
        engine = RetrievalEngine(embedder, confidence_threshold=0.55, rules=[])

        result = await engine.retrieve(index, "parrots", retrieval_query="expanded parrots query", top_k=2)

        assert result.diagnostics.passes == ["primary", "backoff"]
        assert result.passages[0].text == "Parrots can imitate speech."
        assert result.passages[0].score == pytest.approx(1.0)
        assert len({p.text for p in result.passages}) == len(result.passages)

    @pytest.mark.asyncio
    async def test_no_backoff_when_queries_are_identical(self, index):
        embedder = FakeEmbedder(vectors={"parrots": (0.3, 0.3, -0.9)})
        engine = RetrievalEngine(embedder, rules=[])

        result = await engine.retrieve(index, "parrots", retrieval_query="parrots")

        assert result.diagnostics.passes == ["primary"]
        assert len(embedder.calls) == 1

    @pytest.mark.asyncio
    async def test_no_backoff_when_confident(self, index):
        embedder = FakeEmbedder(vectors={"expanded": (1.0, 0.0, 0.0)})
        engine = RetrievalEngine(embedder, rules=[])

        result = await engine.retrieve(index, "cats", retrieval_query="expanded")

        assert result.diagnostics.passes == ["primary"]

    @pytest.mark.asyncio
    async def test_empty_query_is_rejected(self, index):
        with pytest.raises(ValidationError):
            await RetrievalEngine(FakeEmbedder()).retrieve(index, "   ")


class TestScoreRules:
    @pytest.mark.asyncio
    async def test_boilerplate_is_penalized(self):
        index = build_index(
            ("Copyright © 2021. All rights reserved.", (1.0, 0.0)),
            ("The experiment measured growth rates.", (0.95, 0.31)),
        )
        embedder = FakeEmbedder(vectors={"growth": (1.0, 0.0)})

        result = await RetrievalEngine(embedder).retrieve(index, "growth")

        assert result.passages[0].text == "The experiment measured growth rates."

    @pytest.mark.asyncio
    async def test_front_matter_boost_for_title_questions(self):
        index = build_index(
            ("Deep Learning for Crop Yields", (0.6, 0.8)),
            ("Chapter 4 covers irrigation.", (0.7, 0.71)),
            ("Filler one.", (0.0, 1.0)),
            ("Filler two.", (0.0, 1.0)),
            ("Late passage mentioning the title again.", (0.8, 0.6)),
        )
        embedder = FakeEmbedder(vectors={"What is the title?": (1.0, 0.0)})

        result = await RetrievalEngine(embedder).retrieve(index, "What is the title?", top_k=5)

        late = next(p for p in result.passages if p.text.startswith("Late"))
        first = next(p for p in result.passages if p.text.startswith("Deep"))
        assert first.score == pytest.approx(0.6 + 0.1)
        assert late.score == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_abstract_boost_for_overview_questions(self):
        index = build_index(
            ("Abstract: we study soil.", (0.5, 0.866)),
            ("Results table.", (0.55, 0.835)),
        )
        embedder = FakeEmbedder(vectors={"What is this document about?": (1.0, 0.0)})

        result = await RetrievalEngine(embedder).retrieve(index, "What is this document about?")

        assert result.passages[0].text == "Abstract: we study soil."

    @pytest.mark.asyncio
    async def test_custom_rules_replace_defaults(self, index):
        always_parrots = ScoreRule(
            name="prefer_parrots",
            applies=lambda query, c: "Parrots" in c.text,
            delta=5.0,
        )
        embedder = FakeEmbedder(vectors={"cats": (1.0, 0.0, 0.0)})

        result = await RetrievalEngine(embedder, rules=[always_parrots]).retrieve(index, "cats")

        assert result.passages[0].text == "Parrots can imitate speech."
        assert len(DEFAULT_RULES) == 3
