"""Retriever for question answering over one document's VectorIndex.

Handles:
- Query embedding and exhaustive cosine scoring
- Backoff pass with the plain query and merge of ranked lists
- Lexical fallback when vector scoring cannot run
- Rule-based score adjustments
- Diagnostics for the answer synthesizer
"""
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from docqa import config
from docqa.errors import ValidationError
from docqa.llm_client import EmbeddingProvider
from docqa.rag.intents import is_front_matter_query, is_overview_query
from docqa.rag.store import VectorIndex, VectorRecord

logger = structlog.get_logger()

BOILERPLATE_MARKERS = re.compile(
    r"all rights reserved|copyright ©|©\s*\d{4}|this page intentionally left blank"
    r"|downloaded from|terms of use|printed in|isbn[\s:-]",
    re.IGNORECASE,
)
ABSTRACT_MARKERS = re.compile(r"\b(abstract|summary|overview|introduction)\b", re.IGNORECASE)

FRONT_MATTER_WINDOW = 3


@dataclass
class ScoredPassage:
    """A passage text with its ranking score."""

    text: str
    score: float


@dataclass(frozen=True)
class Candidate:
    """What a score rule sees about one passage."""

    text: str
    position: int
    total: int


@dataclass(frozen=True)
class ScoreRule:
    """Additive score nudge applied when ``applies(query, candidate)`` holds."""

    name: str
    applies: Callable[[str, Candidate], bool]
    delta: float


DEFAULT_RULES: List[ScoreRule] = [
    ScoreRule(
        name="boilerplate_penalty",
        applies=lambda query, c: bool(BOILERPLATE_MARKERS.search(c.text)),
        delta=-0.15,
    ),
    ScoreRule(
        name="front_matter_boost",
        applies=lambda query, c: c.position < FRONT_MATTER_WINDOW and is_front_matter_query(query),
        delta=0.1,
    ),
    ScoreRule(
        name="abstract_boost",
        applies=lambda query, c: is_overview_query(query) and bool(ABSTRACT_MARKERS.search(c.text)),
        delta=0.1,
    ),
]


@dataclass
class RetrievalDiagnostics:
    """How a retrieval went, for deciding on a synthesized summary."""

    top_score: float = 0.0
    index_dimension: int = 0
    query_dimension: int = 0
    dimension_mismatch: bool = False
    mode: str = "none"  # "vector", "lexical" or "none"
    passes: List[str] = field(default_factory=list)


@dataclass
class RetrievalResult:
    """Ranked passages plus diagnostics."""

    passages: List[ScoredPassage]
    diagnostics: RetrievalDiagnostics

    @property
    def top_score(self) -> float:
        return self.diagnostics.top_score


def cosine_scores(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of every row in ``matrix`` with ``query``.

    Zero-length vectors score 0.
    """
    row_norms = np.linalg.norm(matrix, axis=1)
    query_norm = np.linalg.norm(query)
    denominator = row_norms * query_norm
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denominator > 0, dots / denominator, 0.0)
    return np.clip(scores, -1.0, 1.0)


def rank(passages: Sequence[ScoredPassage], top_k: int) -> List[ScoredPassage]:
    """Stable sort by score descending, truncated to ``top_k``."""
    return sorted(passages, key=lambda p: p.score, reverse=True)[:top_k]


def merge_ranked(
    first: Sequence[ScoredPassage],
    second: Sequence[ScoredPassage],
    top_k: int,
    key_chars: int = None,
) -> List[ScoredPassage]:
    """Merge two ranked lists keyed by text prefix, keeping the higher score."""
    key_chars = key_chars or config.MERGE_KEY_CHARS
    merged: Dict[str, ScoredPassage] = {}
    for passage in list(first) + list(second):
        key = passage.text[:key_chars]
        existing = merged.get(key)
        if existing is None or passage.score > existing.score:
            merged[key] = passage
    return rank(list(merged.values()), top_k)


def lexical_tokens(query: str, min_chars: int = None, max_tokens: int = None) -> List[str]:
    """Deduplicated lowercase word tokens of at least ``min_chars`` characters."""
    min_chars = min_chars or config.LEXICAL_MIN_TOKEN_CHARS
    max_tokens = max_tokens or config.LEXICAL_MAX_TOKENS
    words = re.findall(rf"\b\w{{{min_chars},}}\b", query.lower())
    return list(dict.fromkeys(words[:max_tokens]))


class RetrievalEngine:
    """Multi-pass passage ranker for a single document."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        top_k: int = None,
        confidence_threshold: float = None,
        rules: Optional[Sequence[ScoreRule]] = None,
    ):
        """Initialize the retrieval engine.

        Args:
            embedder: Same provider used when the index was built
            top_k: Number of passages to return (default from config)
            confidence_threshold: Top score below which the backoff pass runs
                (default from config)
            rules: Score adjustments applied in order (default: DEFAULT_RULES)
        """
        self.embedder = embedder
        self.top_k = top_k or config.RETRIEVAL_TOP_K
        self.confidence_threshold = (
            confidence_threshold
            if confidence_threshold is not None
            else config.LOW_CONFIDENCE_THRESHOLD
        )
        self.rules = list(DEFAULT_RULES if rules is None else rules)

    def _adjust(
        self, query: str, scored: Sequence[Tuple[int, VectorRecord, float]], total: int
    ) -> List[ScoredPassage]:
        """Apply every matching rule to (position, record, score) triples."""
        adjusted = []
        for position, record, score in scored:
            candidate = Candidate(text=record.text, position=position, total=total)
            for rule in self.rules:
                if rule.applies(query, candidate):
                    score += rule.delta
            adjusted.append(ScoredPassage(text=record.text, score=float(score)))
        return adjusted

    async def _embed_query(self, text: str) -> Optional[List[float]]:
        try:
            vectors = await self.embedder.embed([text])
        except Exception as e:
            logger.warning("query_embedding_failed", error=str(e), error_type=type(e).__name__)
            return None
        if not vectors or not vectors[0]:
            logger.warning("query_embedding_empty")
            return None
        return list(vectors[0])

    async def _vector_pass(
        self,
        text: str,
        query: str,
        records: Sequence[VectorRecord],
        matrix: np.ndarray,
        top_k: int,
        diagnostics: RetrievalDiagnostics,
    ) -> Optional[List[ScoredPassage]]:
        """Score all records against ``text``; None if scoring could not run.

        Score rules always see the plain user ``query``, never hint terms.
        """
        query_vector = await self._embed_query(text)
        if query_vector is None:
            return None

        diagnostics.query_dimension = len(query_vector)
        if len(query_vector) != diagnostics.index_dimension:
            diagnostics.dimension_mismatch = True
            logger.warning(
                "query_dimension_mismatch",
                index_dimension=diagnostics.index_dimension,
                query_dimension=len(query_vector),
            )
            return None

        scores = cosine_scores(matrix, np.asarray(query_vector, dtype=np.float64))
        scored = [(i, r, s) for i, (r, s) in enumerate(zip(records, scores.tolist()))]
        return rank(self._adjust(query, scored, len(records)), top_k)

    def lexical_pass(self, query: str, records: Sequence[VectorRecord], top_k: int) -> List[ScoredPassage]:
        """Rank passages by how many query tokens they contain."""
        tokens = lexical_tokens(query)
        if not tokens:
            return []

        scored = []
        for position, record in enumerate(records):
            text = record.text.lower()
            count = sum(1 for token in tokens if token in text)
            if count > 0:
                scored.append((position, record, float(count)))

        return rank(self._adjust(query, scored, len(records)), top_k)

    async def retrieve(
        self,
        index: VectorIndex,
        query: str,
        retrieval_query: Optional[str] = None,
        top_k: Optional[int] = None,
    ) -> RetrievalResult:
        """Rank the document's passages for a query.

        Args:
            index: The document's vector index
            query: The user's question
            retrieval_query: Optionally expanded question used for the primary pass
            top_k: Number of passages to return (overrides default)

        Returns:
            RetrievalResult with at most ``top_k`` passages

        Raises:
            ValidationError: If the query is empty
        """
        if not query or not query.strip():
            raise ValidationError("query is required")

        top_k = top_k or self.top_k
        retrieval_query = (retrieval_query or "").strip() or query

        records = index.read_all()
        diagnostics = RetrievalDiagnostics(
            index_dimension=records[0].dimension if records else 0
        )

        logger.info(
            "retrieval_started",
            document_id=index.document_id,
            records=len(records),
            top_k=top_k,
            expanded=retrieval_query != query,
        )

        if not records:
            logger.warning("empty_index_no_results", document_id=index.document_id)
            return RetrievalResult(passages=[], diagnostics=diagnostics)

        matrix = np.asarray([r.embedding for r in records], dtype=np.float64)

        results = await self._vector_pass(retrieval_query, query, records, matrix, top_k, diagnostics)
        if results is not None:
            diagnostics.passes.append("primary")

        top = results[0].score if results else 0.0
        if (
            not diagnostics.dimension_mismatch
            and (not results or top < self.confidence_threshold)
            and query != retrieval_query
        ):
            backoff = await self._vector_pass(query, query, records, matrix, top_k, diagnostics)
            if backoff is not None:
                diagnostics.passes.append("backoff")
                results = merge_ranked(results or [], backoff, top_k)

        if results is None:
            results = self.lexical_pass(query, records, top_k)
            diagnostics.passes.append("lexical")
            diagnostics.mode = "lexical" if results else "none"
        else:
            diagnostics.mode = "vector"

        diagnostics.top_score = results[0].score if results else 0.0

        logger.info(
            "retrieval_completed",
            document_id=index.document_id,
            mode=diagnostics.mode,
            passes=diagnostics.passes,
            results_returned=len(results),
            top_score=round(diagnostics.top_score, 4),
            dimension_mismatch=diagnostics.dimension_mismatch,
        )

        return RetrievalResult(passages=results, diagnostics=diagnostics)
