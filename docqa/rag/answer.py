"""Grounded answer synthesis.

Handles:
- Metadata fast path for title / author / table-of-contents questions
- Context assembly from summary hints, synthesized overviews and passages
- Low-confidence overview generation from passages sampled across the document
- Hedging normalization onto one canonical fallback answer
- Whole-document summaries
"""
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import structlog

from docqa import config
from docqa.errors import NotFoundError, ValidationError
from docqa.llm_client import GenerativeProvider
from docqa.rag.chunker import normalize_whitespace
from docqa.rag.intents import AUTHOR_QUERY, TITLE_QUERY, TOC_QUERY
from docqa.rag.retriever import RetrievalDiagnostics, RetrievalEngine, ScoredPassage
from docqa.rag.store import DocumentMetadata, VectorIndex, VectorRecord

logger = structlog.get_logger()

FALLBACK_ANSWER = (
    "I couldn't find that information in the uploaded document. "
    "Could you try rephrasing your question or check a different document?"
)

HEDGING_PHRASES = (
    "i don't know",
    "i do not know",
    "i'm not sure",
    "i am not sure",
    "sorry, i don't know",
    "i cannot find",
    "i can't find",
)

GROUNDED_SYSTEM_PROMPT = (
    "You are a helpful assistant. Answer the user's question using ONLY the provided context. "
    f'If the answer is not contained in the context, respond politely: "{FALLBACK_ANSWER}". '
    "Keep the response concise and factual."
)

NO_CONTEXT_SYSTEM_PROMPT = (
    "You are a helpful assistant. There is no document context available. "
    f'Answer the user\'s question as best as you can, and if you are unsure, say: "{FALLBACK_ANSWER}"'
)

OVERVIEW_SYSTEM_PROMPT = (
    "You are a concise summarizer. Using only the supplied excerpts, write a short factual "
    "overview (3-4 sentences) of what the document is about. Do not invent facts."
)

SUMMARY_SYSTEM_PROMPT = (
    "You are a concise summarizer. Use only the supplied context to produce a short, factual "
    "summary of the document. Provide 5 clear bullet points, each 1-2 short sentences. "
    "Do not invent facts. If the context is insufficient, say you cannot summarize fully."
)


@dataclass
class Answer:
    """Final answer with the passages that grounded it."""

    text: str
    source: str  # "metadata", "generated", "summary" or "fallback"
    context: List[ScoredPassage] = field(default_factory=list)
    summary: Optional[str] = None
    diagnostics: Optional[RetrievalDiagnostics] = None


def snippet(text: str, limit: int) -> str:
    """Whitespace-normalized text cut to ``limit`` characters."""
    if not text:
        return ""
    return normalize_whitespace(text)[:limit]


def is_hedging(answer: str) -> bool:
    """True for non-answers, including the canonical fallback echoed back by the model."""
    lowered = (answer or "").lower().replace("’", "'")
    if FALLBACK_ANSWER.lower() in lowered:
        return True
    return any(phrase in lowered for phrase in HEDGING_PHRASES)


def metadata_answer(query: str, metadata: Optional[DocumentMetadata]) -> Optional[str]:
    """Answer title / author / TOC questions straight from metadata."""
    if metadata is None:
        return None
    if metadata.author and AUTHOR_QUERY.search(query):
        return metadata.author
    if metadata.title and TITLE_QUERY.search(query):
        return metadata.title
    if metadata.toc and TOC_QUERY.search(query):
        return "Chapters / TOC (extracted):\n" + "\n".join(metadata.toc)
    return None


def sample_spread(records: Sequence[VectorRecord]) -> List[VectorRecord]:
    """First, one-third, two-thirds and last records, without repeats."""
    if not records:
        return []
    last = len(records) - 1
    positions = sorted({0, len(records) // 3, (2 * len(records)) // 3, last})
    return [records[i] for i in positions]


class AnswerSynthesizer:
    """Builds grounded answers on top of a RetrievalEngine."""

    def __init__(
        self,
        retriever: RetrievalEngine,
        generator: GenerativeProvider,
        confidence_threshold: float = None,
        snippet_chars: int = None,
    ):
        """Initialize the synthesizer.

        Args:
            retriever: Engine ranking the document's passages
            generator: Provider producing answers and summaries
            confidence_threshold: Top score below which an overview is
                synthesized (default from config)
            snippet_chars: Per-passage context cap (default from config)
        """
        self.retriever = retriever
        self.generator = generator
        self.confidence_threshold = (
            confidence_threshold
            if confidence_threshold is not None
            else config.LOW_CONFIDENCE_THRESHOLD
        )
        self.snippet_chars = snippet_chars or config.CONTEXT_SNIPPET_CHARS

    def _low_confidence(self, diagnostics: RetrievalDiagnostics) -> bool:
        # Lexical scores are match counts and are not compared to the threshold
        if diagnostics.mode == "lexical":
            return False
        return diagnostics.top_score < self.confidence_threshold

    async def synthesize_overview(self, records: Sequence[VectorRecord]) -> Optional[str]:
        """Generate a short overview from passages spread across the document.

        Returns:
            The overview, or None when there is nothing to sample or the
            provider fails
        """
        sampled = sample_spread(records)
        if not sampled:
            return None

        excerpts = "\n\n".join(snippet(r.text, self.snippet_chars) for r in sampled)
        try:
            overview = await self.generator.generate(
                OVERVIEW_SYSTEM_PROMPT,
                f"Excerpts:\n{excerpts}\n\nWhat is this document about?",
            )
        except Exception as e:
            logger.warning("overview_generation_failed", error=str(e), error_type=type(e).__name__)
            return None

        overview = (overview or "").strip()
        return overview or None

    def build_context(
        self,
        passages: Sequence[ScoredPassage],
        summary_hint: Optional[str] = None,
        overview: Optional[str] = None,
        metadata: Optional[DocumentMetadata] = None,
    ) -> str:
        """Concatenate context blocks in priority order."""
        parts = []
        if summary_hint and summary_hint.strip():
            parts.append(f"Document Summary:\n{snippet(summary_hint, self.snippet_chars)}")
        if overview:
            parts.append(f"Document Overview:\n{snippet(overview, self.snippet_chars)}")
        if passages:
            parts.append("\n\n".join(snippet(p.text, self.snippet_chars) for p in passages))
        elif metadata is not None and not metadata.is_empty():
            meta_parts = []
            if metadata.title:
                meta_parts.append(f"Title: {metadata.title}")
            if metadata.author:
                meta_parts.append(f"Author: {metadata.author}")
            if metadata.toc:
                meta_parts.append("TOC:\n" + "\n".join(metadata.toc[:50]))
            parts.append("Document metadata:\n" + "\n".join(meta_parts))
        return "\n\n".join(parts)

    def normalize(self, answer: str, overview: Optional[str]) -> str:
        """Collapse hedged or empty answers onto the overview or the fallback."""
        if not answer or not answer.strip() or is_hedging(answer):
            return overview or FALLBACK_ANSWER
        return answer.strip()

    async def answer(
        self,
        index: VectorIndex,
        query: str,
        retrieval_query: Optional[str] = None,
        metadata: Optional[DocumentMetadata] = None,
        summary_hint: Optional[str] = None,
        top_k: Optional[int] = None,
    ) -> Answer:
        """Answer a question from the document's content only.

        Args:
            index: The document's vector index
            query: The user's question
            retrieval_query: Optionally expanded question for retrieval
            metadata: Document front matter, if known
            summary_hint: Externally supplied summary to prepend to the context
            top_k: Number of passages to retrieve

        Returns:
            Answer whose text is never empty

        Raises:
            ValidationError: If the query is empty
        """
        if not query or not query.strip():
            raise ValidationError("query is required")

        direct = metadata_answer(query, metadata)
        if direct is not None:
            logger.info("answered_from_metadata", document_id=index.document_id)
            return Answer(
                text=direct,
                source="metadata",
                context=[ScoredPassage(text=direct, score=1.0)],
            )

        result = await self.retriever.retrieve(
            index, query, retrieval_query=retrieval_query, top_k=top_k
        )

        overview = None
        if self._low_confidence(result.diagnostics):
            overview = await self.synthesize_overview(index.read_all())

        context = self.build_context(result.passages, summary_hint, overview, metadata)

        if context:
            system_prompt = GROUNDED_SYSTEM_PROMPT
            user_prompt = f"Context:\n{context}\n\nQuestion: {query}"
        else:
            system_prompt = NO_CONTEXT_SYSTEM_PROMPT
            user_prompt = f"Question: {query}"

        try:
            generated = await self.generator.generate(system_prompt, user_prompt)
        except Exception as e:
            logger.error(
                "answer_generation_failed",
                document_id=index.document_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            generated = ""

        text = self.normalize(generated, overview)
        if generated.strip() and not is_hedging(generated):
            source = "generated"
        elif overview:
            source = "summary"
        else:
            source = "fallback"

        logger.info(
            "answer_synthesized",
            document_id=index.document_id,
            source=source,
            context_passages=len(result.passages),
            top_score=round(result.diagnostics.top_score, 4),
            overview_used=overview is not None,
        )

        return Answer(
            text=text,
            source=source,
            context=list(result.passages),
            summary=overview,
            diagnostics=result.diagnostics,
        )

    async def summarize(self, index: VectorIndex, max_passages: int = None) -> str:
        """Five-bullet summary of the document's leading passages.

        Raises:
            NotFoundError: If the index holds no passages
            ProviderError: If generation fails
        """
        max_passages = max_passages or config.SUMMARY_MAX_PASSAGES
        records = index.read_all()
        if not records:
            raise NotFoundError(f"No vectors found for document {index.document_id}")

        chosen = "\n\n".join(
            snippet(r.text, config.SUMMARY_SNIPPET_CHARS) for r in records[:max_passages]
        )
        summary = await self.generator.generate(
            SUMMARY_SYSTEM_PROMPT,
            f"Context:\n{chosen}\n\nPlease provide a 5-bullet concise summary of the document.",
        )

        logger.info(
            "document_summarized",
            document_id=index.document_id,
            passages_used=min(len(records), max_passages),
        )

        return (summary or "").strip() or "No summary generated."
