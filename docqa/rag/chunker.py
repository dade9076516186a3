"""Passage refinement for the RAG pipeline.

Turns extracted document text into token-bounded, overlapping,
deduplicated passages ready for embedding.
"""
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, List, Sequence

import structlog
import tiktoken

from docqa import config

logger = structlog.get_logger()

_WHITESPACE = re.compile(r"\s+")
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.?!])\s+")


@dataclass(frozen=True)
class Passage:
    """A bounded unit of document text."""

    id: str
    source_index: int
    order: int
    text: str
    token_count: int


@lru_cache(maxsize=4)
def _encoding(name: str) -> "tiktoken.Encoding":
    return tiktoken.get_encoding(name)


def tiktoken_counter(encoding_name: str = None) -> Callable[[str], int]:
    """Build a token counter backed by a tiktoken encoding.

    The encoding is loaded on first use, not on construction.
    """
    name = encoding_name or config.TOKENIZER_ENCODING

    def count(text: str) -> int:
        return len(_encoding(name).encode(text))

    return count


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def split_sentences(text: str) -> List[str]:
    """Split normalized text after terminal punctuation."""
    return [s for s in _SENTENCE_BOUNDARY.split(text) if s]


def split_segments(text: str, size: int = None) -> List[str]:
    """Cut extracted text into fixed-size raw segments.

    Args:
        text: Extracted document text
        size: Segment length in characters (default from config)

    Returns:
        List of raw segments, empty for empty text
    """
    size = size or config.RAW_SEGMENT_CHARS
    if size <= 0:
        raise ValueError(f"Segment size must be positive, got {size}")
    if not text:
        return []
    return [text[i : i + size] for i in range(0, len(text), size)]


class ChunkRefiner:
    """Sentence-aware passage builder with overlap and exact-text dedup."""

    def __init__(
        self,
        max_tokens: int = None,
        overlap: int = None,
        token_counter: Callable[[str], int] = None,
    ):
        """Initialize the refiner.

        Args:
            max_tokens: Token budget per passage (default from config)
            overlap: Trailing sentences carried into the next passage
                (default from config)
            token_counter: Function returning the token count of a string
                (default: tiktoken with the configured encoding)
        """
        self.max_tokens = max_tokens if max_tokens is not None else config.REFINE_MAX_TOKENS
        self.overlap = overlap if overlap is not None else config.REFINE_OVERLAP
        self.count_tokens = token_counter or tiktoken_counter()

        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be positive, got {self.max_tokens}")
        if self.overlap < 0:
            raise ValueError(f"overlap must not be negative, got {self.overlap}")

    def refine(self, segments: Sequence[str]) -> List[Passage]:
        """Refine ordered raw segments into passages.

        Identical input and parameters always produce an identical list.

        Args:
            segments: Raw text segments in document order

        Returns:
            Ordered list of Passage objects
        """
        passages: List[Passage] = []
        seen = set()

        def emit(source_index: int, text: str) -> None:
            if not text or text in seen:
                return
            seen.add(text)
            order = len(passages)
            passages.append(
                Passage(
                    id=f"passage-{source_index}-{order}",
                    source_index=source_index,
                    order=order,
                    text=text,
                    token_count=self.count_tokens(text),
                )
            )

        for source_index, segment in enumerate(segments):
            clean = normalize_whitespace(segment or "")
            if not clean:
                continue

            buffer: List[str] = []

            for sentence in split_sentences(clean):
                # Oversized sentence stands alone and carries no overlap
                if self.count_tokens(sentence) > self.max_tokens:
                    if buffer:
                        emit(source_index, " ".join(buffer))
                    emit(source_index, sentence)
                    buffer = []
                    continue

                if buffer and self.count_tokens(" ".join(buffer + [sentence])) > self.max_tokens:
                    emit(source_index, " ".join(buffer))
                    tail = buffer[-self.overlap :] if self.overlap else []
                    buffer = tail + [sentence]
                    # Drop overlap from the front until the seed fits the budget
                    while len(buffer) > 1 and self.count_tokens(" ".join(buffer)) > self.max_tokens:
                        buffer.pop(0)
                else:
                    buffer.append(sentence)

            if buffer:
                emit(source_index, " ".join(buffer))

        total_tokens = sum(p.token_count for p in passages)
        logger.info(
            "passages_refined",
            raw_segments=len(segments),
            passages=len(passages),
            total_tokens=total_tokens,
            avg_tokens=total_tokens // len(passages) if passages else 0,
            max_tokens_in_passage=max((p.token_count for p in passages), default=0),
        )

        return passages
