"""Per-document facade over refinement, embedding, retrieval and answering."""
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog

from docqa.errors import JobInProgressError, NotFoundError, ValidationError
from docqa.llm_client import EmbeddingProvider, GenerativeProvider, OllamaClient
from docqa.rag.answer import Answer, AnswerSynthesizer
from docqa.rag.chunker import ChunkRefiner, Passage, split_segments
from docqa.rag.ingest import EmbeddingJob, EmbeddingPipeline
from docqa.rag.intents import expand_query
from docqa.rag.retriever import RetrievalEngine, RetrievalResult
from docqa.rag.store import (
    DocumentMetadata,
    DocumentRepository,
    EmbeddingJobStatus,
    VectorIndex,
    create_repository,
    validate_document_id,
)

logger = structlog.get_logger()

NO_TEXT_WARNING = "No text extracted: document may be scanned or image-based"


@dataclass
class IngestReceipt:
    """What the caller gets back from an upload."""

    document_id: str
    raw_segment_count: int = 0
    passage_count: int = 0
    sample: List[Passage] = field(default_factory=list)
    warning: Optional[str] = None
    job: Optional[EmbeddingJob] = None


class DocumentService:
    """Entry point for uploading, querying and deleting documents."""

    def __init__(
        self,
        repository: DocumentRepository = None,
        embedder: EmbeddingProvider = None,
        generator: GenerativeProvider = None,
        refiner: ChunkRefiner = None,
        batch_size: int = None,
        top_k: int = None,
    ):
        """Initialize the service.

        Args:
            repository: Document store (default: backend from config)
            embedder: Embedding provider (default: OllamaClient)
            generator: Generative provider (default: the same OllamaClient)
            refiner: Passage refiner (default: configured ChunkRefiner)
            batch_size: Passages per embedding call
            top_k: Passages retrieved per question
        """
        client = None
        if embedder is None or generator is None:
            client = OllamaClient()

        self.repository = repository or create_repository()
        self.embedder = embedder or client
        self.generator = generator or client
        self.refiner = refiner or ChunkRefiner()
        self.pipeline = EmbeddingPipeline(self.repository, self.embedder, batch_size=batch_size)
        self.retriever = RetrievalEngine(self.embedder, top_k=top_k)
        self.synthesizer = AnswerSynthesizer(self.retriever, self.generator)

        self._jobs: Dict[str, EmbeddingJob] = {}

    def _index(self, document_id: str) -> VectorIndex:
        return VectorIndex(self.repository, validate_document_id(document_id))

    def _require_document(self, document_id: str) -> None:
        if not self.repository.exists(validate_document_id(document_id)):
            raise NotFoundError(f"Unknown document: {document_id}")

    def job(self, document_id: str) -> Optional[EmbeddingJob]:
        """Handle of the document's running job, None once it has finished."""
        return self._jobs.get(validate_document_id(document_id))

    def _forget_job(self, job: EmbeddingJob) -> None:
        if self._jobs.get(job.document_id) is job:
            del self._jobs[job.document_id]

    async def ingest(
        self,
        text: Optional[str],
        document_id: Optional[str] = None,
        metadata: Optional[DocumentMetadata] = None,
    ) -> IngestReceipt:
        """Refine extracted text and start its embedding job in the background.

        Args:
            text: Extracted text, or None if the extractor found none
            document_id: Id to store under (a new UUID by default)
            metadata: Front matter from the extractor

        Returns:
            IngestReceipt; ``job`` is None when there was nothing to embed

        Raises:
            JobInProgressError: If the document already has a running job
        """
        document_id = validate_document_id(document_id or str(uuid.uuid4()))

        if not text or not text.strip():
            logger.warning("no_text_extracted", document_id=document_id)
            return IngestReceipt(document_id=document_id, warning=NO_TEXT_WARNING)

        running = self._jobs.get(document_id)
        if running is not None and not running.done():
            raise JobInProgressError(document_id)

        # Re-ingesting replaces the previous index, never extends it
        status = self.repository.read_status(document_id)
        if status is not None and status.state.terminal:
            self.repository.delete(document_id)

        segments = split_segments(text)
        passages = self.refiner.refine(segments)

        if metadata is not None and not metadata.is_empty():
            self.repository.write_metadata(document_id, metadata)

        job = self.pipeline.start(document_id, passages)
        self._jobs[document_id] = job
        job.add_done_callback(self._forget_job)

        logger.info(
            "document_ingest_started",
            document_id=document_id,
            raw_segments=len(segments),
            passages=len(passages),
        )

        return IngestReceipt(
            document_id=document_id,
            raw_segment_count=len(segments),
            passage_count=len(passages),
            sample=passages[:3],
            job=job,
        )

    def status(self, document_id: str) -> EmbeddingJobStatus:
        """Current embedding job status.

        Raises:
            NotFoundError: If no job was ever started for the document
        """
        status = self.repository.read_status(validate_document_id(document_id))
        if status is None:
            raise NotFoundError(f"Status not found for document {document_id}")
        return status

    async def retrieve(
        self, document_id: str, query: str, top_k: Optional[int] = None
    ) -> RetrievalResult:
        """Rank the document's passages for a plain query.

        Raises:
            ValidationError: If the query is empty
            NotFoundError: If the document is unknown or has no vectors yet
        """
        if not query or not query.strip():
            raise ValidationError("query is required")
        self._require_document(document_id)

        index = self._index(document_id)
        if not index.read_all():
            raise NotFoundError(f"No vectors found for document {document_id}")
        return await self.retriever.retrieve(index, query, top_k=top_k)

    async def ask(
        self,
        document_id: str,
        query: str,
        retrieval_query: Optional[str] = None,
        summary_hint: Optional[str] = None,
        top_k: Optional[int] = None,
    ) -> Answer:
        """Answer a question from the document.

        The retrieval query defaults to the question expanded with hint terms.
        """
        if not query or not query.strip():
            raise ValidationError("query is required")
        self._require_document(document_id)

        return await self.synthesizer.answer(
            self._index(document_id),
            query.strip(),
            retrieval_query=retrieval_query or expand_query(query.strip()),
            metadata=self.repository.read_metadata(document_id),
            summary_hint=summary_hint,
            top_k=top_k,
        )

    async def summarize(self, document_id: str) -> str:
        self._require_document(document_id)
        return await self.synthesizer.summarize(self._index(document_id))

    async def delete(self, document_id: str) -> bool:
        """Cancel any running job and remove the document's artifacts."""
        validate_document_id(document_id)
        job = self._jobs.pop(document_id, None)
        if job is not None and not job.done():
            await job.cancel()
        deleted = self._index(document_id).delete()
        logger.info("document_deleted", document_id=document_id, found=deleted)
        return deleted
