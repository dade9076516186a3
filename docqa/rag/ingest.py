"""Incremental embedding pipeline.

Orchestrates:
- Batching passages to the embedding provider
- L2 normalization of returned vectors
- Appending each batch to the document's VectorIndex
- Publishing job status after every batch
- Background job handles with a per-document in-progress flag
"""
import asyncio
from typing import Callable, List, Optional, Sequence

import numpy as np
import structlog

from docqa import config
from docqa.errors import JobInProgressError, PersistenceError, ProviderError
from docqa.llm_client import EmbeddingProvider
from docqa.rag.chunker import Passage
from docqa.rag.store import (
    DocumentRepository,
    EmbeddingJobStatus,
    VectorIndex,
    VectorRecord,
    validate_document_id,
)

logger = structlog.get_logger()

CANCELLED_MESSAGE = "cancelled"


def l2_normalize(vector: Sequence[float]) -> List[float]:
    """Scale a vector to unit length; a zero vector is returned unchanged."""
    array = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(array)
    if norm == 0:
        return array.tolist()
    return (array / norm).tolist()


class EmbeddingJob:
    """Handle on a background embedding run for one document."""

    def __init__(
        self,
        document_id: str,
        task: "asyncio.Task[EmbeddingJobStatus]",
        repository: DocumentRepository,
    ):
        self.document_id = document_id
        self.repository = repository
        self._task = task

    def done(self) -> bool:
        return self._task.done()

    def add_done_callback(self, callback: Callable[["EmbeddingJob"], None]) -> None:
        """Call ``callback(job)`` once the run has finished, whatever the outcome."""
        self._task.add_done_callback(lambda _: callback(self))

    def status(self) -> Optional[EmbeddingJobStatus]:
        """Latest published status."""
        return self.repository.read_status(self.document_id)

    async def wait(self) -> EmbeddingJobStatus:
        """Wait for the run to finish and return its final status."""
        return await asyncio.shield(self._task)

    async def cancel(self) -> Optional[EmbeddingJobStatus]:
        """Cancel the run; batches already committed stay in the index."""
        if not self._task.done():
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        return self.status()


class EmbeddingPipeline:
    """Embeds passages batch by batch into a document's VectorIndex."""

    def __init__(
        self,
        repository: DocumentRepository,
        embedder: EmbeddingProvider,
        batch_size: int = None,
    ):
        """Initialize the embedding pipeline.

        Args:
            repository: Store for vectors and job status
            embedder: Provider turning a batch of texts into vectors
            batch_size: Passages per provider call (default from config)
        """
        self.repository = repository
        self.embedder = embedder
        self.batch_size = batch_size or config.EMBEDDING_BATCH_SIZE

        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")

    def _publish_status(self, status: EmbeddingJobStatus) -> None:
        try:
            self.repository.write_status(status)
        except PersistenceError as e:
            logger.warning(
                "status_publish_failed",
                document_id=status.document_id,
                processed=status.processed,
                error=str(e),
            )

    async def _embed_batch(
        self, batch: Sequence[Passage], dimension: int
    ) -> List[VectorRecord]:
        vectors = await self.embedder.embed([p.text for p in batch])

        if len(vectors) != len(batch):
            raise ProviderError(
                f"Expected {len(batch)} vectors, provider returned {len(vectors)}"
            )

        dimensions = {len(v) for v in vectors}
        if len(dimensions) != 1 or 0 in dimensions:
            raise ProviderError(f"Inconsistent vector dimensions in batch: {sorted(dimensions)}")
        if dimension and dimensions != {dimension}:
            raise ProviderError(
                f"Vector dimension {dimensions.pop()} does not match index dimension {dimension}"
            )

        return [
            VectorRecord(id=p.id, text=p.text, embedding=tuple(l2_normalize(v)))
            for p, v in zip(batch, vectors)
        ]

    async def run(self, document_id: str, passages: Sequence[Passage]) -> EmbeddingJobStatus:
        """Embed every passage and return the terminal job status.

        Provider or record-persistence failures end the run in the Error
        state. Batches committed before the failure are kept.

        Args:
            document_id: Document whose index receives the vectors
            passages: Passages in document order

        Returns:
            Final EmbeddingJobStatus (Done or Error)
        """
        index = VectorIndex(self.repository, document_id)
        status = EmbeddingJobStatus.started(document_id, len(passages))
        self._publish_status(status)

        logger.info(
            "embedding_job_started",
            document_id=document_id,
            total=status.total,
            batch_size=self.batch_size,
        )

        if not passages:
            status = status.advance(0)
            self._publish_status(status)
            return status

        dimension = index.dimension()

        try:
            for start in range(0, len(passages), self.batch_size):
                batch = passages[start : start + self.batch_size]

                records = await self._embed_batch(batch, dimension)
                appended = index.append(records)
                dimension = dimension or (appended[0].dimension if appended else 0)

                status = status.advance(status.processed + len(appended))
                self._publish_status(status)

                logger.info(
                    "embedding_batch_committed",
                    document_id=document_id,
                    batch_size=len(appended),
                    processed=status.processed,
                    total=status.total,
                )

        except asyncio.CancelledError:
            status = status.fail(CANCELLED_MESSAGE)
            self._publish_status(status)
            logger.warning(
                "embedding_job_cancelled",
                document_id=document_id,
                processed=status.processed,
            )
            raise

        except Exception as e:
            status = status.fail(str(e) or type(e).__name__)
            self._publish_status(status)
            logger.error(
                "embedding_job_failed",
                document_id=document_id,
                processed=status.processed,
                total=status.total,
                error=str(e),
                error_type=type(e).__name__,
            )
            return status

        logger.info(
            "embedding_job_completed",
            document_id=document_id,
            vectors=status.processed,
            dimension=dimension,
        )

        return status

    def start(self, document_id: str, passages: Sequence[Passage]) -> EmbeddingJob:
        """Launch ``run`` as a background task and return its handle.

        Must be called from a running event loop.

        Raises:
            JobInProgressError: If a job is already running for the document
        """
        validate_document_id(document_id)
        token = self.repository.claim_job(document_id)
        if token is None:
            raise JobInProgressError(document_id)

        try:
            task = asyncio.get_running_loop().create_task(self.run(document_id, passages))
        except RuntimeError:
            self.repository.release_job(document_id, token)
            raise

        # Released on any outcome, including cancellation before the first step
        task.add_done_callback(lambda _: self.repository.release_job(document_id, token))

        return EmbeddingJob(document_id, task, self.repository)
