"""Tests for the incremental embedding pipeline and job handles."""
import asyncio
import math

import pytest

from docqa.errors import JobInProgressError, PersistenceError
from docqa.rag.chunker import Passage
from docqa.rag.ingest import CANCELLED_MESSAGE, EmbeddingPipeline, l2_normalize
from docqa.rag.store import JobState, MemoryRepository
from tests.fakes import FakeEmbedder


class RecordingRepository(MemoryRepository):
    """Memory repository remembering (processed, committed records) per status write."""

    def __init__(self):
        super().__init__()
        self.history = []

    def write_status(self, status):
        super().write_status(status)
        self.history.append((status.processed, len(self.read_records(status.document_id)), status.state))


class FailingStatusRepository(MemoryRepository):
    def write_status(self, status):
        raise PersistenceError("disk full")


def make_passages(count: int):
    return [
        Passage(id=f"passage-0-{i}", source_index=0, order=i, text=f"Passage number {i}.", token_count=3)
        for i in range(count)
    ]


class TestL2Normalize:
    def test_scales_to_unit_length(self):
        assert l2_normalize([3.0, 4.0]) == pytest.approx([0.6, 0.8])

    def test_zero_vector_is_unchanged(self):
        assert l2_normalize([0.0, 0.0]) == [0.0, 0.0]


class TestEmbeddingPipelineRun:
    @pytest.mark.asyncio
    async def test_completes_with_all_passages_embedded(self):
        repo = RecordingRepository()
        embedder = FakeEmbedder(dimension=4)
        pipeline = EmbeddingPipeline(repo, embedder, batch_size=2)

        status = await pipeline.run("doc", make_passages(5))

        assert status.state is JobState.DONE
        assert status.processed == status.total == 5
        assert [len(call) for call in embedder.calls] == [2, 2, 1]
        assert [r.id for r in repo.read_records("doc")] == [f"passage-0-{i}" for i in range(5)]
        assert repo.read_status("doc") == status

    @pytest.mark.asyncio
    async def test_stored_vectors_are_unit_length(self):
        repo = MemoryRepository()
        pipeline = EmbeddingPipeline(repo, FakeEmbedder(dimension=6), batch_size=3)

        await pipeline.run("doc", make_passages(3))

        for record in repo.read_records("doc"):
            assert math.sqrt(sum(x * x for x in record.embedding)) == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_processed_tracks_committed_vectors_monotonically(self):
        repo = RecordingRepository()
        pipeline = EmbeddingPipeline(repo, FakeEmbedder(), batch_size=2)

        await pipeline.run("doc", make_passages(5))

        processed = [p for p, _, _ in repo.history]
        assert processed == sorted(processed)
        assert processed == [0, 2, 4, 5]
        assert all(p == committed for p, committed, _ in repo.history)
        assert repo.history[-1][2] is JobState.DONE

    @pytest.mark.asyncio
    async def test_provider_failure_keeps_earlier_batches(self):
        repo = MemoryRepository()
        embedder = FakeEmbedder(fail_on_call=2)
        pipeline = EmbeddingPipeline(repo, embedder, batch_size=2)

        status = await pipeline.run("doc", make_passages(5))

        assert status.state is JobState.ERROR
        assert "unavailable" in status.error
        assert status.processed == 2
        assert len(repo.read_records("doc")) == 2
        # Remaining batches were aborted
        assert len(embedder.calls) == 2

    @pytest.mark.asyncio
    async def test_wrong_vector_count_is_an_error(self):
        class ShortEmbedder(FakeEmbedder):
            async def embed(self, texts):
                vectors = await super().embed(texts)
                return vectors[:-1]

        repo = MemoryRepository()
        status = await EmbeddingPipeline(repo, ShortEmbedder(), batch_size=3).run("doc", make_passages(3))

        assert status.state is JobState.ERROR
        assert repo.read_records("doc") == []

    @pytest.mark.asyncio
    async def test_dimension_change_between_batches_is_an_error(self):
        class DriftingEmbedder(FakeEmbedder):
            async def embed(self, texts):
                self.dimension = 4 if not self.calls else 6
                return await super().embed(texts)

        repo = MemoryRepository()
        status = await EmbeddingPipeline(repo, DriftingEmbedder(), batch_size=2).run("doc", make_passages(4))

        assert status.state is JobState.ERROR
        assert status.processed == 2
        assert {r.dimension for r in repo.read_records("doc")} == {4}

    @pytest.mark.asyncio
    async def test_no_passages_is_done_immediately(self):
        repo = MemoryRepository()
        embedder = FakeEmbedder()

        status = await EmbeddingPipeline(repo, embedder).run("doc", [])

        assert status.state is JobState.DONE
        assert status.total == 0
        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_status_write_failure_does_not_stop_the_job(self):
        repo = FailingStatusRepository()

        status = await EmbeddingPipeline(repo, FakeEmbedder(), batch_size=2).run("doc", make_passages(3))

        assert status.state is JobState.DONE
        assert len(repo.read_records("doc")) == 3

    def test_rejects_non_positive_batch_size(self):
        with pytest.raises(ValueError):
            EmbeddingPipeline(MemoryRepository(), FakeEmbedder(), batch_size=-2)


class TestEmbeddingJob:
    @pytest.mark.asyncio
    async def test_start_returns_awaitable_handle(self):
        repo = MemoryRepository()
        pipeline = EmbeddingPipeline(repo, FakeEmbedder(), batch_size=2)

        job = pipeline.start("doc", make_passages(3))
        status = await job.wait()

        assert job.done()
        assert status.state is JobState.DONE
        assert job.status() == status

    @pytest.mark.asyncio
    async def test_second_start_while_running_is_rejected(self):
        gate = asyncio.Event()
        repo = MemoryRepository()
        pipeline = EmbeddingPipeline(repo, FakeEmbedder(gate=gate), batch_size=2)

        job = pipeline.start("doc", make_passages(3))
        await asyncio.sleep(0)

        with pytest.raises(JobInProgressError):
            pipeline.start("doc", make_passages(3))

        gate.set()
        await job.wait()

        # Flag released once the run ends
        again = pipeline.start("doc", [])
        await again.wait()

    @pytest.mark.asyncio
    async def test_partial_index_is_readable_while_running(self):
        gate = asyncio.Event()

        class SecondBatchBlocks(FakeEmbedder):
            async def embed(self, texts):
                if self.calls:
                    await gate.wait()
                self.calls.append(list(texts))
                return [self.vector_for(t) for t in texts]

        repo = MemoryRepository()
        job = EmbeddingPipeline(repo, SecondBatchBlocks(), batch_size=2).start("doc", make_passages(4))

        for _ in range(10):
            await asyncio.sleep(0)

        status = job.status()
        assert status.state is JobState.PROCESSING
        assert status.processed == 2
        assert len(repo.read_records("doc")) == 2

        gate.set()
        assert (await job.wait()).state is JobState.DONE

    @pytest.mark.asyncio
    async def test_cancel_records_error_and_keeps_progress(self):
        gate = asyncio.Event()
        repo = MemoryRepository()
        pipeline = EmbeddingPipeline(repo, FakeEmbedder(gate=gate), batch_size=2)

        job = pipeline.start("doc", make_passages(4))
        await asyncio.sleep(0)

        status = await job.cancel()

        assert job.done()
        assert status.state is JobState.ERROR
        assert status.error == CANCELLED_MESSAGE
        assert repo.claim_job("doc") is not None
