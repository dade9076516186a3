"""Shared fixtures for unit tests."""
import pytest

from docqa.rag.chunker import ChunkRefiner
from docqa.rag.store import FileRepository, MemoryRepository, SQLiteRepository
from tests.fakes import FakeEmbedder, FakeGenerator, word_count


@pytest.fixture
def memory_repository() -> MemoryRepository:
    return MemoryRepository()


@pytest.fixture(params=["file", "sqlite", "memory"])
def repository(request, tmp_path):
    """Every repository backend, each isolated under tmp_path."""
    if request.param == "file":
        return FileRepository(tmp_path / "vector")
    if request.param == "sqlite":
        return SQLiteRepository(tmp_path / "docqa.sqlite")
    return MemoryRepository()


@pytest.fixture
def refiner() -> ChunkRefiner:
    return ChunkRefiner(max_tokens=12, overlap=1, token_counter=word_count)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()
