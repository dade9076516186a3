"""Per-document vector storage.

Handles:
- Vector records and embedding job status types
- Repository backends (JSON files, SQLite, in-memory)
- Atomic write-replace persistence
- Dimension-guarded appends through VectorIndex
"""
import json
import os
import re
import sqlite3
import tempfile
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import List, Optional, Dict, Any, Tuple, Sequence

import structlog

from docqa import config
from docqa.errors import PersistenceError, ValidationError

logger = structlog.get_logger()

_DOCUMENT_ID = re.compile(r"^[A-Za-z0-9_-]+$")


def validate_document_id(document_id: Any) -> str:
    """Return the id if usable as a storage key, else raise ValidationError."""
    if not isinstance(document_id, str) or not document_id:
        raise ValidationError("document_id is required")
    if not _DOCUMENT_ID.match(document_id):
        raise ValidationError(f"Invalid document_id: {document_id!r}")
    return document_id


@dataclass(frozen=True)
class VectorRecord:
    """A passage paired with its embedding."""

    id: str
    text: str
    embedding: Tuple[float, ...]

    @property
    def dimension(self) -> int:
        return len(self.embedding)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "text": self.text, "embedding": list(self.embedding)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VectorRecord":
        return cls(
            id=str(data["id"]),
            text=str(data.get("text", "")),
            embedding=tuple(float(x) for x in data["embedding"]),
        )


class JobState(str, Enum):
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self is not JobState.PROCESSING


@dataclass(frozen=True)
class EmbeddingJobStatus:
    """Progress of one document's embedding job.

    Transitions only go Processing -> Done or Processing -> Error, and
    ``processed`` never decreases.
    """

    document_id: str
    total: int
    processed: int = 0
    state: JobState = JobState.PROCESSING
    error: Optional[str] = None

    @classmethod
    def started(cls, document_id: str, total: int) -> "EmbeddingJobStatus":
        return cls(document_id=document_id, total=total)

    def advance(self, processed: int) -> "EmbeddingJobStatus":
        """Record progress; reaching ``total`` completes the job."""
        if self.state.terminal:
            raise ValueError(f"Job for {self.document_id} is already {self.state.value}")
        if processed < self.processed or processed > self.total:
            raise ValueError(
                f"processed must stay within [{self.processed}, {self.total}], got {processed}"
            )
        state = JobState.DONE if processed == self.total else JobState.PROCESSING
        return replace(self, processed=processed, state=state)

    def fail(self, error: str) -> "EmbeddingJobStatus":
        if self.state.terminal:
            raise ValueError(f"Job for {self.document_id} is already {self.state.value}")
        return replace(self, state=JobState.ERROR, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "documentId": self.document_id,
            "total": self.total,
            "processed": self.processed,
            "status": self.state.value,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmbeddingJobStatus":
        return cls(
            document_id=str(data["documentId"]),
            total=int(data.get("total", 0)),
            processed=int(data.get("processed", 0)),
            state=JobState(data.get("status", JobState.PROCESSING.value)),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class DocumentMetadata:
    """Front matter supplied by the text extractor."""

    title: Optional[str] = None
    author: Optional[str] = None
    toc: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.title or self.author or self.toc)

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "author": self.author, "toc": list(self.toc)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentMetadata":
        toc = data.get("toc") or []
        return cls(
            title=data.get("title") or None,
            author=data.get("author") or None,
            toc=[str(entry) for entry in toc] if isinstance(toc, list) else [],
        )


class DocumentRepository(ABC):
    """Storage for per-document records, job status and metadata."""

    @abstractmethod
    def append_records(self, document_id: str, records: Sequence[VectorRecord]) -> None:
        """Publish ``records`` after the existing ones in one atomic step."""

    @abstractmethod
    def read_records(self, document_id: str) -> List[VectorRecord]:
        """Return a snapshot copy of all records, empty if none."""

    @abstractmethod
    def write_status(self, status: EmbeddingJobStatus) -> None:
        ...

    @abstractmethod
    def read_status(self, document_id: str) -> Optional[EmbeddingJobStatus]:
        """Return the job status, or None if no job was ever started."""

    @abstractmethod
    def write_metadata(self, document_id: str, metadata: DocumentMetadata) -> None:
        ...

    @abstractmethod
    def read_metadata(self, document_id: str) -> Optional[DocumentMetadata]:
        ...

    @abstractmethod
    def claim_job(self, document_id: str) -> Optional[str]:
        """Atomically set the job-in-progress flag.

        Returns:
            A claim token identifying the new owner, or None if the flag is
            already held
        """

    @abstractmethod
    def release_job(self, document_id: str, token: str) -> None:
        """Clear the flag if it is still held under ``token``."""

    @abstractmethod
    def delete(self, document_id: str) -> bool:
        """Remove every artifact of the document; True if anything existed."""

    def exists(self, document_id: str) -> bool:
        return (
            self.read_status(document_id) is not None
            or self.read_metadata(document_id) is not None
            or bool(self.read_records(document_id))
        )


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write JSON to a temp file beside ``path`` then publish it with os.replace.

    Readers see either the previous file or the new one, never a partial write.

    Raises:
        PersistenceError: If the write or the replace fails
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_name = None
    try:
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            tmp_name = tmp.name
            json.dump(payload, tmp)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, path)
    except (OSError, TypeError, ValueError) as e:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise PersistenceError(f"Failed to publish {path}: {e}") from e


class FileRepository(DocumentRepository):
    """JSON files under one directory, published by write-replace."""

    def __init__(self, root: Path = None):
        """Initialize the file repository.

        Args:
            root: Directory holding the artifacts (default: config.VECTOR_DIR)
        """
        self.root = Path(root or config.VECTOR_DIR)
        self.status_dir = self.root / "status"
        self.metadata_dir = self.root / "metadata"
        self.lock_dir = self.root / "locks"

        for directory in (self.root, self.status_dir, self.metadata_dir, self.lock_dir):
            directory.mkdir(parents=True, exist_ok=True)

        logger.info("file_repository_initialized", root=str(self.root))

    def _records_path(self, document_id: str) -> Path:
        return self.root / f"{validate_document_id(document_id)}.json"

    def _status_path(self, document_id: str) -> Path:
        return self.status_dir / f"{validate_document_id(document_id)}.json"

    def _metadata_path(self, document_id: str) -> Path:
        return self.metadata_dir / f"{validate_document_id(document_id)}.json"

    def _lock_path(self, document_id: str) -> Path:
        return self.lock_dir / f"{validate_document_id(document_id)}.lock"

    def append_records(self, document_id: str, records: Sequence[VectorRecord]) -> None:
        if not records:
            return
        current = self.read_records(document_id)
        payload = [r.to_dict() for r in current] + [r.to_dict() for r in records]
        atomic_write_json(self._records_path(document_id), payload)

    def read_records(self, document_id: str) -> List[VectorRecord]:
        path = self._records_path(document_id)
        if not path.exists():
            return []
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read records for {document_id}: {e}") from e
        return [VectorRecord.from_dict(item) for item in raw]

    def write_status(self, status: EmbeddingJobStatus) -> None:
        atomic_write_json(self._status_path(status.document_id), status.to_dict())

    def read_status(self, document_id: str) -> Optional[EmbeddingJobStatus]:
        path = self._status_path(document_id)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = f.read()
            return EmbeddingJobStatus.from_dict(json.loads(raw))
        except (OSError, ValueError, KeyError) as e:
            # A status file that exists but does not parse is mid-write
            logger.debug("status_unreadable_reporting_processing", document_id=document_id, error=str(e))
            return EmbeddingJobStatus(document_id=document_id, total=0)

    def write_metadata(self, document_id: str, metadata: DocumentMetadata) -> None:
        atomic_write_json(self._metadata_path(document_id), metadata.to_dict())

    def read_metadata(self, document_id: str) -> Optional[DocumentMetadata]:
        path = self._metadata_path(document_id)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return DocumentMetadata.from_dict(json.load(f))
        except (OSError, ValueError) as e:
            logger.warning("metadata_unreadable", document_id=document_id, error=str(e))
            return None

    def _reclaim_path(self, document_id: str) -> Path:
        return self.lock_dir / f"{validate_document_id(document_id)}.reclaim"

    def _create_lock(self, path: Path, token: str) -> bool:
        """Create ``path`` holding ``token``; False if it already exists."""
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        except OSError as e:
            raise PersistenceError(f"Failed to create lock {path}: {e}") from e
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"token": token}, f)
        return True

    def _lock_token(self, path: Path) -> Optional[str]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f).get("token")
        except (OSError, ValueError, AttributeError):
            return None

    def _lock_is_stale(self, document_id: str) -> bool:
        """True if the lock predates a terminal status of the last run.

        A lock taken after that status was written belongs to a newer run.
        """
        status = self.read_status(document_id)
        if status is None or not status.state.terminal:
            return False
        try:
            lock_mtime = self._lock_path(document_id).stat().st_mtime_ns
            status_mtime = self._status_path(document_id).stat().st_mtime_ns
        except FileNotFoundError:
            return False
        return lock_mtime < status_mtime

    def claim_job(self, document_id: str) -> Optional[str]:
        path = self._lock_path(document_id)
        token = uuid.uuid4().hex
        if self._create_lock(path, token):
            return token

        # Reclaims are serialized through a second exclusive file
        reclaim = self._reclaim_path(document_id)
        if not self._create_lock(reclaim, token):
            return None
        try:
            if self._create_lock(path, token):
                return token
            if not self._lock_is_stale(document_id):
                return None
            atomic_write_json(path, {"token": token})
            logger.warning("stale_job_lock_reclaimed", document_id=document_id)
            return token
        finally:
            reclaim.unlink(missing_ok=True)

    def release_job(self, document_id: str, token: str) -> None:
        path = self._lock_path(document_id)
        if self._lock_token(path) != token:
            logger.debug("job_lock_not_owned", document_id=document_id)
            return
        path.unlink(missing_ok=True)

    def delete(self, document_id: str) -> bool:
        deleted = []
        for path in (
            self._records_path(document_id),
            self._status_path(document_id),
            self._metadata_path(document_id),
            self._lock_path(document_id),
            self._reclaim_path(document_id),
        ):
            try:
                path.unlink()
                deleted.append(str(path))
            except FileNotFoundError:
                continue
            except OSError as e:
                raise PersistenceError(f"Failed to delete {path}: {e}") from e

        logger.info("document_artifacts_deleted", document_id=document_id, deleted=deleted)
        return bool(deleted)


class SQLiteRepository(DocumentRepository):
    """SQLite-backed repository; each commit is the atomic publish step."""

    def __init__(self, db_path: Path = None):
        """Initialize the SQLite repository.

        Args:
            db_path: Database file (default: config.SQLITE_PATH)
        """
        self.db_path = Path(db_path or config.SQLITE_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_database()

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection with row_factory set to sqlite3.Row."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_database(self) -> None:
        """Create tables if they don't exist.

        - records: passage text and embedding JSON, ordered by seq
        - statuses: one job status row per document
        - metadata: one metadata row per document
        - jobs: presence of a row is the job-in-progress flag, keyed to its owner
        """
        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    document_id TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    embedding_json TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_records_document_id
                ON records(document_id)
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS statuses (
                    document_id TEXT PRIMARY KEY,
                    status_json TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS metadata (
                    document_id TEXT PRIMARY KEY,
                    metadata_json TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    document_id TEXT PRIMARY KEY,
                    token TEXT NOT NULL
                )
            """)

            conn.commit()
            logger.info("database_initialized", db_path=str(self.db_path))

        except sqlite3.Error as e:
            conn.rollback()
            logger.error("database_init_failed", error=str(e))
            raise PersistenceError(f"Failed to initialize {self.db_path}: {e}") from e
        finally:
            conn.close()

    def _execute_write(self, sql: str, params: Sequence = (), many: bool = False) -> int:
        conn = self.get_connection()
        try:
            cursor = conn.cursor()
            if many:
                cursor.executemany(sql, params)
            else:
                cursor.execute(sql, params)
            conn.commit()
            return cursor.rowcount
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("database_write_failed", error=str(e))
            raise PersistenceError(f"Database write failed: {e}") from e
        finally:
            conn.close()

    def _fetch(self, sql: str, params: Sequence = ()) -> List[sqlite3.Row]:
        conn = self.get_connection()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Database read failed: {e}") from e
        finally:
            conn.close()

    def append_records(self, document_id: str, records: Sequence[VectorRecord]) -> None:
        validate_document_id(document_id)
        if not records:
            return
        self._execute_write(
            """
            INSERT INTO records (document_id, record_id, content, embedding_json)
            VALUES (?, ?, ?, ?)
            """,
            [(document_id, r.id, r.text, json.dumps(list(r.embedding))) for r in records],
            many=True,
        )

    def read_records(self, document_id: str) -> List[VectorRecord]:
        validate_document_id(document_id)
        rows = self._fetch(
            "SELECT record_id, content, embedding_json FROM records "
            "WHERE document_id = ? ORDER BY seq",
            (document_id,),
        )
        return [
            VectorRecord(
                id=row["record_id"],
                text=row["content"],
                embedding=tuple(json.loads(row["embedding_json"])),
            )
            for row in rows
        ]

    def write_status(self, status: EmbeddingJobStatus) -> None:
        validate_document_id(status.document_id)
        self._execute_write(
            "INSERT OR REPLACE INTO statuses (document_id, status_json) VALUES (?, ?)",
            (status.document_id, json.dumps(status.to_dict())),
        )

    def read_status(self, document_id: str) -> Optional[EmbeddingJobStatus]:
        validate_document_id(document_id)
        rows = self._fetch(
            "SELECT status_json FROM statuses WHERE document_id = ?", (document_id,)
        )
        if not rows:
            return None
        return EmbeddingJobStatus.from_dict(json.loads(rows[0]["status_json"]))

    def write_metadata(self, document_id: str, metadata: DocumentMetadata) -> None:
        validate_document_id(document_id)
        self._execute_write(
            "INSERT OR REPLACE INTO metadata (document_id, metadata_json) VALUES (?, ?)",
            (document_id, json.dumps(metadata.to_dict())),
        )

    def read_metadata(self, document_id: str) -> Optional[DocumentMetadata]:
        validate_document_id(document_id)
        rows = self._fetch(
            "SELECT metadata_json FROM metadata WHERE document_id = ?", (document_id,)
        )
        if not rows:
            return None
        return DocumentMetadata.from_dict(json.loads(rows[0]["metadata_json"]))

    def claim_job(self, document_id: str) -> Optional[str]:
        validate_document_id(document_id)
        token = uuid.uuid4().hex
        conn = self.get_connection()
        try:
            conn.execute(
                "INSERT INTO jobs (document_id, token) VALUES (?, ?)", (document_id, token)
            )
            conn.commit()
            return token
        except sqlite3.IntegrityError:
            conn.rollback()
            return None
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to claim job for {document_id}: {e}") from e
        finally:
            conn.close()

    def release_job(self, document_id: str, token: str) -> None:
        self._execute_write(
            "DELETE FROM jobs WHERE document_id = ? AND token = ?", (document_id, token)
        )

    def delete(self, document_id: str) -> bool:
        validate_document_id(document_id)
        conn = self.get_connection()
        try:
            removed = 0
            for table in ("records", "statuses", "metadata", "jobs"):
                removed += conn.execute(
                    f"DELETE FROM {table} WHERE document_id = ?", (document_id,)
                ).rowcount
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to delete {document_id}: {e}") from e
        finally:
            conn.close()

        logger.info("document_rows_deleted", document_id=document_id, rows=removed)
        return removed > 0


class MemoryRepository(DocumentRepository):
    """Process-local repository; publishes by swapping whole values."""

    def __init__(self):
        self._records: Dict[str, Tuple[VectorRecord, ...]] = {}
        self._status: Dict[str, EmbeddingJobStatus] = {}
        self._metadata: Dict[str, DocumentMetadata] = {}
        self._jobs: Dict[str, str] = {}

    def append_records(self, document_id: str, records: Sequence[VectorRecord]) -> None:
        validate_document_id(document_id)
        self._records[document_id] = self._records.get(document_id, ()) + tuple(records)

    def read_records(self, document_id: str) -> List[VectorRecord]:
        return list(self._records.get(validate_document_id(document_id), ()))

    def write_status(self, status: EmbeddingJobStatus) -> None:
        self._status[validate_document_id(status.document_id)] = status

    def read_status(self, document_id: str) -> Optional[EmbeddingJobStatus]:
        return self._status.get(validate_document_id(document_id))

    def write_metadata(self, document_id: str, metadata: DocumentMetadata) -> None:
        self._metadata[validate_document_id(document_id)] = metadata

    def read_metadata(self, document_id: str) -> Optional[DocumentMetadata]:
        return self._metadata.get(validate_document_id(document_id))

    def claim_job(self, document_id: str) -> Optional[str]:
        validate_document_id(document_id)
        if document_id in self._jobs:
            return None
        token = uuid.uuid4().hex
        self._jobs[document_id] = token
        return token

    def release_job(self, document_id: str, token: str) -> None:
        if self._jobs.get(document_id) == token:
            del self._jobs[document_id]

    def delete(self, document_id: str) -> bool:
        validate_document_id(document_id)
        found = document_id in self._records or document_id in self._status or document_id in self._metadata
        self._records.pop(document_id, None)
        self._status.pop(document_id, None)
        self._metadata.pop(document_id, None)
        self._jobs.pop(document_id, None)
        return found


def create_repository(backend: str = None) -> DocumentRepository:
    """Build the repository selected by name (default: config.STORE_BACKEND)."""
    backend = (backend or config.STORE_BACKEND).lower()
    if backend == "file":
        return FileRepository()
    if backend == "sqlite":
        return SQLiteRepository()
    if backend == "memory":
        return MemoryRepository()
    raise ValueError(f"Unknown store backend: {backend}")


class VectorIndex:
    """Append-only vector index for one document."""

    def __init__(self, repository: DocumentRepository, document_id: str):
        self.repository = repository
        self.document_id = validate_document_id(document_id)

    def read_all(self) -> List[VectorRecord]:
        """Snapshot of every record; later appends do not affect it."""
        return self.repository.read_records(self.document_id)

    def dimension(self) -> int:
        """Dimensionality shared by all records, 0 if the index is empty."""
        records = self.read_all()
        return records[0].dimension if records else 0

    def append(self, records: Sequence[VectorRecord]) -> List[VectorRecord]:
        """Append records whose dimensionality matches the index.

        The first record ever appended establishes the dimensionality.
        Mismatched records are skipped and logged, never stored.

        Returns:
            The records that were actually appended
        """
        if not records:
            return []

        dimension = self.dimension() or records[0].dimension
        accepted = [r for r in records if r.dimension == dimension and dimension > 0]
        skipped = len(records) - len(accepted)

        if skipped:
            logger.warning(
                "vector_dimension_mismatch_skipped",
                document_id=self.document_id,
                expected=dimension,
                skipped=skipped,
            )

        self.repository.append_records(self.document_id, accepted)

        logger.debug(
            "vectors_appended",
            document_id=self.document_id,
            count=len(accepted),
            dimension=dimension,
        )

        return accepted

    def delete(self) -> bool:
        """Remove every persisted artifact of the document."""
        return self.repository.delete(self.document_id)

