"""Application configuration with sensible defaults."""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))
VECTOR_DIR = Path(os.getenv("VECTOR_DIR", str(DATA_DIR / "vector")))
SQLITE_PATH = Path(os.getenv("SQLITE_PATH", str(DATA_DIR / "docqa.sqlite")))

# Storage backend: "file", "sqlite" or "memory"
STORE_BACKEND = os.getenv("STORE_BACKEND", "file")

# Ollama configuration
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
CHAT_MODEL = os.getenv("CHAT_MODEL", "gemma3:12b")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "nomic-embed-text")
PROVIDER_TIMEOUT = float(os.getenv("PROVIDER_TIMEOUT", "60.0"))

# Chunking
RAW_SEGMENT_CHARS = int(os.getenv("RAW_SEGMENT_CHARS", "500"))
REFINE_MAX_TOKENS = int(os.getenv("REFINE_MAX_TOKENS", "200"))
REFINE_OVERLAP = int(os.getenv("REFINE_OVERLAP", "3"))  # sentences
TOKENIZER_ENCODING = os.getenv("TOKENIZER_ENCODING", "cl100k_base")

# Embedding
EMBEDDING_BATCH_SIZE = int(os.getenv("EMBEDDING_BATCH_SIZE", "64"))

# Retrieval
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "8"))
LOW_CONFIDENCE_THRESHOLD = float(os.getenv("LOW_CONFIDENCE_THRESHOLD", "0.55"))
MERGE_KEY_CHARS = int(os.getenv("MERGE_KEY_CHARS", "200"))
LEXICAL_MIN_TOKEN_CHARS = int(os.getenv("LEXICAL_MIN_TOKEN_CHARS", "4"))
LEXICAL_MAX_TOKENS = int(os.getenv("LEXICAL_MAX_TOKENS", "12"))

# Answering
CONTEXT_SNIPPET_CHARS = int(os.getenv("CONTEXT_SNIPPET_CHARS", "1200"))
SUMMARY_SNIPPET_CHARS = int(os.getenv("SUMMARY_SNIPPET_CHARS", "1000"))
SUMMARY_MAX_PASSAGES = int(os.getenv("SUMMARY_MAX_PASSAGES", "30"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
