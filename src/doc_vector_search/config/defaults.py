"""Default configurations for Doc Vector Search."""

from pathlib import Path

# Private data directory created under the indexed root
DATA_DIR_NAME = ".doc-vector-search"
INDEX_SNAPSHOT_FILE = "index.json"
EMBEDDING_CACHE_DIR = "embeddings_cache"
INDEX_METADATA_FILE = "index_metadata.json"
CONFIG_FILE = "config.json"

# Default file extensions to index
DEFAULT_FILE_EXTENSIONS = [
    ".md",  # Markdown
    ".markdown",  # Markdown (long form)
]

# Path prefixes never indexed (relative to the root, posix separators)
DEFAULT_EXCLUDE_PATHS = [
    f"{DATA_DIR_NAME}/",
    ".obsidian/",
    ".git/",
    "node_modules/",
]

# Default embedding models by use case
DEFAULT_EMBEDDING_MODELS = {
    "default": "sentence-transformers/all-MiniLM-L6-v2",
    "fast": "sentence-transformers/all-MiniLM-L12-v2",
    "precise": "sentence-transformers/all-mpnet-base-v2",
    "ollama": "nomic-embed-text",
}

# Known embedding dimensions (local and Ollama model names)
MODEL_DIMENSIONS: dict[str, int] = {
    "sentence-transformers/all-MiniLM-L6-v2": 384,
    "sentence-transformers/all-MiniLM-L12-v2": 384,
    "sentence-transformers/all-mpnet-base-v2": 768,
    "TaylorAI/bge-micro-v2": 384,
    "nomic-embed-text": 768,
    "all-minilm": 384,
    "mxbai-embed-large": 1024,
    "bge-m3": 1024,
    "bge-large": 1024,
    "snowflake-arctic-embed": 384,
}

# Context length in tokens, used for client-side pre-truncation of Ollama input
OLLAMA_CONTEXT_TOKENS: dict[str, int] = {
    "nomic-embed-text": 2048,
    "all-minilm": 256,
    "mxbai-embed-large": 512,
    "bge-m3": 8192,
    "bge-large": 512,
    "snowflake-arctic-embed": 512,
}
OLLAMA_DEFAULT_CONTEXT_TOKENS = 2048
# Conservative: JSON, URLs and non-ASCII text can be ~1.5 chars per token
OLLAMA_CHARS_PER_TOKEN = 2

# Task prefixes some models need for retrieval-quality embeddings
MODEL_TASK_PREFIXES: dict[str, dict[str, str]] = {
    "nomic-embed-text": {"document": "search_document: ", "query": "search_query: "},
    "nomic-embed-text-v2-moe": {
        "document": "search_document: ",
        "query": "search_query: ",
    },
    "mxbai-embed-large": {
        "document": "",
        "query": "Represent this sentence for searching relevant passages: ",
    },
}

DEFAULT_OLLAMA_URL = "http://localhost:11434"

# Backend variants in preference order
EMBEDDING_BACKENDS = ("accelerated", "cpu", "ollama")
DEFAULT_EMBEDDING_BACKENDS = ["accelerated", "cpu"]

# Embedding provider policy
DEFAULT_EMBED_TIMEOUT = 120.0  # seconds; first call may download the model
DEFAULT_THROTTLE_MS = 50
DEFAULT_MAX_CONSECUTIVE_FAILURES = 2
DEFAULT_DOWNGRADE_THRESHOLD = 5
DEFAULT_BATCH_SIZE = 32

# Chunking
DEFAULT_MAX_CHUNK_CHARS = 1500  # ~500 tokens
CHARS_PER_TOKEN_ESTIMATE = 4
SNIPPET_LENGTH = 200

# Ranking
DEFAULT_VECTOR_WEIGHT = 0.7
DEFAULT_TEXT_WEIGHT = 0.3
DEFAULT_PROXIMITY_WEIGHT = 0.5
DEFAULT_MIN_SCORE = 0.3  # vector and hybrid modes
DEFAULT_SEARCH_LIMIT = 10
MAX_SEARCH_LIMIT = 1000

# Reconciliation
DEFAULT_DEBOUNCE_SECONDS = 3.0
DEFAULT_AUTOSAVE_INTERVAL = 60.0

# Path prefix -> document type; first match wins
DEFAULT_DOCUMENT_TYPES: dict[str, str] = {}
DEFAULT_DOCUMENT_TYPE = "note"


def get_model_dimensions(model_name: str) -> int:
    """Return the embedding dimension of a known model.

    Ollama tags (``nomic-embed-text:latest``) are matched by base name.

    Raises:
        ValueError: If the model is not in ``MODEL_DIMENSIONS``
    """
    if model_name in MODEL_DIMENSIONS:
        return MODEL_DIMENSIONS[model_name]
    base_name = model_name.split(":")[0]
    if base_name in MODEL_DIMENSIONS:
        return MODEL_DIMENSIONS[base_name]
    raise ValueError(f"Unknown embedding model: {model_name}")


def get_data_dir(project_root: Path) -> Path:
    """Get the private data directory for a project."""
    return project_root / DATA_DIR_NAME


def get_snapshot_path(project_root: Path) -> Path:
    """Get the index snapshot path for a project."""
    return get_data_dir(project_root) / INDEX_SNAPSHOT_FILE


def get_embedding_cache_dir(project_root: Path) -> Path:
    """Get the on-disk embedding cache directory for a project."""
    return get_data_dir(project_root) / EMBEDDING_CACHE_DIR
