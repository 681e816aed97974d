"""Data models for Doc Vector Search."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class SearchMode(str, Enum):
    """Search mode selection."""

    LEXICAL = "lexical"  # BM25 keyword search with proximity bonus
    VECTOR = "vector"  # Cosine similarity against a query embedding
    HYBRID = "hybrid"  # Weighted combination of both


class MatchType(str, Enum):
    """Which kind of chunk produced a match."""

    DOCUMENT = "document"
    SECTION = "section"


class IndexStatus(str, Enum):
    """User-visible index state."""

    READY = "ready"
    NEEDS_PROVIDER = "needs-provider"
    REBUILDING = "rebuilding"
    ERROR = "error"


class IndexingPhase(str, Enum):
    SCANNING = "scanning"
    INDEXING = "indexing"
    COMPLETE = "complete"


@dataclass
class DocumentMetadata:
    """Metadata extracted from a document's frontmatter and body."""

    title: str
    tags: list[str] = field(default_factory=list)
    doc_type: str = "note"
    word_count: int = 0
    fields: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DocumentMetadata":
        return cls(
            title=data.get("title", ""),
            tags=list(data.get("tags", [])),
            doc_type=data.get("doc_type", "note"),
            word_count=int(data.get("word_count", 0)),
            fields=dict(data.get("fields", {})),
        )


@dataclass
class Document:
    """A document read from the store. The index only keeps derived copies."""

    path: str
    text: str
    mtime: float
    content_hash: str

    @property
    def folder(self) -> str:
        return self.path.rsplit("/", 1)[0] if "/" in self.path else ""

    @property
    def stem(self) -> str:
        name = self.path.rsplit("/", 1)[-1]
        return name.rsplit(".", 1)[0] if "." in name else name


@dataclass
class ChunkDraft:
    """Chunker output before embedding.

    ``content`` is the embeddable text, already prefixed with the document
    title and truncated to the character budget.
    """

    heading: str
    line: int
    content: str
    kind: MatchType = MatchType.SECTION


@dataclass
class Chunk:
    """Retrieval unit stored in the index."""

    chunk_id: str
    path: str
    chunk_type: MatchType
    heading: str
    line: int
    text: str
    token_count: int
    vector: list[float] | None = None
    title: str = ""
    tags: list[str] = field(default_factory=list)
    folder: str = ""
    mtime: float = 0.0
    doc_type: str = "note"

    @property
    def has_vector(self) -> bool:
        return self.vector is not None and len(self.vector) > 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["chunk_type"] = self.chunk_type.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Chunk":
        vector = data.get("vector")
        return cls(
            chunk_id=data["chunk_id"],
            path=data["path"],
            chunk_type=MatchType(data.get("chunk_type", MatchType.SECTION.value)),
            heading=data.get("heading", ""),
            line=int(data.get("line", 1)),
            text=data.get("text", ""),
            token_count=int(data.get("token_count", 0)),
            vector=[float(v) for v in vector] if vector else None,
            title=data.get("title", ""),
            tags=list(data.get("tags", [])),
            folder=data.get("folder", ""),
            mtime=float(data.get("mtime", 0.0)),
            doc_type=data.get("doc_type", "note"),
        )


@dataclass
class DocumentRecord:
    """Everything the index holds for one document path."""

    path: str
    mtime: float
    content_hash: str
    metadata: DocumentMetadata
    chunks: list[Chunk]
    indexed_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "mtime": self.mtime,
            "content_hash": self.content_hash,
            "metadata": self.metadata.to_dict(),
            "chunks": [chunk.to_dict() for chunk in self.chunks],
            "indexed_at": self.indexed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DocumentRecord":
        return cls(
            path=data["path"],
            mtime=float(data.get("mtime", 0.0)),
            content_hash=data.get("content_hash", ""),
            metadata=DocumentMetadata.from_dict(data.get("metadata", {})),
            chunks=[Chunk.from_dict(c) for c in data.get("chunks", [])],
            indexed_at=data.get("indexed_at", ""),
        )


@dataclass
class ModelInfo:
    """Embedding model identity."""

    name: str
    dimensions: int
    backend: str = ""

    def same_model(self, other: "ModelInfo | None") -> bool:
        """Backend variants of one model produce compatible vectors."""
        return (
            other is not None
            and self.name == other.name
            and self.dimensions == other.dimensions
        )

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "dimensions": self.dimensions, "backend": self.backend}


@dataclass
class SearchResult:
    """Ranked search hit (one per document and match type)."""

    path: str
    title: str
    score: float
    match_type: MatchType
    heading: str = ""
    line: int | None = None
    snippet: str = ""
    tags: list[str] = field(default_factory=list)
    doc_type: str = "note"
    chunk_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["match_type"] = self.match_type.value
        data["score"] = round(self.score, 4)
        return data


@dataclass
class SearchResponse:
    """Search results plus degradation information."""

    results: list[SearchResult]
    mode: SearchMode
    requested_mode: SearchMode
    degraded: bool = False
    warnings: list[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self):
        return iter(self.results)

    @property
    def paths(self) -> list[str]:
        return [result.path for result in self.results]

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "mode": self.mode.value,
            "requested_mode": self.requested_mode.value,
            "degraded": self.degraded,
            "warnings": list(self.warnings),
        }


@dataclass
class IndexingProgress:
    """Progress notification for bulk indexing subscribers."""

    phase: IndexingPhase
    current: int
    total: int
    current_path: str | None = None
    error: str | None = None


@dataclass
class IndexingSummary:
    """Outcome of ``index_all``."""

    indexed: int = 0
    skipped: int = 0
    errors: int = 0
    removed: int = 0
    total: int = 0
    cancelled: bool = False
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class IndexStats:
    """Index statistics."""

    document_count: int
    chunk_count: int
    model_name: str | None
    dimensions: int | None
    last_updated: str | None

    def to_dict(self) -> dict[str, Any]:
        """Consumer-facing shape."""
        return {
            "documentCount": self.document_count,
            "modelName": self.model_name,
            "lastUpdated": self.last_updated,
        }


@dataclass
class IndexHealth:
    """Index status with the counts callers need to decide whether to trust results."""

    status: IndexStatus
    document_count: int
    last_updated: str | None
    message: str = ""
