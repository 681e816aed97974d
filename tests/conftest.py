"""Shared fixtures: a deterministic embedding backend and small markdown corpora."""

import os
import re
import threading
import time
from pathlib import Path

import pytest
import pytest_asyncio

from doc_vector_search.core.chunker import MarkdownChunker
from doc_vector_search.core.embeddings import EmbeddingBackend, EmbeddingProvider
from doc_vector_search.core.models import Chunk, DocumentRecord
from doc_vector_search.core.text_utils import compute_content_hash, estimate_tokens

VOCABULARY = (
    "carbon",
    "accounting",
    "co2",
    "emissions",
    "organizations",
    "quantum",
    "computing",
    "qubits",
    "parallel",
    "computation",
    "climate",
    "physics",
)
FAKE_DIMENSIONS = len(VOCABULARY) + 1

CARBON_TEXT = "Carbon accounting measures CO2 emissions from organizations"
QUANTUM_TEXT = "Quantum computing uses qubits for parallel computation"


def bag_of_words(text: str) -> list[float]:
    """Word counts over VOCABULARY; every other word lands in the last slot."""
    vector = [0.0] * FAKE_DIMENSIONS
    for token in re.findall(r"\w+", text.lower()):
        if token in VOCABULARY:
            vector[VOCABULARY.index(token)] += 1.0
        else:
            vector[-1] += 1.0
    return vector


class FakeBackend(EmbeddingBackend):
    """Bag-of-words backend with switchable failures.

    Counters are touched from the worker thread and read after awaits.
    """

    def __init__(
        self,
        model_name: str = "fake-bow",
        dimensions: int = FAKE_DIMENSIONS,
        capability: str = "cpu",
    ) -> None:
        super().__init__(model_name, dimensions)
        self.capability = capability
        self.available = True
        self.fail_load = False
        self.fail_encode = False
        self.wrong_dimensions = False
        self.encode_delay = 0.0
        self.release: threading.Event | None = None
        self.load_calls = 0
        self.encode_calls = 0
        self.unload_calls = 0

    def load(self) -> int:
        self.load_calls += 1
        if self.fail_load:
            raise RuntimeError("simulated load failure")
        return self.dimensions

    def encode(self, texts: list[str], kind: str = "document") -> list[list[float]]:
        self.encode_calls += 1
        if self.release is not None:
            self.release.wait(5)
        if self.encode_delay:
            time.sleep(self.encode_delay)
        if self.fail_encode:
            raise RuntimeError("simulated embedding failure")
        vectors = [bag_of_words(text) for text in texts]
        if self.wrong_dimensions:
            vectors = [vector[:-1] for vector in vectors]
        return vectors

    def unload(self) -> None:
        self.unload_calls += 1

    async def probe(self) -> bool:
        return self.available


def write_doc(root: Path, path: str, text: str, mtime: float | None = None) -> Path:
    """Write a document under ``root``, optionally pinning its mtime."""
    target = root / path
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(text, encoding="utf-8")
    if mtime is not None:
        os.utime(target, (mtime, mtime))
    return target


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def make_provider():
    """Factory for providers over fake backends; throttling off, short timeout."""

    def _make(backends: list[EmbeddingBackend] | None = None, **kwargs) -> EmbeddingProvider:
        kwargs.setdefault("timeout", 5.0)
        kwargs.setdefault("throttle_ms", 0)
        return EmbeddingProvider(backends or [FakeBackend()], **kwargs)

    return _make


@pytest_asyncio.fixture
async def provider(fake_backend):
    """Provider over ``fake_backend``, closed after the test."""
    embedding_provider = EmbeddingProvider([fake_backend], timeout=5.0, throttle_ms=0)
    yield embedding_provider
    await embedding_provider.close()


@pytest.fixture
def corpus(tmp_path: Path) -> Path:
    """Two-document corpus used across the search scenarios."""
    write_doc(tmp_path, "carbon.md", CARBON_TEXT)
    write_doc(tmp_path, "quantum.md", QUANTUM_TEXT)
    return tmp_path


@pytest.fixture
def make_record():
    """Build a DocumentRecord straight from markdown text."""
    chunker = MarkdownChunker()

    def _make(path: str, text: str, embed: bool = False, mtime: float = 1.0) -> DocumentRecord:
        parsed = chunker.parse(text, path)
        chunks = [
            Chunk(
                chunk_id=f"{path}#{position}",
                path=path,
                chunk_type=draft.kind,
                heading=draft.heading,
                line=draft.line,
                text=draft.content,
                token_count=estimate_tokens(draft.content),
                vector=bag_of_words(draft.content) if embed else None,
                title=parsed.metadata.title,
                tags=list(parsed.metadata.tags),
                mtime=mtime,
                doc_type=parsed.metadata.doc_type,
            )
            for position, draft in enumerate(parsed.drafts)
        ]
        return DocumentRecord(
            path=path,
            mtime=mtime,
            content_hash=compute_content_hash(text),
            metadata=parsed.metadata,
            chunks=chunks,
        )

    return _make


@pytest.fixture
def embed_text():
    """The fake backend's embedding function, for building query vectors."""
    return bag_of_words


@pytest.fixture
def backend_factory():
    """The FakeBackend class, for tests that need several backends."""
    return FakeBackend


@pytest.fixture
def doc_writer():
    return write_doc
