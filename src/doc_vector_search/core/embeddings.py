"""Embedding generation for Doc Vector Search.

The provider turns text into fixed-dimension vectors through a ranked list of
capability-tagged backends:

1. ``SentenceTransformerBackend`` on CUDA/MPS ("accelerated")
2. ``SentenceTransformerBackend`` on CPU ("cpu", universal fallback)
3. ``OllamaBackend`` over HTTP ("remote")

The active backend lives inside an ``EmbeddingWorker``: a dedicated thread
that owns the model and is reached only through a message queue. Requests are
correlated by id, gated on a single readiness future (model load) and carry a
per-call timeout.

Failure policy (``EmbeddingProvider.embed``):
- ``max_consecutive_failures`` consecutive failures tear the worker down,
  start a fresh one and retry the failed call exactly once; a failed retry
  raises ``EmbeddingRetryExhaustedError``.
- ``downgrade_threshold`` failures on a backend that has a successor switch
  to the successor for the rest of the session (counters reset, worker
  rebuilt).
- Vectors with an unexpected count or dimension are failures, never coerced.
"""

import asyncio
import hashlib
import importlib.util
import logging
import os
import queue
import threading
import time
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import aiofiles
import httpx
import orjson
from loguru import logger

from ..config.defaults import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_DOWNGRADE_THRESHOLD,
    DEFAULT_EMBED_TIMEOUT,
    DEFAULT_MAX_CONSECUTIVE_FAILURES,
    DEFAULT_OLLAMA_URL,
    DEFAULT_THROTTLE_MS,
    MODEL_TASK_PREFIXES,
    OLLAMA_CHARS_PER_TOKEN,
    OLLAMA_CONTEXT_TOKENS,
    OLLAMA_DEFAULT_CONTEXT_TOKENS,
    get_model_dimensions,
)
from .exceptions import (
    ConfigError,
    EmbeddingError,
    EmbeddingRetryExhaustedError,
    InvalidEmbeddingError,
    ProviderUnavailableError,
    TransientProviderError,
)
from .models import ModelInfo

# Only our own INFO+ messages should show; model libraries get ERROR only
logging.getLogger("transformers").setLevel(logging.ERROR)
logging.getLogger("sentence_transformers").setLevel(logging.ERROR)
logging.getLogger("torch").setLevel(logging.ERROR)
logging.getLogger("huggingface_hub").setLevel(logging.ERROR)
logging.getLogger("httpx").setLevel(logging.WARNING)

# Suppress tqdm progress bars (used by transformers for model loading)
os.environ["TQDM_DISABLE"] = "1"


def _detect_device(preferred: str | None = None) -> str:
    """Detect optimal compute device (MPS > CUDA > CPU).

    Args:
        preferred: Explicit device from configuration; wins when given

    Returns:
        Device string: "mps", "cuda", or "cpu"
    """
    if preferred in ("cpu", "cuda", "mps"):
        logger.info(f"Using device from configuration: {preferred}")
        return preferred

    try:
        import torch
    except ImportError:
        logger.debug("torch not importable; using CPU")
        return "cpu"

    if torch.backends.mps.is_available() and torch.backends.mps.is_built():
        logger.info("Apple Silicon detected. Using MPS for GPU-accelerated inference.")
        return "mps"

    if torch.cuda.is_available():
        gpu_count = torch.cuda.device_count()
        gpu_name = torch.cuda.get_device_name(0) if gpu_count > 0 else "unknown"
        logger.info(
            f"Using CUDA backend for GPU acceleration ({gpu_count} GPU(s): {gpu_name})"
        )
        return "cuda"

    logger.info("Using CPU backend (no GPU acceleration)")
    return "cpu"


def _device_available(device: str) -> bool:
    """Side-effect-free check that a torch device exists."""
    if device == "cpu":
        return True
    try:
        import torch
    except ImportError:
        return False
    if device == "cuda":
        return bool(torch.cuda.is_available())
    if device == "mps":
        return bool(torch.backends.mps.is_available())
    return False


def _known_dimensions(model_name: str) -> int | None:
    try:
        return get_model_dimensions(model_name)
    except ValueError:
        return None


# ── Backends ────────────────────────────────────────────────────────────


class EmbeddingBackend(ABC):
    """One way of producing embeddings for one model.

    ``load``, ``encode`` and ``unload`` run on the worker thread; ``probe``
    runs on the event loop and must not load anything.
    """

    capability: str = "cpu"

    def __init__(self, model_name: str, dimensions: int | None = None) -> None:
        self.model_name = model_name
        self.dimensions = dimensions or _known_dimensions(model_name)

    @property
    def name(self) -> str:
        return f"{self.capability}:{self.model_name}"

    @abstractmethod
    def load(self) -> int:
        """Load the model and return its embedding dimension."""

    @abstractmethod
    def encode(self, texts: list[str], kind: str = "document") -> list[list[float]]:
        """Embed texts. ``kind`` is "document" or "query"."""

    def unload(self) -> None:
        """Release model resources."""

    @abstractmethod
    async def probe(self) -> bool:
        """Report whether this backend could serve requests."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class SentenceTransformerBackend(EmbeddingBackend):
    """Local sentence-transformers model on a torch device."""

    def __init__(
        self,
        model_name: str,
        device: str = "cpu",
        batch_size: int = DEFAULT_BATCH_SIZE,
        dimensions: int | None = None,
    ) -> None:
        super().__init__(model_name, dimensions)
        self.device = device
        self.batch_size = batch_size
        self.capability = "cpu" if device == "cpu" else "accelerated"
        self._model: Any = None

    def load(self) -> int:
        from sentence_transformers import SentenceTransformer

        logger.info(f"Loading embedding model {self.model_name} on {self.device}")
        self._model = SentenceTransformer(self.model_name, device=self.device)
        dims = int(self._model.get_sentence_embedding_dimension())
        logger.info(
            f"Loaded embedding model {self.model_name} on {self.device.upper()} "
            f"with {dims} dimensions"
        )
        return dims

    def encode(self, texts: list[str], kind: str = "document") -> list[list[float]]:
        if self._model is None:
            raise TransientProviderError(f"Backend {self.name} is not loaded")
        # Pass device so input tensors land on the accelerator, not just the weights
        embeddings = self._model.encode(
            texts,
            convert_to_numpy=True,
            batch_size=self.batch_size,
            show_progress_bar=False,
            device=self.device,
        )
        return embeddings.tolist()

    def unload(self) -> None:
        self._model = None
        if self.device == "cuda":
            import torch

            torch.cuda.empty_cache()

    async def probe(self) -> bool:
        if importlib.util.find_spec("sentence_transformers") is None:
            return False
        if self.device == "cpu":
            return True
        return await asyncio.to_thread(_device_available, self.device)


class OllamaBackend(EmbeddingBackend):
    """Remote embeddings from an Ollama server (``POST /api/embed``)."""

    capability = "remote"
    TIMEOUT_SECONDS = 60.0
    PROBE_TIMEOUT_SECONDS = 5.0

    def __init__(
        self,
        model_name: str = "nomic-embed-text",
        base_url: str = DEFAULT_OLLAMA_URL,
        timeout: float = TIMEOUT_SECONDS,
        dimensions: int | None = None,
        transport: httpx.BaseTransport | None = None,
        async_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize Ollama backend.

        Args:
            model_name: Ollama model tag (e.g. "nomic-embed-text")
            base_url: Server URL
            timeout: HTTP timeout in seconds
            dimensions: Known dimension; resolved from the server when omitted
            transport: Optional sync transport (tests use ``httpx.MockTransport``)
            async_transport: Optional async transport for ``probe``
        """
        super().__init__(model_name, dimensions)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._async_transport = async_transport
        self._client: httpx.Client | None = None
        self._context_tokens: int | None = None

    @property
    def base_model(self) -> str:
        return self.model_name.split(":")[0]

    @property
    def max_chars(self) -> int:
        tokens = (
            self._context_tokens
            or OLLAMA_CONTEXT_TOKENS.get(self.base_model)
            or OLLAMA_DEFAULT_CONTEXT_TOKENS
        )
        return tokens * OLLAMA_CHARS_PER_TOKEN

    def load(self) -> int:
        self._client = httpx.Client(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        )
        self._resolve_model_info()
        if self.dimensions is None:
            # Unknown model: ask the server for one vector
            self.dimensions = len(self._post_embed(["dimension probe"])[0])
        logger.info(
            f"Using Ollama model {self.model_name} at {self.base_url} "
            f"({self.dimensions} dimensions, {self.max_chars} max chars)"
        )
        return self.dimensions

    def _resolve_model_info(self) -> None:
        """Read embedding and context length from ``/api/show`` when offered."""
        if self._client is None:
            raise TransientProviderError(f"Backend {self.name} is not loaded")
        try:
            response = self._client.post("/api/show", json={"model": self.model_name})
        except httpx.HTTPError as e:
            logger.debug(f"Could not resolve Ollama model info: {e}")
            return
        if response.status_code != 200:
            return

        model_info = response.json().get("model_info") or {}
        for key, value in model_info.items():
            if not isinstance(value, int):
                continue
            if key.endswith("embedding_length"):
                self.dimensions = value
            elif key.endswith("context_length"):
                self._context_tokens = value

    def encode(self, texts: list[str], kind: str = "document") -> list[list[float]]:
        prefix = MODEL_TASK_PREFIXES.get(self.base_model, {}).get(kind, "")
        # Pre-truncate; the server's truncate flag is unreliable on some versions
        limit = self.max_chars
        inputs = [(prefix + text)[:limit] for text in texts]
        return self._post_embed(inputs)

    def _post_embed(self, inputs: list[str]) -> list[list[float]]:
        if self._client is None:
            raise TransientProviderError(f"Backend {self.name} is not loaded")
        try:
            response = self._client.post(
                "/api/embed",
                json={"model": self.model_name, "input": inputs, "truncate": True},
            )
        except httpx.HTTPError as e:
            raise TransientProviderError(
                f"Ollama request failed: {e}", {"backend": self.name}
            ) from e

        if response.status_code != 200:
            context = {"backend": self.name, "status": response.status_code}
            message = f"Ollama embed failed ({response.status_code}): {response.text}"
            if response.status_code >= 500:
                raise TransientProviderError(message, context)
            raise EmbeddingError(message, context)

        return response.json().get("embeddings", [])

    def unload(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    async def probe(self) -> bool:
        """Check the server is reachable and the model is pulled."""
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.PROBE_TIMEOUT_SECONDS,
                transport=self._async_transport,
            ) as client:
                response = await client.get("/api/tags")
        except httpx.HTTPError as e:
            logger.debug(f"Ollama not reachable at {self.base_url}: {e}")
            return False

        if response.status_code != 200:
            return False
        models = response.json().get("models", [])
        return any(m.get("name", "").startswith(self.base_model) for m in models)


# ── Worker ──────────────────────────────────────────────────────────────

_STOP = object()


class EmbeddingWorker:
    """Dedicated thread owning one backend, reached by message passing.

    Example:
        worker = EmbeddingWorker(SentenceTransformerBackend(model))
        dims = await worker.start()
        vectors = await worker.request("embed", (["text"], "document"), timeout=30)
        await worker.stop()
    """

    def __init__(self, backend: EmbeddingBackend, load_timeout: float = DEFAULT_EMBED_TIMEOUT):
        self.backend = backend
        self.load_timeout = load_timeout
        self.dimensions: int | None = None
        self._inbox: queue.Queue = queue.Queue()
        self._pending: dict[str, asyncio.Future] = {}
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ready: asyncio.Future | None = None
        self._closed = False

    @property
    def is_ready(self) -> bool:
        return (
            not self._closed
            and self._ready is not None
            and self._ready.done()
            and not self._ready.cancelled()
            and self._ready.exception() is None
        )

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def start(self) -> int:
        """Start the thread (once) and wait for the backend to load.

        Returns:
            Embedding dimension reported by the backend

        Raises:
            EmbeddingError: If the backend failed to load
            TransientProviderError: If loading exceeded ``load_timeout``
        """
        if self._closed:
            raise TransientProviderError("Embedding worker is closed")

        if self._ready is None:
            self._loop = asyncio.get_running_loop()
            self._ready = self._loop.create_future()
            self._thread = threading.Thread(
                target=self._run,
                name=f"embedding-worker-{self.backend.capability}",
                daemon=True,
            )
            self._thread.start()

        try:
            return await asyncio.wait_for(
                asyncio.shield(self._ready), timeout=self.load_timeout
            )
        except asyncio.TimeoutError as e:
            raise TransientProviderError(
                f"Embedding backend {self.backend.name} not ready after {self.load_timeout}s",
                {"backend": self.backend.name},
            ) from e

    async def request(self, method: str, payload: Any, timeout: float) -> Any:
        """Send one request to the worker thread and await its reply."""
        await self.start()
        if self._loop is None:
            raise TransientProviderError("Embedding worker is not running")

        request_id = uuid.uuid4().hex
        future = self._loop.create_future()
        self._pending[request_id] = future
        self._inbox.put((request_id, method, payload))

        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TransientProviderError(
                f"Embedding request timed out after {timeout}s",
                {"backend": self.backend.name, "request_id": request_id},
            ) from e
        finally:
            self._pending.pop(request_id, None)

    async def stop(self, join_timeout: float = 5.0) -> None:
        """Stop the thread, rejecting requests that are still pending.

        A request already executing in the thread runs to completion; its
        result is discarded.
        """
        if self._closed:
            return
        self._closed = True

        for request_id, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(
                    TransientProviderError(
                        "Embedding worker was reset with the request pending",
                        {"backend": self.backend.name, "request_id": request_id},
                    )
                )
        self._pending.clear()

        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(
                TransientProviderError(f"Embedding worker {self.backend.name} stopped")
            )
            # Retrieved here so an unawaited gate does not log a warning
            self._ready.exception()

        if self._thread is not None:
            self._inbox.put(_STOP)
            await asyncio.to_thread(self._thread.join, join_timeout)
            if self._thread.is_alive():
                logger.warning(
                    f"Embedding worker {self.backend.name} still busy after "
                    f"{join_timeout}s; leaving daemon thread to finish"
                )

    # Everything below runs on the worker thread, except the callbacks
    # scheduled back onto the loop with _post.

    def _run(self) -> None:
        try:
            dims = self.backend.load()
        except Exception as e:
            logger.error(f"Failed to load embedding backend {self.backend.name}: {e}")
            self._post(self._fail_ready, e)
            return

        self.dimensions = dims
        self._post(self._set_ready, dims)

        while True:
            item = self._inbox.get()
            if item is _STOP:
                break
            request_id, method, payload = item
            if self._closed:
                # Already rejected by stop()
                continue
            try:
                result, error = self._dispatch(method, payload), None
            except Exception as e:
                result, error = None, e
            self._post(self._resolve, request_id, result, error)

        try:
            self.backend.unload()
        except Exception as e:
            logger.warning(f"Error unloading embedding backend {self.backend.name}: {e}")

    def _dispatch(self, method: str, payload: Any) -> Any:
        if method == "embed":
            texts, kind = payload
            return self.backend.encode(texts, kind)
        raise ValueError(f"Unknown worker method: {method}")

    def _post(self, callback, *args) -> None:
        if self._loop is None:
            logger.debug("Embedding worker has no event loop; dropping message")
            return
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.debug("Event loop closed; dropping embedding worker message")

    def _set_ready(self, dims: int) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(dims)

    def _fail_ready(self, error: Exception) -> None:
        if self._ready is None or self._ready.done():
            return
        wrapped = EmbeddingError(
            f"Failed to load embedding backend {self.backend.name}: {error}",
            {"backend": self.backend.name},
        )
        wrapped.__cause__ = error
        self._ready.set_exception(wrapped)

    def _resolve(self, request_id: str, result: Any, error: Exception | None) -> None:
        future = self._pending.pop(request_id, None)
        if future is None or future.done():
            logger.debug(f"Discarding late embedding result for request {request_id}")
            return
        if error is None:
            future.set_result(result)
        elif isinstance(error, EmbeddingError):
            future.set_exception(error)
        else:
            wrapped = TransientProviderError(
                f"Embedding backend {self.backend.name} failed: {error}",
                {"backend": self.backend.name, "request_id": request_id},
            )
            wrapped.__cause__ = error
            future.set_exception(wrapped)


# ── Cache ───────────────────────────────────────────────────────────────


class EmbeddingCache:
    """LRU cache for embeddings with optional disk persistence."""

    def __init__(self, cache_dir: Path | None = None, max_size: int = 1000) -> None:
        """Initialize embedding cache.

        Args:
            cache_dir: Directory to store cached embeddings (memory only if None)
            max_size: Maximum number of embeddings to keep in memory
        """
        self.cache_dir = cache_dir
        if self.cache_dir is not None:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.max_size = max_size
        self._memory_cache: dict[str, list[float]] = {}
        self._access_order: list[str] = []  # For LRU eviction
        self._cache_hits = 0
        self._cache_misses = 0

    @staticmethod
    def cache_key(model_name: str, kind: str, content: str) -> str:
        """Key on model and kind too, so a model change never reuses vectors."""
        raw = f"{model_name}\x00{kind}\x00{content}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]

    async def get(self, key: str) -> list[float] | None:
        if key in self._memory_cache:
            self._cache_hits += 1
            self._access_order.remove(key)
            self._access_order.append(key)
            return self._memory_cache[key]

        if self.cache_dir is not None:
            cache_file = self.cache_dir / f"{key}.json"
            if cache_file.exists():
                try:
                    async with aiofiles.open(cache_file, "rb") as f:
                        embedding = orjson.loads(await f.read())
                    self._add_to_memory_cache(key, embedding)
                    self._cache_hits += 1
                    return embedding
                except (OSError, orjson.JSONDecodeError) as e:
                    logger.warning(f"Failed to load cached embedding: {e}")

        self._cache_misses += 1
        return None

    async def put(self, key: str, embedding: list[float]) -> None:
        self._add_to_memory_cache(key, embedding)

        if self.cache_dir is not None:
            cache_file = self.cache_dir / f"{key}.json"
            try:
                async with aiofiles.open(cache_file, "wb") as f:
                    await f.write(orjson.dumps(embedding))
            except OSError as e:
                logger.warning(f"Failed to cache embedding: {e}")

    def _add_to_memory_cache(self, key: str, embedding: list[float]) -> None:
        if key in self._memory_cache:
            self._access_order.remove(key)
        elif len(self._memory_cache) >= self.max_size:
            lru_key = self._access_order.pop(0)
            del self._memory_cache[lru_key]
        self._memory_cache[key] = embedding
        self._access_order.append(key)

    def clear(self) -> None:
        self._memory_cache.clear()
        self._access_order.clear()

    def get_cache_stats(self) -> dict[str, Any]:
        total_requests = self._cache_hits + self._cache_misses
        hit_rate = self._cache_hits / total_requests if total_requests > 0 else 0.0
        return {
            "memory_cache_size": len(self._memory_cache),
            "max_cache_size": self.max_size,
            "cache_hits": self._cache_hits,
            "cache_misses": self._cache_misses,
            "hit_rate": round(hit_rate, 3),
        }


# ── Provider ────────────────────────────────────────────────────────────


class EmbeddingProvider:
    """Resilient embedding front-end over ranked backend variants."""

    def __init__(
        self,
        backends: list[EmbeddingBackend],
        dimensions: int | None = None,
        timeout: float = DEFAULT_EMBED_TIMEOUT,
        throttle_ms: int = DEFAULT_THROTTLE_MS,
        max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES,
        downgrade_threshold: int = DEFAULT_DOWNGRADE_THRESHOLD,
        batch_size: int = DEFAULT_BATCH_SIZE,
        cache: EmbeddingCache | None = None,
    ) -> None:
        """Initialize embedding provider.

        Args:
            backends: Backend variants in preference order
            dimensions: Expected vector dimension; a backend reporting a
                different one is treated as failing to load
            timeout: Per-request timeout in seconds (also bounds model load)
            throttle_ms: Minimum delay between embed calls (0 disables)
            max_consecutive_failures: Failures before reset-and-retry
            downgrade_threshold: Failures before switching to the next backend
            batch_size: Texts per worker request
            cache: Optional embedding cache

        Raises:
            ConfigError: If no backend is given
        """
        if not backends:
            raise ConfigError("EmbeddingProvider needs at least one backend")

        self.backends = list(backends)
        self.expected_dimensions = dimensions
        self.timeout = timeout
        self.throttle_ms = throttle_ms
        self.max_consecutive_failures = max_consecutive_failures
        self.downgrade_threshold = downgrade_threshold
        self.batch_size = batch_size
        self.cache = cache

        self._active_index = 0
        self._worker: EmbeddingWorker | None = None
        self._active_dimensions: int | None = None
        self._consecutive_failures = 0
        self._backend_failures = 0
        self._last_embed_time = 0.0
        self._init_lock = asyncio.Lock()
        self._throttle_lock = asyncio.Lock()
        self._closed = False

        self.reset_count = 0
        self.downgrade_count = 0
        self.embed_call_count = 0

    @property
    def active_backend(self) -> EmbeddingBackend:
        return self.backends[self._active_index]

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def _has_fallback(self) -> bool:
        return self._active_index + 1 < len(self.backends)

    def model_info(self) -> ModelInfo:
        """Identity of the active model (dimension known once loaded)."""
        backend = self.active_backend
        dims = (
            self._active_dimensions
            or self.expected_dimensions
            or backend.dimensions
            or 0
        )
        return ModelInfo(name=backend.model_name, dimensions=dims, backend=backend.name)

    async def is_available(self) -> bool:
        """Capability probe; never loads a model."""
        if self._closed:
            return False
        if self._worker is not None and self._worker.is_ready:
            return True
        for backend in self.backends[self._active_index :]:
            if await backend.probe():
                return True
        return False

    async def initialize(self) -> ModelInfo:
        """Start the worker for the active backend (once per session).

        A backend that fails to load is replaced by its successor.

        Raises:
            ProviderUnavailableError: If the last backend fails to load
        """
        if self._closed:
            raise ProviderUnavailableError("Embedding provider is closed")

        async with self._init_lock:
            while self._worker is None:
                backend = self.active_backend
                worker = EmbeddingWorker(backend, load_timeout=self.timeout)
                try:
                    dims = await worker.start()
                    if self.expected_dimensions and dims != self.expected_dimensions:
                        raise InvalidEmbeddingError(
                            f"Backend {backend.name} produces {dims}-d vectors, "
                            f"expected {self.expected_dimensions}",
                            {"backend": backend.name, "dimensions": dims},
                        )
                except EmbeddingError as e:
                    await worker.stop()
                    if not self._has_fallback():
                        raise ProviderUnavailableError(
                            f"No embedding backend could be initialized: {e}",
                            {"backend": backend.name},
                        ) from e
                    logger.warning(
                        f"Embedding backend {backend.name} unavailable ({e}); "
                        f"falling back to {self.backends[self._active_index + 1].name}"
                    )
                    self._active_index += 1
                    self.downgrade_count += 1
                    continue

                self._worker = worker
                self._active_dimensions = dims
                logger.info(f"Embedding provider ready: {backend.name} ({dims}d)")

        return self.model_info()

    async def embed(self, texts: list[str], kind: str = "document") -> list[list[float]]:
        """Embed texts with retry, downgrade and validation.

        Args:
            texts: Texts to embed
            kind: "document" for indexed chunks, "query" for search queries

        Returns:
            One vector per input text

        Raises:
            EmbeddingError: On failure (after the retry policy for repeated
                failures)
        """
        if not texts:
            return []
        if self._closed:
            raise ProviderUnavailableError("Embedding provider is closed")

        self.embed_call_count += 1
        await self._throttle()
        await self.initialize()

        try:
            vectors = await self._embed_with_cache(texts, kind)
        except EmbeddingError as e:
            return await self._handle_failure(texts, kind, e)

        self._consecutive_failures = 0
        self._backend_failures = 0
        return vectors

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single search query."""
        vectors = await self.embed([text], kind="query")
        return vectors[0]

    async def _handle_failure(
        self, texts: list[str], kind: str, error: EmbeddingError
    ) -> list[list[float]]:
        self._consecutive_failures += 1
        backend = self.active_backend
        logger.warning(
            f"Embedding call #{self.embed_call_count} failed on {backend.name} "
            f"(consecutive: {self._consecutive_failures}): {error}"
        )

        if self._has_fallback():
            self._backend_failures += 1
            if self._backend_failures >= self.downgrade_threshold:
                await self._downgrade()
                return await self.embed(texts, kind)

        if self._consecutive_failures >= self.max_consecutive_failures:
            logger.warning("Repeated embedding failures; resetting backend and retrying once")
            await self.reset()
            try:
                vectors = await self._embed_with_cache(texts, kind)
            except EmbeddingError as retry_error:
                logger.error(f"Embedding retry after reset also failed: {retry_error}")
                raise EmbeddingRetryExhaustedError(
                    f"Embedding failed after backend reset: {retry_error}",
                    {"backend": self.active_backend.name, "texts": len(texts)},
                ) from retry_error
            logger.info("Embedding retry after reset succeeded")
            self._backend_failures = 0
            return vectors

        raise error

    async def _downgrade(self) -> None:
        """Switch permanently to the next backend and rebuild the worker."""
        previous = self.active_backend
        self._active_index += 1
        self.downgrade_count += 1
        self._backend_failures = 0
        self._consecutive_failures = 0
        logger.warning(
            f"Embedding backend {previous.name} hit {self.downgrade_threshold} failures; "
            f"switching to {self.active_backend.name} for this session"
        )
        await self._teardown()
        await self.initialize()

    async def reset(self) -> None:
        """Tear down the worker and start a fresh one on the active backend."""
        self.reset_count += 1
        self._consecutive_failures = 0
        await self._teardown()
        await self.initialize()

    async def close(self) -> None:
        """Stop the worker; the provider cannot be used afterwards."""
        self._closed = True
        await self._teardown()

    async def _teardown(self) -> None:
        worker, self._worker = self._worker, None
        self._active_dimensions = None
        if worker is not None:
            await worker.stop()

    async def _throttle(self) -> None:
        if self.throttle_ms <= 0:
            return
        async with self._throttle_lock:
            elapsed = time.monotonic() - self._last_embed_time
            delay = self.throttle_ms / 1000.0 - elapsed
            if delay > 0:
                await asyncio.sleep(delay)
            self._last_embed_time = time.monotonic()

    async def _embed_with_cache(self, texts: list[str], kind: str) -> list[list[float]]:
        if self.cache is None:
            return await self._request(texts, kind)

        model_name = self.active_backend.model_name
        keys = [EmbeddingCache.cache_key(model_name, kind, text) for text in texts]
        vectors: list[list[float] | None] = [await self.cache.get(key) for key in keys]
        missing = [i for i, vector in enumerate(vectors) if vector is None]

        if missing:
            fresh = await self._request([texts[i] for i in missing], kind)
            for i, vector in zip(missing, fresh, strict=True):
                vectors[i] = vector
                await self.cache.put(keys[i], vector)

        result = [v for v in vectors if v is not None]
        self._validate(texts, result)
        return result

    async def _request(self, texts: list[str], kind: str) -> list[list[float]]:
        worker = self._worker
        if worker is None:
            raise TransientProviderError("Embedding worker is not running")

        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start : start + self.batch_size]
            vectors.extend(
                await worker.request("embed", (batch, kind), timeout=self.timeout)
            )

        self._validate(texts, vectors)
        return vectors

    def _validate(self, texts: list[str], vectors: list[list[float]]) -> None:
        if len(vectors) != len(texts):
            raise InvalidEmbeddingError(
                f"Expected {len(texts)} embeddings, got {len(vectors)}",
                {"backend": self.active_backend.name},
            )
        dims = self._active_dimensions or self.expected_dimensions
        for vector in vectors:
            if dims is not None and len(vector) != dims:
                raise InvalidEmbeddingError(
                    f"Invalid embedding: expected {dims} dimensions, got {len(vector)}",
                    {"backend": self.active_backend.name},
                )

    async def __aenter__(self) -> "EmbeddingProvider":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def create_embedding_backends(config) -> list[EmbeddingBackend]:
    """Build backend variants in the order ``config.embedding_backends`` lists.

    The accelerated variant is skipped when no CUDA/MPS device is present.

    Args:
        config: ProjectConfig

    Returns:
        Ranked backend list

    Raises:
        ConfigError: If no backend remains
    """
    backends: list[EmbeddingBackend] = []
    for name in config.embedding_backends:
        if name == "accelerated":
            device = _detect_device(config.device)
            if device == "cpu":
                logger.debug("No accelerator available; skipping accelerated backend")
                continue
            backends.append(
                SentenceTransformerBackend(
                    config.embedding_model,
                    device=device,
                    batch_size=config.batch_size,
                    dimensions=config.embedding_dimensions,
                )
            )
        elif name == "cpu":
            backends.append(
                SentenceTransformerBackend(
                    config.embedding_model,
                    device="cpu",
                    batch_size=config.batch_size,
                    dimensions=config.embedding_dimensions,
                )
            )
        elif name == "ollama":
            backends.append(
                OllamaBackend(config.ollama_model, base_url=config.ollama_url)
            )

    if not backends:
        raise ConfigError(
            "No usable embedding backend configured",
            {"embedding_backends": config.embedding_backends},
        )
    return backends


def create_embedding_provider(config, cache_dir: Path | None = None) -> EmbeddingProvider:
    """Create the embedding provider described by a ProjectConfig."""
    backends = create_embedding_backends(config)
    logger.debug(f"Embedding backends: {[b.name for b in backends]}")

    # Backend variants may be different models (e.g. Ollama); only pin the
    # dimension when the user configured one.
    return EmbeddingProvider(
        backends,
        dimensions=config.embedding_dimensions,
        timeout=config.embed_timeout,
        throttle_ms=config.throttle_ms,
        max_consecutive_failures=config.max_consecutive_failures,
        downgrade_threshold=config.downgrade_threshold,
        batch_size=config.batch_size,
        cache=EmbeddingCache(cache_dir) if cache_dir is not None else None,
    )
