"""Tests for the embedding worker, provider failure policy, cache and backends."""

import asyncio
import json
import threading

import httpx
import pytest

from doc_vector_search.config.settings import ProjectConfig
from doc_vector_search.core.embeddings import (
    EmbeddingCache,
    EmbeddingProvider,
    EmbeddingWorker,
    OllamaBackend,
    SentenceTransformerBackend,
    create_embedding_backends,
    create_embedding_provider,
)
from doc_vector_search.core.exceptions import (
    ConfigError,
    EmbeddingError,
    EmbeddingRetryExhaustedError,
    InvalidEmbeddingError,
    ProviderUnavailableError,
    TransientProviderError,
)


class TestEmbeddingWorker:
    @pytest.mark.asyncio
    async def test_start_and_request(self, fake_backend):
        worker = EmbeddingWorker(fake_backend, load_timeout=5)
        try:
            assert await worker.start() == fake_backend.dimensions
            assert worker.is_ready

            vectors = await worker.request("embed", (["carbon"], "document"), timeout=5)

            assert len(vectors) == 1
            assert len(vectors[0]) == fake_backend.dimensions
            assert worker.pending_count == 0
        finally:
            await worker.stop()

        assert not worker.is_ready
        assert fake_backend.unload_calls == 1

    @pytest.mark.asyncio
    async def test_start_is_gated_once(self, fake_backend):
        worker = EmbeddingWorker(fake_backend, load_timeout=5)
        try:
            await asyncio.gather(worker.start(), worker.start())
            assert fake_backend.load_calls == 1
        finally:
            await worker.stop()

    @pytest.mark.asyncio
    async def test_load_failure(self, fake_backend):
        fake_backend.fail_load = True
        worker = EmbeddingWorker(fake_backend, load_timeout=5)

        with pytest.raises(EmbeddingError, match="simulated load failure"):
            await worker.start()
        await worker.stop()

    @pytest.mark.asyncio
    async def test_backend_exception_becomes_transient(self, fake_backend):
        fake_backend.fail_encode = True
        worker = EmbeddingWorker(fake_backend, load_timeout=5)
        try:
            with pytest.raises(TransientProviderError):
                await worker.request("embed", (["x"], "document"), timeout=5)
        finally:
            await worker.stop()

    @pytest.mark.asyncio
    async def test_request_timeout(self, fake_backend):
        fake_backend.encode_delay = 0.5
        worker = EmbeddingWorker(fake_backend, load_timeout=5)
        try:
            with pytest.raises(TransientProviderError, match="timed out"):
                await worker.request("embed", (["x"], "document"), timeout=0.05)
        finally:
            await worker.stop()

    @pytest.mark.asyncio
    async def test_stop_rejects_pending_requests(self, fake_backend):
        fake_backend.release = threading.Event()
        worker = EmbeddingWorker(fake_backend, load_timeout=5)
        await worker.start()

        first = asyncio.create_task(worker.request("embed", (["a"], "document"), timeout=5))
        second = asyncio.create_task(worker.request("embed", (["b"], "document"), timeout=5))
        await asyncio.sleep(0.05)
        assert worker.pending_count == 2

        stopping = asyncio.create_task(worker.stop(join_timeout=5))
        results = await asyncio.gather(first, second, return_exceptions=True)
        fake_backend.release.set()
        await stopping

        assert all(isinstance(r, TransientProviderError) for r in results)
        # The request already running finished; its result was discarded
        assert fake_backend.encode_calls == 1

    @pytest.mark.asyncio
    async def test_closed_worker_refuses_requests(self, fake_backend):
        worker = EmbeddingWorker(fake_backend, load_timeout=5)
        await worker.start()
        await worker.stop()

        with pytest.raises(TransientProviderError):
            await worker.request("embed", (["x"], "document"), timeout=5)


class TestProviderBasics:
    @pytest.mark.asyncio
    async def test_embed(self, provider, fake_backend):
        vectors = await provider.embed(["carbon accounting", "qubits"])

        assert len(vectors) == 2
        assert vectors[0] != vectors[1]
        assert provider.model_info().name == "fake-bow"
        assert provider.model_info().dimensions == fake_backend.dimensions

    @pytest.mark.asyncio
    async def test_empty_input(self, provider, fake_backend):
        assert await provider.embed([]) == []
        assert fake_backend.load_calls == 0

    @pytest.mark.asyncio
    async def test_embed_query(self, provider):
        vector = await provider.embed_query("carbon")
        assert vector[0] == 1.0

    @pytest.mark.asyncio
    async def test_batches_requests(self, make_provider, backend_factory):
        backend = backend_factory()
        provider = make_provider([backend], batch_size=2)
        try:
            vectors = await provider.embed(["a", "b", "c", "d", "e"])
        finally:
            await provider.close()

        assert len(vectors) == 5
        assert backend.encode_calls == 3

    @pytest.mark.asyncio
    async def test_is_available_probes_without_loading(self, provider, fake_backend):
        assert await provider.is_available()
        assert fake_backend.load_calls == 0

        fake_backend.available = False
        assert not await provider.is_available()

    @pytest.mark.asyncio
    async def test_closed_provider(self, make_provider):
        provider = make_provider()
        await provider.close()

        assert not await provider.is_available()
        with pytest.raises(ProviderUnavailableError):
            await provider.embed(["x"])

    def test_requires_a_backend(self):
        with pytest.raises(ConfigError):
            EmbeddingProvider([])

    @pytest.mark.asyncio
    async def test_context_manager(self, make_provider, backend_factory):
        backend = backend_factory()
        async with make_provider([backend]) as provider:
            assert provider.model_info().dimensions == backend.dimensions
        assert backend.unload_calls == 1


class TestRetryPolicy:
    @pytest.mark.asyncio
    async def test_two_failures_reset_once_then_hard_error(self, provider, fake_backend):
        fake_backend.fail_encode = True

        with pytest.raises(TransientProviderError):
            await provider.embed(["x"])
        assert provider.reset_count == 0

        with pytest.raises(EmbeddingRetryExhaustedError):
            await provider.embed(["x"])

        assert provider.reset_count == 1
        # Two failing calls plus exactly one retry after the reset
        assert fake_backend.encode_calls == 3
        assert fake_backend.load_calls == 2

    @pytest.mark.asyncio
    async def test_retry_after_reset_can_succeed(self, provider, fake_backend):
        fake_backend.fail_encode = True
        with pytest.raises(TransientProviderError):
            await provider.embed(["x"])

        original_load = fake_backend.load

        def load_and_recover():
            fake_backend.fail_encode = False
            return original_load()

        fake_backend.load = load_and_recover

        vectors = await provider.embed(["x"])

        assert len(vectors) == 1
        assert provider.reset_count == 1
        assert provider.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_success_clears_failure_count(self, provider, fake_backend):
        fake_backend.fail_encode = True
        with pytest.raises(TransientProviderError):
            await provider.embed(["x"])

        fake_backend.fail_encode = False
        await provider.embed(["x"])
        assert provider.consecutive_failures == 0

        fake_backend.fail_encode = True
        with pytest.raises(TransientProviderError):
            await provider.embed(["x"])
        assert provider.reset_count == 0

    @pytest.mark.asyncio
    async def test_timeout_follows_retry_policy(self, make_provider, backend_factory):
        backend = backend_factory()
        backend.encode_delay = 1.0
        provider = make_provider([backend], timeout=0.2)
        await provider.initialize()
        try:
            with pytest.raises(TransientProviderError, match="timed out"):
                await provider.embed(["x"])
            assert provider.consecutive_failures == 1
        finally:
            await provider.close()


class TestValidation:
    @pytest.mark.asyncio
    async def test_wrong_dimension_is_rejected(self, provider, fake_backend):
        await provider.initialize()
        fake_backend.wrong_dimensions = True

        with pytest.raises(InvalidEmbeddingError, match="dimensions"):
            await provider.embed(["x"])

    @pytest.mark.asyncio
    async def test_wrong_count_is_rejected(self, provider, fake_backend):
        fake_backend.encode = lambda texts, kind="document": []

        with pytest.raises(InvalidEmbeddingError, match="Expected 1 embeddings"):
            await provider.embed(["x"])

    @pytest.mark.asyncio
    async def test_expected_dimension_mismatch_fails_load(self, make_provider, backend_factory):
        provider = make_provider([backend_factory()], dimensions=384)

        with pytest.raises(ProviderUnavailableError):
            await provider.initialize()
        await provider.close()


class TestFallback:
    @pytest.mark.asyncio
    async def test_load_failure_falls_back(self, make_provider, backend_factory):
        broken = backend_factory(capability="accelerated")
        broken.fail_load = True
        fallback = backend_factory()
        provider = make_provider([broken, fallback])
        try:
            info = await provider.initialize()
        finally:
            await provider.close()

        assert info.backend == "cpu:fake-bow"
        assert provider.downgrade_count == 1

    @pytest.mark.asyncio
    async def test_last_backend_failing_is_unavailable(self, make_provider, backend_factory):
        broken = backend_factory()
        broken.fail_load = True
        provider = make_provider([broken])

        with pytest.raises(ProviderUnavailableError):
            await provider.embed(["x"])
        await provider.close()

    @pytest.mark.asyncio
    async def test_downgrade_after_repeated_failures(self, make_provider, backend_factory):
        flaky = backend_factory(capability="accelerated")
        flaky.fail_encode = True
        fallback = backend_factory()
        provider = make_provider([flaky, fallback], downgrade_threshold=5)
        try:
            for _ in range(4):
                with pytest.raises(EmbeddingError):
                    await provider.embed(["x"])
            assert provider.active_backend is flaky

            vectors = await provider.embed(["x"])
        finally:
            await provider.close()

        assert len(vectors) == 1
        assert provider.active_backend is fallback
        assert provider.downgrade_count == 1
        assert fallback.encode_calls == 1

    @pytest.mark.asyncio
    async def test_success_resets_downgrade_count(self, make_provider, backend_factory):
        flaky = backend_factory(capability="accelerated")
        fallback = backend_factory()
        provider = make_provider(
            [flaky, fallback], downgrade_threshold=2, max_consecutive_failures=5
        )
        try:
            for _ in range(3):
                flaky.fail_encode = True
                with pytest.raises(EmbeddingError):
                    await provider.embed(["x"])
                flaky.fail_encode = False
                await provider.embed(["x"])
        finally:
            await provider.close()

        assert provider.active_backend is flaky
        assert provider.downgrade_count == 0
        assert fallback.encode_calls == 0


class TestEmbeddingCache:
    @pytest.mark.asyncio
    async def test_memory_lru(self):
        cache = EmbeddingCache(max_size=2)
        await cache.put("a", [1.0])
        await cache.put("b", [2.0])
        await cache.get("a")
        await cache.put("c", [3.0])

        assert await cache.get("b") is None
        assert await cache.get("a") == [1.0]
        stats = cache.get_cache_stats()
        assert stats["memory_cache_size"] == 2
        assert stats["cache_misses"] == 1

    @pytest.mark.asyncio
    async def test_disk_persistence(self, tmp_path):
        await EmbeddingCache(tmp_path).put("key", [0.5, 0.25])

        assert await EmbeddingCache(tmp_path).get("key") == [0.5, 0.25]

    def test_key_depends_on_model_and_kind(self):
        key = EmbeddingCache.cache_key("m", "document", "text")
        assert key != EmbeddingCache.cache_key("other", "document", "text")
        assert key != EmbeddingCache.cache_key("m", "query", "text")

    @pytest.mark.asyncio
    async def test_provider_reuses_cached_vectors(self, make_provider, backend_factory):
        backend = backend_factory()
        provider = make_provider([backend], cache=EmbeddingCache())
        try:
            first = await provider.embed(["carbon", "qubits"])
            second = await provider.embed(["qubits", "carbon"])
        finally:
            await provider.close()

        assert second == [first[1], first[0]]
        assert backend.encode_calls == 1


def _ollama_handler(requests: list[httpx.Request], embed_status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == "/api/show":
            return httpx.Response(
                200,
                json={
                    "model_info": {
                        "nomic-bert.embedding_length": 4,
                        "nomic-bert.context_length": 8,
                    }
                },
            )
        if request.url.path == "/api/embed":
            if embed_status != 200:
                return httpx.Response(embed_status, text="backend says no")
            inputs = json.loads(request.content)["input"]
            return httpx.Response(200, json={"embeddings": [[0.1, 0.2, 0.3, 0.4]] * len(inputs)})
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "nomic-embed-text:latest"}]})
        return httpx.Response(404)

    return handler


class TestOllamaBackend:
    def test_encode_after_unload_is_transient(self):
        backend = OllamaBackend(transport=httpx.MockTransport(_ollama_handler([])))
        backend.load()
        backend.unload()

        with pytest.raises(TransientProviderError, match="not loaded"):
            backend.encode(["carbon"])

    def test_load_reads_model_info(self):
        requests: list[httpx.Request] = []
        backend = OllamaBackend(transport=httpx.MockTransport(_ollama_handler(requests)))

        assert backend.load() == 4
        assert backend.max_chars == 16
        backend.unload()

    def test_encode_prefixes_and_truncates(self):
        requests: list[httpx.Request] = []
        backend = OllamaBackend(transport=httpx.MockTransport(_ollama_handler(requests)))
        backend.load()

        vectors = backend.encode(["carbon accounting"], kind="query")

        payload = json.loads(requests[-1].content)
        assert payload["model"] == "nomic-embed-text"
        assert payload["input"] == ["search_query: ca"]
        assert vectors == [[0.1, 0.2, 0.3, 0.4]]

    def test_server_error_is_transient(self):
        backend = OllamaBackend(
            dimensions=4,
            transport=httpx.MockTransport(_ollama_handler([], embed_status=503)),
        )
        backend.load()

        with pytest.raises(TransientProviderError):
            backend.encode(["x"])

    def test_client_error_is_not_transient(self):
        backend = OllamaBackend(
            dimensions=4,
            transport=httpx.MockTransport(_ollama_handler([], embed_status=400)),
        )
        backend.load()

        with pytest.raises(EmbeddingError) as exc_info:
            backend.encode(["x"])
        assert not isinstance(exc_info.value, TransientProviderError)
        assert exc_info.value.context["status"] == 400

    def test_connection_error_is_transient(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        backend = OllamaBackend(dimensions=4, transport=httpx.MockTransport(refuse))
        backend.load()

        with pytest.raises(TransientProviderError):
            backend.encode(["x"])

    @pytest.mark.asyncio
    async def test_probe(self):
        backend = OllamaBackend(async_transport=httpx.MockTransport(_ollama_handler([])))
        assert await backend.probe() is True

        other = OllamaBackend(
            model_name="bge-m3", async_transport=httpx.MockTransport(_ollama_handler([]))
        )
        assert await other.probe() is False


class TestFactories:
    def test_accelerated_skipped_on_cpu(self, tmp_path):
        config = ProjectConfig(
            project_root=tmp_path,
            embedding_backends=["accelerated", "cpu", "ollama"],
            device="cpu",
        )

        backends = create_embedding_backends(config)

        assert [b.capability for b in backends] == ["cpu", "remote"]
        assert isinstance(backends[0], SentenceTransformerBackend)
        assert backends[0].dimensions == 384

    def test_no_usable_backend(self, tmp_path):
        config = ProjectConfig(
            project_root=tmp_path, embedding_backends=["accelerated"], device="cpu"
        )

        with pytest.raises(ConfigError):
            create_embedding_backends(config)

    def test_provider_settings(self, tmp_path):
        config = ProjectConfig(
            project_root=tmp_path,
            embedding_backends=["cpu"],
            throttle_ms=0,
            max_consecutive_failures=3,
        )

        provider = create_embedding_provider(config, cache_dir=tmp_path / "cache")

        assert provider.throttle_ms == 0
        assert provider.max_consecutive_failures == 3
        assert provider.cache is not None
