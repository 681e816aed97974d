"""Tests for the typed exception hierarchy.

Validates:
- Class hierarchy is correct (isinstance checks)
- Exceptions are exported from ``doc_vector_search.core``
- Search wraps unexpected failures in SearchError
"""

from unittest.mock import patch

import pytest

from doc_vector_search.core import exceptions as exc


class TestExceptionHierarchy:
    """Verify the class hierarchy defined in core/exceptions.py."""

    @pytest.mark.parametrize(
        "child, parent",
        [
            (exc.EmbeddingError, exc.DocVectorSearchError),
            (exc.TransientProviderError, exc.EmbeddingError),
            (exc.InvalidEmbeddingError, exc.EmbeddingError),
            (exc.EmbeddingRetryExhaustedError, exc.EmbeddingError),
            (exc.ProviderUnavailableError, exc.EmbeddingError),
            (exc.DatabaseError, exc.DocVectorSearchError),
            (exc.SchemaVersionError, exc.DatabaseError),
            (exc.ModelMismatchError, exc.DatabaseError),
            (exc.IndexCorruptionError, exc.DatabaseError),
            (exc.IndexingError, exc.DocVectorSearchError),
            (exc.DocumentReadError, exc.IndexingError),
            (exc.IndexingInProgressError, exc.IndexingError),
            (exc.SearchError, exc.DocVectorSearchError),
            (exc.ValidationError, exc.SearchError),
            (exc.ConfigError, exc.DocVectorSearchError),
            (exc.InitializationError, exc.DocVectorSearchError),
        ],
    )
    def test_subclass(self, child, parent):
        assert issubclass(child, parent)

    def test_base_is_exception(self):
        assert isinstance(exc.DocVectorSearchError("base"), Exception)

    def test_alias(self):
        assert exc.DVSError is exc.DocVectorSearchError

    def test_indexing_error_does_not_shadow_builtin(self):
        assert exc.IndexingError is not IndexError
        assert not issubclass(exc.IndexingError, IndexError)

    def test_context_dict_is_preserved(self):
        err = exc.DocumentReadError("unreadable", {"path": "a.md"})
        assert err.context == {"path": "a.md"}
        assert str(err) == "unreadable"

    def test_context_defaults_to_empty_dict(self):
        assert exc.SearchError("boom").context == {}

    def test_schema_version_error_context(self):
        err = exc.SchemaVersionError(found=2, expected=3)

        assert err.found == 2
        assert err.expected == 3
        assert err.context["reindex_required"] is True
        assert "reindex required" in str(err)

    def test_catch_all_with_base(self):
        for cls in (exc.SearchError, exc.IndexingError, exc.ConfigError):
            with pytest.raises(exc.DocVectorSearchError):
                raise cls("caught")


class TestPackageExports:
    def test_core_exports(self):
        import doc_vector_search.core as core

        for name in core.__all__:
            assert getattr(core, name) is getattr(exc, name)

    def test_root_export(self):
        from doc_vector_search import DocVectorSearchError

        assert DocVectorSearchError is exc.DocVectorSearchError


class TestSearchExceptionWrapping:
    @pytest.mark.asyncio
    async def test_unexpected_failure_becomes_search_error(self, make_record):
        from doc_vector_search.core.hybrid_index import HybridIndex

        index = HybridIndex()
        index.upsert_document(make_record("carbon.md", "Carbon accounting"))

        with patch.object(index, "_search", side_effect=RuntimeError("kaboom")):
            with pytest.raises(exc.SearchError) as exc_info:
                await index.search("carbon", mode="lexical")

        assert exc_info.value.context == {"query": "carbon"}
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_typed_errors_pass_through(self, make_record):
        from doc_vector_search.core.hybrid_index import HybridIndex

        index = HybridIndex()
        index.upsert_document(make_record("carbon.md", "Carbon accounting"))

        with patch.object(index, "_search", side_effect=exc.ModelMismatchError("dims")):
            with pytest.raises(exc.ModelMismatchError):
                await index.search("carbon", mode="lexical")
