"""Index metadata management for tracking model identity and versions."""

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger
from packaging import version

from .. import __version__
from ..config.defaults import INDEX_METADATA_FILE, get_data_dir
from .schema import SCHEMA_VERSION


class IndexMetadata:
    """Manages the small metadata record written next to the snapshot.

    The record answers "what built this index" without parsing the snapshot:
    schema version, package version, embedding model and dimension, document
    count and timestamps.
    """

    def __init__(self, project_root: Path) -> None:
        """Initialize index metadata manager.

        Args:
            project_root: Root directory of the document corpus
        """
        self.project_root = project_root
        self._metadata_file = get_data_dir(project_root) / INDEX_METADATA_FILE

    @property
    def path(self) -> Path:
        return self._metadata_file

    def exists(self) -> bool:
        return self._metadata_file.exists()

    def save(
        self,
        document_count: int,
        embedding_model: str | None = None,
        embedding_dimensions: int | None = None,
        exclude_paths: list[str] | None = None,
    ) -> None:
        """Write the metadata record.

        Args:
            document_count: Documents currently in the index
            embedding_model: Model name; the stored value is kept when omitted
            embedding_dimensions: Vector dimension; kept when omitted
            exclude_paths: Exclusion prefixes in effect for this index
        """
        try:
            self._metadata_file.parent.mkdir(parents=True, exist_ok=True)

            # Preserve existing values when not supplied
            existing = self._read_raw()
            resolved_model = embedding_model or existing.get("embedding_model")
            resolved_dims = (
                embedding_dimensions
                if embedding_dimensions is not None
                else existing.get("embedding_dimensions")
            )

            now = datetime.now(UTC).isoformat()
            data: dict[str, Any] = {
                "schema_version": SCHEMA_VERSION,
                "index_version": __version__,
                "embedding_model": resolved_model,
                "embedding_dimensions": resolved_dims,
                "document_count": document_count,
                # created_at is set once on first write and never overwritten
                "created_at": existing.get("created_at", now),
                "updated_at": now,
                "exclude_paths": (
                    exclude_paths
                    if exclude_paths is not None
                    else existing.get("exclude_paths", [])
                ),
            }

            with open(self._metadata_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.warning(f"Failed to save index metadata: {e}")

    def _read_raw(self) -> dict[str, Any]:
        """Read the raw metadata JSON dict (empty dict on any error)."""
        if not self._metadata_file.exists():
            return {}
        try:
            with open(self._metadata_file, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read index metadata: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def get_index_metadata(self) -> dict[str, Any]:
        """Return the metadata record with every known key present.

        Missing fields default to ``None`` (``document_count`` to 0 and
        ``exclude_paths`` to an empty list).
        """
        raw = self._read_raw()
        return {
            "schema_version": raw.get("schema_version"),
            "index_version": raw.get("index_version"),
            "embedding_model": raw.get("embedding_model"),
            "embedding_dimensions": raw.get("embedding_dimensions"),
            "document_count": raw.get("document_count", 0),
            "created_at": raw.get("created_at"),
            "updated_at": raw.get("updated_at"),
            "exclude_paths": raw.get("exclude_paths", []),
        }

    def get_index_version(self) -> str | None:
        """Version of the package that last wrote the index."""
        return self._read_raw().get("index_version")

    def needs_reindex_for_version(self) -> bool:
        """Check if a reindex is needed after an upgrade.

        Reindex on schema change, or on a major/minor package version change.
        Patch versions (0.3.1 -> 0.3.2) don't require a reindex.
        """
        raw = self._read_raw()
        if not raw:
            return False

        if raw.get("schema_version") != SCHEMA_VERSION:
            return True

        index_version = raw.get("index_version")
        if not index_version:
            return True

        try:
            current = version.parse(__version__)
            indexed = version.parse(index_version)
        except version.InvalidVersion as e:
            logger.warning(f"Failed to compare versions: {e}")
            return True

        needs_reindex = current.major != indexed.major or current.minor != indexed.minor
        if needs_reindex:
            logger.info(
                f"Version upgrade detected: {index_version} -> {__version__} "
                f"(reindex recommended)"
            )
        return needs_reindex

    def excludes_changed(self, exclude_paths: list[str]) -> bool:
        """Whether the exclusion prefixes differ from the ones last indexed with."""
        raw = self._read_raw()
        if "exclude_paths" not in raw:
            return False
        return sorted(raw["exclude_paths"]) != sorted(exclude_paths)
