"""Snapshot schema versioning for Doc Vector Search.

Snapshots are wrapped in an envelope carrying an integer schema version.
Loading only accepts the current version; anything else must be rebuilt
with ``index_all(force=True)``. There is no in-place migration.
"""

from typing import Any

from loguru import logger

from .exceptions import IndexCorruptionError, SchemaVersionError

# Schema version - ONLY bump when the snapshot layout changes
# This is separate from package __version__ which changes for every release
SCHEMA_VERSION = 3

# Snapshots written before the envelope existed carry no version
OLDEST_SCHEMA_VERSION = 1

# Schema changelog - documents when schema actually changed
SCHEMA_CHANGELOG = {
    3: "Per-document records with document and section chunks, doc_type and model identity",
    2: "Added section chunks with heading and line",
    1: "Document-level vectors only (no envelope)",
}

ENVELOPE_VERSION_KEY = "schemaVersion"
ENVELOPE_DATA_KEY = "data"


def wrap_snapshot(data: dict[str, Any]) -> dict[str, Any]:
    """Wrap index state in a versioned envelope."""
    return {ENVELOPE_VERSION_KEY: SCHEMA_VERSION, ENVELOPE_DATA_KEY: data}


def snapshot_version(snapshot: Any) -> int:
    """Read the schema version of a snapshot.

    Args:
        snapshot: Parsed snapshot

    Returns:
        Integer schema version; ``OLDEST_SCHEMA_VERSION`` when absent

    Raises:
        IndexCorruptionError: If the snapshot is not an object or the version
            is not an integer
    """
    if not isinstance(snapshot, dict):
        raise IndexCorruptionError(
            f"Snapshot must be a JSON object, got {type(snapshot).__name__}"
        )

    version = snapshot.get(ENVELOPE_VERSION_KEY)
    if version is None:
        return OLDEST_SCHEMA_VERSION
    if isinstance(version, bool) or not isinstance(version, int):
        raise IndexCorruptionError(
            f"Snapshot schema version must be an integer, got {version!r}"
        )
    return version


def unwrap_snapshot(snapshot: Any) -> dict[str, Any]:
    """Return the payload of a current-version snapshot.

    Raises:
        SchemaVersionError: If the version differs from ``SCHEMA_VERSION``
        IndexCorruptionError: If the envelope is malformed
    """
    version = snapshot_version(snapshot)
    if version != SCHEMA_VERSION:
        logger.warning(
            f"Snapshot schema v{version} ({SCHEMA_CHANGELOG.get(version, 'unknown')}) "
            f"is not the current v{SCHEMA_VERSION}"
        )
        raise SchemaVersionError(found=version, expected=SCHEMA_VERSION)

    data = snapshot.get(ENVELOPE_DATA_KEY)
    if not isinstance(data, dict):
        raise IndexCorruptionError("Snapshot envelope has no data object")
    return data


def check_schema_compatibility(snapshot: Any) -> tuple[bool, str]:
    """Check whether a snapshot can be loaded by this version.

    Returns:
        Tuple of (is_compatible, human-readable message)
    """
    try:
        version = snapshot_version(snapshot)
    except IndexCorruptionError as e:
        return False, f"Snapshot is unreadable: {e}"

    if version == SCHEMA_VERSION:
        return True, f"Schema version {version} is compatible"

    return (
        False,
        f"Schema version mismatch!\n\n"
        f"Snapshot schema: {version} ({SCHEMA_CHANGELOG.get(version, 'Unknown changes')})\n"
        f"Current schema: {SCHEMA_VERSION} ({SCHEMA_CHANGELOG[SCHEMA_VERSION]})\n\n"
        f"Run 'doc-vector-search index --force' to rebuild the index.",
    )
