"""Filesystem document store: discovery, exclusion and reads."""

import os
from pathlib import Path

import aiofiles
from loguru import logger

from ..config.defaults import (
    DEFAULT_EXCLUDE_PATHS,
    DEFAULT_FILE_EXTENSIONS,
    get_data_dir,
)
from .exceptions import DocumentReadError
from .models import Document
from .text_utils import compute_content_hash


class DocumentStore:
    """Documents under one root directory, addressed by posix relative path.

    The private data directory is always excluded, whatever the configured
    exclusion prefixes say.
    """

    def __init__(
        self,
        root: Path,
        file_extensions: list[str] | None = None,
        exclude_paths: list[str] | None = None,
    ) -> None:
        """Initialize document store.

        Args:
            root: Root directory of the corpus
            file_extensions: Extensions to include (e.g. [".md"])
            exclude_paths: Path prefixes to skip, relative to the root
        """
        self.root = Path(root).resolve()
        self.file_extensions = {
            ext.lower() for ext in (file_extensions or DEFAULT_FILE_EXTENSIONS)
        }
        self.exclude_paths = list(
            exclude_paths if exclude_paths is not None else DEFAULT_EXCLUDE_PATHS
        )
        self._data_prefix = f"{self.data_dir.name}/"

    @property
    def data_dir(self) -> Path:
        """Private data directory for snapshot and metadata."""
        return get_data_dir(self.root)

    def relative_path(self, path: str | Path) -> str:
        """Convert an absolute or relative path to a store path."""
        candidate = Path(path)
        if candidate.is_absolute():
            candidate = candidate.resolve().relative_to(self.root)
        return candidate.as_posix()

    def absolute_path(self, path: str) -> Path:
        return self.root / path

    def is_supported(self, path: str) -> bool:
        return Path(path).suffix.lower() in self.file_extensions

    def should_exclude(self, path: str) -> bool:
        """Check a store path against the exclusion prefixes."""
        if path.startswith(self._data_prefix):
            return True
        for prefix in self.exclude_paths:
            if path.startswith(prefix):
                return True
            # "drafts" excludes the folder as well as "drafts/"
            if not prefix.endswith("/") and path.startswith(f"{prefix}/"):
                return True
        return False

    def is_eligible(self, path: str) -> bool:
        return self.is_supported(path) and not self.should_exclude(path)

    def list_documents(self) -> list[str]:
        """List eligible documents, sorted.

        Returns:
            Posix paths relative to the root
        """
        documents: list[str] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            rel_dir = Path(dirpath).relative_to(self.root).as_posix()
            rel_dir = "" if rel_dir == "." else f"{rel_dir}/"

            # Prune excluded directories before descending
            dirnames[:] = [
                d for d in dirnames if not self.should_exclude(f"{rel_dir}{d}/")
            ]

            for filename in filenames:
                path = f"{rel_dir}{filename}"
                if self.is_eligible(path):
                    documents.append(path)

        documents.sort()
        logger.debug(f"Discovered {len(documents)} documents under {self.root}")
        return documents

    def exists(self, path: str) -> bool:
        return self.absolute_path(path).is_file()

    def stat_mtime(self, path: str) -> float:
        """Modification time in seconds.

        Raises:
            DocumentReadError: If the file cannot be stat'ed
        """
        try:
            return self.absolute_path(path).stat().st_mtime
        except OSError as e:
            raise DocumentReadError(f"Cannot stat {path}: {e}", {"path": path}) from e

    async def read(self, path: str) -> Document:
        """Read a document.

        Raises:
            DocumentReadError: If the file is missing or not valid UTF-8
        """
        absolute = self.absolute_path(path)
        try:
            mtime = absolute.stat().st_mtime
            async with aiofiles.open(absolute, encoding="utf-8") as f:
                text = await f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise DocumentReadError(f"Cannot read {path}: {e}", {"path": path}) from e

        return Document(
            path=path,
            text=text,
            mtime=mtime,
            content_hash=compute_content_hash(text),
        )
