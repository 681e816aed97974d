"""Hierarchical markdown chunking.

Every document yields one document-level chunk (title, tags and the opening
of the body) plus one chunk per second-level (``## ``) section. Section text
is prefixed with the document title so each chunk embeds with its context.
"""

import re
from dataclasses import dataclass, field
from typing import Any

from ..config.defaults import DEFAULT_DOCUMENT_TYPE, DEFAULT_MAX_CHUNK_CHARS
from .models import ChunkDraft, DocumentMetadata, MatchType
from .text_utils import extract_tags, extract_title, split_frontmatter

H2_RE = re.compile(r"^##\s+(.+?)\s*$")


@dataclass
class ParsedDocument:
    """Chunker output for one document."""

    metadata: DocumentMetadata
    body: str
    drafts: list[ChunkDraft] = field(default_factory=list)


@dataclass
class _Section:
    heading: str
    line: int
    lines: list[str] = field(default_factory=list)

    @property
    def content(self) -> str:
        return "\n".join(self.lines).strip()


class MarkdownChunker:
    """Split markdown documents into document and section chunk drafts.

    Example:
        chunker = MarkdownChunker()
        parsed = chunker.parse(text, "notes/carbon.md")
        for draft in parsed.drafts:
            print(draft.kind, draft.heading, draft.line)
    """

    def __init__(
        self,
        max_chars: int = DEFAULT_MAX_CHUNK_CHARS,
        document_types: dict[str, str] | None = None,
    ) -> None:
        """Initialize chunker.

        Args:
            max_chars: Character budget per chunk body (~4 chars per token)
            document_types: Path prefix to document type, first match wins
        """
        self.max_chars = max_chars
        self.document_types = document_types or {}

    def chunk(self, text: str, path: str = "") -> list[ChunkDraft]:
        """Chunk a document.

        Args:
            text: Raw document text, frontmatter included
            path: Document path, used for the fallback title

        Returns:
            Document draft first, then section drafts in document order
        """
        return self.parse(text, path).drafts

    def parse(self, text: str, path: str = "") -> ParsedDocument:
        """Extract metadata and chunk drafts from a document.

        Args:
            text: Raw document text
            path: Document path relative to the store root

        Returns:
            ParsedDocument with metadata, frontmatter-free body and drafts
        """
        fields, body, line_offset = split_frontmatter(text)
        title = extract_title(fields, body, self._stem(path))
        tags = extract_tags(fields)

        metadata = DocumentMetadata(
            title=title,
            tags=tags,
            doc_type=self._resolve_type(path, fields),
            word_count=len(body.split()),
            fields={k: v for k, v in fields.items() if k not in ("title", "tags")},
        )

        drafts = [
            ChunkDraft(
                heading="",
                line=1,
                content=self._document_text(title, tags, body),
                kind=MatchType.DOCUMENT,
            )
        ]

        for section in self._split_sections(body, line_offset):
            drafts.append(
                ChunkDraft(
                    heading=section.heading,
                    line=section.line,
                    content=self._section_text(title, section),
                    kind=MatchType.SECTION,
                )
            )

        return ParsedDocument(metadata=metadata, body=body, drafts=drafts)

    def _document_text(self, title: str, tags: list[str], body: str) -> str:
        text = title
        if tags:
            text += "\nTags: " + ", ".join(tags)
        return text + "\n\n" + body[: self.max_chars]

    def _section_text(self, title: str, section: _Section) -> str:
        content = section.content[: self.max_chars]
        if not section.heading:
            return f"{title}\n\n{content}"
        return f"{title}\n\n## {section.heading}\n\n{content}"

    def _split_sections(self, body: str, line_offset: int) -> list[_Section]:
        """Split on H2 headings.

        Preamble before the first heading is only covered by the document
        chunk unless the body has no H2 at all, in which case the whole body
        is a single headingless section. Fenced code blocks are not scanned
        for headings.
        """
        sections: list[_Section] = []
        preamble = _Section(heading="", line=line_offset + 1)
        current: _Section | None = None
        in_fence = False

        for index, line in enumerate(body.split("\n")):
            if line.lstrip().startswith(("```", "~~~")):
                in_fence = not in_fence

            match = None if in_fence else H2_RE.match(line)
            if match:
                current = _Section(heading=match.group(1), line=line_offset + index + 1)
                sections.append(current)
            elif current is not None:
                current.lines.append(line)
            else:
                preamble.lines.append(line)

        if not sections:
            sections = [preamble]

        return [s for s in sections if s.content]

    def _resolve_type(self, path: str, fields: dict[str, Any]) -> str:
        declared = fields.get("type")
        if isinstance(declared, str) and declared.strip():
            return declared.strip()
        for prefix, doc_type in self.document_types.items():
            if path.startswith(prefix):
                return doc_type
        return DEFAULT_DOCUMENT_TYPE

    @staticmethod
    def _stem(path: str) -> str:
        name = path.rsplit("/", 1)[-1]
        return name.rsplit(".", 1)[0] if "." in name else name
