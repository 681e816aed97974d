"""Text helpers: frontmatter, markdown stripping, truncation, hashing."""

import hashlib
import math
import re
from typing import Any

import yaml
from loguru import logger

from ..config.defaults import CHARS_PER_TOKEN_ESTIMATE, SNIPPET_LENGTH

FRONTMATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)

_MARKDOWN_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"^#{1,6}\s+", re.MULTILINE), ""),
    (re.compile(r"\*{1,3}([^*]+)\*{1,3}"), r"\1"),
    (re.compile(r"_{1,3}([^_]+)_{1,3}"), r"\1"),
    (re.compile(r"~~([^~]+)~~"), r"\1"),
    # fenced code before inline code
    (re.compile(r"```.*?```", re.DOTALL), ""),
    (re.compile(r"`([^`]+)`"), r"\1"),
    (re.compile(r"!\[([^\]]*)\]\([^)]*\)"), r"\1"),
    (re.compile(r"\[([^\]]*)\]\([^)]*\)"), r"\1"),
    (re.compile(r"\[\[([^|\]]*)\|([^\]]*)\]\]"), r"\2"),
    (re.compile(r"\[\[([^\]]*)\]\]"), r"\1"),
    (re.compile(r"^>\s+", re.MULTILINE), ""),
    (re.compile(r"^[-*_]{3,}\s*$", re.MULTILINE), ""),
    (re.compile(r"^\s*[-*+]\s+", re.MULTILINE), ""),
    (re.compile(r"^\s*\d+\.\s+", re.MULTILINE), ""),
    (re.compile(r"<[^>]+>"), ""),
    (re.compile(r"==([^=]+)=="), r"\1"),
    (re.compile(r"\s+"), " "),
]


def split_frontmatter(text: str) -> tuple[dict[str, Any], str, int]:
    """Separate a leading YAML frontmatter block from the body.

    Args:
        text: Raw document text

    Returns:
        Tuple of (frontmatter fields, body, number of lines the block used).
        Without a frontmatter block the fields are empty, the body is the
        full text and the line offset is 0.
    """
    match = FRONTMATTER_RE.match(text)
    if not match:
        return {}, text, 0

    body = text[match.end() :]
    line_offset = match.group(0).count("\n")
    if not match.group(0).endswith("\n"):
        line_offset += 1

    try:
        fields = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        logger.debug(f"Ignoring malformed frontmatter: {e}")
        fields = {}

    if not isinstance(fields, dict):
        fields = {}

    return _json_safe(fields), body, line_offset


def _json_safe(value: Any) -> Any:
    """Coerce YAML values into JSON types: string keys, lists, scalars or str.

    YAML allows ``2024: review`` (int key) and dates; the snapshot does not.
    """
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, list | tuple | set):
        return [_json_safe(v) for v in value]
    if value is None or isinstance(value, str | bool | int | float):
        return value
    return str(value)


def extract_tags(fields: dict[str, Any]) -> list[str]:
    """Read tags from frontmatter fields.

    Accepts a YAML list or a comma separated string; strips a leading ``#``
    and de-duplicates while preserving order.
    """
    raw = fields.get("tags", [])
    if raw is None:
        return []
    if isinstance(raw, str):
        items = [t for t in re.split(r"[,\s]+", raw) if t]
    elif isinstance(raw, list):
        items = [str(t) for t in raw if t is not None and str(t).strip()]
    else:
        items = [str(raw)]

    tags = [item.strip().lstrip("#").strip("'\"") for item in items]
    return list(dict.fromkeys(t for t in tags if t))


def extract_title(fields: dict[str, Any], body: str, fallback: str) -> str:
    """Resolve a document title: frontmatter ``title``, first H1, then ``fallback``."""
    title = fields.get("title")
    if title is not None and str(title).strip():
        return str(title).strip()

    h1 = re.search(r"^#\s+(.+?)\s*#*\s*$", body, re.MULTILINE)
    if h1:
        return h1.group(1).strip()

    return fallback


def strip_markdown(text: str) -> str:
    """Strip markdown formatting, returning single-line plain text."""
    for pattern, replacement in _MARKDOWN_RULES:
        text = pattern.sub(replacement, text)
    return text.strip()


def truncate_at_word(text: str, max_length: int) -> str:
    """Truncate at a word boundary, appending an ellipsis when truncated.

    Falls back to a hard cut when the last space is before 70% of
    ``max_length``.
    """
    if len(text) <= max_length:
        return text
    truncated = text[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length * 0.7:
        truncated = truncated[:last_space]
    return truncated + "…"


def make_snippet(text: str, max_length: int = SNIPPET_LENGTH) -> str:
    """Build a plain-text preview from chunk text.

    The first paragraph of chunk text is the document title, so it is
    skipped when more content follows.
    """
    _, body, _ = split_frontmatter(text)
    parts = body.split("\n\n", 1)
    if len(parts) == 2 and parts[1].strip():
        body = parts[1]
    return truncate_at_word(strip_markdown(body), max_length)


def estimate_tokens(text: str) -> int:
    """Rough token count (~4 characters per token)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN_ESTIMATE)


def compute_content_hash(text: str) -> str:
    """SHA-256 of document text, used for change detection."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
