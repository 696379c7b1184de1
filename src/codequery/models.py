"""
Data model for a single retrieval request.

Every record here lives for the duration of one query: nothing is
persisted, nothing is shared between concurrent queries.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import PurePosixPath

from codequery.patterns import FocusCategory


class MatchType(str, Enum):
    """Where a CodeMatch came from."""

    SEMANTIC = "semantic"
    STRUCTURAL = "structural"


# ─────────────────────────────────────────────────────────────────────────────
# Queries
# ─────────────────────────────────────────────────────────────────────────────


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(value, high))


@dataclass(frozen=True)
class Query:
    """Immutable input to the hybrid code query.

    Use `Query.create()` to build one from raw tool arguments; it applies
    the limit clamp and parses the focus category.
    """

    text: str
    scope: str | None = None
    focus: FocusCategory = FocusCategory.ALL
    limit: int = 10
    context_lines: int = 3

    @classmethod
    def create(
        cls,
        text: str,
        scope: str | None = None,
        focus: str | FocusCategory = FocusCategory.ALL,
        limit: int = 10,
        context_lines: int = 3,
        max_limit: int = 30,
    ) -> Query:
        return cls(
            text=text.strip(),
            scope=scope or None,
            focus=FocusCategory.parse(focus),
            limit=int(clamp(limit, 1, max_limit)),
            context_lines=max(0, int(context_lines)),
        )


@dataclass(frozen=True)
class SemanticQuery:
    """Input to the plain semantic search variant."""

    text: str
    limit: int = 10
    min_score: float = 0.25
    file_type: str | None = None
    path_prefix: str | None = None

    @classmethod
    def create(
        cls,
        text: str,
        limit: int = 10,
        min_score: float = 0.25,
        file_type: str | None = None,
        path_prefix: str | None = None,
        max_limit: int = 50,
        min_score_floor: float = 0.15,
    ) -> SemanticQuery:
        return cls(
            text=text.strip(),
            limit=int(clamp(limit, 1, max_limit)),
            min_score=clamp(min_score, min_score_floor, 1.0),
            file_type=file_type or None,
            path_prefix=path_prefix or None,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Backend records
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SemanticChunk:
    """A ranked chunk returned by the vector index."""

    path: str
    relative_path: str
    chunk_text: str
    line_start: int
    line_end: int
    language: str = ""
    score: float = 0.0

    @property
    def display_language(self) -> str:
        """Declared language, or the file extension when none was declared."""
        if self.language:
            return self.language
        suffix = PurePosixPath(self.relative_path.replace("\\", "/")).suffix
        return suffix.lstrip(".") or "unknown"


@dataclass
class SearchResponse:
    chunks: list[SemanticChunk] = field(default_factory=list)
    query_time_ms: int = 0


@dataclass(frozen=True)
class Workspace:
    id: str
    path: str


@dataclass(frozen=True)
class IndexStatus:
    """Readiness flags reported by the backend for one workspace."""

    indexed: bool = False
    is_indexing: bool = False
    is_vector_indexing: bool = False
    indexed_count: int = 0
    total_count: int = 0
    vector_count: int = 0
    vector_ready: bool = False
    embedding_model_ready: bool = False


# ─────────────────────────────────────────────────────────────────────────────
# Matches
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StructuralCandidate:
    """A symbol found by regex inside a chunk.

    `line` is 1-indexed relative to the start of the chunk.
    """

    name: str
    kind: FocusCategory
    line: int
    relevant: bool = True


@dataclass(frozen=True)
class CodeMatch:
    """The unified retrieval unit produced by fusion."""

    file: str
    relative_path: str
    line_start: int
    line_end: int
    code: str
    language: str
    score: float
    match_type: MatchType
    symbol_name: str | None = None
    symbol_kind: FocusCategory | None = None

    @property
    def key(self) -> tuple[str, int, MatchType]:
        """Deduplication key."""
        return (self.relative_path, self.line_start, self.match_type)


@dataclass(frozen=True)
class EnrichedMatch(CodeMatch):
    """A CodeMatch with optional wider context read from disk."""

    context_code: str | None = None

    @classmethod
    def from_match(cls, match: CodeMatch, context_code: str | None = None) -> EnrichedMatch:
        values = {f.name: getattr(match, f.name) for f in fields(CodeMatch)}
        return cls(**values, context_code=context_code)

    @property
    def display_code(self) -> str:
        return self.context_code if self.context_code is not None else self.code
