"""
Result fusion.

Merges semantic chunks and the structural symbols found inside them into
one deduplicated, score-ordered list of CodeMatch records.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

import pathspec

from codequery.cancellation import CancelSignal, check
from codequery.models import CodeMatch, MatchType, Query, SemanticChunk
from codequery.structural import StructuralMatcher

logger = logging.getLogger("codequery.fusion")

STRUCTURAL_BOOST = 1.2
STRUCTURAL_SPAN = 6  # lines covered by a structural match after its symbol line
CANDIDATE_FACTOR = 2  # chunks considered per requested result

_GLOB_CHARS = frozenset("*?[")


# ─────────────────────────────────────────────────────────────────────────────
# Path filters
# ─────────────────────────────────────────────────────────────────────────────


def normalize_path(path: str) -> str:
    """Forward slashes, no trailing slash, no leading './'."""
    norm = path.replace("\\", "/").rstrip("/")
    while norm.startswith("./"):
        norm = norm[2:]
    return norm


def filter_by_scope(chunks: Iterable[SemanticChunk], scope: str | None) -> list[SemanticChunk]:
    """Keep chunks whose relative path falls under `scope`.

    A plain scope is a path prefix. A scope containing glob characters is
    matched as a gitignore-style pattern.
    """
    chunks = list(chunks)
    if not scope:
        return chunks

    norm = normalize_path(scope)
    if not norm:
        return chunks

    if _GLOB_CHARS & set(norm):
        spec = pathspec.PathSpec.from_lines("gitignore", [norm])
        return [c for c in chunks if spec.match_file(normalize_path(c.relative_path).lstrip("/"))]

    def under_scope(chunk: SemanticChunk) -> bool:
        rp = chunk.relative_path.replace("\\", "/")
        return rp.startswith(norm) or rp.startswith(f"/{norm}")

    return [c for c in chunks if under_scope(c)]


def filter_by_file_type(chunks: Iterable[SemanticChunk], file_type: str | None) -> list[SemanticChunk]:
    """Keep chunks whose relative path ends with the given extension."""
    chunks = list(chunks)
    if not file_type:
        return chunks
    ext = file_type if file_type.startswith(".") else f".{file_type}"
    return [c for c in chunks if c.relative_path.endswith(ext)]


def relative_path_for(chunk: SemanticChunk, workspace_root: Path | None) -> str:
    """Workspace-relative, forward-slash path for a chunk."""
    if workspace_root is not None and chunk.path:
        try:
            rel = Path(chunk.path).relative_to(workspace_root)
            if str(rel) not in ("", "."):
                return rel.as_posix()
        except ValueError:
            pass
    return chunk.relative_path.replace("\\", "/")


# ─────────────────────────────────────────────────────────────────────────────
# Fusion
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class FusionResult:
    matches: list[CodeMatch] = field(default_factory=list)
    semantic_count: int = 0
    structural_count: int = 0


def dedupe(matches: Iterable[CodeMatch]) -> list[CodeMatch]:
    """Drop later matches sharing (relative_path, line_start, match_type)."""
    seen: set[tuple[str, int, MatchType]] = set()
    unique = []
    for m in matches:
        if m.key in seen:
            continue
        seen.add(m.key)
        unique.append(m)
    return unique


def rank(matches: Iterable[CodeMatch], limit: int) -> list[CodeMatch]:
    """Dedupe, stable-sort by descending score, then truncate."""
    ordered = sorted(dedupe(matches), key=lambda m: m.score, reverse=True)
    return ordered[:limit]


class ResultFusionEngine:
    """Combines semantic and structural candidates for one query."""

    def __init__(
        self,
        matcher: StructuralMatcher | None = None,
        boost: float = STRUCTURAL_BOOST,
        structural_span: int = STRUCTURAL_SPAN,
    ):
        self.matcher = matcher or StructuralMatcher()
        self.boost = boost
        self.structural_span = structural_span

    def semantic_match(self, chunk: SemanticChunk, rel_path: str) -> CodeMatch:
        return CodeMatch(
            file=chunk.path,
            relative_path=rel_path,
            line_start=chunk.line_start,
            line_end=chunk.line_end,
            code=chunk.chunk_text,
            language=chunk.display_language,
            score=chunk.score,
            match_type=MatchType.SEMANTIC,
        )

    def structural_matches(
        self,
        chunk: SemanticChunk,
        rel_path: str,
        query: Query,
        terms: frozenset[str],
        cancel: CancelSignal | None = None,
    ) -> list[CodeMatch]:
        matches = []
        for sym in self.matcher.match(chunk.chunk_text, query.focus, terms, cancel):
            line_start = chunk.line_start + sym.line - 1
            matches.append(CodeMatch(
                file=chunk.path,
                relative_path=rel_path,
                line_start=line_start,
                line_end=line_start + self.structural_span,
                code=chunk.chunk_text,
                language=chunk.display_language,
                score=chunk.score * self.boost,
                match_type=MatchType.STRUCTURAL,
                symbol_name=sym.name,
                symbol_kind=sym.kind,
            ))
        return matches

    def collect(
        self,
        chunks: list[SemanticChunk],
        query: Query,
        terms: frozenset[str],
        workspace_root: Path | None = None,
        cancel: CancelSignal | None = None,
    ) -> tuple[list[CodeMatch], int]:
        """Unranked candidates from scope-filtered chunks, in encounter order.

        Structural matching runs once per distinct relative path; the first
        chunk seen for a file is the one scanned. Returns the candidates and
        how many of them are structural.
        """
        candidates: list[CodeMatch] = []
        scanned: set[str] = set()
        structural_count = 0

        for chunk in chunks[: query.limit * CANDIDATE_FACTOR]:
            check(cancel)
            rel_path = relative_path_for(chunk, workspace_root)
            candidates.append(self.semantic_match(chunk, rel_path))

            if rel_path in scanned:
                continue
            scanned.add(rel_path)

            structural = self.structural_matches(chunk, rel_path, query, terms, cancel)
            structural_count += len(structural)
            candidates.extend(structural)

        return candidates, structural_count

    def fuse(
        self,
        chunks: list[SemanticChunk],
        query: Query,
        terms: frozenset[str],
        workspace_root: Path | None = None,
        cancel: CancelSignal | None = None,
    ) -> FusionResult:
        """Collect candidates, then dedupe, sort and truncate to `query.limit`."""
        candidates, structural_count = self.collect(chunks, query, terms, workspace_root, cancel)
        ranked = rank(candidates, query.limit)
        logger.debug(
            "Fused %d candidates (%d structural) into %d matches",
            len(candidates), structural_count, len(ranked),
        )
        return FusionResult(
            matches=ranked,
            semantic_count=len(chunks),
            structural_count=structural_count,
        )
