"""Tests for scope filtering, deduplication, and result fusion."""

from pathlib import Path

import pytest

from codequery.fusion import (
    STRUCTURAL_BOOST,
    ResultFusionEngine,
    dedupe,
    filter_by_file_type,
    filter_by_scope,
    normalize_path,
    rank,
    relative_path_for,
)
from codequery.models import CodeMatch, MatchType, Query, SemanticChunk
from codequery.patterns import FocusCategory
from codequery.tokenizer import tokenize_query


def chunk(rel: str, text: str = "", score: float = 0.5, line_start: int = 1, line_end: int = 10, **kw) -> SemanticChunk:
    return SemanticChunk(
        path=kw.pop("path", f"/ws/{rel}"),
        relative_path=rel,
        chunk_text=text,
        line_start=line_start,
        line_end=line_end,
        score=score,
        **kw,
    )


def match(rel: str, line: int, score: float, kind: MatchType = MatchType.SEMANTIC) -> CodeMatch:
    return CodeMatch(
        file=f"/ws/{rel}",
        relative_path=rel,
        line_start=line,
        line_end=line + 5,
        code="",
        language="python",
        score=score,
        match_type=kind,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Path filters
# ─────────────────────────────────────────────────────────────────────────────


def test_normalize_path():
    assert normalize_path("src\\auth\\") == "src/auth"
    assert normalize_path("./src/") == "src"


def test_scope_prefix():
    chunks = [chunk("src/auth/login.py"), chunk("lib/auth.py"), chunk("/src/db.py")]
    kept = filter_by_scope(chunks, "src/")
    assert [c.relative_path for c in kept] == ["src/auth/login.py", "/src/db.py"]


def test_scope_backslashes():
    chunks = [chunk("src\\auth\\login.py"), chunk("lib/auth.py")]
    assert len(filter_by_scope(chunks, "src\\auth")) == 1


def test_scope_empty_keeps_everything():
    chunks = [chunk("a.py"), chunk("b.py")]
    assert filter_by_scope(chunks, None) == chunks
    assert filter_by_scope(chunks, "") == chunks


def test_scope_glob():
    chunks = [chunk("src/auth/login.py"), chunk("src/auth/login.ts"), chunk("tests/test_login.py")]
    kept = filter_by_scope(chunks, "src/**/*.py")
    assert [c.relative_path for c in kept] == ["src/auth/login.py"]


def test_scope_filter_idempotent():
    chunks = [chunk("src/a.py"), chunk("lib/b.py"), chunk("src/c/d.py")]
    once = filter_by_scope(chunks, "src")
    assert filter_by_scope(once, "src") == once


def test_scope_trailing_slash_equivalent():
    chunks = [
        chunk("src/main/app.py"),
        chunk("src/main.py"),
        chunk("/src/main/util/io.py"),
        chunk("src/mainframe.py"),
        chunk("lib/src/main/x.py"),
    ]
    assert filter_by_scope(chunks, "src/main") == filter_by_scope(chunks, "src/main/")
    assert filter_by_scope(chunks, "./src/main/") == filter_by_scope(chunks, "src/main")


def test_file_type_filter():
    chunks = [chunk("a.py"), chunk("b.ts"), chunk("c.pyi")]
    assert [c.relative_path for c in filter_by_file_type(chunks, "py")] == ["a.py"]
    assert [c.relative_path for c in filter_by_file_type(chunks, ".ts")] == ["b.ts"]
    assert filter_by_file_type(chunks, None) == chunks


def test_relative_path_from_workspace_root():
    c = chunk("ignored.py", path="/ws/src/real.py")
    assert relative_path_for(c, Path("/ws")) == "src/real.py"


def test_relative_path_falls_back_outside_root():
    c = chunk("src\\other.py", path="/elsewhere/other.py")
    assert relative_path_for(c, Path("/ws")) == "src/other.py"


# ─────────────────────────────────────────────────────────────────────────────
# Dedupe & rank
# ─────────────────────────────────────────────────────────────────────────────


def test_dedupe_keeps_first_per_key():
    a = match("a.py", 1, 0.9)
    b = match("a.py", 1, 0.4)
    c = match("a.py", 1, 0.4, MatchType.STRUCTURAL)
    assert dedupe([a, b, c]) == [a, c]


def test_rank_sorted_and_truncated():
    ms = [match("a.py", i, s) for i, s in enumerate([0.3, 0.9, 0.5, 0.7], start=1)]
    ranked = rank(ms, 3)
    assert [m.score for m in ranked] == [0.9, 0.7, 0.5]


def test_rank_is_stable_for_ties():
    first = match("a.py", 1, 0.5)
    second = match("b.py", 1, 0.5)
    assert rank([first, second], 10) == [first, second]


def test_rank_keys_unique():
    ms = [match("a.py", 1, 0.5), match("a.py", 1, 0.6), match("b.py", 2, 0.1)]
    keys = [m.key for m in rank(ms, 10)]
    assert len(keys) == len(set(keys))


# ─────────────────────────────────────────────────────────────────────────────
# Fusion engine
# ─────────────────────────────────────────────────────────────────────────────

AUTH_CODE = "import os\n\ndef authenticate_user(name):\n    return name\n"


def test_structural_boost_and_span():
    engine = ResultFusionEngine()
    q = Query.create("authenticate user", focus="functions", limit=10)
    c = chunk("src/auth.py", AUTH_CODE, score=0.8, line_start=40, line_end=43)
    result = engine.fuse([c], q, tokenize_query(q.text), Path("/ws"))

    structural = [m for m in result.matches if m.match_type is MatchType.STRUCTURAL]
    assert len(structural) == 1
    s = structural[0]
    assert s.symbol_name == "authenticate_user"
    assert s.symbol_kind is FocusCategory.FUNCTIONS
    assert s.score == pytest.approx(0.8 * STRUCTURAL_BOOST)
    assert s.line_start == 42
    assert s.line_end == 48
    assert result.structural_count == 1
    assert result.semantic_count == 1


def test_structural_ranks_above_its_chunk():
    engine = ResultFusionEngine()
    q = Query.create("authenticate", focus="functions")
    result = engine.fuse([chunk("src/auth.py", AUTH_CODE, score=0.5)], q, tokenize_query(q.text))
    assert [m.match_type for m in result.matches] == [MatchType.STRUCTURAL, MatchType.SEMANTIC]


def test_structural_scan_once_per_file():
    """A second chunk of the same file yields a semantic match only."""
    engine = ResultFusionEngine()
    q = Query.create("authenticate", focus="functions")
    chunks = [
        chunk("src/auth.py", AUTH_CODE, score=0.7, line_start=1),
        chunk("src/auth.py", AUTH_CODE, score=0.6, line_start=100),
    ]
    result = engine.fuse(chunks, q, tokenize_query(q.text), Path("/ws"))
    assert result.structural_count == 1
    assert sum(1 for m in result.matches if m.match_type is MatchType.SEMANTIC) == 2


def test_fuse_respects_limit_and_order():
    engine = ResultFusionEngine()
    q = Query.create("authenticate", limit=3)
    chunks = [chunk(f"src/m{i}.py", AUTH_CODE, score=0.1 * i) for i in range(1, 6)]
    result = engine.fuse(chunks, q, tokenize_query(q.text), Path("/ws"))
    assert len(result.matches) == 3
    scores = [m.score for m in result.matches]
    assert scores == sorted(scores, reverse=True)


def test_candidate_cap():
    """At most 2 x limit chunks are considered."""
    engine = ResultFusionEngine()
    q = Query.create("nothing relevant", limit=2)
    chunks = [chunk(f"f{i}.py", "", score=1.0 - i * 0.01) for i in range(10)]
    candidates, structural = engine.collect(chunks, q, tokenize_query(q.text))
    assert len(candidates) == 4
    assert structural == 0


def test_no_terms_no_structural():
    engine = ResultFusionEngine()
    q = Query.create("how is it done")
    result = engine.fuse([chunk("src/auth.py", AUTH_CODE)], q, tokenize_query(q.text))
    assert result.structural_count == 0
    assert len(result.matches) == 1


def test_language_fallback_to_extension():
    engine = ResultFusionEngine()
    m = engine.semantic_match(chunk("src/thing.rs", "fn x() {}"), "src/thing.rs")
    assert m.language == "rs"
    m = engine.semantic_match(chunk("Makefile", "all:"), "Makefile")
    assert m.language == "unknown"


def test_custom_boost():
    engine = ResultFusionEngine(boost=2.0)
    q = Query.create("authenticate", focus="functions")
    result = engine.fuse([chunk("a.py", AUTH_CODE, score=0.3)], q, tokenize_query(q.text))
    assert result.matches[0].score == pytest.approx(0.6)
