"""Tests for the pattern table and the structural matcher."""

import logging

import pytest

from codequery.cancellation import CancelSignal
from codequery.errors import QueryCancelled
from codequery.patterns import (
    PATTERN_TABLE,
    FocusCategory,
    compile_extra_patterns,
    patterns_for,
)
from codequery.structural import (
    WINDOW_AFTER,
    WINDOW_BEFORE,
    StructuralMatcher,
    _line_offsets,
    line_of_offset,
)


# ─────────────────────────────────────────────────────────────────────────────
# FocusCategory
# ─────────────────────────────────────────────────────────────────────────────


def test_focus_parse_case_insensitive():
    assert FocusCategory.parse("Functions") is FocusCategory.FUNCTIONS
    assert FocusCategory.parse(" tests ") is FocusCategory.TESTS


def test_focus_parse_defaults_to_all():
    assert FocusCategory.parse(None) is FocusCategory.ALL
    assert FocusCategory.parse("") is FocusCategory.ALL


def test_focus_parse_unknown_raises():
    with pytest.raises(ValueError, match="Unknown focus"):
        FocusCategory.parse("methods")


def test_symbol_kinds_excludes_all():
    kinds = FocusCategory.symbol_kinds()
    assert FocusCategory.ALL not in kinds
    assert len(kinds) == 6


# ─────────────────────────────────────────────────────────────────────────────
# Pattern table
# ─────────────────────────────────────────────────────────────────────────────


def test_every_category_has_patterns():
    for kind in FocusCategory.symbol_kinds():
        assert PATTERN_TABLE[kind], f"No patterns for {kind.value}"


def test_patterns_for_all_is_union():
    union = patterns_for(FocusCategory.ALL)
    expected = sum(len(PATTERN_TABLE[k]) for k in FocusCategory.symbol_kinds())
    assert len(union) == expected
    assert {p.kind for p in union} == set(FocusCategory.symbol_kinds())


def test_patterns_for_single_category():
    assert all(p.kind is FocusCategory.IMPORTS for p in patterns_for(FocusCategory.IMPORTS))


def test_compile_extra_patterns_skips_invalid(caplog):
    with caplog.at_level(logging.WARNING, logger="codequery.patterns"):
        extra = compile_extra_patterns({
            "functions": [r"proc\s+(\w+)", r"broken(("],
            "bogus": [r"x"],
            "all": [r"y"],
        })
    assert list(extra) == [FocusCategory.FUNCTIONS]
    assert len(extra[FocusCategory.FUNCTIONS]) == 1
    assert "broken((" in caplog.text
    assert "bogus" in caplog.text


def test_compile_extra_patterns_accepts_single_string():
    extra = compile_extra_patterns({"config": r"CONF_(\w+)"})
    assert extra[FocusCategory.CONFIG][0].regex.pattern == r"CONF_(\w+)"


def test_extra_patterns_appended_to_builtins():
    extra = compile_extra_patterns({"functions": [r"proc\s+(\w+)"]})
    selected = patterns_for(FocusCategory.FUNCTIONS, extra)
    assert len(selected) == len(PATTERN_TABLE[FocusCategory.FUNCTIONS]) + 1


# ─────────────────────────────────────────────────────────────────────────────
# Line arithmetic
# ─────────────────────────────────────────────────────────────────────────────


def test_line_of_offset():
    text = "one\ntwo\nthree"
    offsets = _line_offsets(text)
    assert line_of_offset(offsets, 0) == 1
    assert line_of_offset(offsets, text.index("two")) == 2
    assert line_of_offset(offsets, text.index("three")) == 3


# ─────────────────────────────────────────────────────────────────────────────
# Matcher
# ─────────────────────────────────────────────────────────────────────────────

PY_AUTH = """\
import os

def authenticate_user(name, password):
    return check(name, password)

def render_page(template):
    return template
"""


def test_relevant_function_found():
    matcher = StructuralMatcher()
    found = matcher.match(PY_AUTH, FocusCategory.FUNCTIONS, frozenset({"authenticate"}))
    names = {c.name for c in found}
    assert "authenticate_user" in names
    hit = next(c for c in found if c.name == "authenticate_user")
    assert hit.line == 3
    assert hit.kind is FocusCategory.FUNCTIONS


def test_irrelevant_symbols_filtered():
    """A symbol whose window mentions no query term is dropped."""
    code = "def alpha():\n    pass\n" + "\n" * 20 + "def beta():\n    return 'token'\n"
    matcher = StructuralMatcher()
    names = {c.name for c in matcher.match(code, FocusCategory.FUNCTIONS, frozenset({"token"}))}
    assert names == {"beta"}


def test_scan_flags_relevance():
    code = "def alpha():\n    pass\n" + "\n" * 20 + "def beta():\n    return 'token'\n"
    matcher = StructuralMatcher()
    scanned = {c.name: c.relevant for c in matcher.scan(code, FocusCategory.FUNCTIONS, frozenset({"token"}))}
    assert scanned == {"alpha": False, "beta": True}


def test_empty_terms_match_nothing():
    matcher = StructuralMatcher()
    assert matcher.match(PY_AUTH, FocusCategory.ALL, frozenset()) == []


def test_empty_code():
    assert StructuralMatcher().match("", FocusCategory.ALL, frozenset({"auth"})) == []


def test_window_bounds():
    """Terms exactly WINDOW_BEFORE lines above or WINDOW_AFTER lines below count; one further does not."""
    matcher = StructuralMatcher()
    decl = WINDOW_BEFORE + 1  # 1-indexed line of the declaration

    def code_with_term_at(term_line: int) -> str:
        lines = ["# filler"] * 40
        lines[decl - 1] = "def target():"
        lines[term_line - 1] = "# needle"
        return "\n".join(lines)

    terms = frozenset({"needle"})
    assert matcher.match(code_with_term_at(1), FocusCategory.FUNCTIONS, terms)
    assert matcher.match(code_with_term_at(decl + WINDOW_AFTER), FocusCategory.FUNCTIONS, terms)
    assert not matcher.match(code_with_term_at(decl + WINDOW_AFTER + 1), FocusCategory.FUNCTIONS, terms)


def test_window_before_exclusive_edge():
    matcher = StructuralMatcher()
    lines = ["# filler"] * 30
    lines[0] = "# needle"
    lines[WINDOW_BEFORE + 1] = "def target():"  # 7th line; needle is 6 lines above
    assert not matcher.match("\n".join(lines), FocusCategory.FUNCTIONS, frozenset({"needle"}))


def test_window_is_case_insensitive():
    code = "class TokenStore:\n    pass\n"
    found = StructuralMatcher().match(code, FocusCategory.CLASSES, frozenset({"tokenstore"}))
    assert [c.name for c in found] == ["TokenStore"]


def test_all_focus_keeps_each_pattern_kind():
    code = "from auth.backends import Session\n\nclass AuthSession:\n    def auth_check(self):\n        pass\n"
    found = StructuralMatcher().match(code, FocusCategory.ALL, frozenset({"auth"}))
    kinds = {(c.name, c.kind) for c in found}
    assert ("auth.backends", FocusCategory.IMPORTS) in kinds
    assert ("AuthSession", FocusCategory.CLASSES) in kinds
    assert ("auth_check", FocusCategory.FUNCTIONS) in kinds


def test_language_does_not_restrict_patterns():
    """A Rust pattern still fires on text that is not Rust."""
    code = "fn compute_hash(data) -> u64\n"
    found = StructuralMatcher().match(code, FocusCategory.FUNCTIONS, frozenset({"hash"}))
    assert "compute_hash" in {c.name for c in found}


def test_pattern_without_group_uses_full_match():
    code = "describe('session store', () => {\n  it('expires', () => {})\n})\n"
    found = StructuralMatcher().match(code, FocusCategory.TESTS, frozenset({"session"}))
    assert "describe(" in {c.name.replace(" ", "") for c in found}


def test_custom_window_sizes():
    matcher = StructuralMatcher(window_before=0, window_after=0)
    code = "# needle\ndef target():\n    pass\n"
    assert not matcher.match(code, FocusCategory.FUNCTIONS, frozenset({"needle"}))
    assert matcher.match(code, FocusCategory.FUNCTIONS, frozenset({"target"}))


def test_extra_patterns_used_by_matcher():
    extra = compile_extra_patterns({"functions": [r"proc\s+(\w+)"]})
    matcher = StructuralMatcher(extra_patterns=extra)
    found = matcher.match("proc fetch_rows\n", FocusCategory.FUNCTIONS, frozenset({"fetch_rows"}))
    assert [c.name for c in found] == ["fetch_rows"]


@pytest.mark.asyncio
async def test_cancelled_before_scan():
    signal = CancelSignal()
    signal.cancel()
    with pytest.raises(QueryCancelled):
        StructuralMatcher().match(PY_AUTH, FocusCategory.ALL, frozenset({"auth"}), signal)


def test_config_patterns_apply_to_every_language():
    config = PATTERN_TABLE[FocusCategory.CONFIG]
    assert all(p.languages == () for p in config)
    assert any(p.regex.search("export const appConfig = {") for p in config)
