"""
Structural pattern table.

Regex approximations of symbol declarations, grouped by focus category.
The first capture group of each expression, when present, is the symbol
name. Supporting another language means appending entries here (or under
`[patterns]` in config.toml), never touching the matcher.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger("codequery.patterns")


class FocusCategory(str, Enum):
    FUNCTIONS = "functions"
    CLASSES = "classes"
    IMPORTS = "imports"
    TYPES = "types"
    TESTS = "tests"
    CONFIG = "config"
    ALL = "all"

    @classmethod
    def parse(cls, value: str | FocusCategory | None) -> FocusCategory:
        """Parse a focus name. Raises ValueError for unknown names."""
        if value is None or value == "":
            return cls.ALL
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            names = ", ".join(c.value for c in cls)
            raise ValueError(f"Unknown focus {value!r}; expected one of: {names}") from None

    @classmethod
    def symbol_kinds(cls) -> tuple[FocusCategory, ...]:
        """Every category except ALL, in table order."""
        return tuple(c for c in cls if c is not cls.ALL)


@dataclass(frozen=True)
class CodePattern:
    """A compiled declaration pattern and the languages it targets."""

    kind: FocusCategory
    regex: re.Pattern[str]
    languages: tuple[str, ...] = ()


_C_FAMILY = ("typescript", "javascript")


def _p(kind: FocusCategory, expr: str, *languages: str) -> CodePattern:
    return CodePattern(kind=kind, regex=re.compile(expr), languages=tuple(languages))


_F = FocusCategory

# ─────────────────────────────────────────────────────────────────────────────
# Built-in table
# ─────────────────────────────────────────────────────────────────────────────

PATTERN_TABLE: Mapping[FocusCategory, tuple[CodePattern, ...]] = {
    _F.FUNCTIONS: (
        _p(_F.FUNCTIONS, r"(?:export\s+)?(?:async\s+)?function\s+(\w+)", *_C_FAMILY),
        _p(_F.FUNCTIONS, r"(?:export\s+)?const\s+(\w+)\s*=\s*(?:async\s+)?\(", *_C_FAMILY),
        _p(_F.FUNCTIONS, r"(?:export\s+)?const\s+(\w+)\s*=\s*(?:async\s+)?(?:\([^)]*\))?\s*=>", *_C_FAMILY),
        _p(_F.FUNCTIONS, r"(\w+)\s*\([^)]*\)\s*(?::\s*\w[^{]*)?\{", "typescript", "javascript", "java", "c", "cpp"),
        _p(_F.FUNCTIONS, r"def\s+(\w+)\s*\(", "python"),
        _p(_F.FUNCTIONS, r"fn\s+(\w+)\s*[<(]", "rust"),
        _p(_F.FUNCTIONS, r"func\s+(\w+)\s*\(", "go"),
    ),
    _F.CLASSES: (
        _p(_F.CLASSES, r"(?:export\s+)?(?:abstract\s+)?class\s+(\w+)", "typescript", "javascript", "python", "java"),
        _p(_F.CLASSES, r"(?:export\s+)?interface\s+(\w+)", "typescript", "java"),
        _p(_F.CLASSES, r"(?:export\s+)?type\s+(\w+)\s*=", "typescript"),
        _p(_F.CLASSES, r"(?:export\s+)?enum\s+(\w+)", "typescript", "rust", "java"),
        _p(_F.CLASSES, r"struct\s+(\w+)", "rust", "go", "c", "cpp"),
        _p(_F.CLASSES, r"trait\s+(\w+)", "rust"),
        _p(_F.CLASSES, r"impl\s+(?:<[^>]+>\s+)?(\w+)", "rust"),
        _p(_F.CLASSES, r"type\s+(\w+)\s+(?:struct|interface)\b", "go"),
    ),
    _F.IMPORTS: (
        _p(_F.IMPORTS, r"import\s+.*?from\s+['\"]([^'\"]+)['\"]", *_C_FAMILY),
        _p(_F.IMPORTS, r"import\s+['\"]([^'\"]+)['\"]", *_C_FAMILY, "go"),
        _p(_F.IMPORTS, r"require\s*\(\s*['\"]([^'\"]+)['\"]\s*\)", "javascript"),
        _p(_F.IMPORTS, r"use\s+([\w:]+)", "rust"),
        _p(_F.IMPORTS, r"from\s+(\S+)\s+import", "python"),
        _p(_F.IMPORTS, r"(?m)^import\s+([\w.]+)\s*$", "python"),
    ),
    _F.TYPES: (
        _p(_F.TYPES, r"(?:export\s+)?(?:type|interface)\s+(\w+)", "typescript"),
        _p(_F.TYPES, r"(?:export\s+)?enum\s+(\w+)", "typescript", "rust", "java"),
        _p(_F.TYPES, r"type\s+(\w+)\s+=", "typescript", "rust"),
        _p(_F.TYPES, r"struct\s+(\w+)", "rust", "go", "c", "cpp"),
        _p(_F.TYPES, r"trait\s+(\w+)", "rust"),
    ),
    _F.TESTS: (
        _p(_F.TESTS, r"(?:describe|it|test|expect)\s*\(", *_C_FAMILY),
        _p(_F.TESTS, r"(?:beforeEach|afterEach|beforeAll|afterAll)\s*\(", *_C_FAMILY),
        _p(_F.TESTS, r"#\[(?:test|cfg\(test\))\]", "rust"),
        _p(_F.TESTS, r"def\s+test_\w+", "python"),
        _p(_F.TESTS, r"func\s+Test\w+", "go"),
    ),
    _F.CONFIG: (
        _p(_F.CONFIG, r"(?:export\s+)?(?:default|const)\s+\w*[Cc]onfig"),
        _p(_F.CONFIG, r"(?:export\s+)?(?:default|const)\s+\w*[Ss]ettings"),
        _p(_F.CONFIG, r"(?:export\s+)?(?:default|const)\s+\w*[Oo]ptions"),
    ),
}


# ─────────────────────────────────────────────────────────────────────────────
# Lookup & extension
# ─────────────────────────────────────────────────────────────────────────────


def compile_extra_patterns(
    raw: Mapping[str, Iterable[str]] | None,
) -> dict[FocusCategory, tuple[CodePattern, ...]]:
    """Compile user-supplied patterns from config.

    `raw` maps a category name to a list of regular expressions. Unknown
    categories and expressions that fail to compile are logged and skipped.
    """
    extra: dict[FocusCategory, tuple[CodePattern, ...]] = {}
    if not raw:
        return extra

    for name, exprs in raw.items():
        try:
            kind = FocusCategory.parse(name)
        except ValueError as e:
            logger.warning("Ignoring extra patterns: %s", e)
            continue
        if kind is FocusCategory.ALL:
            logger.warning("Ignoring extra patterns under 'all'; add them to a specific category")
            continue
        if isinstance(exprs, str):
            exprs = [exprs]

        compiled = []
        for expr in exprs:
            try:
                compiled.append(CodePattern(kind=kind, regex=re.compile(expr)))
            except (re.error, TypeError) as e:
                logger.warning("Skipping invalid %s pattern %r: %s", kind.value, expr, e)
        if compiled:
            extra[kind] = extra.get(kind, ()) + tuple(compiled)

    return extra


def patterns_for(
    focus: FocusCategory,
    extra: Mapping[FocusCategory, tuple[CodePattern, ...]] | None = None,
) -> list[CodePattern]:
    """Return the patterns applicable to a focus category.

    ALL yields the union of every category, each pattern keeping its own kind.
    """
    kinds = FocusCategory.symbol_kinds() if focus is FocusCategory.ALL else (focus,)
    selected: list[CodePattern] = []
    for kind in kinds:
        selected.extend(PATTERN_TABLE[kind])
        if extra:
            selected.extend(extra.get(kind, ()))
    return selected
