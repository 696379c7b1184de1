"""
Structural matcher.

Applies the pattern table to a chunk of code and keeps only the symbols
whose surrounding lines mention at least one query term.
"""

from __future__ import annotations

import bisect
import logging
from collections.abc import Mapping

from codequery.cancellation import CancelSignal, check
from codequery.models import StructuralCandidate
from codequery.patterns import CodePattern, FocusCategory, patterns_for

logger = logging.getLogger("codequery.structural")

WINDOW_BEFORE = 5
WINDOW_AFTER = 10


def _line_offsets(text: str) -> list[int]:
    """Offsets of the first character of every line after the first."""
    return [i + 1 for i, ch in enumerate(text) if ch == "\n"]


def line_of_offset(offsets: list[int], position: int) -> int:
    """1-indexed line number containing `position`."""
    return bisect.bisect_right(offsets, position) + 1


class StructuralMatcher:
    """Regex-based symbol extraction gated by windowed term relevance."""

    def __init__(
        self,
        window_before: int = WINDOW_BEFORE,
        window_after: int = WINDOW_AFTER,
        extra_patterns: Mapping[FocusCategory, tuple[CodePattern, ...]] | None = None,
    ):
        self.window_before = window_before
        self.window_after = window_after
        self.extra_patterns = extra_patterns or {}

    def context_window(self, lines: list[str], line: int) -> str:
        """Lowercased text from `window_before` lines above `line` to `window_after` below."""
        idx = line - 1
        start = max(0, idx - self.window_before)
        end = min(len(lines), idx + self.window_after + 1)
        return "\n".join(lines[start:end]).lower()

    def scan(
        self,
        code: str,
        focus: FocusCategory,
        terms: frozenset[str],
        cancel: CancelSignal | None = None,
    ) -> list[StructuralCandidate]:
        """Every declaration found in `code`, each flagged for relevance."""
        if not code:
            return []

        lines = code.split("\n")
        offsets = _line_offsets(code)
        candidates: list[StructuralCandidate] = []

        for pattern in patterns_for(focus, self.extra_patterns):
            check(cancel)
            for m in pattern.regex.finditer(code):
                name = (m.group(1) if m.re.groups and m.group(1) else m.group(0)).strip()
                if not name:
                    continue
                line = line_of_offset(offsets, m.start())
                window = self.context_window(lines, line)
                relevant = any(term in window for term in terms)
                candidates.append(
                    StructuralCandidate(name=name, kind=pattern.kind, line=line, relevant=relevant)
                )

        return candidates

    def match(
        self,
        code: str,
        focus: FocusCategory,
        terms: frozenset[str],
        cancel: CancelSignal | None = None,
    ) -> list[StructuralCandidate]:
        """Relevant declarations only. Order is unspecified."""
        candidates = [c for c in self.scan(code, focus, terms, cancel) if c.relevant]
        logger.debug("Structural %s: %d relevant symbols", focus.value, len(candidates))
        return candidates
