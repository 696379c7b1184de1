"""
Context enrichment.

Widens each match with the lines around it, read from the workspace on
disk. Any failure to read falls back to the chunk text the index returned.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from codequery.cancellation import CancelSignal, check
from codequery.models import CodeMatch, EnrichedMatch

logger = logging.getLogger("codequery.enrich")

MAX_CONTEXT_FILE_SIZE = 2 * 1024 * 1024  # 2 MB


def read_window(path: Path, line_start: int, line_end: int, context_lines: int, max_size: int) -> str | None:
    """Lines [line_start - context_lines, line_end + context_lines] of `path`.

    Returns None if the file is missing, unreadable, larger than `max_size`,
    or now too short to reach the window.
    """
    try:
        if path.stat().st_size > max_size:
            logger.debug("Skipping context for %s: larger than %d bytes", path, max_size)
            return None
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.debug("Falling back to chunk text for %s: %s", path, e)
        return None

    lines = content.split("\n")
    start = max(0, line_start - 1 - context_lines)
    end = min(len(lines), line_end + context_lines)
    if start >= end:
        logger.debug("Falling back to chunk text for %s: L%d is past end of file", path, line_start)
        return None
    return "\n".join(lines[start:end])


class ContextEnricher:
    """Reads surrounding source lines for a ranked match list."""

    def __init__(self, max_file_size: int = MAX_CONTEXT_FILE_SIZE):
        self.max_file_size = max_file_size

    def source_path(self, match: CodeMatch, workspace_root: Path | None) -> Path:
        if workspace_root is None:
            return Path(match.file)
        return workspace_root / match.relative_path.lstrip("/")

    async def enrich(
        self,
        matches: list[CodeMatch],
        workspace_root: Path | None,
        context_lines: int,
        cancel: CancelSignal | None = None,
    ) -> list[EnrichedMatch]:
        """Enrich every match, in order.

        Raises QueryCancelled if `cancel` fires between files; no partial
        list is ever returned.
        """
        loop = asyncio.get_running_loop()
        enriched: list[EnrichedMatch] = []

        for match in matches:
            check(cancel)
            context_code = None
            if context_lines > 0:
                path = self.source_path(match, workspace_root)
                context_code = await loop.run_in_executor(
                    None,
                    lambda p=path, m=match: read_window(
                        p, m.line_start, m.line_end, context_lines, self.max_file_size
                    ),
                )
            enriched.append(EnrichedMatch.from_match(match, context_code))

        check(cancel)
        return enriched
