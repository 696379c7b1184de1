"""Plain-text rendering of query results and errors."""

from __future__ import annotations

from codequery.errors import CodeQueryError
from codequery.models import EnrichedMatch, MatchType, Query, SemanticChunk, SemanticQuery
from codequery.patterns import FocusCategory


def _banner(title: str) -> list[str]:
    rule = "═" * max(len(title) + 4, 20)
    return [f"╔{rule}╗", f"║ {title.ljust(len(rule) - 2)} ║", f"╚{rule}╝"]


def format_error(error: CodeQueryError | str, title: str | None = None, suggestion: str | None = None) -> str:
    if isinstance(error, CodeQueryError):
        title = title or error.title
        message = error.message
        suggestion = suggestion if suggestion is not None else error.suggestion
    else:
        message = error
    parts = _banner(title or "Error")
    parts += ["", message]
    if suggestion:
        parts += ["", f"💡 {suggestion}"]
    return "\n".join(parts)


def format_success(title: str, message: str, details: str = "", duration_ms: int | None = None) -> str:
    parts = [f"✓ {title}", "", message]
    if details:
        parts += ["", details]
    if duration_ms is not None:
        parts += ["", f"Completed in {duration_ms}ms"]
    return "\n".join(parts)


def format_cancelled(tool_name: str) -> str:
    return f"⊘ {tool_name} cancelled by user"


def line_range(line_start: int, line_end: int) -> str:
    return f"L{line_start}-{line_end}" if line_end > line_start else f"L{line_start}"


def _preview(code: str, max_lines: int) -> list[str]:
    code = code.strip()
    if not code:
        return []
    code_lines = code.split("\n")
    out = [f"    {line}" for line in code_lines[:max_lines]]
    if len(code_lines) > max_lines:
        out.append("    ...")
    return out


# ─────────────────────────────────────────────────────────────────────────────
# Hybrid code query
# ─────────────────────────────────────────────────────────────────────────────


def format_no_results(query: Query, elapsed_ms: int) -> str:
    details = []
    if query.scope:
        details.append(f"Scope: {query.scope}")
    if query.focus is not FocusCategory.ALL:
        details.append(f"Focus: {query.focus.value}")
    details += [
        "",
        "Try broadening your query or removing scope/focus filters.",
        "For exact text matches, use grep instead.",
    ]
    return format_success(
        "Code Query",
        f'No results found for: "{query.text}"',
        "\n".join(details).strip("\n"),
        elapsed_ms,
    )


def format_code_query(query: Query, results: list[EnrichedMatch], elapsed_ms: int, preview_lines: int = 20) -> str:
    if not results:
        return format_no_results(query, elapsed_ms)

    lines = [f'Code query: "{query.text}"']
    if query.scope:
        lines.append(f"Scope: {query.scope}")
    if query.focus is not FocusCategory.ALL:
        lines.append(f"Focus: {query.focus.value}")
    lines.append(f"{len(results)} results in {elapsed_ms}ms")
    lines.append("")

    for i, r in enumerate(results, 1):
        tag = ""
        if r.match_type is MatchType.STRUCTURAL:
            kind = r.symbol_kind.value if r.symbol_kind else "symbol"
            tag = f" [{kind}: {r.symbol_name}]"
        lines.append(
            f"[{i}] {r.relative_path}:{line_range(r.line_start, r.line_end)}  ({r.score * 100:.1f}%{tag})"
        )
        lines += _preview(r.display_code, preview_lines)
        lines.append("")

    return "\n".join(lines)


# ─────────────────────────────────────────────────────────────────────────────
# Plain semantic search
# ─────────────────────────────────────────────────────────────────────────────


def format_semantic_search(
    query: SemanticQuery,
    results: list[SemanticChunk],
    query_time_ms: int,
    vector_count: int,
    preview_lines: int = 15,
) -> str:
    if not results:
        details = [f"Score threshold: {query.min_score * 100:.0f}%"]
        if query.file_type:
            details.append(f"File type filter: .{query.file_type.lstrip('.')}")
        if query.path_prefix:
            details.append(f"Path filter: {query.path_prefix}")
        details += [
            f"Vector index: {vector_count} chunks indexed",
            "",
            "Try broadening your query, lowering min_score, or using grep for exact text matches.",
        ]
        return format_success(
            "Semantic Search",
            f'No results found for: "{query.text}"',
            "\n".join(details),
            query_time_ms,
        )

    lines = [f'Semantic search: "{query.text}"', f"{len(results)} results in {query_time_ms}ms", ""]
    for i, r in enumerate(results, 1):
        lang = f", {r.language}" if r.language else ""
        lines.append(
            f"[{i}] {r.relative_path}:{line_range(r.line_start, r.line_end)}  ({r.score * 100:.1f}% match{lang})"
        )
        lines += _preview(r.chunk_text, preview_lines)
        lines.append("")
    return "\n".join(lines)
