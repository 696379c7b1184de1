"""
Query engine.

Runs one retrieval request end to end:

    Validating -> ResolvingWorkspace -> CheckingIndexStatus
        -> (TriggeringIndex | QueryingSemantic) -> FilteringByScope
        -> StructuralMatching -> Fusing -> Enriching -> Formatting -> Done

Every stage checks the cancel signal before starting. Errors from any
stage end the run; they are converted into a QueryOutcome at the top level
and never raised to the caller (host-runtime task cancellation excepted).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

from opentelemetry import trace

from codequery.backend import SearchBackend
from codequery.cancellation import CancelSignal, check
from codequery.config import Settings
from codequery.enrich import ContextEnricher
from codequery.errors import (
    GENERIC_SUGGESTION,
    CodeQueryError,
    IndexBuilding,
    IndexNotReady,
    InvalidInput,
    QueryCancelled,
    SearchTimeout,
    WorkspaceNotIndexed,
)
from codequery.formatting import (
    format_cancelled,
    format_code_query,
    format_error,
    format_semantic_search,
)
from codequery.fusion import (
    CANDIDATE_FACTOR,
    ResultFusionEngine,
    filter_by_file_type,
    filter_by_scope,
    rank,
)
from codequery.models import IndexStatus, Query, SearchResponse, SemanticChunk, SemanticQuery
from codequery.structural import StructuralMatcher
from codequery.tokenizer import tokenize_query

logger = logging.getLogger("codequery.engine")

T = TypeVar("T")


class Stage(str, Enum):
    VALIDATING = "validating"
    RESOLVING_WORKSPACE = "resolving_workspace"
    CHECKING_INDEX_STATUS = "checking_index_status"
    TRIGGERING_INDEX = "triggering_index"
    QUERYING_SEMANTIC = "querying_semantic"
    FILTERING_BY_SCOPE = "filtering_by_scope"
    STRUCTURAL_MATCHING = "structural_matching"
    FUSING = "fusing"
    ENRICHING = "enriching"
    FORMATTING = "formatting"
    DONE = "done"


class OutcomeStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    NOT_READY = "not_ready"
    CANCELLED = "cancelled"


@dataclass
class QueryOutcome:
    """What a tool call reports: rendered text plus structured detail."""

    status: OutcomeStatus
    text: str
    stage: Stage
    results: list[Any] = field(default_factory=list)
    error: CodeQueryError | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status is OutcomeStatus.OK


StageCallback = Callable[[Stage], Awaitable[None]]


class _Run:
    """Per-request state: current stage, cancel signal, progress callback."""

    def __init__(self, cancel: CancelSignal | None, on_stage: StageCallback | None):
        self.cancel = cancel
        self.on_stage = on_stage
        self.stage = Stage.VALIDATING
        self.started = time.monotonic()

    async def enter(self, stage: Stage) -> None:
        check(self.cancel)
        self.stage = stage
        logger.debug("Stage: %s", stage.value)
        if self.on_stage is not None:
            await self.on_stage(stage)
        check(self.cancel)

    @property
    def elapsed_ms(self) -> int:
        return round((time.monotonic() - self.started) * 1000)


class CodeQueryEngine:
    """Hybrid code retrieval over a SearchBackend and the local workspace."""

    def __init__(self, backend: SearchBackend, settings: Settings | None = None):
        self.backend = backend
        self.settings = settings or Settings()
        matcher = StructuralMatcher(
            window_before=self.settings.window_before,
            window_after=self.settings.window_after,
            extra_patterns=self.settings.extra_patterns,
        )
        self.fusion = ResultFusionEngine(
            matcher,
            boost=self.settings.structural_boost,
            structural_span=self.settings.structural_span,
        )
        self.enricher = ContextEnricher(max_file_size=self.settings.max_context_file_size)
        self.tracer = trace.get_tracer("codequery")

    # ─────────────────────────────────────────────────────────────────────────
    # Backend calls
    # ─────────────────────────────────────────────────────────────────────────

    async def _bounded(self, coro: Coroutine[Any, Any, T], run: _Run) -> T:
        """Await a backend call under the request timeout and the cancel signal.

        Whichever of completion, timeout, or cancellation comes first wins;
        the losing call is cancelled.
        """
        task = asyncio.ensure_future(coro)
        waiters: set[asyncio.Future] = {task}
        cancel_waiter = None
        if run.cancel is not None:
            cancel_waiter = asyncio.ensure_future(run.cancel.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=self.settings.request_timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if not task.done():
                task.cancel()

        if task in done:
            return task.result()
        check(run.cancel)
        raise SearchTimeout(
            f"Search backend did not respond within {self.settings.request_timeout:g}s"
        )

    async def _resolve_workspace(self, run: _Run, workspace: Path) -> str:
        await run.enter(Stage.RESOLVING_WORKSPACE)
        workspace_id = await self._bounded(self.backend.resolve_workspace(str(workspace)), run)
        if not workspace_id:
            raise WorkspaceNotIndexed(
                f"This workspace ({workspace}) is not registered with the search backend."
            )
        return workspace_id

    async def _check_index(self, run: _Run, workspace_id: str) -> IndexStatus:
        """Fail fast unless the vector index is ready; trigger indexing if absent."""
        await run.enter(Stage.CHECKING_INDEX_STATUS)
        status = await self._bounded(self.backend.index_status(workspace_id), run)

        if not status.vector_ready and not status.is_vector_indexing:
            await run.enter(Stage.TRIGGERING_INDEX)
            await self._bounded(self.backend.trigger_index(workspace_id), run)
            raise IndexNotReady(
                "Vector embeddings are not yet built for this workspace. "
                f"Indexing has been triggered ({status.indexed_count} files discovered)."
            )
        if status.is_vector_indexing:
            raise IndexBuilding(
                f"Vector embeddings are currently being built ({status.vector_count} chunks embedded so far)."
            )
        return status

    # ─────────────────────────────────────────────────────────────────────────
    # Top-level conversion
    # ─────────────────────────────────────────────────────────────────────────

    async def _execute(
        self,
        tool_name: str,
        query_text: str,
        cancel: CancelSignal | None,
        on_stage: StageCallback | None,
        body: Callable[[_Run], Awaitable[QueryOutcome]],
    ) -> QueryOutcome:
        run = _Run(cancel, on_stage)
        with self.tracer.start_as_current_span(tool_name) as span:
            span.set_attribute("codequery.query", query_text)
            try:
                outcome = await body(run)
            except QueryCancelled as e:
                logger.info("%s cancelled during %s", tool_name, run.stage.value)
                outcome = QueryOutcome(OutcomeStatus.CANCELLED, format_cancelled(tool_name), run.stage, error=e)
            except (IndexNotReady, IndexBuilding) as e:
                logger.info("%s: %s", tool_name, e.message)
                outcome = QueryOutcome(OutcomeStatus.NOT_READY, format_error(e), run.stage, error=e)
            except CodeQueryError as e:
                logger.error("%s failed during %s: %s", tool_name, run.stage.value, e.message)
                outcome = QueryOutcome(OutcomeStatus.ERROR, format_error(e), run.stage, error=e)
            except Exception as e:
                logger.exception("%s failed unexpectedly during %s", tool_name, run.stage.value)
                error = CodeQueryError(str(e) or type(e).__name__, suggestion=GENERIC_SUGGESTION)
                outcome = QueryOutcome(OutcomeStatus.ERROR, format_error(error), run.stage, error=error)

            span.set_attribute("codequery.status", outcome.status.value)
            span.set_attribute("codequery.stage", outcome.stage.value)
            span.set_attribute("codequery.result_count", len(outcome.results))
            span.set_attribute("codequery.duration_ms", run.elapsed_ms)
        return outcome

    # ─────────────────────────────────────────────────────────────────────────
    # Hybrid code query
    # ─────────────────────────────────────────────────────────────────────────

    async def code_query(
        self,
        text: str,
        scope: str | None = None,
        focus: str = "all",
        limit: int | None = None,
        context_lines: int | None = None,
        workspace: Path | None = None,
        cancel: CancelSignal | None = None,
        on_stage: StageCallback | None = None,
    ) -> QueryOutcome:
        """Semantic search fused with structural symbol matching."""

        async def body(run: _Run) -> QueryOutcome:
            await run.enter(Stage.VALIDATING)
            if not text or not text.strip():
                raise InvalidInput(
                    "Query is required. Ask a natural language question about the codebase."
                )
            try:
                query = Query.create(
                    text,
                    scope=scope,
                    focus=focus,
                    limit=self.settings.default_limit if limit is None else limit,
                    context_lines=self.settings.default_context_lines if context_lines is None else context_lines,
                    max_limit=self.settings.max_query_limit,
                )
            except (TypeError, ValueError) as e:
                raise InvalidInput(str(e)) from e

            root = (workspace or self.settings.workspace_root).resolve()
            workspace_id = await self._resolve_workspace(run, root)
            await self._check_index(run, workspace_id)
            terms = tokenize_query(query.text)

            await run.enter(Stage.QUERYING_SEMANTIC)
            response = await self._hybrid_search(run, workspace_id, query)

            await run.enter(Stage.FILTERING_BY_SCOPE)
            chunks = filter_by_scope(response.chunks, query.scope)

            await run.enter(Stage.STRUCTURAL_MATCHING)
            candidates, structural_count = self.fusion.collect(chunks, query, terms, root, run.cancel)

            await run.enter(Stage.FUSING)
            ranked = rank(candidates, query.limit)

            await run.enter(Stage.ENRICHING)
            enriched = await self.enricher.enrich(ranked, root, query.context_lines, run.cancel)

            await run.enter(Stage.FORMATTING)
            elapsed_ms = run.elapsed_ms
            text_out = format_code_query(query, enriched, elapsed_ms, self.settings.preview_lines)
            metadata = {
                "resultCount": len(enriched),
                "queryTimeMs": elapsed_ms,
                "semanticResults": len(chunks),
                "structuralMatches": structural_count,
                "topScore": enriched[0].score if enriched else None,
            }
            logger.info(
                "Code query completed: query=%r focus=%s results=%d elapsed=%dms",
                query.text, query.focus.value, len(enriched), elapsed_ms,
            )

            run.stage = Stage.DONE
            return QueryOutcome(OutcomeStatus.OK, text_out, Stage.DONE, results=enriched, metadata=metadata)

        return await self._execute("code_query", text, cancel, on_stage, body)

    async def _hybrid_search(self, run: _Run, workspace_id: str, query: Query) -> SearchResponse:
        """Semantic search for the hybrid query.

        Backend failures other than timeout and cancellation degrade to an
        empty result set.
        """
        try:
            return await self._bounded(
                self.backend.search(workspace_id, query.text, query.limit * CANDIDATE_FACTOR), run
            )
        except (SearchTimeout, QueryCancelled):
            raise
        except CodeQueryError as e:
            logger.warning("Semantic search failed, continuing with no results: %s", e.message)
            return SearchResponse()

    # ─────────────────────────────────────────────────────────────────────────
    # Plain semantic search
    # ─────────────────────────────────────────────────────────────────────────

    async def semantic_search(
        self,
        text: str,
        limit: int | None = None,
        min_score: float | None = None,
        file_type: str | None = None,
        path_prefix: str | None = None,
        workspace: Path | None = None,
        cancel: CancelSignal | None = None,
        on_stage: StageCallback | None = None,
    ) -> QueryOutcome:
        """Vector similarity search with score, extension and path filters."""

        async def body(run: _Run) -> QueryOutcome:
            await run.enter(Stage.VALIDATING)
            if not text or not text.strip():
                raise InvalidInput(
                    "Query is required. Provide a natural language description of the code you want to find."
                )
            try:
                query = SemanticQuery.create(
                    text,
                    limit=self.settings.default_limit if limit is None else limit,
                    min_score=self.settings.default_min_score if min_score is None else min_score,
                    file_type=file_type,
                    path_prefix=path_prefix,
                    max_limit=self.settings.max_semantic_limit,
                    min_score_floor=self.settings.min_score_floor,
                )
            except (TypeError, ValueError) as e:
                raise InvalidInput(str(e)) from e

            root = (workspace or self.settings.workspace_root).resolve()
            workspace_id = await self._resolve_workspace(run, root)
            status = await self._check_index(run, workspace_id)

            await run.enter(Stage.QUERYING_SEMANTIC)
            response = await self._bounded(self.backend.search(workspace_id, query.text, query.limit), run)

            await run.enter(Stage.FILTERING_BY_SCOPE)
            results: list[SemanticChunk] = [c for c in response.chunks if c.score >= query.min_score]
            results = filter_by_file_type(results, query.file_type)
            results = filter_by_scope(results, query.path_prefix)

            await run.enter(Stage.FORMATTING)
            text_out = format_semantic_search(
                query, results, response.query_time_ms, status.vector_count,
                self.settings.semantic_preview_lines,
            )
            logger.info(
                "Semantic search completed: query=%r results=%d backend=%dms",
                query.text, len(results), response.query_time_ms,
            )

            run.stage = Stage.DONE
            return QueryOutcome(
                OutcomeStatus.OK,
                text_out,
                Stage.DONE,
                results=results,
                metadata={
                    "resultCount": len(results),
                    "queryTimeMs": response.query_time_ms,
                    "topScore": results[0].score if results else None,
                    "vectorCount": status.vector_count,
                },
            )

        return await self._execute("semantic_search", text, cancel, on_stage, body)

    # ─────────────────────────────────────────────────────────────────────────
    # Index management
    # ─────────────────────────────────────────────────────────────────────────

    async def index_status(self, workspace: Path | None = None) -> QueryOutcome:
        async def body(run: _Run) -> QueryOutcome:
            root = (workspace or self.settings.workspace_root).resolve()
            workspace_id = await self._resolve_workspace(run, root)
            await run.enter(Stage.CHECKING_INDEX_STATUS)
            status = await self._bounded(self.backend.index_status(workspace_id), run)
            state = "ready" if status.vector_ready else "building" if status.is_vector_indexing else "not built"
            lines = [
                f"Workspace: {root} ({workspace_id})",
                f"Vector index: {state}, {status.vector_count} chunks",
                f"Files indexed: {status.indexed_count}/{status.total_count}",
                f"Embedding model ready: {'yes' if status.embedding_model_ready else 'no'}",
            ]
            run.stage = Stage.DONE
            return QueryOutcome(
                OutcomeStatus.OK, "\n".join(lines), Stage.DONE,
                metadata={"workspaceId": workspace_id, **asdict(status)},
            )

        return await self._execute("index_status", "", None, None, body)

    async def trigger_index(self, workspace: Path | None = None) -> QueryOutcome:
        async def body(run: _Run) -> QueryOutcome:
            root = (workspace or self.settings.workspace_root).resolve()
            workspace_id = await self._resolve_workspace(run, root)
            await run.enter(Stage.TRIGGERING_INDEX)
            result = await self._bounded(self.backend.trigger_index(workspace_id), run)
            if result == "already_indexing":
                message = f"Indexing already in progress for {root}."
            else:
                message = f"Indexing started for {root}."
            run.stage = Stage.DONE
            return QueryOutcome(
                OutcomeStatus.OK, message, Stage.DONE,
                metadata={"workspaceId": workspace_id, "status": result},
            )

        return await self._execute("trigger_index", "", None, None, body)


__all__ = [
    "CodeQueryEngine",
    "OutcomeStatus",
    "QueryOutcome",
    "Stage",
]
