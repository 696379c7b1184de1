"""
codequery - hybrid code retrieval over MCP

Fuses vector similarity search from an external search backend with
regex-based structural symbol matching, then widens each hit with the
surrounding lines read from the local workspace.
"""

import argparse
import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import replace
from pathlib import Path

from dotenv import load_dotenv
from fastmcp import Context, FastMCP
from fastmcp.tools.tool import ToolResult

# OpenTelemetry imports
from opentelemetry import trace, propagate
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from codequery.backend import HttpSearchBackend
from codequery.cancellation import CancelSignal
from codequery.config import Settings, config_path, load_settings
from codequery.engine import CodeQueryEngine, OutcomeStatus, QueryOutcome, Stage
from codequery.patterns import FocusCategory

load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger("codequery")

_STAGES = list(Stage)


# ─────────────────────────────────────────────────────────────────────────────
# Server & State
# ─────────────────────────────────────────────────────────────────────────────

settings: Settings = Settings()
_engine: CodeQueryEngine | None = None


def configure(new_settings: Settings) -> None:
    """Replace the active settings. The engine is rebuilt on next use."""
    global settings, _engine
    settings = new_settings
    _engine = None


def get_engine() -> CodeQueryEngine:
    global _engine
    if _engine is None:
        backend = HttpSearchBackend(
            base_url=settings.backend_url,
            timeout=settings.request_timeout,
            workspace_cache_ttl=settings.workspace_cache_ttl,
        )
        _engine = CodeQueryEngine(backend, settings)
        logger.info("Search backend: %s, workspace: %s", settings.backend_url, settings.workspace_root)
    return _engine


@asynccontextmanager
async def _codequery_lifespan(app):
    """FastMCP lifespan: close the backend HTTP client on shutdown."""
    try:
        yield
    finally:
        if _engine is not None and isinstance(_engine.backend, HttpSearchBackend):
            await _engine.backend.aclose()
            logger.info("Search backend client closed")


mcp = FastMCP("codequery", lifespan=_codequery_lifespan)


def _workspace(path: str | None) -> Path | None:
    return Path(os.path.expanduser(path)).resolve() if path else None


def _progress(ctx: Context | None):
    """Stage callback that forwards pipeline progress to the MCP client."""
    if ctx is None:
        return None

    async def on_stage(stage: Stage) -> None:
        await ctx.report_progress(progress=_STAGES.index(stage), total=len(_STAGES) - 1)

    return on_stage


async def _report(outcome: QueryOutcome, ctx: Context | None) -> ToolResult:
    """Turn a QueryOutcome into a ToolResult, echoing failures to the client log."""
    if ctx:
        if outcome.status is OutcomeStatus.ERROR:
            await ctx.error(outcome.error.message if outcome.error else outcome.text)
        elif outcome.status is OutcomeStatus.NOT_READY:
            await ctx.warning(outcome.error.message if outcome.error else outcome.text)

    meta = {"status": outcome.status.value, "stage": outcome.stage.value, **outcome.metadata}
    return ToolResult(
        content=outcome.text,
        structured_content={"result": outcome.text, **meta},
        meta=meta,
    )


async def _run_cancellable(coro_fn, ctx: Context | None) -> ToolResult:
    """Run one engine call with its own cancel signal.

    If the host cancels the tool call, the signal is set so any stage still
    running sees it, and the cancellation is re-raised.
    """
    cancel = CancelSignal()
    try:
        outcome = await coro_fn(cancel)
    except asyncio.CancelledError:
        cancel.cancel()
        raise
    return await _report(outcome, ctx)


# ─────────────────────────────────────────────────────────────────────────────
# MCP Resources
# ─────────────────────────────────────────────────────────────────────────────


@mcp.resource("codequery://info")
def get_server_info() -> str:
    """Server version, backend location, and query limits."""
    from codequery import __version__

    info = {
        "version": __version__,
        "backend_url": settings.backend_url,
        "workspace": str(settings.workspace_root),
        "config_file": str(config_path()),
        "focus_categories": [f.value for f in FocusCategory],
        "limits": {
            "max_query_limit": settings.max_query_limit,
            "max_semantic_limit": settings.max_semantic_limit,
            "min_score_floor": settings.min_score_floor,
            "request_timeout_seconds": settings.request_timeout,
            "max_context_file_size_mb": settings.max_context_file_size / (1024 * 1024),
        },
        "scoring": {
            "structural_boost": settings.structural_boost,
            "window_before": settings.window_before,
            "window_after": settings.window_after,
        },
    }
    return json.dumps(info, indent=2)


# ─────────────────────────────────────────────────────────────────────────────
# Tools
# ─────────────────────────────────────────────────────────────────────────────


@mcp.tool(timeout=60)
async def code_query(
    query: str,
    scope: str | None = None,
    focus: str = "all",
    limit: int = 10,
    context_lines: int = 3,
    workspace: str | None = None,
    ctx: Context | None = None,
) -> ToolResult:
    """Find code by meaning: semantic search fused with structural symbol matching.

    Args:
        query: Natural language question about the codebase.
        scope: Path prefix or glob (e.g. "src/", "**/*.py") to restrict results.
        focus: functions, classes, imports, types, tests, config, or all.
        limit: Maximum results (1-30).
        context_lines: Surrounding lines read from disk for each result.
        workspace: Workspace root; defaults to the configured workspace.

    Structural matches score 1.2x their chunk, so their percentage can exceed 100%.
    Use grep instead for exact text matches.
    """
    if ctx:
        await ctx.debug(f"code_query: focus={focus}, scope={scope}, limit={limit}")

    return await _run_cancellable(
        lambda cancel: get_engine().code_query(
            query,
            scope=scope,
            focus=focus,
            limit=limit,
            context_lines=context_lines,
            workspace=_workspace(workspace),
            cancel=cancel,
            on_stage=_progress(ctx),
        ),
        ctx,
    )


@mcp.tool(timeout=60)
async def semantic_search(
    query: str,
    limit: int = 10,
    min_score: float = 0.25,
    file_type: str | None = None,
    path_prefix: str | None = None,
    workspace: str | None = None,
    ctx: Context | None = None,
) -> ToolResult:
    """Vector similarity search over indexed code chunks.

    Args:
        query: Natural language description of the code to find.
        limit: Maximum results (1-50).
        min_score: Minimum similarity, 0.15-1.0.
        file_type: Extension filter, e.g. "py" or ".ts".
        path_prefix: Only chunks under this relative path.
        workspace: Workspace root; defaults to the configured workspace.
    """
    return await _run_cancellable(
        lambda cancel: get_engine().semantic_search(
            query,
            limit=limit,
            min_score=min_score,
            file_type=file_type,
            path_prefix=path_prefix,
            workspace=_workspace(workspace),
            cancel=cancel,
            on_stage=_progress(ctx),
        ),
        ctx,
    )


@mcp.tool()
async def index_status(workspace: str | None = None, ctx: Context | None = None) -> ToolResult:
    """Report vector index readiness and file counts for a workspace."""
    outcome = await get_engine().index_status(_workspace(workspace))
    return await _report(outcome, ctx)


@mcp.tool()
async def trigger_index(workspace: str | None = None, ctx: Context | None = None) -> ToolResult:
    """Ask the search backend to (re)build the vector index for a workspace."""
    if ctx:
        await ctx.info(f"Triggering index for {workspace or settings.workspace_root}")
    outcome = await get_engine().trigger_index(_workspace(workspace))
    return await _report(outcome, ctx)


# ─────────────────────────────────────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────────────────────────────────────


def setup_otel(endpoint: str | None = None) -> None:
    """Configure OTLP trace export.

    The endpoint comes from the argument, else CODEQUERY_OTEL_ENDPOINT, else
    OTEL_EXPORTER_OTLP_ENDPOINT. With none set, tracing stays a no-op.
    """
    if not endpoint:
        endpoint = os.getenv("CODEQUERY_OTEL_ENDPOINT") or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        return

    service_name = os.getenv("OTEL_SERVICE_NAME", "codequery")

    logger.info("Configuring OpenTelemetry OTLP export for '%s' to %s", service_name, endpoint)
    resource = Resource(attributes={"service.name": service_name})
    provider = TracerProvider(resource=resource)

    processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True))
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)

    propagate.set_global_textmap(TraceContextTextMapPropagator())


def main() -> None:
    parser = argparse.ArgumentParser(description="codequery - hybrid code retrieval over MCP")
    parser.add_argument("--otel-endpoint", help="OTLP gRPC endpoint (e.g., localhost:4317)")
    parser.add_argument("--backend-url", help="Search backend base URL (default: http://127.0.0.1:7777)")
    parser.add_argument("--workspace", help="Workspace root to query (default: current directory)")
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config.toml (default: $XDG_CONFIG_HOME/codequery/config.toml)",
    )
    args, _ = parser.parse_known_args()

    loaded = load_settings(args.config)
    overrides = {}
    if args.backend_url:
        overrides["backend_url"] = args.backend_url
    if args.workspace:
        overrides["workspace"] = args.workspace
    configure(replace(loaded, **overrides) if overrides else loaded)

    setup_otel(args.otel_endpoint)
    mcp.run()

if __name__ == "__main__":
    main()
