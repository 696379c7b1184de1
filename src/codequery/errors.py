"""
Error taxonomy for code queries.

Each error carries a short title and a suggestion so the formatter can
render it without knowing where it was raised.
"""

GENERIC_SUGGESTION = "The semantic search engine may be unavailable. Use grep for text-based search."


class CodeQueryError(Exception):
    """Base class for every error the query pipeline reports to callers."""

    title = "Code Query Failed"
    suggestion = GENERIC_SUGGESTION

    def __init__(self, message: str, *, suggestion: str | None = None):
        super().__init__(message)
        self.message = message
        if suggestion is not None:
            self.suggestion = suggestion


class InvalidInput(CodeQueryError):
    title = "Invalid Input"
    suggestion = "Ask a natural language question about the codebase."


class BackendUnavailable(CodeQueryError):
    title = "Backend Not Available"
    suggestion = "The search backend should start automatically. Try again in a few seconds."


class WorkspaceNotIndexed(CodeQueryError):
    title = "Workspace Not Indexed"
    suggestion = "The workspace may still be initializing. Wait for indexing to complete."


class IndexNotReady(CodeQueryError):
    """Vector index absent; indexing has been triggered."""

    title = "Vector Index Not Ready"
    suggestion = "Wait for vector indexing to complete, then retry. Use grep for text-based search in the meantime."


class IndexBuilding(CodeQueryError):
    title = "Vector Index Building"
    suggestion = "Wait for indexing to finish, then retry. Use grep for text-based search in the meantime."


class SearchTimeout(CodeQueryError):
    title = "Search Timed Out"
    suggestion = "The backend may be busy embedding or rebuilding. Try again in a moment, or narrow the query."


class QueryCancelled(CodeQueryError):
    """Caller-initiated cancellation. Not a failure."""

    title = "Cancelled"
    suggestion = ""
