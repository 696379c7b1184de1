"""Shared fixtures: an in-memory SearchBackend and a small workspace on disk."""

import asyncio

import pytest

from codequery.backend import normalize_workspace_path
from codequery.models import IndexStatus, SearchResponse, SemanticChunk

READY = IndexStatus(indexed=True, vector_ready=True, embedding_model_ready=True, indexed_count=3, total_count=3, vector_count=9)

AUTH_PY = """\
import hashlib

def hash_password(password):
    return hashlib.sha256(password.encode()).hexdigest()

def authenticate_user(name, password):
    user = lookup(name)
    return user and user.hash == hash_password(password)
"""

DB_PY = """\
class ConnectionPool:
    def acquire(self):
        return self.free.pop()
"""


class FakeBackend:
    """Deterministic SearchBackend double that records every call."""

    def __init__(self, workspaces=None, status=READY, chunks=(), search_error=None, delay=0.0):
        self.workspaces = {normalize_workspace_path(p): i for p, i in (workspaces or {}).items()}
        self.status = status
        self.chunks = list(chunks)
        self.search_error = search_error
        self.delay = delay
        self.calls: list[tuple] = []

    async def resolve_workspace(self, workspace_path):
        self.calls.append(("resolve_workspace", workspace_path))
        return self.workspaces.get(normalize_workspace_path(workspace_path))

    async def index_status(self, workspace_id):
        self.calls.append(("index_status", workspace_id))
        return self.status

    async def trigger_index(self, workspace_id):
        self.calls.append(("trigger_index", workspace_id))
        return "already_indexing" if self.status.is_vector_indexing else "indexing_started"

    async def search(self, workspace_id, query, limit):
        self.calls.append(("search", workspace_id, query, limit))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.search_error is not None:
            raise self.search_error
        return SearchResponse(chunks=self.chunks[:limit], query_time_ms=5)

    def called(self, name):
        return [c for c in self.calls if c[0] == name]


@pytest.fixture
def workspace(tmp_path):
    """A workspace with two source files."""
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "auth.py").write_text(AUTH_PY)
    (tmp_path / "lib").mkdir()
    (tmp_path / "lib" / "db.py").write_text(DB_PY)
    return tmp_path


@pytest.fixture
def chunks(workspace):
    root = workspace.resolve()
    return [
        SemanticChunk(
            path=str(root / "src" / "auth.py"),
            relative_path="src/auth.py",
            chunk_text=AUTH_PY,
            line_start=1,
            line_end=8,
            language="python",
            score=0.82,
        ),
        SemanticChunk(
            path=str(root / "lib" / "db.py"),
            relative_path="lib/db.py",
            chunk_text=DB_PY,
            line_start=1,
            line_end=3,
            score=0.41,
        ),
    ]


@pytest.fixture
def fake_backend(workspace, chunks):
    return FakeBackend(workspaces={str(workspace.resolve()): "ws1"}, chunks=chunks)
