"""
Settings for codequery.

Resolution order: built-in defaults, then
$XDG_CONFIG_HOME/codequery/config.toml (or ~/.config/codequery/config.toml),
then CODEQUERY_* environment variables, then CLI flags applied by the
server entry point.

Example config.toml:

    backend_url = "http://127.0.0.1:7777"
    request_timeout = 20
    structural_boost = 1.2

    [patterns]
    functions = ['^\\s*proc\\s+(\\w+)']
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from codequery.backend import DEFAULT_BACKEND_URL, REQUEST_TIMEOUT, WORKSPACE_CACHE_TTL
from codequery.enrich import MAX_CONTEXT_FILE_SIZE
from codequery.fusion import STRUCTURAL_BOOST, STRUCTURAL_SPAN
from codequery.patterns import CodePattern, FocusCategory, compile_extra_patterns
from codequery.structural import WINDOW_AFTER, WINDOW_BEFORE

logger = logging.getLogger("codequery.config")

ENV_PREFIX = "CODEQUERY_"


@dataclass(frozen=True)
class Settings:
    backend_url: str = DEFAULT_BACKEND_URL
    workspace: str = "."
    request_timeout: float = REQUEST_TIMEOUT
    workspace_cache_ttl: float = WORKSPACE_CACHE_TTL

    # Hybrid query
    structural_boost: float = STRUCTURAL_BOOST
    structural_span: int = STRUCTURAL_SPAN
    window_before: int = WINDOW_BEFORE
    window_after: int = WINDOW_AFTER
    max_context_file_size: int = MAX_CONTEXT_FILE_SIZE
    default_limit: int = 10
    max_query_limit: int = 30
    default_context_lines: int = 3
    preview_lines: int = 20

    # Plain semantic search
    max_semantic_limit: int = 50
    default_min_score: float = 0.25
    min_score_floor: float = 0.15
    semantic_preview_lines: int = 15

    extra_patterns: dict[FocusCategory, tuple[CodePattern, ...]] = field(default_factory=dict)

    @property
    def workspace_root(self) -> Path:
        return Path(os.path.expanduser(self.workspace)).resolve()


_FIELD_TYPES = {f.name: f.type for f in fields(Settings) if f.name != "extra_patterns"}


def config_path() -> Path:
    config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(config_home) / "codequery" / "config.toml"


def load_config_file(path: Path | None = None) -> dict:
    """Parse config.toml. Returns an empty dict if missing or invalid."""
    path = path or config_path()
    if not path.is_file():
        logger.debug("No config file at %s", path)
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
        logger.info("Loaded config from %s", path)
        return config
    except tomllib.TOMLDecodeError as e:
        logger.warning("Invalid TOML in %s: %s", path, e)
        return {}
    except OSError as e:
        logger.warning("Could not read %s: %s", path, e)
        return {}


def _coerce(name: str, value: Any) -> Any:
    kind = _FIELD_TYPES[name]
    if kind == "int":
        return int(value)
    if kind == "float":
        return float(value)
    return str(value)


def _apply(settings: Settings, values: dict[str, Any], source: str) -> Settings:
    updates = {}
    for name, value in values.items():
        if name not in _FIELD_TYPES:
            continue
        try:
            updates[name] = _coerce(name, value)
        except (TypeError, ValueError):
            logger.warning("Ignoring %s=%r from %s: expected %s", name, value, source, _FIELD_TYPES[name])
    return replace(settings, **updates) if updates else settings


def load_settings(path: Path | None = None, environ: dict[str, str] | None = None) -> Settings:
    """Build Settings from defaults, config file, and environment."""
    environ = os.environ if environ is None else environ
    config = load_config_file(path)

    settings = _apply(Settings(), config, "config.toml")

    patterns = config.get("patterns")
    if patterns is not None and not isinstance(patterns, dict):
        logger.warning("Config 'patterns' must be a table, got %s", type(patterns).__name__)
        patterns = None
    if patterns:
        settings = replace(settings, extra_patterns=compile_extra_patterns(patterns))

    env_values = {
        key[len(ENV_PREFIX):].lower(): value
        for key, value in environ.items()
        if key.startswith(ENV_PREFIX)
    }
    return _apply(settings, env_values, "environment")
