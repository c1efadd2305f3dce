"""Shared engine configuration.

Centralises reading of ~/.flowengine/configuration.json so the CLI, the
scheduler and the model-call providers agree on defaults. The file is
optional; a missing or unreadable file yields built-in defaults.

Example file::

    {
      "llm": {"provider": "openai", "model": "gpt-4o-mini", "max_tokens": 2048},
      "scheduler": {"max_parallel_branches": 4},
      "timeouts": {"llm": 90, "code": 2},
      "storage_path": "/var/lib/flowengine/runs"
    }
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_MAX_TOKENS = 1024
DEFAULT_MODEL = "openai/gpt-4o-mini"

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWENGINE_HOME = Path.home() / ".flowengine"
FLOWENGINE_CONFIG_FILE = FLOWENGINE_HOME / "configuration.json"

# Seconds. Model calls get generous budgets, sandboxed code a short one.
DEFAULT_NODE_TIMEOUTS: dict[str, float] = {
    "llm": 120.0,
    "stream_output": 300.0,
    "rag_search": 60.0,
    "transform": 5.0,
    "code": 5.0,
}
DEFAULT_TIMEOUT = 30.0


def _config_path() -> Path:
    override = os.environ.get("FLOWENGINE_CONFIG")
    return Path(override) if override else FLOWENGINE_CONFIG_FILE


def get_engine_config_file() -> dict[str, Any]:
    """Load the raw configuration dict (empty when the file is absent or corrupt)."""
    path = _config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_preferred_model() -> str:
    """Return the configured model string (e.g. 'anthropic/claude-sonnet-4-20250514')."""
    llm = get_engine_config_file().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return llm.get("model") or DEFAULT_MODEL


def get_max_tokens() -> int:
    """Return the configured max_tokens, falling back to DEFAULT_MAX_TOKENS."""
    return get_engine_config_file().get("llm", {}).get("max_tokens", DEFAULT_MAX_TOKENS)


def get_api_key() -> str | None:
    """Return the API key from the environment variable named in the configuration."""
    env_var = get_engine_config_file().get("llm", {}).get("api_key_env_var")
    if env_var:
        return os.environ.get(env_var)
    return None


def _get_max_parallel_branches() -> int:
    return int(get_engine_config_file().get("scheduler", {}).get("max_parallel_branches", 8))


def _get_node_timeouts() -> dict[str, float]:
    overrides = get_engine_config_file().get("timeouts", {})
    return {**DEFAULT_NODE_TIMEOUTS, **{k: float(v) for k, v in overrides.items()}}


def _get_storage_path() -> Path:
    configured = get_engine_config_file().get("storage_path")
    return Path(configured).expanduser() if configured else FLOWENGINE_HOME / "runs"


# ---------------------------------------------------------------------------
# EngineConfig – shared by the scheduler, executors and CLI
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine configuration loaded from ~/.flowengine/configuration.json."""

    model: str = field(default_factory=get_preferred_model)
    temperature: float = 0.7
    max_tokens: int = field(default_factory=get_max_tokens)
    api_key: str | None = field(default_factory=get_api_key)
    api_base: str | None = None
    max_parallel_branches: int = field(default_factory=_get_max_parallel_branches)
    node_timeouts: dict[str, float] = field(default_factory=_get_node_timeouts)
    default_timeout: float = DEFAULT_TIMEOUT
    storage_path: Path = field(default_factory=_get_storage_path)
    output_preview_chars: int = 200

    def timeout_for(self, node_type: str, override: float | None = None) -> float:
        """Timeout in seconds for a node of the given type."""
        if override is not None:
            return override
        return self.node_timeouts.get(str(node_type), self.default_timeout)
