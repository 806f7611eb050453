"""
Configuration: loads settings from .agent-recall.yaml, environment variables,
and built-in defaults (in that priority order: CLI args > env > YAML > defaults).
"""

import os
import tempfile

import yaml


_DEFAULTS = {
    "db_path": os.path.join(".agent-recall", "state.db"),
    "section_timeout_ms": 10000,
    "plan_progress_timeout_ms": 5000,
    "max_learnings": 3,
    "stale_hours": 24,
    "embedding_provider": "none",
    "embedding_model": "text-embedding-3-small",
    "ollama_base_url": "http://localhost:11434",
    "session_state_dir": os.path.join(tempfile.gettempdir(), "agent-recall-sessions"),
    "change_detection": "mtime",
    "log_level": "WARNING",
}

# Config file search locations
_CONFIG_FILENAMES = [".agent-recall.yaml", ".agent-recall.yml"]


def _find_config_file(explicit_path: str | None = None) -> str | None:
    """Find the config file. Checks explicit path, CWD, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

    search_dirs = [os.getcwd(), os.path.expanduser("~")]
    for d in search_dirs:
        for name in _CONFIG_FILENAMES:
            path = os.path.join(d, name)
            if os.path.isfile(path):
                return path
    return None


def _load_yaml(path: str) -> dict:
    """Load YAML file, returns empty dict on failure."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return {}


class Config:
    """Application configuration.

    Settings are resolved in priority order:
    1. CLI arguments (handled by caller)
    2. Environment variables
    3. .agent-recall.yaml config file
    4. Built-in defaults
    """

    def __init__(self, yaml_data: dict | None = None):
        yd = yaml_data or {}

        # Helper: env var > yaml > default
        def _get(env_key: str, yaml_key: str, default, cast=str):
            env_val = os.getenv(env_key)
            if env_val is not None:
                return cast(env_val)
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return cast(yaml_val)
            return default

        self.DB_PATH = _get("AGENT_RECALL_DB", "db_path", _DEFAULTS["db_path"])

        self.SECTION_TIMEOUT_MS = _get(
            "AGENT_RECALL_SECTION_TIMEOUT_MS", "section_timeout_ms",
            _DEFAULTS["section_timeout_ms"], cast=int)
        self.PLAN_PROGRESS_TIMEOUT_MS = _get(
            "AGENT_RECALL_PLAN_PROGRESS_TIMEOUT_MS", "plan_progress_timeout_ms",
            _DEFAULTS["plan_progress_timeout_ms"], cast=int)
        self.MAX_LEARNINGS = _get("AGENT_RECALL_MAX_LEARNINGS", "max_learnings",
                                  _DEFAULTS["max_learnings"], cast=int)
        self.STALE_HOURS = _get("AGENT_RECALL_STALE_HOURS", "stale_hours",
                                _DEFAULTS["stale_hours"], cast=float)

        self.EMBEDDING_PROVIDER = _get(
            "AGENT_RECALL_EMBEDDING_PROVIDER", "embedding_provider",
            _DEFAULTS["embedding_provider"]).lower()
        self.EMBEDDING_MODEL = _get("AGENT_RECALL_EMBEDDING_MODEL", "embedding_model",
                                    _DEFAULTS["embedding_model"])
        self.OLLAMA_BASE_URL = _get("OLLAMA_BASE_URL", "ollama_base_url",
                                    _DEFAULTS["ollama_base_url"])

        self.SESSION_STATE_DIR = _get("AGENT_RECALL_SESSION_DIR", "session_state_dir",
                                      _DEFAULTS["session_state_dir"])
        self.CHANGE_DETECTION = _get("AGENT_RECALL_CHANGE_DETECTION", "change_detection",
                                     _DEFAULTS["change_detection"]).lower()
        self.LOG_LEVEL = _get("AGENT_RECALL_LOG_LEVEL", "log_level",
                              _DEFAULTS["log_level"]).upper()

    @classmethod
    def load(cls, config_path: str | None = None) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults."""
        path = _find_config_file(config_path)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data)
