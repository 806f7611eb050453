"""
Unit tests for agent_recall.config

Resolution order is env var > YAML file > built-in default.
"""

from __future__ import annotations

import pytest

from agent_recall.config import Config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    for key in (
        "AGENT_RECALL_DB", "AGENT_RECALL_SECTION_TIMEOUT_MS",
        "AGENT_RECALL_MAX_LEARNINGS", "AGENT_RECALL_EMBEDDING_PROVIDER",
        "AGENT_RECALL_CHANGE_DETECTION", "AGENT_RECALL_STALE_HOURS",
    ):
        monkeypatch.delenv(key, raising=False)
    # keep a developer's own config file out of the way
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))


class TestDefaults:

    def test_builtin_defaults(self):
        cfg = Config()
        assert cfg.SECTION_TIMEOUT_MS == 10000
        assert cfg.PLAN_PROGRESS_TIMEOUT_MS == 5000
        assert cfg.MAX_LEARNINGS == 3
        assert cfg.STALE_HOURS == 24
        assert cfg.EMBEDDING_PROVIDER == "none"
        assert cfg.CHANGE_DETECTION == "mtime"
        assert cfg.DB_PATH.endswith("state.db")


class TestResolution:

    def test_yaml_overrides_default(self):
        cfg = Config({"max_learnings": 5, "embedding_provider": "Ollama"})
        assert cfg.MAX_LEARNINGS == 5
        assert cfg.EMBEDDING_PROVIDER == "ollama"

    def test_env_overrides_yaml(self, monkeypatch):
        monkeypatch.setenv("AGENT_RECALL_MAX_LEARNINGS", "7")
        monkeypatch.setenv("AGENT_RECALL_STALE_HOURS", "1.5")
        cfg = Config({"max_learnings": 5})
        assert cfg.MAX_LEARNINGS == 7
        assert cfg.STALE_HOURS == 1.5

    def test_load_reads_explicit_file(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text("db_path: /tmp/x.db\nsection_timeout_ms: 250\n")
        cfg = Config.load(str(path))
        assert cfg.DB_PATH == "/tmp/x.db"
        assert cfg.SECTION_TIMEOUT_MS == 250

    def test_load_finds_file_in_cwd(self, tmp_path):
        (tmp_path / ".agent-recall.yaml").write_text("change_detection: hash\n")
        assert Config.load().CHANGE_DETECTION == "hash"

    def test_missing_explicit_file_falls_back_to_defaults(self, tmp_path):
        cfg = Config.load(str(tmp_path / "nope.yaml"))
        assert cfg.MAX_LEARNINGS == 3

    def test_malformed_yaml_is_ignored(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("max_learnings: [unclosed\n")
        assert Config.load(str(path)).MAX_LEARNINGS == 3
