"""Tests for config loading -- file sections, env overrides, secret handling."""

import json
import os
from unittest.mock import patch

from mindops.common.config import (
    ChunkingConfig,
    LLMConfig,
    MindOpsConfig,
    RetrieverConfig,
    load_config,
    save_config,
)


class TestDefaults:
    def test_section_defaults(self):
        cfg = MindOpsConfig()
        assert cfg.llm.provider == "google"
        assert cfg.embedding.model == "text-embedding-3-small"
        assert cfg.embedding.dimensions == 1536
        assert cfg.database.native_similarity is True

    def test_chunking_defaults(self):
        cfg = ChunkingConfig()
        assert (cfg.chunk_size, cfg.chunk_overlap, cfg.min_chunk_tokens) == (450, 50, 3)

    def test_retriever_defaults(self):
        cfg = RetrieverConfig()
        assert cfg.topk == 10
        assert cfg.similarity_threshold == 0.05
        assert cfg.history_turns == 5


class TestLoadConfig:
    def test_file_sections(self, tmp_path):
        config_data = {
            "llm": {"provider": "anthropic", "anthropic_api_key": "sk-file"},
            "retriever": {"topk": 4, "unknown_key": "ignored"},
            "database": {"url": "sqlite:///" + str(tmp_path / "m.db")},
        }
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps(config_data))

        with patch("mindops.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, {}, clear=True):
            cfg = load_config()

        assert cfg.llm.provider == "anthropic"
        assert cfg.llm.anthropic_api_key == "sk-file"
        assert cfg.retriever.topk == 4
        assert cfg.retriever.history_turns == 5
        assert cfg.database.url.endswith("m.db")

    def test_corrupt_file_falls_back_to_defaults(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text("{not json")

        with patch("mindops.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, {}, clear=True):
            cfg = load_config()

        assert cfg.retriever.topk == 10

    def test_env_overrides_file(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"retriever": {"topk": 4}}))

        env = {
            "MINDOPS_TOPK": "7",
            "MINDOPS_QUERY_TIMEOUT": "12.5",
            "OPENAI_API_KEY": "sk-env",
            "MINDOPS_LLM_PROVIDER": "openai",
            "MINDOPS_DATABASE_URL": "postgresql://db/mindops",
        }
        with patch("mindops.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, env, clear=True):
            cfg = load_config()

        assert cfg.retriever.topk == 7
        assert cfg.retriever.query_timeout == 12.5
        assert cfg.embedding.api_key == "sk-env"
        assert cfg.llm.openai_api_key == "sk-env"
        assert cfg.llm.provider == "openai"
        assert cfg.database.url == "postgresql://db/mindops"

    def test_gemini_key_alias(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text("{}")

        with patch("mindops.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, {"GEMINI_API_KEY": "g-env"}, clear=True):
            cfg = load_config()

        assert cfg.llm.google_api_key == "g-env"


class TestSaveConfig:
    def test_env_keys_not_persisted(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"llm": {"google_api_key": "g-file"}}))

        env = {"ANTHROPIC_API_KEY": "sk-from-env", "OPENAI_API_KEY": "sk-openai-env"}
        with patch("mindops.common.config.CONFIG_PATH", config_file), \
             patch("mindops.common.config.CONFIG_DIR", tmp_path), \
             patch.dict(os.environ, env, clear=True):
            cfg = load_config()
            save_config(cfg)

        saved = json.loads(config_file.read_text())
        assert saved["llm"]["anthropic_api_key"] == ""
        assert saved["llm"]["openai_api_key"] == ""
        assert saved["embedding"]["api_key"] == ""
        assert saved["llm"]["google_api_key"] == "g-file"

    def test_round_trips_sections(self, tmp_path):
        config_file = tmp_path / "config.json"
        cfg = MindOpsConfig()
        cfg.llm = LLMConfig(provider="openai", openai_api_key="sk-file")
        cfg.chunking.chunk_size = 300

        with patch("mindops.common.config.CONFIG_PATH", config_file), \
             patch("mindops.common.config.CONFIG_DIR", tmp_path), \
             patch.dict(os.environ, {}, clear=True):
            save_config(cfg)
            loaded = load_config()

        assert loaded.llm.provider == "openai"
        assert loaded.llm.openai_api_key == "sk-file"
        assert loaded.chunking.chunk_size == 300
        assert oct(config_file.stat().st_mode & 0o777) == "0o600"
