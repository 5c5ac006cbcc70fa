"""
Configuration Management for MindOps

Loads configuration from ~/.mindops/config.json and environment variables.
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field

from dotenv import load_dotenv

# Default config paths
CONFIG_DIR = Path.home() / ".mindops"
CONFIG_PATH = CONFIG_DIR / "config.json"
LOGS_DIR = CONFIG_DIR / "logs"
DEFAULT_DATABASE_URL = f"sqlite:///{CONFIG_DIR / 'mindops.db'}"


@dataclass
class DatabaseConfig:
    """Datastore configuration"""
    url: str = DEFAULT_DATABASE_URL
    native_similarity: bool = True  # False forces the recency fallback
    echo: bool = False


@dataclass
class EmbeddingConfig:
    """Embedding model configuration"""
    provider: str = "openai"
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    api_key: str = ""
    batch_size: int = 5
    batch_delay: float = 0.1  # seconds between provider calls
    max_input_chars: int = 32000  # ~8k tokens at 4 chars/token
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    rate_limit_base_delay: float = 2.0
    rate_limit_max_delay: float = 30.0


@dataclass
class LLMConfig:
    """Generative model configuration"""
    provider: str = "google"
    google_api_key: str = ""
    google_model: str = "gemini-1.5-flash"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    max_tokens: int = 1024
    max_attempts: int = 2


@dataclass
class ChunkingConfig:
    """Chunker sizes, in estimated tokens (4 chars = 1 token)"""
    chunk_size: int = 450
    chunk_overlap: int = 50
    min_chunk_tokens: int = 3


@dataclass
class RetrieverConfig:
    """Retrieval and query flow configuration"""
    topk: int = 10
    similarity_threshold: float = 0.05  # Low on purpose: the LLM judges relevance
    history_turns: int = 5
    query_timeout: float = 60.0


@dataclass
class CollaborationConfig:
    """Task engine and poller configuration"""
    batch_size: int = 5
    poll_interval: float = 5.0


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"


@dataclass
class MindOpsConfig:
    """Main MindOps configuration"""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    retriever: RetrieverConfig = field(default_factory=RetrieverConfig)
    collaboration: CollaborationConfig = field(default_factory=CollaborationConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _section(data: dict, name: str, cls):
    """Build a config section from a dict, ignoring unknown keys."""
    section_data = data.get(name, {}) or {}
    defaults = cls()
    values = {
        key: section_data.get(key, getattr(defaults, key))
        for key in defaults.__dataclass_fields__
    }
    return cls(**values)


def load_config() -> MindOpsConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables (including a local .env file)
    2. Config file (~/.mindops/config.json)
    3. Default values
    """
    load_dotenv()
    config = MindOpsConfig()

    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.database = _section(data, "database", DatabaseConfig)
            config.embedding = _section(data, "embedding", EmbeddingConfig)
            config.llm = _section(data, "llm", LLMConfig)
            config.chunking = _section(data, "chunking", ChunkingConfig)
            config.retriever = _section(data, "retriever", RetrieverConfig)
            config.collaboration = _section(data, "collaboration", CollaborationConfig)
            config.server = _section(data, "server", ServerConfig)
        except (json.JSONDecodeError, IOError) as e:
            print(f"[Config] Warning: Failed to load config file: {e}")

    if os.getenv("MINDOPS_DATABASE_URL"):
        config.database.url = os.getenv("MINDOPS_DATABASE_URL")

    if os.getenv("OPENAI_API_KEY"):
        config.embedding.api_key = os.getenv("OPENAI_API_KEY")
        config._env_sourced_keys.add("embedding.api_key")
    if os.getenv("EMBEDDING_MODEL"):
        config.embedding.model = os.getenv("EMBEDDING_MODEL")

    if os.getenv("MINDOPS_CHUNK_SIZE"):
        config.chunking.chunk_size = int(os.getenv("MINDOPS_CHUNK_SIZE"))
    if os.getenv("MINDOPS_CHUNK_OVERLAP"):
        config.chunking.chunk_overlap = int(os.getenv("MINDOPS_CHUNK_OVERLAP"))

    if os.getenv("MINDOPS_TOPK"):
        config.retriever.topk = int(os.getenv("MINDOPS_TOPK"))
    if os.getenv("MINDOPS_SIMILARITY_THRESHOLD"):
        config.retriever.similarity_threshold = float(os.getenv("MINDOPS_SIMILARITY_THRESHOLD"))
    if os.getenv("MINDOPS_QUERY_TIMEOUT"):
        config.retriever.query_timeout = float(os.getenv("MINDOPS_QUERY_TIMEOUT"))

    if os.getenv("MINDOPS_PORT"):
        config.server.port = int(os.getenv("MINDOPS_PORT"))
    if os.getenv("MINDOPS_LOG_LEVEL"):
        config.server.log_level = os.getenv("MINDOPS_LOG_LEVEL")

    # LLM env var overrides (track env-sourced keys so they are never saved)
    _env_llm_map = {
        "GOOGLE_API_KEY": "google_api_key",
        "GEMINI_API_KEY": "google_api_key",
        "GOOGLE_MODEL": "google_model",
        "ANTHROPIC_API_KEY": "anthropic_api_key",
        "ANTHROPIC_MODEL": "anthropic_model",
        "OPENAI_API_KEY": "openai_api_key",
        "OPENAI_MODEL": "openai_model",
        "MINDOPS_LLM_PROVIDER": "provider",
    }
    for env_var, attr in _env_llm_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(config.llm, attr, val)
            config._env_sourced_keys.add(f"llm.{attr}")

    return config


def save_config(config: MindOpsConfig) -> None:
    """Save configuration to file.

    API keys that were sourced from environment variables are written
    as empty strings so that secrets are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())

    def _dump(name: str, section) -> dict:
        out = {}
        for key in section.__dataclass_fields__:
            value = getattr(section, key)
            if key.endswith("api_key") and f"{name}.{key}" in env_sourced:
                value = ""
            out[key] = value
        return out

    data = {
        "database": _dump("database", config.database),
        "embedding": _dump("embedding", config.embedding),
        "llm": _dump("llm", config.llm),
        "chunking": _dump("chunking", config.chunking),
        "retriever": _dump("retriever", config.retriever),
        "collaboration": _dump("collaboration", config.collaboration),
        "server": _dump("server", config.server),
    }

    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    CONFIG_PATH.chmod(0o600)


def ensure_directories() -> None:
    """Ensure required directories exist"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
