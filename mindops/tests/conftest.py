"""Shared fixtures: in-memory database, hashing embedder, fake LLM."""

import hashlib
import re
from unittest.mock import Mock

import pytest

from mindops.common.config import MindOpsConfig
from mindops.common.database import Database
from mindops.common.embedding_service import EmbeddingService
from mindops.common.llm_client import LLMClient

DIM = 64


class HashingAdapter:
    """Bag-of-words embedder: each word lands in a stable bucket."""

    def __init__(self, dim: int = DIM):
        self.dim = dim
        self.calls = []

    def get_embedding(self, texts):
        self.calls.append(list(texts))
        vectors = []
        for text in texts:
            vec = [0.0] * self.dim
            for word in re.findall(r"\w+", text.lower()):
                bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dim
                vec[bucket] += 1.0
            vectors.append(vec)
        return vectors


def no_sleep(_seconds):
    return None


@pytest.fixture
def config():
    cfg = MindOpsConfig()
    cfg.database.url = "sqlite://"
    cfg.embedding.dimensions = DIM
    cfg.embedding.batch_delay = 0.0
    cfg.embedding.retry_base_delay = 0.0
    cfg.embedding.rate_limit_base_delay = 0.0
    cfg.retriever.query_timeout = 5.0
    cfg.collaboration.poll_interval = 0.01
    return cfg


@pytest.fixture
def db(config):
    database = Database(config.database)
    database.init_db()
    yield database
    database.dispose()


@pytest.fixture
def adapter():
    return HashingAdapter()


@pytest.fixture
def embedding_service(adapter, config):
    return EmbeddingService(adapter=adapter, config=config.embedding)


@pytest.fixture
def llm():
    client = Mock(spec=LLMClient)
    client.provider = "google"
    client.is_available = True
    client.generate.return_value = "Based on sales.csv, Widget A sold 120 units."
    return client


@pytest.fixture
def service(config, db, embedding_service, llm):
    from mindops.service import MindOpsService

    return MindOpsService(
        config,
        db=db,
        embedding_service=embedding_service,
        llm_client=llm,
        sleep=no_sleep,
    )


@pytest.fixture
def sales_csv():
    return (
        b"product,units,region\n"
        b"Widget A,120,North\n"
        b"Widget B,75,South\n"
    )
