"""Shared fixtures for jotx tests."""

import asyncio
import json
from typing import Dict, List, Optional

import httpx
import numpy as np
import pytest

from jotx.daemon.bus import EventBus
from jotx.daemon.config import (
    CaptureConfig,
    Config,
    EmbeddingConfig,
    IndexingConfig,
    PrivacyConfig,
    SearchConfig,
    Settings,
)
from jotx.daemon.config_store import ConfigStore
from jotx.daemon.errors import IndexingError
from jotx.daemon.indexers import EmbeddingProvider, HashEmbedder
from jotx.daemon.llm import OllamaClient
from jotx.daemon.main import JotxDaemon
from jotx.daemon.storage import EntryStore


def empty_privacy() -> PrivacyConfig:
    return PrivacyConfig(contains=[], starts_with=[], ends_with=[], regex=[], exclude_folders=[])


def make_config(data_dir, **sections) -> Config:
    """Test config: no privacy rules, hash embeddings, fast retries, generous capture budget."""
    defaults = {
        "privacy": empty_privacy(),
        "settings": Settings(),
        "search": SearchConfig(),
        "embedding": EmbeddingConfig(provider="hash", dim=256),
        "indexing": IndexingConfig(base_delay_s=0.01, max_delay_s=0.05, max_retries=2, rescan_interval_s=0),
        "capture": CaptureConfig(timeout_ms=5000),
    }
    defaults.update(sections)
    return Config(data_dir=data_dir, **defaults)


class ScriptedEmbedder(EmbeddingProvider):
    """Returns fixed vectors for known texts; unknown texts map to a zero-similarity axis."""

    name = "scripted"

    def __init__(self, vectors: Dict[str, List[float]], dim: int = 3):
        super().__init__(dim)
        self.vectors = {text: np.asarray(vector, dtype=np.float32) for text, vector in vectors.items()}
        self.calls: List[str] = []
        self.fail_next = 0
        self.before_return = None

    def embed(self, text: str) -> np.ndarray:
        self.calls.append(text)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise IndexingError("embedding provider unavailable")
        vector = self.vectors.get(text)
        if vector is None:
            vector = np.zeros(self.dim, dtype=np.float32)
            vector[-1] = 1.0
        if self.before_return is not None:
            self.before_return(text)
        return vector


class FakeOllama:
    """httpx transport handler standing in for a local Ollama server."""

    def __init__(self):
        self.requests: List[dict] = []
        self.reply = "You ran: ssh user@staging.example.com -i ~/.ssh/key.pem"
        self.status_code = 200
        self.delay: Optional[float] = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(self.status_code, json={"models": []})
        self.requests.append(json.loads(request.content))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="model crashed")
        return httpx.Response(200, json={"response": self.reply, "done": True})

    def client(self) -> OllamaClient:
        return OllamaClient(httpx.AsyncClient(transport=httpx.MockTransport(self)))


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def config_store(config):
    return ConfigStore(config)


@pytest.fixture
def store(tmp_path):
    entry_store = EntryStore(tmp_path / "test.db")
    yield entry_store
    entry_store.close()


@pytest.fixture
def hash_embedder():
    return HashEmbedder(dim=256)


@pytest.fixture
def fake_ollama():
    return FakeOllama()


@pytest.fixture
async def daemon(tmp_path, fake_ollama):
    """A started daemon without the HTTP server."""
    config = make_config(tmp_path)
    jotx = JotxDaemon(
        config,
        config_path=tmp_path / "config.yaml",
        embedder=HashEmbedder(dim=256),
        llm_client=fake_ollama.client(),
        event_bus=EventBus(),
    )
    await jotx.start(serve_api=False)
    yield jotx
    await jotx.stop()
