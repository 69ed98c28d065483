import hashlib
import math
import re

import pytest

from upstream_kb.config import Config, SourceSpec
from upstream_kb.embedder import EmbeddingClient
from upstream_kb.health import HealthTracker
from upstream_kb.indexer import Indexer
from upstream_kb.store import IndexStore

FAKE_DIM = 64

TEST_SOURCES = [
    SourceSpec(name="docs", globs=["docs/**/*.md"], exclude=["docs/drafts/**"]),
    SourceSpec(name="config", globs=["src/config/types.*.ts"], exclude=["**/*.test.ts"]),
    SourceSpec(name="gateway", globs=["src/gateway/*.ts"], exclude=["**/*.test.ts"]),
    SourceSpec(name="skills", globs=["skills/*/SKILL.md"]),
]


def fake_embed(texts):
    """Deterministic bag-of-words embedding: shared words -> closer vectors."""
    out = []
    for text in texts:
        vec = [0.0] * FAKE_DIM
        vec[0] = 0.1
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            idx = int(hashlib.md5(token.encode()).hexdigest(), 16) % (FAKE_DIM - 1) + 1
            vec[idx] += 1.0
        norm = math.sqrt(sum(v * v for v in vec))
        out.append([v / norm for v in vec])
    return out


@pytest.fixture
def upstream(tmp_path):
    """A small upstream tree with docs, code, config schema and a skill."""
    root = tmp_path / "source"
    files = {
        "docs/gateway.md": (
            "# Gateway\n\n"
            "The gateway server exposes an RPC API on port 18789.\n\n"
            "## Authentication\n\n"
            "Clients authenticate with a bearer token.\n"
        ),
        "docs/channels/telegram.md": (
            "# Telegram channel\n\n"
            "Configure the telegram bot token in the channels section.\n"
        ),
        "docs/drafts/wip.md": "# Draft\n\nNot ready.\n",
        "src/gateway/server.ts": (
            "import { createServer } from 'node:http';\n\n"
            "export function startGateway(port: number) {\n"
            "  return createServer().listen(port);\n"
            "}\n\n"
            "export async function stopGateway(server) {\n"
            "  await server.close();\n"
            "}\n"
        ),
        "src/gateway/server.test.ts": "test('starts', () => {});\n",
        "src/config/types.gateway.ts": (
            "export interface GatewayConfig {\n"
            "  port: number;\n"
            "  token?: string;\n"
            "}\n"
        ),
        "skills/weather/SKILL.md": (
            "# Weather skill\n\n"
            "Fetches the forecast for a city.\n"
        ),
    }
    for rel, content in files.items():
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content)
    return root


@pytest.fixture
def config(upstream, tmp_path):
    return Config(
        upstream_dir=str(upstream),
        sources=TEST_SOURCES,
        db_path=str(tmp_path / "data" / "kb.db"),
        vectorstore_path=str(tmp_path / "data" / "vectorstore"),
        embedding_model="fake-embed",
        openai_api_key="",
        sync_log_path=str(tmp_path / "log" / "sync.log"),
    )


@pytest.fixture
def keyword_config(config):
    return config.model_copy(update={"vector_enabled": False})


@pytest.fixture
def embedder(config):
    return EmbeddingClient(config, embedding_fn=fake_embed)


@pytest.fixture
def store(config):
    s = IndexStore(config).open()
    yield s
    s.close()


@pytest.fixture
def keyword_store(keyword_config):
    s = IndexStore(keyword_config).open()
    yield s
    s.close()


@pytest.fixture
def indexer(config, store, embedder):
    return Indexer(config, store, embedder)


@pytest.fixture
def health():
    return HealthTracker()
