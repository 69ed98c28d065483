# Upstream KB – Hybrid search knowledge base for upstream source trees
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Central configuration – configurable via:
1. Environment variables (KB_ prefix, OPENAI_API_KEY also accepted as-is)
2. .env file
3. kb.config.json (JSON overrides, highest priority)
"""
import json
import os
import sys
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

CONFIG_FILE = Path(os.environ.get("KB_CONFIG_FILE", "kb.config.json"))


class SourceSpec(BaseModel):
    """A named group of upstream files, selected by glob patterns."""
    name: str
    globs: list[str]
    exclude: list[str] = []


_NO_TESTS = ["**/*.test.ts"]

DEFAULT_SOURCES: list[SourceSpec] = [
    SourceSpec(
        name="docs",
        globs=["docs/**/*.md"],
        exclude=["docs/ja-JP/**", "docs/zh-CN/**", "docs/.i18n/**"],
    ),
    SourceSpec(
        name="config",
        globs=["src/config/types.*.ts", "src/config/zod-schema.*.ts"],
        exclude=_NO_TESTS,
    ),
    SourceSpec(
        name="gateway",
        globs=["src/gateway/server*.ts", "src/gateway/server-methods/**/*.ts"],
        exclude=_NO_TESTS,
    ),
    SourceSpec(
        name="telegram",
        globs=["src/telegram/bot*.ts", "src/telegram/send.ts", "src/telegram/accounts.ts"],
        exclude=_NO_TESTS,
    ),
    SourceSpec(name="skills", globs=["skills/*/SKILL.md"]),
    SourceSpec(name="agents", globs=["src/agents/*.ts"], exclude=_NO_TESTS),
    SourceSpec(
        name="memory",
        globs=["src/memory/manager.ts", "src/memory/hybrid.ts", "src/memory/search-manager.ts"],
        exclude=_NO_TESTS,
    ),
    SourceSpec(
        name="infra",
        globs=["src/infra/*.ts", "src/infra/tls/*.ts", "src/infra/net/*.ts"],
        exclude=_NO_TESTS,
    ),
    SourceSpec(
        name="security",
        globs=["src/security/*.ts", "src/security/sandbox/*.ts"],
        exclude=_NO_TESTS,
    ),
    SourceSpec(name="hooks", globs=["src/hooks/*.ts", "src/automation/*.ts"], exclude=_NO_TESTS),
    SourceSpec(name="sessions", globs=["src/sessions/*.ts"], exclude=_NO_TESTS),
    SourceSpec(
        name="channels",
        globs=["src/channels/*.ts", "src/telegram/*.ts", "src/discord/*.ts", "src/whatsapp/*.ts"],
        exclude=["**/*.test.ts", "**/*.raw-stream.ts"],
    ),
    SourceSpec(
        name="providers",
        globs=["src/providers/*.ts", "src/providers/anthropic/*.ts"],
        exclude=_NO_TESTS,
    ),
    SourceSpec(
        name="plugins",
        globs=["src/plugins/*.ts", "src/plugins/runtime/*.ts"],
        exclude=_NO_TESTS,
    ),
    SourceSpec(name="skill-examples", globs=["skills/*/SKILL.md", "skills/*/handler.ts"]),
]

DEFAULT_KB_PREFIXES = [
    "docs/", "src/config/", "src/gateway/", "src/telegram/", "skills/",
    "src/agents/", "src/memory/", "src/infra/", "src/security/", "src/hooks/",
    "src/sessions/", "src/channels/", "src/providers/", "src/plugins/",
]


class Config(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="KB_", env_file=".env", extra="ignore", populate_by_name=True,
    )

    # ── Upstream tree ────────────────────────────
    upstream_dir: str = "./source"
    sources: list[SourceSpec] = Field(default_factory=lambda: list(DEFAULT_SOURCES))
    release_source: str = "releases"

    # ── Storage ──────────────────────────────────
    db_path: str = "./data/upstream.db"
    vectorstore_path: str = "./data/vectorstore"
    vector_collection: str = "chunks"
    vector_enabled: bool = True

    # ── Embeddings ───────────────────────────────
    embedding_provider: Literal["openai", "local"] = "openai"
    embedding_model: str = "text-embedding-3-small"
    openai_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("KB_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )
    openai_base_url: str = ""
    embedding_batch_size: int = 50
    embedding_max_retries: int = 3
    embedding_retry_base_delay: float = 1.0

    # ── Chunking ─────────────────────────────────
    chunk_max_chars: int = 1600
    code_chunk_max_chars: int = 1200
    chunk_overlap: int = 200

    # ── Retrieval ────────────────────────────────
    rrf_k: int = 60
    default_top_k: int = 8

    # ── Release tracking ─────────────────────────
    release_tag_pattern: str = "v*"
    git_remote: str = "origin"
    kb_prefixes: list[str] = Field(default_factory=lambda: list(DEFAULT_KB_PREFIXES))
    sync_interval: int = 0
    sync_log_path: str = "./log/sync.log"

    # ── MCP server ───────────────────────────────
    transport: Literal["stdio", "sse"] = "stdio"
    sse_host: str = "127.0.0.1"
    sse_port: int = 8081

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """Load config: ENV -> .env -> kb.config.json overrides."""
        config_file = path or CONFIG_FILE
        overrides: dict = {}
        if config_file.exists():
            try:
                raw = json.loads(config_file.read_text())
                overrides = {
                    k: v for k, v in raw.items()
                    if k in cls.model_fields and v != ""
                }
            except Exception as e:
                print(f"Warning: Config file error: {e}", file=sys.stderr)
        return cls(**overrides)

    def to_safe_dict(self) -> dict:
        """Config without secrets (for stats output)."""
        d = self.model_dump()
        if d.get("openai_api_key"):
            d["openai_api_key"] = d["openai_api_key"][:8] + "..."
        d.pop("sources", None)
        return d

