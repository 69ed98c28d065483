# Upstream KB – Hybrid search knowledge base for upstream source trees
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Query expansion with a small domain synonym map.

Only high-confidence, domain-specific synonyms belong here; generic terms
add noise to keyword search.
"""
import re

SYNONYMS: dict[str, list[str]] = {
    # configuration
    "config": ["configuration", "setup", "settings"],
    "configuration": ["config", "setup"],
    "settings": ["config", "configuration"],
    # agents
    "agent": ["bot", "assistant"],
    "bot": ["agent", "assistant"],
    "assistant": ["agent", "bot"],
    # channels
    "telegram": ["tg"],
    "tg": ["telegram"],
    "discord": ["channel:discord"],
    "whatsapp": ["channel:whatsapp"],
    # tts
    "tts": ["text-to-speech", "voice", "speech"],
    "text-to-speech": ["tts", "voice"],
    "voice": ["tts", "text-to-speech"],
    # skills
    "skill": ["tool", "SKILL.md"],
    "tool": ["skill", "capability"],
    # sandbox
    "sandbox": ["container", "docker", "isolated"],
    "container": ["sandbox", "docker"],
    "docker": ["container", "sandbox"],
    # memory
    "memory": ["storage", "persistence", "database"],
    "storage": ["memory", "persistence"],
    # sessions
    "session": ["conversation", "chat", "thread"],
    "conversation": ["session", "chat"],
    # gateway
    "gateway": ["server", "rpc", "api"],
    "server": ["gateway", "rpc"],
    "workspace": ["agent-dir", "workspaceRoot"],
    # hooks
    "hook": ["webhook", "trigger", "automation"],
    "webhook": ["hook", "trigger"],
    "automation": ["hook", "workflow"],
}

_STRIP = re.compile(r"[^\w-]")


def expand_query(query: str) -> str:
    """Original query followed by the synonyms of its words, deduplicated."""
    expansions: list[str] = [query]
    for word in query.lower().split():
        for syn in SYNONYMS.get(_STRIP.sub("", word), []):
            if syn not in expansions:
                expansions.append(syn)
    return " ".join(expansions)
