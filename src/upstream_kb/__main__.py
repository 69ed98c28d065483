# Upstream KB – Hybrid search knowledge base for upstream source trees
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""Entry point: python -m upstream_kb"""
from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
