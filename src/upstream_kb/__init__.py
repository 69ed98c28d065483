# Upstream KB – Hybrid search knowledge base for upstream source trees
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

__version__ = "0.1.0"
