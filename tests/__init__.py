"""
docrepo Test Suite.

This package contains:
- unit/: Unit tests (no external dependencies)
- integration/: Repository tests against the in-memory store, plus the
  Cosmos DB adapter against a mocked driver
"""
