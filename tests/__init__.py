"""
BlobSQL Test Suite.

This package contains:
- unit/: Unit tests (no external services; SQLite and temp dirs only)
- integration/: Integration tests (coordinator, sync engine and HTTP
  surface over a real SQLite working copy and the in-memory blob store)
"""
