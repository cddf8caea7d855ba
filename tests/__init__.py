"""
dataman Test Suite.

This package contains:
- unit/: Unit tests (temporary SQLite files, injected zfs runner)
- integration/: Registration flows against an in-memory fake pool
"""
