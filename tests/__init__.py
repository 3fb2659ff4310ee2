"""
docrepo Test Suite.

This package contains:
- unit/: Unit tests (store doubles, no files touched)
- integration/: Integration tests (repositories over a SQLite store)
"""
