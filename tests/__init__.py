"""
CDC Stream Pipeline Test Suite.

This package contains:
- unit/: Unit tests (in-memory stream log and stores, no services)
- integration/: Integration tests (SQLite projections, FastAPI app, full change flow)
"""
