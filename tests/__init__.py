"""
vaultsync Test Suite.

This package contains:
- unit/: Unit tests (in-memory store, injected clocks)
- integration/: Integration tests (SQLite store, HTTP API)
"""
