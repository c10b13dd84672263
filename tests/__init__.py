"""
TaskSync Test Suite.

This package contains:
- unit/: Unit tests (temporary SQLite files, mocked HTTP transports)
- integration/: SDK engine against the real aiohttp application
"""
