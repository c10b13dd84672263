"""
CLI tools for TaskSync administration.

This module provides command-line tools for:
- create-user / issue-token: provision identities for development and tests
- dump / pending: inspect stored documents and queued collaborator edits

Invariants:
    - Tools work offline against the database file (no running server required)
"""

from .admin_cli import AdminCLI

__all__ = ["AdminCLI"]
