"""
Database package: async engine and session management plus the ORM models.

Import submodules explicitly when needed to avoid circular dependencies.
"""

__all__ = []
