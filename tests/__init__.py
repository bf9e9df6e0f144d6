"""
Entity Service Test Suite.

This package contains:
- unit/: Unit tests (in-memory and temporary SQLite stores)
- integration/: Integration tests (real gRPC server driven through the SDK)
"""
