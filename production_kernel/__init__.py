"""
Production Kernel

Shared foundation for the production orchestration engine:
- SQLAlchemy declarative base with audit columns and optimistic versioning
- Engine/session management with commit-or-rollback scopes
- Injectable clock for deterministic tests
- Structured JSON logging
- Typed exception hierarchy
"""

__version__ = "0.1.0"
