"""
Database package initialization.

The package follows a modular structure:
- base: declarative base, mixins and datetime helpers
- connection: async engine and session management
- upsert: dialect-aware INSERT ... ON CONFLICT helpers
- models: ORM models for orders, payments, refunds, inventory and audit
"""

__all__ = []
