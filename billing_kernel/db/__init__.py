"""Database layer - engine, declarative base and column types."""

from billing_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from billing_kernel.db.engine import build_engine, transaction_scope

__all__ = [
    "build_engine",
    "transaction_scope",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
]
