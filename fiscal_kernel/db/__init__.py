"""Database layer - engine, base classes, amount helpers, immutability."""

from fiscal_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from fiscal_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    session_scope,
)
from fiscal_kernel.db.types import round_money, to_decimal

__all__ = [
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
    "create_tables",
    "drop_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_engine_from_url",
    "session_scope",
    "round_money",
    "to_decimal",
]
