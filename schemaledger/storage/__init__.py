"""
Execution backends for the target database.

The migration engine only talks to the relational engine through the
ExecutionBackend interface; SQLAlchemyBackend is the concrete
implementation over SQLAlchemy's async engine.
"""

from .backend import ExecutionBackend
from .sqlalchemy_backend import SQLAlchemyBackend, normalize_url

__all__ = [
    "ExecutionBackend",
    "SQLAlchemyBackend",
    "normalize_url",
]
