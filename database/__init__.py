"""数据访问层。

常用入口::

    from database import DatabaseManager

    db = DatabaseManager()
    await db.init()
"""
from .connection import DatabaseConnection
from .dedup import DedupReport, DuplicateGroup, DuplicateOrderResolver
from .exceptions import (
    ConflictError, DatabaseError, InvariantViolationError, MigrationError,
    NestedTransactionError,
)
from .manager import DatabaseManager, Operator
from .pagination import (
    PaginationHelper, PaginationParams, PaginationResult, QueryBuilder,
    create_pagination_response,
)

__all__ = [
    "DatabaseManager",
    "DatabaseConnection",
    "Operator",
    "QueryBuilder",
    "PaginationHelper",
    "PaginationParams",
    "PaginationResult",
    "create_pagination_response",
    "DuplicateOrderResolver",
    "DuplicateGroup",
    "DedupReport",
    "DatabaseError",
    "ConflictError",
    "InvariantViolationError",
    "MigrationError",
    "NestedTransactionError",
]
