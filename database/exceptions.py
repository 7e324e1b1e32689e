"""数据层领域异常。

所有异常都携带稳定的中文提示信息，上层（接口/页面）可以直接展示，
无需解析错误码。未找到记录不属于异常，由各仓库方法返回 None / False。
"""
from typing import Optional


class DatabaseError(Exception):
    """数据层异常基类。"""


class ConflictError(DatabaseError):
    """唯一字段冲突（员工编号、登录码、手机号、用户名等）。

    Attributes:
        field: 发生冲突的字段名。
    """

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message


class InvariantViolationError(DatabaseError):
    """业务不变量被破坏，在执行任何写操作之前抛出。"""


class MigrationError(DatabaseError):
    """数据库迁移失败，启动流程必须中止。

    Attributes:
        version: 失败的迁移版本号（非版本化步骤为 None）。
    """

    def __init__(self, message: str, version: Optional[int] = None) -> None:
        super().__init__(message)
        self.version = version


class NestedTransactionError(DatabaseError):
    """在同一个任务中嵌套调用 transaction()。"""
