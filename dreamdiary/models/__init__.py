from .base import Base
from .dream import Dream
from .error_code import ErrorCode
from .user import Plan, Role, User
from .weekly_report import WeeklyReport

__all__ = [
    "Base",
    "Dream",
    "ErrorCode",
    "Plan",
    "Role",
    "User",
    "WeeklyReport",
]
