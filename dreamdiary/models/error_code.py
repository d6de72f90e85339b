from enum import Enum


class ErrorCode(str, Enum):
    """Machine-readable error codes returned in ``ErrorResponse``."""

    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    GPT_TIMEOUT = "GPT_TIMEOUT"


__all__ = ["ErrorCode"]
