from enum import Enum


class ErrorCode(str, Enum):
    """Machine-readable error codes returned in ``ErrorResponse.code``."""

    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    SESSION_CLOSED = "SESSION_CLOSED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    TOO_MANY_REQUESTS = "TOO_MANY_REQUESTS"
    UPGRADE_REQUIRED = "UPGRADE_REQUIRED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
