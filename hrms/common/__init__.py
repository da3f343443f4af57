"""Common module — shared utilities for the HRMS service."""

from hrms.common.audit import AuditTrail, create_audit_entry
from hrms.common.constants import (
    DEFAULT_PAGE_SIZE,
    HALF_DAY_DURATION,
    LEAVE_TRANSITIONS,
    MAX_PAGE_SIZE,
    AttendanceStatus,
    LeaveStatus,
    UserRole,
)
from hrms.common.exceptions import (
    AlreadyProcessedException,
    AppException,
    ConcurrencyConflictException,
    ConflictError,
    ForbiddenException,
    InsufficientBalanceException,
    InvalidStateException,
    NotFoundException,
    ValidationException,
    register_exception_handlers,
)
from hrms.common.pagination import (
    PaginatedResponse,
    PaginationMeta,
    PaginationParams,
    paginate,
)

__all__ = [
    # Audit
    "AuditTrail",
    "create_audit_entry",
    # Constants / Enums
    "AttendanceStatus",
    "LeaveStatus",
    "UserRole",
    "LEAVE_TRANSITIONS",
    "HALF_DAY_DURATION",
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    # Exceptions
    "AlreadyProcessedException",
    "AppException",
    "ConcurrencyConflictException",
    "ConflictError",
    "ForbiddenException",
    "InsufficientBalanceException",
    "InvalidStateException",
    "NotFoundException",
    "ValidationException",
    "register_exception_handlers",
    # Pagination
    "PaginatedResponse",
    "PaginationMeta",
    "PaginationParams",
    "paginate",
]
