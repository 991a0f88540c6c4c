from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateUser(ConstraintViolation):
    """A user with the same unique key already exists."""


class DuplicateUsername(DuplicateUser):
    def __init__(self, username: str):
        super().__init__("username already exists", {"field": "username"})
        self.username = username


class DuplicateEmail(DuplicateUser):
    def __init__(self, email: str):
        super().__init__("email already exists", {"field": "email"})
        self.email = email


class StoreUnavailable(Exception):
    """The backing store could not be reached or a connection was not acquired in time."""

    def __init__(self, message: str = "credential store unavailable", *, cause: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class TransactionFailure(Exception):
    """A multi-step store mutation was rolled back."""

    def __init__(self, message: str, *, operation: str, cause: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.cause = cause


__all__ = [
    "ConstraintViolation",
    "DuplicateUser",
    "DuplicateUsername",
    "DuplicateEmail",
    "StoreUnavailable",
    "TransactionFailure",
]
