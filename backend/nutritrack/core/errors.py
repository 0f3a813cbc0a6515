# backend/nutritrack/core/errors.py
"""
Application error taxonomy
Every error carries the HTTP status the API layer answers with
"""

from typing import Any, Dict, List, Optional

from nutritrack.core.config import settings


class AppError(Exception):
    """Base class for errors raised on purpose by the engine"""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.__class__.__name__,
            "message": self.message,
        }


class ValidationError(AppError):
    """Malformed or out-of-range input, rejected before any write"""

    status_code = 400

    def __init__(self, message: str, details: Optional[List[str]] = None):
        super().__init__(message)
        self.details = details or []

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.details:
            data["details"] = self.details
        return data


class NotFoundError(AppError):
    """Entry absent, or present but owned by someone else"""

    status_code = 404

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message)


class BusinessError(AppError):
    """Unexpected orchestration failure; keeps the original cause"""

    status_code = 422

    def __init__(self, message: str = "Business logic error", original_error: Optional[BaseException] = None):
        super().__init__(message)
        self.original_error = original_error
        if original_error is not None:
            self.__cause__ = original_error

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.original_error is not None and not settings.is_production:
            data["cause"] = str(self.original_error)
        return data


class DatabaseError(AppError):
    """Storage failure. Details are hidden outside development"""

    status_code = 500

    def __init__(self, message: str = "Database operation failed", original_error: Optional[BaseException] = None):
        super().__init__(message)
        self.original_error = original_error
        if original_error is not None:
            self.__cause__ = original_error

    def to_dict(self) -> Dict[str, Any]:
        if settings.is_production:
            return {"type": "DatabaseError", "message": "Internal server error"}
        data = super().to_dict()
        if self.original_error is not None:
            data["cause"] = str(self.original_error)
        return data


class MigrationError(AppError):
    """Backup verification or rollback precondition failure"""

    status_code = 500
