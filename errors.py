"""
Application errors

Raised by the order engine, the auth layer and the upload handler, and turned
into JSON responses by the exception handlers registered in main.py.
"""
from typing import Dict, List, Optional


class AppError(Exception):
    status_code = 500
    kind = "internal"
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict:
        return {"message": self.message, "error": self.kind}


class ValidationFailed(AppError):
    """Bad request payload; carries field-level details."""
    status_code = 400
    kind = "validation"
    default_message = "Validation failed"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(message)
        self.errors = errors or []

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationFailed":
        return cls(message, errors=[{"field": field, "message": message}])

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class Unauthorized(AppError):
    status_code = 401
    kind = "unauthorized"
    default_message = "Authentication required"


class Forbidden(AppError):
    status_code = 403
    kind = "forbidden"
    default_message = "Access denied"


class NotFound(AppError):
    status_code = 404
    kind = "not_found"
    default_message = "Not found"


class Conflict(AppError):
    status_code = 409
    kind = "conflict"
    default_message = "Conflict"


class InternalError(AppError):
    pass
