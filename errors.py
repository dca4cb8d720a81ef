"""
Application error taxonomy.

Business-rule violations are raised as subclasses of AppError and turned into
the `{status: "error", message, errors?}` envelope by the handlers in main.py.
Anything else is an internal error and is reported as a generic 500.
"""

from typing import Any, List, Optional


class AppError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Any]] = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"status": "error", "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation failed"


class NotFound(AppError):
    status_code = 404
    default_message = "Resource not found"


class Unauthorized(AppError):
    status_code = 401
    default_message = "Could not validate credentials"


class Forbidden(AppError):
    status_code = 403
    default_message = "Forbidden: insufficient permissions"


class Conflict(AppError):
    status_code = 409
    default_message = "Duplicate data"


class ProductUnavailable(AppError):
    status_code = 400
    default_message = "Product is not available"


class InsufficientStock(AppError):
    status_code = 400
    default_message = "Not enough stock"


class InvalidTransition(AppError):
    status_code = 400
    default_message = "Invalid status transition"


class PromoCodeRejected(AppError):
    status_code = 400
    default_message = "Promo code cannot be applied"


class UpstreamFailure(AppError):
    status_code = 502
    default_message = "Upstream provider error"


class RateLimited(AppError):
    status_code = 429
    default_message = "Too many requests, please try again later"


def field_errors(errors: List[dict]) -> List[dict]:
    """Flatten pydantic error entries into `{field, message}` pairs."""
    out = []
    for err in errors:
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        out.append({"field": ".".join(loc), "message": err.get("msg", "Invalid value")})
    return out
