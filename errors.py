"""
API error types

Raised by the service modules and rendered by the handlers in main.py as
{"error": ..., **details}. Detail keys are given in snake_case and emitted in
camelCase to match the rest of the JSON API.
"""
from typing import Any, Dict, Optional

from pydantic.alias_generators import to_camel


class ApiError(Exception):
    status_code = 400

    def __init__(self, error: str, status_code: Optional[int] = None, **details: Any):
        super().__init__(error)
        self.error = error
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error}
        for key, value in self.details.items():
            body[to_camel(key)] = value
        return body


class ValidationFailed(ApiError):
    status_code = 400


class NotFound(ApiError):
    status_code = 404


class RuleViolation(ApiError):
    """Stock or state rule broken (out of stock, already processed, ...)."""
    status_code = 400


class Unauthorized(ApiError):
    status_code = 401


class Forbidden(ApiError):
    status_code = 403
