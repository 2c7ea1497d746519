from typing import Any, Optional


class ApiError(Exception):
    """
    An error with an HTTP status and a `{error, details?}` body.
    """
    status_code = 500

    def __init__(self, error: str, details: Optional[Any] = None,
                 status_code: Optional[int] = None) -> None:
        super().__init__(error)
        self.error = error
        self.details = details
        if status_code is not None:
            self.status_code = status_code

    def body(self) -> dict:
        out: dict = {"error": self.error}
        if self.details is not None:
            out["details"] = self.details
        return out


class BadRequest(ApiError):
    status_code = 400


class Unauthorized(ApiError):
    status_code = 401


class NotFound(ApiError):
    status_code = 404


class Upstream(ApiError):
    status_code = 502


class NotConfigured(ApiError):
    status_code = 500

    def __init__(self, service: str) -> None:
        super().__init__(f"{service} is not configured")


class InsufficientBalance(ApiError):
    status_code = 500
