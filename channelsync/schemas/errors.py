"""
schemas/errors.py — Error body returned by every failing endpoint

`channel` is set when a channel API caused the failure (connection tests,
rate-limited calls); `detail` carries pydantic validation errors.
"""

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    error: str
    status_code: int
    request_id: str = ""
    channel: str | None = None
    detail: list | None = None
