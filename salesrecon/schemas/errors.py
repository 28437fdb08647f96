"""
schemas/errors.py — Structured error response model

Shared by the ReconciliationError and RequestValidationError handlers in main.py.
"""

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    error: str
    status_code: int
    code: str = ""
    request_id: str = ""
    detail: dict | list | None = None
