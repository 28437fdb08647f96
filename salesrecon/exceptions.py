"""
exceptions.py — Reconciliation error taxonomy

Every public operation raises one of these (never a bare SQLAlchemy or
pydantic error). main.py maps them onto HTTP status codes.

Business Rules:
- ValidationError is raised before any I/O
- ConflictError is reported, never retried by the engine
- TransactionError means the store rolled the unit of work back
- IntegrityError is a fatal finding; nothing auto-corrects it

Called by: services/*, routers/reconciliation.py, main.py
"""


class ReconciliationError(Exception):
    status_code = 500
    default_code = "reconciliation_error"

    def __init__(self, message: str, code: str | None = None, detail: dict | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "detail": self.detail}


class ValidationError(ReconciliationError):
    status_code = 400
    default_code = "invalid_input"


class NotFoundError(ReconciliationError):
    status_code = 404
    default_code = "not_found"


class ConflictError(ReconciliationError):
    status_code = 409
    default_code = "conflict"


class TransactionError(ReconciliationError):
    status_code = 500
    default_code = "transaction_failed"


class IntegrityError(ReconciliationError):
    status_code = 500
    default_code = "integrity_violation"
