"""
schemas/reconciliation.py — Pydantic models for reconciliation operations

Validates every input to the public engine operations before any I/O.

Business Rules:
- batch_size is 1..1000 (default from settings, 500)
- mode is one of dry_run, safe, aggressive, manual; manual needs an action
- date_from must not be after date_to
- Each manual action carries exactly the ids its type needs
- Rollbacks require confirm=true

Called by: services/reconciliation_service.py, routers/reconciliation.py
Depends on: pydantic, config
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator, model_validator

from ..config import settings
from ..exceptions import ValidationError

Mode = Literal["dry_run", "safe", "aggressive", "manual"]
Band = Literal["auto_link", "needs_review", "reject"]


def validate_input(model_cls, data):
    """Parse data into model_cls, re-raising pydantic errors as ValidationError."""
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data or {})
    except PydanticValidationError as e:
        errors = e.errors(include_url=False, include_context=False, include_input=False)
        raise ValidationError(
            f"Invalid {model_cls.__name__}",
            detail={"errors": [{"loc": list(err["loc"]), "msg": err["msg"]} for err in errors]},
        ) from e


class _DateRange(BaseModel):
    owner_id: int | None = Field(None, gt=0)
    date_from: date | None = None
    date_to: date | None = None

    @model_validator(mode="after")
    def range_ordered(self):
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must be on or before date_to")
        return self


# ── Read-only ────────────────────────────────────────────────────────


class AnalyzeFilter(_DateRange):
    pass


class CandidateFilter(_DateRange):
    band: Band | None = None
    min_confidence: float | None = Field(None, ge=0, le=100)
    limit: int | None = Field(None, ge=1, le=5000)


# ── Mutating ─────────────────────────────────────────────────────────


class ManualAction(BaseModel):
    action_type: Literal[
        "link",
        "create_deal",
        "create_activity",
        "merge_duplicates",
        "mark_reviewed",
        "rollback",
    ]
    activity_id: int | None = Field(None, gt=0)
    deal_id: int | None = Field(None, gt=0)
    keep_id: int | None = Field(None, gt=0)
    drop_id: int | None = Field(None, gt=0)
    record_type: Literal["activity", "deal"] = "activity"
    decision: Literal["accept", "reject"] | None = None
    notes: str | None = None
    force: bool = False
    action_id: int | None = Field(None, gt=0)
    confirm: bool = False

    @model_validator(mode="after")
    def required_ids(self):
        needed = {
            "link": ("activity_id", "deal_id"),
            "create_deal": ("activity_id",),
            "create_activity": ("deal_id",),
            "merge_duplicates": ("keep_id", "drop_id"),
            "mark_reviewed": ("activity_id", "deal_id", "decision"),
            "rollback": ("action_id",),
        }[self.action_type]
        missing = [name for name in needed if getattr(self, name) is None]
        if missing:
            raise ValueError(f"{self.action_type} requires {', '.join(missing)}")
        if self.action_type == "rollback" and not self.confirm:
            raise ValueError("rollback requires confirm=true")
        return self


class ExecuteOptions(_DateRange):
    batch_size: int = Field(default_factory=lambda: settings.batch_size, ge=1, le=1000)
    max_batches: int | None = Field(None, ge=1)
    create_missing: bool = True
    merge_duplicates: bool = False
    include_deals: bool = True
    include_duplicates: bool = True
    parallel_batches: int = Field(1, ge=1, le=8)
    resume_job_id: str | None = None
    resume_from: dict[str, int] | None = None
    actor: str = "system"
    action: ManualAction | None = None

    @field_validator("resume_from")
    @classmethod
    def known_phases(cls, v: dict[str, int] | None) -> dict[str, int] | None:
        if v is None:
            return v
        unknown = set(v) - {"activities", "deals"}
        if unknown:
            raise ValueError(f"Unknown resume phases: {', '.join(sorted(unknown))}")
        return v


class ExecuteRequest(BaseModel):
    mode: Mode
    options: ExecuteOptions = Field(default_factory=ExecuteOptions)

    @model_validator(mode="after")
    def manual_has_action(self):
        if self.mode == "manual" and self.options.action is None:
            raise ValueError("manual mode requires options.action")
        return self


class RollbackRequest(BaseModel):
    confirm: bool = False
    actor: str = "system"

    @field_validator("confirm")
    @classmethod
    def must_confirm(cls, v: bool) -> bool:
        if not v:
            raise ValueError("Rollback requires confirm=true")
        return v


class RollbackSinceRequest(RollbackRequest):
    since: datetime
    owner_id: int | None = Field(None, gt=0)


# ── Responses ────────────────────────────────────────────────────────


class ActionOut(BaseModel):
    id: int
    action_type: str
    activity_id: int | None = None
    deal_id: int | None = None
    record_type: str | None = None
    record_ids: list[str] = []
    confidence: float | None = None
    automatic: bool = False
    actor: str
    job_id: str | None = None
    details: dict = {}
    rolled_back: bool = False
    rolled_back_at: str | None = None
    rollback_of_id: int | None = None
    created_at: str | None = None


class RollbackOut(BaseModel):
    action_id: int
    rollback_action_id: int
    restored_records: list[str]


class RollbackSinceOut(BaseModel):
    since: str
    reverted: list[int]
    failed: list[dict]
