from __future__ import annotations
import sys
from enum import Enum
from uuid import UUID
from pydantic import BaseModel

UNLIMITED = sys.maxsize


class LimitAction(str, Enum):
    create_form = "create_form"
    create_submission = "create_submission"
    export_form = "export_form"
    export_submission = "export_submission"


# Actions whose counter is scoped to a resource rather than to the user.
RESOURCE_ACTIONS = frozenset({
    LimitAction.create_submission,
    LimitAction.export_form,
    LimitAction.export_submission,
})


class LimitCheck(BaseModel):
    allowed: bool
    limit: int
    current: int
    remaining: int

    @classmethod
    def evaluate(cls, limit: int, current: int) -> "LimitCheck":
        # limit == 0 is a hard "no", whatever the current count
        allowed = limit > 0 and current < limit
        return cls(allowed=allowed, limit=limit, current=current, remaining=max(0, limit - current))

    @classmethod
    def unlimited(cls) -> "LimitCheck":
        return cls(allowed=True, limit=UNLIMITED, current=0, remaining=UNLIMITED)


class UsageMeter(BaseModel):
    current: int
    limit: int
    remaining: int
    percentage: int


class FormSubmissionUsage(BaseModel):
    form_id: UUID
    form_title: str
    current: int
    limit: int
    remaining: int


class ExportAllowance(BaseModel):
    forms_allowed: bool
    submissions_allowed: bool
    max_exports_per_form: int
    max_exports_per_submission: int


class UsageSummary(BaseModel):
    user_id: UUID
    plan_id: UUID
    plan_name: str
    forms: UsageMeter
    submissions_per_form: list[FormSubmissionUsage]
    total_submissions: int
    exports: ExportAllowance
