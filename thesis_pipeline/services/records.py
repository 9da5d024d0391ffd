"""
Typed records exchanged across the Stage Ledger boundary.

The ledger converts ORM rows into these frozen dataclasses and validates
them on construction, so the classifier and the consolidation engine
never see raw rows or loosely-typed dicts.

Usage:
    from thesis_pipeline.services.records import EvaluationRecord, StageRecord

    stage = StageRecord(id=1, project_id=7, stage_name="ANTEPROYECTO",
                        system_state="EN_REVISION", official_state="PENDIENTE")
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import date

from thesis_pipeline.core.exceptions import ValidationError
from thesis_pipeline.models.thesis import (
    CONSOLIDATED_SYSTEM_STATES,
    EVALUATION_RESULTS,
    OFFICIAL_STATES,
    STAGE_NAMES,
    SYSTEM_STATES,
)


def _require_member(field_name: str, value, allowed) -> None:
    if value not in allowed:
        raise ValidationError(
            f"Invalid {field_name} '{value}'. Must be one of: {', '.join(allowed)}",
            details={field_name: f"must be one of {list(allowed)}"},
        )


@dataclass(frozen=True)
class StageRecord:
    """Snapshot of a ProjectStage row."""
    id: int
    project_id: int
    stage_name: str
    system_state: str
    official_state: str
    final_grade: int | None = None
    observations: str | None = None
    decision_key: str | None = None

    def __post_init__(self):
        _require_member("stage_name", self.stage_name, STAGE_NAMES)
        _require_member("system_state", self.system_state, SYSTEM_STATES)
        _require_member("official_state", self.official_state, OFFICIAL_STATES)
        if self.official_state != "PENDIENTE" and self.system_state not in CONSOLIDATED_SYSTEM_STATES:
            raise ValidationError(
                f"Stage {self.id} has official_state={self.official_state} "
                f"but system_state={self.system_state}",
            )

    @property
    def is_pending(self) -> bool:
        return self.official_state == "PENDIENTE"

    @classmethod
    def from_model(cls, stage) -> StageRecord:
        return cls(
            id=stage.id,
            project_id=stage.project_id,
            stage_name=stage.stage_name,
            system_state=stage.system_state,
            official_state=stage.official_state,
            final_grade=stage.final_grade,
            observations=stage.observations,
            decision_key=stage.decision_key,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class EvaluationRecord:
    """One evaluator verdict, optionally carried over from a previous version."""
    evaluator_id: str
    official_result: str
    observations: str | None = None
    evaluator_name: str | None = None
    submission_id: int | None = None
    submission_version: int | None = None
    carried_over: bool = False

    def __post_init__(self):
        if not self.evaluator_id:
            raise ValidationError("evaluator_id is required", details={"evaluator_id": "required"})
        _require_member("official_result", self.official_result, EVALUATION_RESULTS)

    @property
    def display_name(self) -> str:
        return self.evaluator_name or str(self.evaluator_id)

    @classmethod
    def from_model(cls, evaluation, *, version: int | None = None) -> EvaluationRecord:
        return cls(
            evaluator_id=str(evaluation.evaluator_id),
            official_result=evaluation.official_result,
            observations=evaluation.observations,
            submission_id=evaluation.submission_id,
            submission_version=version,
        )

    def mark_carried_over(self) -> EvaluationRecord:
        return replace(self, carried_over=True)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class DeadlineRecord:
    """Snapshot of a Deadline row."""
    id: int
    stage_id: int
    description: str
    due_date: date
    created_by: str
    decision_key: str | None = None

    @classmethod
    def from_model(cls, deadline) -> DeadlineRecord:
        return cls(
            id=deadline.id,
            stage_id=deadline.stage_id,
            description=deadline.description,
            due_date=deadline.due_date,
            created_by=deadline.created_by,
            decision_key=deadline.decision_key,
        )

    def to_dict(self) -> dict:
        d = asdict(self)
        d["due_date"] = self.due_date.isoformat()
        return d
