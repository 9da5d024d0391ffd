"""
Grade / Result Classifier.

Pure, stateless functions mapping raw inputs (jury verdicts, a numeric
defense grade, calendar arithmetic) to official outcomes.  No database
access, no side effects.

Two jury aggregation policies coexist on purpose:
  - "any_veto"  (ANTEPROYECTO):  one NO_APROBADO rejects the stage.
  - "unanimity" (INFORME_FINAL): only unanimous verdicts approve or reject;
                                 any mix means modifications are required.

Usage:
    from thesis_pipeline.services.classifier import classify_jury_consensus

    classify_jury_consensus(["APROBADO", "NO_APROBADO"], policy="any_veto")
    # -> "NO_APROBADA"
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, timedelta

from thesis_pipeline.core.exceptions import InvalidGrade, ValidationError
from thesis_pipeline.models.thesis import EVALUATION_RESULTS
from thesis_pipeline.services.records import EvaluationRecord

ANY_VETO = "any_veto"
UNANIMITY = "unanimity"
JURY_POLICIES = (ANY_VETO, UNANIMITY)

MIN_JURY_EVALUATIONS = 2

PASSING_GRADE = 70

# (lower bound inclusive, label, official state), highest band first
GRADE_BANDS = (
    (100, "LAUREADA", "APROBADA"),
    (95, "MERITORIA", "APROBADA"),
    (PASSING_GRADE, "APROBADA", "APROBADA"),
    (0, "REPROBADA", "NO_APROBADA"),
)

_VERDICT_TO_OFFICIAL_STATE = {
    "APROBADO": "APROBADA",
    "APLAZADO_POR_MODIFICACIONES": "APROBADA_CON_MODIFICACIONES",
    "NO_APROBADO": "NO_APROBADA",
}


@dataclass(frozen=True)
class DefenseGrade:
    """Classified defense grade."""
    grade: int
    label: str
    official_state: str

    @property
    def passed(self) -> bool:
        return self.official_state == "APROBADA"


def _validate_verdicts(results: Sequence[str]) -> None:
    unknown = sorted({r for r in results if r not in EVALUATION_RESULTS})
    if unknown:
        raise ValidationError(
            f"Unknown jury verdict(s): {', '.join(map(str, unknown))}",
            details={"official_result": f"must be one of {list(EVALUATION_RESULTS)}"},
        )


def classify_jury_consensus(results: Sequence[str], policy: str) -> str | None:
    """Aggregate two or more jury verdicts into one official state.

    Returns None when fewer than MIN_JURY_EVALUATIONS verdicts are present;
    that is a pending state, not an error.
    """
    if policy not in JURY_POLICIES:
        raise ValueError(f"Unknown jury policy: {policy}")
    results = list(results)
    _validate_verdicts(results)
    if len(results) < MIN_JURY_EVALUATIONS:
        return None

    if policy == ANY_VETO:
        if "NO_APROBADO" in results:
            return "NO_APROBADA"
        if "APLAZADO_POR_MODIFICACIONES" in results:
            return "APROBADA_CON_MODIFICACIONES"
        return "APROBADA"

    if all(r == "APROBADO" for r in results):
        return "APROBADA"
    if all(r == "NO_APROBADO" for r in results):
        return "NO_APROBADA"
    return "APROBADA_CON_MODIFICACIONES"


def verdict_to_official_state(verdict: str) -> str:
    """Map a single coordinator verdict (PROPUESTA) to an official state."""
    _validate_verdicts([verdict])
    return _VERDICT_TO_OFFICIAL_STATE[verdict]


def validate_grade(grade) -> int:
    """Return *grade* if it is an integer in [0, 100], else raise InvalidGrade."""
    # bool is an int subclass; a checkbox value is never a grade
    if isinstance(grade, bool) or not isinstance(grade, int):
        raise InvalidGrade(grade)
    if grade < 0 or grade > 100:
        raise InvalidGrade(grade)
    return grade


def classify_defense_grade(grade) -> DefenseGrade:
    """Map a defense grade to its label and official state.

    <70 REPROBADA · 70–94 APROBADA · 95–99 MERITORIA · 100 LAUREADA
    """
    grade = validate_grade(grade)
    for lower, label, official_state in GRADE_BANDS:
        if grade >= lower:
            return DefenseGrade(grade=grade, label=label, official_state=official_state)
    raise InvalidGrade(grade)  # unreachable: the last band starts at 0


def carry_over_approvals(
    current: Iterable[EvaluationRecord],
    previous: Iterable[EvaluationRecord],
) -> list[EvaluationRecord]:
    """Merge approving verdicts of a previous version into the current one.

    An evaluator who re-evaluated the new version always keeps the new
    verdict.  An evaluator who has not yet re-evaluated keeps a previous
    APROBADO (tagged carried_over=True); any other previous verdict is dropped.
    """
    merged = list(current)
    seen = {e.evaluator_id for e in merged}
    for evaluation in previous:
        if evaluation.evaluator_id in seen:
            continue
        if evaluation.official_result == "APROBADO":
            merged.append(evaluation.mark_carried_over())
            seen.add(evaluation.evaluator_id)
    return merged


def add_calendar_days(start: date, days: int) -> date:
    return start + timedelta(days=days)


def add_business_days(start: date, days: int) -> date:
    """Advance day by day counting Mon–Fri only; return the *days*-th business day.

    Friday + 5 business days → the following Friday.
    """
    if days < 0:
        raise ValueError("days must be non-negative")
    current = start
    counted = 0
    while counted < days:
        current += timedelta(days=1)
        if current.weekday() < 5:
            counted += 1
    return current
