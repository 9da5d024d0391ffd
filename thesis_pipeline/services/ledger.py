"""
Stage Ledger — the narrow persistence interface used by the transition core.

The consolidation engine never queries the database; the transition
service reads inputs and writes effects exclusively through a
``StageLedger``.  ``SqlAlchemyLedger`` is the production implementation
over the Flask-SQLAlchemy session.  Every value crossing the boundary is a
validated record from ``services.records``.

Write contract:
  - ``update_stage_if_pending`` is a conditional UPDATE … WHERE
    official_state = 'PENDIENTE'; the loser of a concurrent race gets False.
  - ``insert_deadline`` / ``insert_stage`` are idempotent: an existing row
    for the same decision / (project, stage_name) is returned untouched.
  - ``unit_of_work`` commits once at the end; any store error rolls back
    and surfaces as LedgerWriteFailure.

Usage:
    from thesis_pipeline.services.ledger import SqlAlchemyLedger

    ledger = SqlAlchemyLedger()
    with ledger.unit_of_work():
        claimed = ledger.update_stage_if_pending(stage_id, ...)
"""

from __future__ import annotations

import abc
import logging
from contextlib import contextmanager
from datetime import date

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from thesis_pipeline.core.exceptions import LedgerWriteFailure, NotFoundError
from thesis_pipeline.models import db
from thesis_pipeline.models.audit import AuditEvent, write_audit_event
from thesis_pipeline.models.thesis import (
    DefenseSession,
    Deadline,
    Endorsement,
    Evaluation,
    Project,
    ProjectStage,
    Submission,
)
from thesis_pipeline.services.classifier import carry_over_approvals
from thesis_pipeline.services.records import DeadlineRecord, EvaluationRecord, StageRecord

logger = logging.getLogger(__name__)


class StageLedger(abc.ABC):
    """Operations the transition core needs from the external store."""

    # ── Reads ────────────────────────────────────────────────────────────

    @abc.abstractmethod
    def get_stage(self, stage_id: int) -> StageRecord:
        """Return the stage or raise NotFoundError."""

    @abc.abstractmethod
    def find_stage(self, project_id: int, stage_name: str) -> StageRecord | None:
        ...

    @abc.abstractmethod
    def get_evaluations(self, stage_id: int) -> list[EvaluationRecord]:
        """Evaluations of the latest submission, approvals carried over from earlier versions."""

    @abc.abstractmethod
    def get_latest_grade(self, stage_id: int) -> int | None:
        ...

    @abc.abstractmethod
    def get_grade_observations(self, stage_id: int) -> str | None:
        ...

    @abc.abstractmethod
    def get_project_status(self, project_id: int) -> str:
        """Global status of the project or raise NotFoundError."""

    @abc.abstractmethod
    def has_approved_endorsement(self, stage_id: int) -> bool:
        """True when the latest submission of the stage has an approved endorsement."""

    @abc.abstractmethod
    def has_audit_event(self, decision_key: str) -> bool:
        ...

    # ── Writes ───────────────────────────────────────────────────────────

    @abc.abstractmethod
    def update_stage_if_pending(
        self,
        stage_id: int,
        *,
        official_state: str,
        system_state: str,
        observations: str,
        decision_key: str,
        final_grade: int | None = None,
    ) -> bool:
        """Conditional update; False when the stage is no longer PENDIENTE."""

    @abc.abstractmethod
    def insert_deadline(
        self,
        stage_id: int,
        *,
        description: str,
        due_date: date,
        created_by: str,
        decision_key: str | None = None,
    ) -> tuple[DeadlineRecord, bool]:
        """Return (deadline, created)."""

    @abc.abstractmethod
    def insert_stage(self, project_id: int, stage_name: str) -> tuple[StageRecord, bool]:
        """Create a BORRADOR/PENDIENTE stage unless one exists. Return (stage, created)."""

    @abc.abstractmethod
    def append_audit_event(
        self,
        *,
        project_id: int,
        user_id: str,
        event_type: str,
        description: str,
        metadata: dict | None = None,
        decision_key: str | None = None,
    ) -> int:
        """Append one audit event and return its id."""

    @abc.abstractmethod
    def unit_of_work(self, operation: str = "unit of work"):
        """Context manager grouping writes into one atomic unit."""


class SqlAlchemyLedger(StageLedger):
    """StageLedger over the Flask-SQLAlchemy session."""

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session or db.session

    # ── Internal helpers ─────────────────────────────────────────────────

    def _stage_row(self, stage_id: int) -> ProjectStage:
        stage = self.session.get(ProjectStage, stage_id)
        if stage is None:
            raise NotFoundError(resource="ProjectStage", resource_id=stage_id)
        return stage

    def _latest_submissions(self, stage_id: int, limit: int | None = None) -> list[Submission]:
        stmt = (
            select(Submission)
            .where(Submission.stage_id == stage_id)
            .order_by(Submission.version.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.execute(stmt).scalars())

    def _evaluations_for(self, stage_id: int, submission: Submission) -> list[EvaluationRecord]:
        stmt = (
            select(Evaluation)
            .where(Evaluation.stage_id == stage_id, Evaluation.submission_id == submission.id)
            .order_by(Evaluation.id)
        )
        return [
            EvaluationRecord.from_model(e, version=submission.version)
            for e in self.session.execute(stmt).scalars()
        ]

    def _defense_session(self, stage_id: int) -> DefenseSession | None:
        return self.session.execute(
            select(DefenseSession).where(DefenseSession.stage_id == stage_id)
        ).scalar_one_or_none()

    # ── Reads ────────────────────────────────────────────────────────────

    def get_stage(self, stage_id):
        return StageRecord.from_model(self._stage_row(stage_id))

    def find_stage(self, project_id, stage_name):
        stage = self.session.execute(
            select(ProjectStage).where(
                ProjectStage.project_id == project_id,
                ProjectStage.stage_name == stage_name,
            )
        ).scalar_one_or_none()
        return StageRecord.from_model(stage) if stage else None

    def get_evaluations(self, stage_id):
        self._stage_row(stage_id)
        subs = self._latest_submissions(stage_id)
        if not subs:
            return []
        current = self._evaluations_for(stage_id, subs[0])
        # most recent earlier verdict per evaluator, newest version first
        previous = {}
        for submission in subs[1:]:
            for evaluation in self._evaluations_for(stage_id, submission):
                previous.setdefault(evaluation.evaluator_id, evaluation)
        if not previous:
            return current
        return carry_over_approvals(current, list(previous.values()))

    def get_latest_grade(self, stage_id):
        session = self._defense_session(stage_id)
        return session.grade if session else None

    def get_grade_observations(self, stage_id):
        session = self._defense_session(stage_id)
        return session.grade_observations if session else None

    def get_project_status(self, project_id):
        status = self.session.execute(
            select(Project.global_status).where(Project.id == project_id)
        ).scalar_one_or_none()
        if status is None:
            raise NotFoundError(resource="Project", resource_id=project_id)
        return status

    def has_approved_endorsement(self, stage_id):
        subs = self._latest_submissions(stage_id, limit=1)
        if not subs:
            return False
        stmt = (
            select(Endorsement.id)
            .where(Endorsement.submission_id == subs[0].id, Endorsement.approved.is_(True))
            .limit(1)
        )
        return self.session.execute(stmt).first() is not None

    def has_audit_event(self, decision_key):
        stmt = select(AuditEvent.id).where(AuditEvent.decision_key == decision_key).limit(1)
        return self.session.execute(stmt).first() is not None

    # ── Writes ───────────────────────────────────────────────────────────

    def update_stage_if_pending(self, stage_id, *, official_state, system_state,
                                observations, decision_key, final_grade=None):
        values = {
            "official_state": official_state,
            "system_state": system_state,
            "observations": observations,
            "decision_key": decision_key,
        }
        if final_grade is not None:
            values["final_grade"] = final_grade
        stmt = (
            update(ProjectStage)
            .where(ProjectStage.id == stage_id, ProjectStage.official_state == "PENDIENTE")
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        cached = self.session.identity_map.get(self.session.identity_key(ProjectStage, stage_id))
        if cached is not None:
            self.session.expire(cached)
        return result.rowcount == 1

    def insert_deadline(self, stage_id, *, description, due_date, created_by, decision_key=None):
        if decision_key is not None:
            existing = self.session.execute(
                select(Deadline).where(
                    Deadline.stage_id == stage_id,
                    Deadline.decision_key == decision_key,
                )
            ).scalar_one_or_none()
            if existing is not None:
                return DeadlineRecord.from_model(existing), False
        deadline = Deadline(
            stage_id=stage_id,
            description=description,
            due_date=due_date,
            created_by=str(created_by),
            decision_key=decision_key,
        )
        self.session.add(deadline)
        self.session.flush()
        return DeadlineRecord.from_model(deadline), True

    def insert_stage(self, project_id, stage_name):
        existing = self.find_stage(project_id, stage_name)
        if existing is not None:
            return existing, False
        stage = ProjectStage(
            project_id=project_id,
            stage_name=stage_name,
            system_state="BORRADOR",
            official_state="PENDIENTE",
        )
        self.session.add(stage)
        self.session.flush()
        return StageRecord.from_model(stage), True

    def append_audit_event(self, *, project_id, user_id, event_type, description,
                           metadata=None, decision_key=None):
        event = write_audit_event(
            project_id=project_id,
            user_id=user_id,
            event_type=event_type,
            description=description,
            metadata=metadata,
            decision_key=decision_key,
            session=self.session,
        )
        return event.id

    @contextmanager
    def unit_of_work(self, operation: str = "unit of work"):
        """Commit everything written inside the block, or nothing.

        SQLAlchemy errors roll back and are re-raised as LedgerWriteFailure;
        domain errors roll back and propagate unchanged.
        """
        try:
            yield self
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error("Ledger write failed during %s: %s", operation, exc)
            raise LedgerWriteFailure(operation, exc) from exc
        except Exception:
            self.session.rollback()
            raise
