"""
Thesis Pipeline
Thesis domain models.

Models:
    - Project: one thesis ("trabajo de grado") and its global status.
    - ProjectMember: student authors of a project.
    - ProjectStage: one phase of the pipeline (PROPUESTA … SUSTENTACION).
    - Submission: immutable, versioned document delivery for a stage.
    - Endorsement: director sign-off on a submission.
    - JurorAssignment: jury member assigned to review a stage.
    - Evaluation: one jury verdict per (evaluator, submission).
    - Deadline: remediation / delivery due date created by a decision.
    - DefenseSession: scheduled defense and its recorded grade.
"""

from datetime import datetime, timezone

from thesis_pipeline.models import db

# ── Constants ────────────────────────────────────────────────────────────────

GLOBAL_STATUSES = ("VIGENTE", "FINALIZADO", "VENCIDO", "CANCELADO")

STAGE_NAMES = ("PROPUESTA", "ANTEPROYECTO", "INFORME_FINAL", "SUSTENTACION")

SYSTEM_STATES = ("BORRADOR", "RADICADA", "EN_REVISION", "CON_OBSERVACIONES", "CERRADA")

OFFICIAL_STATES = ("PENDIENTE", "APROBADA", "APROBADA_CON_MODIFICACIONES", "NO_APROBADA")

EVALUATION_RESULTS = ("APROBADO", "APLAZADO_POR_MODIFICACIONES", "NO_APROBADO")

# Stage that follows each stage once it reaches APROBADA
STAGE_SUCCESSORS = {
    "PROPUESTA": "ANTEPROYECTO",
    "ANTEPROYECTO": "INFORME_FINAL",
    "INFORME_FINAL": "SUSTENTACION",
    "SUSTENTACION": None,
}

# Stages whose jury cycle is gated by a director endorsement
ENDORSED_STAGES = frozenset({"ANTEPROYECTO", "INFORME_FINAL"})

# System states that are allowed once an official outcome exists
CONSOLIDATED_SYSTEM_STATES = frozenset({"CERRADA", "CON_OBSERVACIONES"})


def _utcnow():
    return datetime.now(timezone.utc)


class Project(db.Model):
    """
    A thesis project.

    ``global_status`` is VIGENTE until the final delivery marks it
    FINALIZADO; VENCIDO / CANCELADO are administrative overrides.
    """

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=True)
    program = db.Column(db.String(200), nullable=False, comment="Academic program name")
    modality = db.Column(db.String(100), nullable=False, comment="Degree modality (monografía, pasantía, …)")
    modality_implemented = db.Column(
        db.Boolean, nullable=False, default=True,
        comment="False when the modality has no detailed workflow yet — no PROPUESTA stage is opened",
    )
    director_id = db.Column(db.String(64), nullable=True, index=True, comment="Advisor/director user id")
    created_by = db.Column(db.String(64), nullable=False)
    global_status = db.Column(
        db.String(20), nullable=False, default="VIGENTE",
        comment="VIGENTE | FINALIZADO | VENCIDO | CANCELADO",
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    members = db.relationship(
        "ProjectMember", backref="project", lazy="select",
        cascade="all, delete-orphan", order_by="ProjectMember.id",
    )
    stages = db.relationship(
        "ProjectStage", backref="project", lazy="select",
        cascade="all, delete-orphan", order_by="ProjectStage.id",
    )

    def to_dict(self, include_stages: bool = False) -> dict:
        d = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "program": self.program,
            "modality": self.modality,
            "modality_implemented": self.modality_implemented,
            "director_id": self.director_id,
            "created_by": self.created_by,
            "global_status": self.global_status,
            "authors": [m.user_id for m in self.members],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_stages:
            d["stages"] = [s.to_dict() for s in self.stages]
        return d

    def __repr__(self):
        return f"<Project {self.id}: {self.title!r} [{self.global_status}]>"


class ProjectMember(db.Model):
    """Student author of a project."""

    __tablename__ = "project_members"
    __table_args__ = (
        db.UniqueConstraint("project_id", "user_id", name="uq_project_members_project_user"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = db.Column(db.String(64), nullable=False, index=True)
    role = db.Column(db.String(20), nullable=False, default="AUTHOR")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "role": self.role,
        }


class ProjectStage(db.Model):
    """
    One phase of the thesis pipeline for a project.

    Business rules:
    - Exactly one row per (project_id, stage_name).
    - official_state != PENDIENTE implies system_state in
      CONSOLIDATED_SYSTEM_STATES.
    - decision_key identifies the consolidation decision that closed the
      stage; used to resume a partially applied decision.
    """

    __tablename__ = "project_stages"
    __table_args__ = (
        db.UniqueConstraint("project_id", "stage_name", name="uq_project_stages_project_stage"),
        db.CheckConstraint(
            "final_grade IS NULL OR (final_grade >= 0 AND final_grade <= 100)",
            name="ck_project_stages_final_grade_range",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    stage_name = db.Column(
        db.String(20), nullable=False,
        comment="PROPUESTA | ANTEPROYECTO | INFORME_FINAL | SUSTENTACION",
    )
    system_state = db.Column(
        db.String(20), nullable=False, default="BORRADOR",
        comment="BORRADOR | RADICADA | EN_REVISION | CON_OBSERVACIONES | CERRADA",
    )
    official_state = db.Column(
        db.String(30), nullable=False, default="PENDIENTE",
        comment="PENDIENTE | APROBADA | APROBADA_CON_MODIFICACIONES | NO_APROBADA",
    )
    final_grade = db.Column(db.Integer, nullable=True, comment="Defense grade 0–100 (SUSTENTACION only)")
    observations = db.Column(db.Text, nullable=True)
    decision_key = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    submissions = db.relationship(
        "Submission", backref="stage", lazy="select",
        cascade="all, delete-orphan", order_by="Submission.version",
    )
    deadlines = db.relationship(
        "Deadline", backref="stage", lazy="select",
        cascade="all, delete-orphan", order_by="Deadline.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "stage_name": self.stage_name,
            "system_state": self.system_state,
            "official_state": self.official_state,
            "final_grade": self.final_grade,
            "observations": self.observations,
            "decision_key": self.decision_key,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return (
            f"<ProjectStage {self.id}: {self.stage_name} "
            f"{self.system_state}/{self.official_state}>"
        )


class Submission(db.Model):
    """Versioned delivery for a stage. Immutable once created."""

    __tablename__ = "submissions"
    __table_args__ = (
        db.UniqueConstraint("stage_id", "version", name="uq_submissions_stage_version"),
        db.CheckConstraint("version >= 1", name="ck_submissions_version_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)
    stage_id = db.Column(
        db.Integer, db.ForeignKey("project_stages.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    submitted_by = db.Column(db.String(64), nullable=False)
    version = db.Column(db.Integer, nullable=False)
    external_url = db.Column(db.String(1000), nullable=True)
    file_path = db.Column(db.String(1000), nullable=True, comment="Path in the external document store")
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    endorsements = db.relationship(
        "Endorsement", backref="submission", lazy="select",
        cascade="all, delete-orphan", order_by="Endorsement.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stage_id": self.stage_id,
            "submitted_by": self.submitted_by,
            "version": self.version,
            "external_url": self.external_url,
            "file_path": self.file_path,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Endorsement(db.Model):
    """Director sign-off on a submission; gate before jury assignment."""

    __tablename__ = "endorsements"

    id = db.Column(db.Integer, primary_key=True)
    submission_id = db.Column(
        db.Integer, db.ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    endorsed_by = db.Column(db.String(64), nullable=False)
    approved = db.Column(db.Boolean, nullable=False)
    comments = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "submission_id": self.submission_id,
            "endorsed_by": self.endorsed_by,
            "approved": self.approved,
            "comments": self.comments,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class JurorAssignment(db.Model):
    """Jury member assigned to evaluate a stage."""

    __tablename__ = "juror_assignments"
    __table_args__ = (
        db.UniqueConstraint("stage_id", "user_id", name="uq_juror_assignments_stage_user"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    stage_id = db.Column(
        db.Integer, db.ForeignKey("project_stages.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    stage_name = db.Column(db.String(20), nullable=False)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    due_date = db.Column(db.Date, nullable=False, comment="Evaluation due date")
    assigned_by = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "stage_id": self.stage_id,
            "stage_name": self.stage_name,
            "user_id": self.user_id,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "assigned_by": self.assigned_by,
        }


class Evaluation(db.Model):
    """One jury (or coordinator) verdict per (evaluator, submission)."""

    __tablename__ = "evaluations"
    __table_args__ = (
        db.UniqueConstraint("evaluator_id", "submission_id", name="uq_evaluations_evaluator_submission"),
    )

    id = db.Column(db.Integer, primary_key=True)
    submission_id = db.Column(
        db.Integer, db.ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    stage_id = db.Column(
        db.Integer, db.ForeignKey("project_stages.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    evaluator_id = db.Column(db.String(64), nullable=False)
    official_result = db.Column(
        db.String(30), nullable=False,
        comment="APROBADO | APLAZADO_POR_MODIFICACIONES | NO_APROBADO",
    )
    observations = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "submission_id": self.submission_id,
            "stage_id": self.stage_id,
            "evaluator_id": self.evaluator_id,
            "official_result": self.official_result,
            "observations": self.observations,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Deadline(db.Model):
    """Due date created as a side effect of a consolidation decision."""

    __tablename__ = "deadlines"
    __table_args__ = (
        db.UniqueConstraint("stage_id", "decision_key", name="uq_deadlines_stage_decision"),
    )

    id = db.Column(db.Integer, primary_key=True)
    stage_id = db.Column(
        db.Integer, db.ForeignKey("project_stages.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    description = db.Column(db.String(500), nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    created_by = db.Column(db.String(64), nullable=False)
    decision_key = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stage_id": self.stage_id,
            "description": self.description,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "created_by": self.created_by,
            "decision_key": self.decision_key,
        }


class DefenseSession(db.Model):
    """Scheduled defense for a SUSTENTACION stage; holds the recorded grade."""

    __tablename__ = "defense_sessions"

    id = db.Column(db.Integer, primary_key=True)
    stage_id = db.Column(
        db.Integer, db.ForeignKey("project_stages.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    scheduled_at = db.Column(db.DateTime(timezone=True), nullable=False)
    location = db.Column(db.String(300), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    grade = db.Column(db.Integer, nullable=True, comment="Grade 0–100 entered by the coordinator")
    grade_observations = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stage_id": self.stage_id,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "location": self.location,
            "notes": self.notes,
            "grade": self.grade,
            "grade_observations": self.grade_observations,
            "created_by": self.created_by,
        }
