"""
Shared pytest fixtures for the Thesis Pipeline test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - factories: ORM helpers that build projects and stages in any state
"""

from datetime import date, datetime, timezone

import pytest

from thesis_pipeline import create_app
from thesis_pipeline.models import db as _db
from thesis_pipeline.models.thesis import (
    DefenseSession,
    Endorsement,
    Evaluation,
    JurorAssignment,
    Project,
    ProjectMember,
    ProjectStage,
    Submission,
)

COORDINATOR = "coord-1"
DIRECTOR = "dir-1"
STUDENT = "stud-1"
JUROR_A = "juror-a"
JUROR_B = "juror-b"

# Friday
TODAY = date(2026, 3, 6)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


def headers(user_id=COORDINATOR):
    return {"X-User-Id": user_id}


# ── Factories ────────────────────────────────────────────────────────────


def make_project(title="Detección de plagas con visión artificial", status="VIGENTE"):
    project = Project(
        title=title,
        program="Ingeniería de Sistemas",
        modality="Monografía",
        created_by=STUDENT,
        director_id=DIRECTOR,
        global_status=status,
    )
    _db.session.add(project)
    _db.session.flush()
    _db.session.add(ProjectMember(project_id=project.id, user_id=STUDENT, role="AUTHOR"))
    _db.session.commit()
    return project


def make_stage(project, stage_name, system_state="BORRADOR", official_state="PENDIENTE", **kwargs):
    stage = ProjectStage(
        project_id=project.id,
        stage_name=stage_name,
        system_state=system_state,
        official_state=official_state,
        **kwargs,
    )
    _db.session.add(stage)
    _db.session.commit()
    return stage


def add_submission(stage, version=None, submitted_by=STUDENT):
    if version is None:
        version = len(stage.submissions) + 1
    submission = Submission(
        stage_id=stage.id,
        submitted_by=submitted_by,
        version=version,
        external_url=f"https://docs.example.org/{stage.stage_name.lower()}/v{version}",
    )
    _db.session.add(submission)
    _db.session.commit()
    return submission


def endorse(submission, approved=True):
    endorsement = Endorsement(submission_id=submission.id, endorsed_by=DIRECTOR, approved=approved)
    _db.session.add(endorsement)
    _db.session.commit()
    return endorsement


def assign(stage, *jurors, due_date=date(2026, 3, 21)):
    for juror_id in jurors or (JUROR_A, JUROR_B):
        _db.session.add(JurorAssignment(
            project_id=stage.project_id,
            stage_id=stage.id,
            stage_name=stage.stage_name,
            user_id=juror_id,
            due_date=due_date,
            assigned_by=COORDINATOR,
        ))
    _db.session.commit()


def evaluate(stage, submission, evaluator_id, result, observations=None):
    evaluation = Evaluation(
        submission_id=submission.id,
        stage_id=stage.id,
        evaluator_id=evaluator_id,
        official_result=result,
        observations=observations,
    )
    _db.session.add(evaluation)
    _db.session.commit()
    return evaluation


def jury_stage(stage_name, *results, endorsed=True):
    """Project + endorsed jury stage under review with one verdict per result."""
    project = make_project()
    stage = make_stage(project, stage_name, system_state="EN_REVISION")
    submission = add_submission(stage)
    if endorsed:
        endorse(submission)
    assign(stage)
    for juror_id, result in zip((JUROR_A, JUROR_B), results):
        evaluate(stage, submission, juror_id, result, observations=f"Concepto de {juror_id}")
    return project, stage, submission


def defense_stage(grade=None, observations=None):
    """Project + SUSTENTACION stage with a scheduled session and optional grade."""
    project = make_project()
    stage = make_stage(project, "SUSTENTACION", system_state="RADICADA")
    session = DefenseSession(
        stage_id=stage.id,
        scheduled_at=datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc),
        location="Auditorio B",
        created_by=COORDINATOR,
        grade=grade,
        grade_observations=observations,
    )
    _db.session.add(session)
    _db.session.commit()
    return project, stage
