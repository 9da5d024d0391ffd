"""thesis_pipeline_initial_schema

Create the thesis pipeline tables: projects, members, stages, submissions,
endorsements, juror assignments, evaluations, deadlines, defense sessions
and the audit event trail.

Revision ID: a1f3c9d2e401
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1f3c9d2e401"
down_revision = None
branch_labels = None
depends_on = None


def _created_at():
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False)


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("program", sa.String(length=200), nullable=False),
            sa.Column("modality", sa.String(length=100), nullable=False),
            sa.Column("modality_implemented", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("director_id", sa.String(length=64), nullable=True),
            sa.Column("created_by", sa.String(length=64), nullable=False),
            sa.Column("global_status", sa.String(length=20), nullable=False, server_default="VIGENTE"),
            _created_at(),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_projects_director_id", "projects", ["director_id"])

    if "project_members" not in existing_tables:
        op.create_table(
            "project_members",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("role", sa.String(length=20), nullable=False, server_default="AUTHOR"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "user_id", name="uq_project_members_project_user"),
        )
        op.create_index("ix_project_members_project_id", "project_members", ["project_id"])
        op.create_index("ix_project_members_user_id", "project_members", ["user_id"])

    if "project_stages" not in existing_tables:
        op.create_table(
            "project_stages",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("stage_name", sa.String(length=20), nullable=False),
            sa.Column("system_state", sa.String(length=20), nullable=False, server_default="BORRADOR"),
            sa.Column("official_state", sa.String(length=30), nullable=False, server_default="PENDIENTE"),
            sa.Column("final_grade", sa.Integer(), nullable=True),
            sa.Column("observations", sa.Text(), nullable=True),
            sa.Column("decision_key", sa.String(length=64), nullable=True),
            _created_at(),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.CheckConstraint(
                "final_grade IS NULL OR (final_grade >= 0 AND final_grade <= 100)",
                name="ck_project_stages_final_grade_range",
            ),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "stage_name", name="uq_project_stages_project_stage"),
        )
        op.create_index("ix_project_stages_project_id", "project_stages", ["project_id"])

    if "submissions" not in existing_tables:
        op.create_table(
            "submissions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("stage_id", sa.Integer(), nullable=False),
            sa.Column("submitted_by", sa.String(length=64), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("external_url", sa.String(length=1000), nullable=True),
            sa.Column("file_path", sa.String(length=1000), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            _created_at(),
            sa.CheckConstraint("version >= 1", name="ck_submissions_version_positive"),
            sa.ForeignKeyConstraint(["stage_id"], ["project_stages.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("stage_id", "version", name="uq_submissions_stage_version"),
        )
        op.create_index("ix_submissions_stage_id", "submissions", ["stage_id"])

    if "endorsements" not in existing_tables:
        op.create_table(
            "endorsements",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("submission_id", sa.Integer(), nullable=False),
            sa.Column("endorsed_by", sa.String(length=64), nullable=False),
            sa.Column("approved", sa.Boolean(), nullable=False),
            sa.Column("comments", sa.Text(), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["submission_id"], ["submissions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_endorsements_submission_id", "endorsements", ["submission_id"])

    if "juror_assignments" not in existing_tables:
        op.create_table(
            "juror_assignments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("stage_id", sa.Integer(), nullable=False),
            sa.Column("stage_name", sa.String(length=20), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("due_date", sa.Date(), nullable=False),
            sa.Column("assigned_by", sa.String(length=64), nullable=False),
            _created_at(),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["stage_id"], ["project_stages.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("stage_id", "user_id", name="uq_juror_assignments_stage_user"),
        )
        op.create_index("ix_juror_assignments_project_id", "juror_assignments", ["project_id"])
        op.create_index("ix_juror_assignments_stage_id", "juror_assignments", ["stage_id"])
        op.create_index("ix_juror_assignments_user_id", "juror_assignments", ["user_id"])

    if "evaluations" not in existing_tables:
        op.create_table(
            "evaluations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("submission_id", sa.Integer(), nullable=False),
            sa.Column("stage_id", sa.Integer(), nullable=False),
            sa.Column("evaluator_id", sa.String(length=64), nullable=False),
            sa.Column("official_result", sa.String(length=30), nullable=False),
            sa.Column("observations", sa.Text(), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["submission_id"], ["submissions.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["stage_id"], ["project_stages.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("evaluator_id", "submission_id", name="uq_evaluations_evaluator_submission"),
        )
        op.create_index("ix_evaluations_submission_id", "evaluations", ["submission_id"])
        op.create_index("ix_evaluations_stage_id", "evaluations", ["stage_id"])

    if "deadlines" not in existing_tables:
        op.create_table(
            "deadlines",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("stage_id", sa.Integer(), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=False),
            sa.Column("due_date", sa.Date(), nullable=False),
            sa.Column("created_by", sa.String(length=64), nullable=False),
            sa.Column("decision_key", sa.String(length=64), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["stage_id"], ["project_stages.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("stage_id", "decision_key", name="uq_deadlines_stage_decision"),
        )
        op.create_index("ix_deadlines_stage_id", "deadlines", ["stage_id"])

    if "defense_sessions" not in existing_tables:
        op.create_table(
            "defense_sessions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("stage_id", sa.Integer(), nullable=False),
            sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("location", sa.String(length=300), nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("grade", sa.Integer(), nullable=True),
            sa.Column("grade_observations", sa.Text(), nullable=True),
            sa.Column("created_by", sa.String(length=64), nullable=False),
            _created_at(),
            sa.ForeignKeyConstraint(["stage_id"], ["project_stages.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("stage_id"),
        )

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False, server_default="system"),
            sa.Column("event_type", sa.String(length=60), nullable=False),
            sa.Column("description", sa.String(length=1000), nullable=False),
            sa.Column("metadata", sa.Text(), nullable=True),
            sa.Column("decision_key", sa.String(length=64), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_events_project", "audit_events", ["project_id"])
        op.create_index("idx_audit_events_type", "audit_events", ["event_type"])
        op.create_index("idx_audit_events_decision", "audit_events", ["decision_key"])
        op.create_index("idx_audit_events_ts", "audit_events", ["created_at"])


def downgrade():
    for table in (
        "audit_events",
        "defense_sessions",
        "deadlines",
        "evaluations",
        "juror_assignments",
        "endorsements",
        "submissions",
        "project_stages",
        "project_members",
        "projects",
    ):
        op.drop_table(table)
