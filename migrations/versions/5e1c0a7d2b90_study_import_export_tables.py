"""study_import_export_tables

Creates the import/export tables:
  - users               acting identities
  - studies             study records with their asset directory name
  - study_members       study ↔ user membership
  - components          ordered study components (uuid unique per study)
  - staging_sessions    staged uploads awaiting confirmation

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 5e1c0a7d2b90
Revises:
Create Date: 2026-10-17 09:12:41.318402
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '5e1c0a7d2b90'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── User ──────────────────────────────────────────────────────────────
    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )
        op.create_index("ix_users_email", "users", ["email"])

    # ── Study ─────────────────────────────────────────────────────────────
    if "studies" not in existing:
        op.create_table(
            "studies",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("uuid", sa.String(length=36), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("comments", sa.Text(), nullable=True),
            sa.Column(
                "properties", sa.JSON(), nullable=True,
                comment="Free-form properties document; replaced wholesale on import",
            ),
            sa.Column(
                "dir_name", sa.String(length=255), nullable=False,
                comment="Asset directory name beneath ASSETS_ROOT",
            ),
            sa.Column("allowed_worker_types", sa.JSON(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("uuid"),
            sa.UniqueConstraint("dir_name"),
        )
        op.create_index("ix_studies_uuid", "studies", ["uuid"])

    if "study_members" not in existing:
        op.create_table(
            "study_members",
            sa.Column("study_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["study_id"], ["studies.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("study_id", "user_id"),
        )

    # ── Component ─────────────────────────────────────────────────────────
    if "components" not in existing:
        op.create_table(
            "components",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("study_id", sa.Integer(), nullable=False),
            sa.Column("uuid", sa.String(length=36), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("comments", sa.Text(), nullable=True),
            sa.Column("active", sa.Boolean(), nullable=False),
            sa.Column("reloadable", sa.Boolean(), nullable=False),
            sa.Column(
                "html_file_path", sa.String(length=500), nullable=True,
                comment="Entry file path relative to the study's asset directory",
            ),
            sa.Column("properties", sa.JSON(), nullable=True),
            sa.Column(
                "position", sa.Integer(), nullable=False,
                comment="1-based ordinal within the study",
            ),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["study_id"], ["studies.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("study_id", "uuid", name="uq_components_study_uuid"),
        )
        op.create_index("ix_components_study_id", "components", ["study_id"])
        op.create_index("ix_components_uuid", "components", ["uuid"])

    # ── StagingSession ────────────────────────────────────────────────────
    if "staging_sessions" not in existing:
        op.create_table(
            "staging_sessions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("token", sa.String(length=64), nullable=False),
            sa.Column("kind", sa.String(length=20), nullable=False, comment="study | component"),
            sa.Column("owner_id", sa.Integer(), nullable=False),
            sa.Column(
                "study_id", sa.Integer(), nullable=True,
                comment="Target study of a component import",
            ),
            sa.Column("archive_name", sa.String(length=255), nullable=False),
            sa.Column("staging_path", sa.String(length=1024), nullable=False),
            sa.Column(
                "state", sa.String(length=20), nullable=False,
                comment="uploaded | reported | confirming | confirmed | discarded",
            ),
            sa.Column("report", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["study_id"], ["studies.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("token"),
        )
        op.create_index("ix_staging_sessions_token", "staging_sessions", ["token"])
        op.create_index("ix_staging_sessions_owner_id", "staging_sessions", ["owner_id"])
        op.create_index("ix_staging_sessions_expires_at", "staging_sessions", ["expires_at"])


def downgrade():
    op.drop_table("staging_sessions")
    op.drop_table("components")
    op.drop_table("study_members")
    op.drop_table("studies")
    op.drop_table("users")
