"""accounts, dreams and weekly reports

Revision ID: 20261001_initial_schema
Revises:
Create Date: 2026-10-01 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("username", sa.String(length=20), nullable=True, unique=True),
        sa.Column("name", sa.String(length=255)),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="STANDARD"),
        sa.Column("plan", sa.String(length=8), nullable=False, server_default="FREE"),
        sa.Column("plan_expires_at", sa.DateTime(timezone=True)),
        sa.Column("lifetime_analysis_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "lifetime_weekly_report_count", sa.Integer, nullable=False, server_default="0"
        ),
        sa.Column(
            "was_admin_upgraded", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "has_seen_upgrade_notice", sa.Boolean, nullable=False, server_default=sa.true()
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "plan <> 'FREE' OR plan_expires_at IS NULL", name="ck_users_free_no_expiry"
        ),
    )
    op.create_table(
        "dreams",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("dream_type", sa.String(length=32), nullable=False),
        sa.Column("dream_date", sa.Date, nullable=False),
        sa.Column("tags", sa.JSON, nullable=False),
        sa.Column("analysis", sa.JSON),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_dreams_user_date", "dreams", ["user_id", "dream_date"])
    op.create_table(
        "weekly_reports",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("start_date", sa.Date, nullable=False),
        sa.Column("end_date", sa.Date, nullable=False),
        sa.Column("analysis", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_weekly_reports_user_created", "weekly_reports", ["user_id", "created_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_weekly_reports_user_created", table_name="weekly_reports")
    op.drop_table("weekly_reports")
    op.drop_index("ix_dreams_user_date", table_name="dreams")
    op.drop_table("dreams")
    op.drop_table("users")
