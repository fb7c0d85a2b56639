"""Add question history, notes and study plans."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_0003"
down_revision: Union[str, None] = "20261012_0002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _owner_column() -> sa.Column:
    return sa.Column("user_id", sa.BigInteger(), nullable=False)


def _owner_fk(table: str) -> sa.ForeignKeyConstraint:
    return sa.ForeignKeyConstraint(
        ("user_id",),
        ("users.chat_id",),
        name=f"fk_{table}_user_id_users",
        ondelete="CASCADE",
    )


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    with op.batch_alter_table("users") as batch_op:
        batch_op.add_column(
            sa.Column("notes_created", sa.Integer(), nullable=False, server_default=sa.text("0"))
        )
        batch_op.add_column(
            sa.Column("plans_created", sa.Integer(), nullable=False, server_default=sa.text("0"))
        )

    op.create_table(
        "questions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        _owner_column(),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("answer", sa.Text(), nullable=False),
        sa.Column("subject", sa.String(length=64), nullable=False),
        sa.Column(
            "difficulty",
            sa.Enum("easy", "medium", "hard", name="question_difficulty", native_enum=False),
            nullable=False,
        ),
        sa.Column("mode", sa.String(length=16), nullable=False),
        sa.Column("has_code", sa.Boolean(), nullable=False),
        sa.Column("has_formula", sa.Boolean(), nullable=False),
        sa.Column("is_favorite", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        _owner_fk("questions"),
    )
    op.create_index("ix_questions_user_id_created_at", "questions", ("user_id", "created_at"))

    op.create_table(
        "notes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        _owner_column(),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=True),
        *_timestamps(),
        _owner_fk("notes"),
    )
    op.create_index("ix_notes_user_id_subject", "notes", ("user_id", "subject"))

    op.create_table(
        "study_plans",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        _owner_column(),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("goals", sa.JSON(), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.Enum("active", "paused", "completed", name="study_plan_status", native_enum=False),
            server_default=sa.text("'active'"),
            nullable=False,
        ),
        sa.Column("progress", sa.Integer(), server_default=sa.text("0"), nullable=False),
        *_timestamps(),
        _owner_fk("study_plans"),
        sa.CheckConstraint("progress BETWEEN 0 AND 100", name="ck_study_plans_progress_range"),
    )
    op.create_index("ix_study_plans_user_id_status", "study_plans", ("user_id", "status"))

    op.create_table(
        "study_plan_tasks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("plan_id", sa.Integer(), nullable=False),
        sa.Column("day", sa.Integer(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.ForeignKeyConstraint(
            ("plan_id",),
            ("study_plans.id",),
            name="fk_study_plan_tasks_plan_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_study_plan_tasks_plan_id", "study_plan_tasks", ("plan_id",))


def downgrade() -> None:
    op.drop_index("ix_study_plan_tasks_plan_id", table_name="study_plan_tasks")
    op.drop_table("study_plan_tasks")
    op.drop_index("ix_study_plans_user_id_status", table_name="study_plans")
    op.drop_table("study_plans")
    op.drop_index("ix_notes_user_id_subject", table_name="notes")
    op.drop_table("notes")
    op.drop_index("ix_questions_user_id_created_at", table_name="questions")
    op.drop_table("questions")
    with op.batch_alter_table("users") as batch_op:
        batch_op.drop_column("plans_created")
        batch_op.drop_column("notes_created")
