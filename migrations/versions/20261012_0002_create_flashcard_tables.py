"""Create flashcards and their review history."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261012_0002"
down_revision: Union[str, None] = "20261012_0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "flashcards",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("front", sa.Text(), nullable=False),
        sa.Column("back", sa.Text(), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=True),
        sa.Column(
            "difficulty",
            sa.Enum("easy", "medium", "hard", name="flashcard_difficulty", native_enum=False),
            server_default=sa.text("'medium'"),
            nullable=False,
        ),
        sa.Column("repetitions", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("ease_factor", sa.Float(), server_default=sa.text("2.5"), nullable=False),
        sa.Column("last_reviewed", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_review", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            server_onupdate=sa.func.now(),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ("user_id",),
            ("users.chat_id",),
            name="fk_flashcards_user_id_users",
            ondelete="CASCADE",
        ),
        sa.CheckConstraint("ease_factor >= 1.3", name="ck_flashcards_ease_factor_floor"),
        sa.CheckConstraint("repetitions >= 0", name="ck_flashcards_repetitions_non_negative"),
    )
    op.create_index(
        "ix_flashcards_user_id_next_review",
        "flashcards",
        ("user_id", "next_review"),
    )

    op.create_table(
        "review_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("flashcard_id", sa.Integer(), nullable=False),
        sa.Column("quality", sa.Integer(), nullable=False),
        sa.Column("interval_days", sa.Integer(), nullable=False),
        sa.Column(
            "reviewed_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ("flashcard_id",),
            ("flashcards.id",),
            name="fk_review_logs_flashcard_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_review_logs_flashcard_id", "review_logs", ("flashcard_id",))


def downgrade() -> None:
    op.drop_index("ix_review_logs_flashcard_id", table_name="review_logs")
    op.drop_table("review_logs")
    op.drop_index("ix_flashcards_user_id_next_review", table_name="flashcards")
    op.drop_table("flashcards")
