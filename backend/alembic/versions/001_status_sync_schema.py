"""Status sync schema: job_applications, sync_checkpoint, synced_messages, sync_run.

Revision ID: 001_status_sync
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_status_sync"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "job_applications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("company_name", sa.String(), nullable=False),
        sa.Column("job_title", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.Column("last_synced_message_id", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_job_applications_id"), "job_applications", ["id"], unique=False)
    op.create_index(op.f("ix_job_applications_company_name"), "job_applications", ["company_name"], unique=False)
    op.create_index(op.f("ix_job_applications_status"), "job_applications", ["status"], unique=False)

    op.create_table(
        "sync_checkpoint",
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("last_processed_timestamp", sa.DateTime(), nullable=False),
        sa.Column("last_message_id", sa.String(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("name"),
    )

    op.create_table(
        "synced_messages",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(length=32), nullable=False),
        sa.Column("application_id", sa.Integer(), nullable=True),
        sa.Column("application_ids", sa.JSON(), nullable=True),
        sa.Column("proposed_status", sa.String(), nullable=True),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_synced_messages_id"), "synced_messages", ["id"], unique=False)
    op.create_index(op.f("ix_synced_messages_message_id"), "synced_messages", ["message_id"], unique=False)
    op.create_index(op.f("ix_synced_messages_outcome"), "synced_messages", ["outcome"], unique=False)
    op.create_index(
        "ix_synced_messages_outcome_processed_at", "synced_messages", ["outcome", "processed_at"], unique=False
    )

    op.create_table(
        "sync_run",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("trigger", sa.String(length=32), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.Column("summary", sa.JSON(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("sync_run")
    op.drop_index("ix_synced_messages_outcome_processed_at", table_name="synced_messages")
    op.drop_index(op.f("ix_synced_messages_outcome"), table_name="synced_messages")
    op.drop_index(op.f("ix_synced_messages_message_id"), table_name="synced_messages")
    op.drop_index(op.f("ix_synced_messages_id"), table_name="synced_messages")
    op.drop_table("synced_messages")
    op.drop_table("sync_checkpoint")
    op.drop_index(op.f("ix_job_applications_status"), table_name="job_applications")
    op.drop_index(op.f("ix_job_applications_company_name"), table_name="job_applications")
    op.drop_index(op.f("ix_job_applications_id"), table_name="job_applications")
    op.drop_table("job_applications")
