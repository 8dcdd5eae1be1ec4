"""Pipeline schema

Revision ID: 001
Revises:
Create Date: 2026-10-17

Creates messages, watermarks, classification and RAG context tables,
doc proposals with review logs, tenant rulesets and pipeline run logs.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create all tables."""
    op.create_table(
        "unified_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("stream_id", sa.Text(), nullable=False),
        sa.Column("message_id", sa.Text(), nullable=True),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("author", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("channel", sa.Text(), nullable=True),
        sa.Column("raw_data", sa.JSON(), nullable=True),
        sa.Column("processing_status", sa.String(16), server_default="PENDING", nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("stream_id", "message_id", name="uq_message_stream_msg"),
    )
    op.create_index(
        "idx_message_stream_status_ts",
        "unified_messages",
        ["stream_id", "processing_status", "timestamp"],
    )

    op.create_table(
        "processing_watermark",
        sa.Column("stream_id", sa.Text(), primary_key=True),
        sa.Column("watermark_time", sa.DateTime(), nullable=False),
        sa.Column("last_processed_batch", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "message_classification",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("batch_id", sa.Text(), nullable=True),
        sa.Column("conversation_id", sa.Text(), nullable=True),
        sa.Column("category", sa.Text(), nullable=False),
        sa.Column("doc_value_reason", sa.Text(), nullable=False),
        sa.Column("rag_search_criteria", sa.JSON(), nullable=True),
        sa.Column("model_used", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["message_id"], ["unified_messages.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("message_id", name="uq_classification_message"),
    )
    op.create_index(
        "idx_classification_conversation", "message_classification", ["conversation_id"]
    )

    op.create_table(
        "conversation_rag_context",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("conversation_id", sa.Text(), nullable=False),
        sa.Column("batch_id", sa.Text(), nullable=True),
        sa.Column("summary", sa.String(200), nullable=True),
        sa.Column("retrieved_docs", sa.JSON(), nullable=False),
        sa.Column("total_tokens", sa.Integer(), nullable=True),
        sa.Column("proposals_rejected", sa.Boolean(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("conversation_id", name="uq_rag_context_conversation"),
    )

    op.create_table(
        "doc_proposals",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("conversation_id", sa.Text(), nullable=False),
        sa.Column("batch_id", sa.Text(), nullable=True),
        sa.Column("page", sa.Text(), nullable=False),
        sa.Column("update_type", sa.String(16), nullable=False),
        sa.Column("section", sa.Text(), nullable=True),
        sa.Column("suggested_text", sa.Text(), nullable=True),
        sa.Column("raw_suggested_text", sa.Text(), nullable=True),
        sa.Column("reasoning", sa.Text(), nullable=True),
        sa.Column("source_messages", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(16), server_default="pending", nullable=False),
        sa.Column("model_used", sa.Text(), nullable=True),
        sa.Column("warnings", sa.JSON(), nullable=True),
        sa.Column("enrichment", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("idx_proposal_conversation", "doc_proposals", ["conversation_id"])
    op.create_index("idx_proposal_page_status", "doc_proposals", ["page", "status"])

    op.create_table(
        "proposal_review_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("proposal_id", sa.Integer(), nullable=True),
        sa.Column("conversation_id", sa.Text(), nullable=False),
        sa.Column("page", sa.Text(), nullable=False),
        sa.Column("ruleset_version", sa.DateTime(), nullable=False),
        sa.Column("original_content", sa.Text(), nullable=True),
        sa.Column("modifications_applied", sa.JSON(), nullable=True),
        sa.Column("rejected", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("rejection_rule_text", sa.Text(), nullable=True),
        sa.Column("quality_flags", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["proposal_id"], ["doc_proposals.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "tenant_rulesets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("tenant_id", name="uq_ruleset_tenant"),
    )

    op.create_table(
        "pipeline_run_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("instance_id", sa.Text(), nullable=False),
        sa.Column("batch_id", sa.Text(), nullable=False),
        sa.Column("pipeline_id", sa.Text(), nullable=False),
        sa.Column("status", sa.String(16), server_default="running", nullable=False),
        sa.Column("input_messages", sa.Integer(), nullable=False),
        sa.Column("steps", sa.JSON(), nullable=False),
        sa.Column("output_threads", sa.Integer(), nullable=True),
        sa.Column("output_proposals", sa.Integer(), nullable=True),
        sa.Column("total_duration_ms", sa.Integer(), nullable=True),
        sa.Column("llm_calls", sa.Integer(), nullable=True),
        sa.Column("llm_tokens_used", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
    )
    op.create_index(
        "idx_run_log_instance_created", "pipeline_run_logs", ["instance_id", "created_at"]
    )


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    op.drop_index("idx_run_log_instance_created", table_name="pipeline_run_logs")
    op.drop_table("pipeline_run_logs")
    op.drop_table("tenant_rulesets")
    op.drop_table("proposal_review_logs")
    op.drop_index("idx_proposal_page_status", table_name="doc_proposals")
    op.drop_index("idx_proposal_conversation", table_name="doc_proposals")
    op.drop_table("doc_proposals")
    op.drop_table("conversation_rag_context")
    op.drop_index("idx_classification_conversation", table_name="message_classification")
    op.drop_table("message_classification")
    op.drop_table("processing_watermark")
    op.drop_index("idx_message_stream_status_ts", table_name="unified_messages")
    op.drop_table("unified_messages")
