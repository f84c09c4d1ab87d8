"""field_labs_initial_schema

Create the Field Labs tables: SOPs + checklist templates, field observations,
batch queue, knowledge items, confidence ledger, challenges, observation
links, training records, projects and the activity feed.

Revision ID: a1f3c9d2e701
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1f3c9d2e701"
down_revision = None
branch_labels = None
depends_on = None


def _metadata_columns():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "sops" not in existing_tables:
        op.create_table(
            "sops",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("sop_code", sa.String(length=30), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("trade_family", sa.String(length=60), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("version_notes", sa.Text(), nullable=True),
            sa.Column("previous_version_id", sa.String(length=36), nullable=True),
            sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("effective_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("superseded_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("default_observation_mode", sa.String(length=20), nullable=False, server_default="standard"),
            sa.Column("certification_level", sa.String(length=20), nullable=False, server_default="apprentice"),
            sa.Column("required_supervised_completions", sa.Integer(), nullable=False, server_default="3"),
            sa.Column("review_question_count", sa.Integer(), nullable=False, server_default="10"),
            sa.Column("review_pass_threshold", sa.Integer(), nullable=False, server_default="80"),
            sa.Column("field_guide_ref", sa.String(length=255), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("created_by", sa.String(length=100), nullable=True),
            *_metadata_columns(),
            sa.ForeignKeyConstraint(["previous_version_id"], ["sops.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("sop_code", "version", name="uq_sop_code_version"),
        )
        op.create_index("ix_sops_sop_code", "sops", ["sop_code"])
        op.create_index("ix_sops_trade_family", "sops", ["trade_family"])
        op.create_index("idx_sop_code_current", "sops", ["sop_code", "is_current"])

    if "sop_checklist_item_templates" not in existing_tables:
        op.create_table(
            "sop_checklist_item_templates",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("sop_id", sa.String(length=36), nullable=False),
            sa.Column("step_number", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("checklist_type", sa.String(length=20), nullable=False, server_default="activity"),
            sa.Column("category", sa.String(length=20), nullable=False, server_default="procedure"),
            sa.Column("is_critical", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("generates_observation", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("observation_knowledge_type", sa.String(length=30), nullable=True),
            sa.Column("requires_photo", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("timing_followup", sa.JSON(), nullable=True),
            sa.Column("trigger_timing", sa.String(length=10), nullable=False, server_default="on_check"),
            sa.Column("default_product_id", sa.String(length=36), nullable=True),
            sa.Column("default_technique_id", sa.String(length=36), nullable=True),
            sa.Column("default_tool_id", sa.String(length=36), nullable=True),
            sa.Column("script_phase", sa.String(length=20), nullable=True),
            *_metadata_columns(),
            sa.ForeignKeyConstraint(["sop_id"], ["sops.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_sop_checklist_item_templates_sop_id", "sop_checklist_item_templates", ["sop_id"])
        op.create_index("idx_scit_sop_step", "sop_checklist_item_templates", ["sop_id", "step_number"])

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="active"),
            sa.Column("client_id", sa.String(length=36), nullable=True),
            sa.Column("address", sa.String(length=255), nullable=True),
            sa.Column("project_type", sa.String(length=60), nullable=True),
            sa.Column("integration_project_type", sa.String(length=20), nullable=False, server_default="standard"),
            sa.Column("linked_project_id", sa.String(length=36), nullable=True),
            sa.Column("callback_reason", sa.String(length=30), nullable=True),
            sa.Column("callback_reported_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("observation_mode_override", sa.String(length=20), nullable=True),
            sa.Column("active_experiment_ids", sa.JSON(), nullable=False),
            sa.Column("start_date", sa.Date(), nullable=True),
            sa.Column("estimated_cost", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("actual_cost", sa.Numeric(12, 2), nullable=False, server_default="0"),
            *_metadata_columns(),
            sa.ForeignKeyConstraint(["linked_project_id"], ["projects.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_projects_linked_project_id", "projects", ["linked_project_id"])

    if "field_observations" not in existing_tables:
        op.create_table(
            "field_observations",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("project_id", sa.String(length=36), nullable=False),
            sa.Column("task_id", sa.String(length=36), nullable=True),
            sa.Column("knowledge_type", sa.String(length=30), nullable=False),
            sa.Column("product_id", sa.String(length=36), nullable=True),
            sa.Column("technique_id", sa.String(length=36), nullable=True),
            sa.Column("tool_method_id", sa.String(length=36), nullable=True),
            sa.Column("combination_id", sa.String(length=36), nullable=True),
            sa.Column("work_category_code", sa.String(length=30), nullable=True),
            sa.Column("trade", sa.String(length=60), nullable=True),
            sa.Column("stage_code", sa.String(length=30), nullable=True),
            sa.Column("location_id", sa.String(length=36), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("photo_ids", sa.JSON(), nullable=False),
            sa.Column("condition_assessment", sa.String(length=10), nullable=True),
            sa.Column("crew_member_id", sa.String(length=36), nullable=False),
            sa.Column("capture_method", sa.String(length=20), nullable=False, server_default="manual"),
            sa.Column("sop_version_id", sa.String(length=36), nullable=True),
            sa.Column("deviated", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("deviation_fields", sa.JSON(), nullable=False),
            sa.Column("deviation_reason", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_fobs_project", "field_observations", ["project_id"])
        op.create_index("idx_fobs_task", "field_observations", ["task_id"])
        op.create_index("idx_fobs_type", "field_observations", ["knowledge_type"])
        op.create_index("ix_field_observations_crew_member_id", "field_observations", ["crew_member_id"])

    if "pending_batch_observations" not in existing_tables:
        op.create_table(
            "pending_batch_observations",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("task_id", sa.String(length=36), nullable=False),
            sa.Column("sop_id", sa.String(length=36), nullable=False),
            sa.Column("checklist_item_id", sa.String(length=36), nullable=False),
            sa.Column("crew_member_id", sa.String(length=36), nullable=False),
            sa.Column("project_id", sa.String(length=36), nullable=False),
            sa.Column("draft", sa.JSON(), nullable=False),
            sa.Column("status", sa.String(length=10), nullable=False, server_default="pending"),
            sa.Column("queued_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_pbo_task_status", "pending_batch_observations", ["task_id", "status"])

    if "knowledge_items" not in existing_tables:
        op.create_table(
            "knowledge_items",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("knowledge_type", sa.String(length=30), nullable=False),
            sa.Column("category", sa.String(length=60), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("summary", sa.Text(), nullable=False),
            sa.Column("details", sa.Text(), nullable=True),
            sa.Column("product_ids", sa.JSON(), nullable=False),
            sa.Column("technique_ids", sa.JSON(), nullable=False),
            sa.Column("tool_method_ids", sa.JSON(), nullable=False),
            sa.Column("combination_ids", sa.JSON(), nullable=False),
            sa.Column("confidence_score", sa.Integer(), nullable=False, server_default="50"),
            sa.Column("last_confidence_update", sa.DateTime(timezone=True), nullable=False),
            sa.Column("observation_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("experiment_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("crew_agreement_rate", sa.Float(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("created_by", sa.String(length=100), nullable=False, server_default="system"),
            sa.Column("tags", sa.JSON(), nullable=False),
            *_metadata_columns(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_ki_type_status", "knowledge_items", ["knowledge_type", "status"])

    if "confidence_events" not in existing_tables:
        op.create_table(
            "confidence_events",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("knowledge_item_id", sa.String(length=36), nullable=False),
            sa.Column("event_type", sa.String(length=30), nullable=False),
            sa.Column("confidence_change", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("new_confidence_score", sa.Integer(), nullable=False),
            sa.Column("source_id", sa.String(length=36), nullable=True),
            sa.Column("user_id", sa.String(length=36), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False, server_default="1"),
            sa.ForeignKeyConstraint(["knowledge_item_id"], ["knowledge_items.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_ce_item_ts", "confidence_events", ["knowledge_item_id", "timestamp"])

    if "knowledge_challenges" not in existing_tables:
        op.create_table(
            "knowledge_challenges",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("knowledge_item_id", sa.String(length=36), nullable=False),
            sa.Column("submitted_by", sa.String(length=100), nullable=False),
            sa.Column("reason", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("supporting_evidence_ids", sa.JSON(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("reviewed_by", sa.String(length=100), nullable=True),
            sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("resolution", sa.Text(), nullable=True),
            *_metadata_columns(),
            sa.ForeignKeyConstraint(["knowledge_item_id"], ["knowledge_items.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_kc_item_status", "knowledge_challenges", ["knowledge_item_id", "status"])

    if "observation_knowledge_links" not in existing_tables:
        op.create_table(
            "observation_knowledge_links",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("observation_id", sa.String(length=36), nullable=False),
            sa.Column("knowledge_item_id", sa.String(length=36), nullable=False),
            sa.Column("link_type", sa.String(length=30), nullable=False, server_default="auto_detected"),
            sa.Column("link_confidence", sa.Integer(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_by", sa.String(length=100), nullable=False, server_default="system"),
            *_metadata_columns(),
            sa.ForeignKeyConstraint(["observation_id"], ["field_observations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["knowledge_item_id"], ["knowledge_items.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_okl_observation", "observation_knowledge_links", ["observation_id"])
        op.create_index("idx_okl_knowledge_item", "observation_knowledge_links", ["knowledge_item_id"])

    if "training_records" not in existing_tables:
        op.create_table(
            "training_records",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("crew_member_id", sa.String(length=36), nullable=False),
            sa.Column("sop_id", sa.String(length=36), nullable=False),
            sa.Column("sop_code", sa.String(length=30), nullable=False, server_default="UNKNOWN"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="in_progress"),
            sa.Column("supervised_completions", sa.JSON(), nullable=False),
            sa.Column("review_attempts", sa.JSON(), nullable=False),
            sa.Column("certified_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("certified_by", sa.String(length=100), nullable=True),
            *_metadata_columns(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("crew_member_id", "sop_id", name="uq_training_crew_sop"),
        )
        op.create_index("ix_training_records_crew_member_id", "training_records", ["crew_member_id"])
        op.create_index("ix_training_records_sop_id", "training_records", ["sop_id"])

    if "activity_events" not in existing_tables:
        op.create_table(
            "activity_events",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("event_type", sa.String(length=60), nullable=False),
            sa.Column("project_id", sa.String(length=36), nullable=True),
            sa.Column("entity_type", sa.String(length=40), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("summary", sa.String(length=500), nullable=False),
            sa.Column("event_data", sa.JSON(), nullable=False),
            sa.Column("homeowner_visible", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_activity_entity", "activity_events", ["entity_type", "entity_id"])
        op.create_index("idx_activity_project", "activity_events", ["project_id"])
        op.create_index("idx_activity_type", "activity_events", ["event_type"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    # Children before parents
    for table in (
        "activity_events",
        "training_records",
        "observation_knowledge_links",
        "knowledge_challenges",
        "confidence_events",
        "knowledge_items",
        "pending_batch_observations",
        "field_observations",
        "projects",
        "sop_checklist_item_templates",
        "sops",
    ):
        if table in existing_tables:
            op.drop_table(table)
