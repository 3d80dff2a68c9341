"""products, batches, expiry alerting and quarantine

Revision ID: 0001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

APP_ROLE = "medstock_app"


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    op.create_table(
        "products",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("code", sa.String(50), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("unit", sa.String(50), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )

    op.create_table(
        "product_batches",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("product_id", UUID(as_uuid=True), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("batch_number", sa.String(50), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("initial_quantity", sa.Integer(), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=False),
        sa.Column("manufacture_date", sa.Date(), nullable=True),
        sa.Column("cost_per_unit", sa.Numeric(10, 2), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="ACTIVE"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("quantity >= 0", name="ck_product_batches_quantity_non_negative"),
        sa.CheckConstraint("quantity <= initial_quantity", name="ck_product_batches_quantity_le_initial"),
    )
    op.create_index("ix_product_batches_product_id", "product_batches", ["product_id"])
    op.create_index("ix_product_batches_expiry_date", "product_batches", ["expiry_date"])
    op.create_index("ix_product_batches_status", "product_batches", ["status"])

    op.create_table(
        "expiry_alert_configs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tier_name", sa.String(100), nullable=False),
        sa.Column("days_before_expiry", sa.Integer(), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("notify_roles", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("color_code", sa.String(7), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("days_before_expiry BETWEEN 1 AND 365", name="ck_expiry_alert_configs_days_range"),
        sa.CheckConstraint("severity IN ('INFO', 'WARNING', 'CRITICAL')", name="ck_expiry_alert_configs_severity"),
    )
    # One active tier per threshold
    op.create_index(
        "uq_expiry_alert_configs_active_days",
        "expiry_alert_configs",
        ["days_before_expiry"],
        unique=True,
        postgresql_where=sa.text("active"),
    )

    op.create_table(
        "expiry_check_runs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("check_date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="RUNNING"),
        sa.Column("items_checked", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("alerts_generated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duplicates_skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors_encountered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("execution_time_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("triggered_by", sa.String(20), nullable=False, server_default="SCHEDULED"),
    )
    op.create_index("ix_expiry_check_runs_check_date", "expiry_check_runs", ["check_date"])
    # At most one RUNNING row: the cross-process lock for the sweep
    op.create_index(
        "uq_expiry_check_runs_single_running",
        "expiry_check_runs",
        ["status"],
        unique=True,
        postgresql_where=sa.text("status = 'RUNNING'"),
    )

    op.create_table(
        "expiry_alerts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("product_id", UUID(as_uuid=True), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("batch_id", UUID(as_uuid=True), sa.ForeignKey("product_batches.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("config_id", UUID(as_uuid=True), sa.ForeignKey("expiry_alert_configs.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("check_run_id", UUID(as_uuid=True), sa.ForeignKey("expiry_check_runs.id", ondelete="SET NULL"), nullable=True),
        sa.Column("batch_number", sa.String(50), nullable=True),
        sa.Column("alert_date", sa.Date(), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=False),
        sa.Column("quantity_affected", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("acknowledged_by", sa.String(100), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_expiry_alerts_config_id", "expiry_alerts", ["config_id"])
    op.create_index("ix_expiry_alerts_status_alert_date", "expiry_alerts", ["status", "alert_date"])
    op.create_index(
        "uq_expiry_alerts_open_batch_config",
        "expiry_alerts",
        ["batch_id", "config_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'RESOLVED'"),
    )

    op.create_table(
        "quarantine_cases",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("batch_id", UUID(as_uuid=True), sa.ForeignKey("product_batches.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("product_id", UUID(as_uuid=True), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("quantity_quarantined", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(255), nullable=False),
        sa.Column("quarantine_date", sa.Date(), nullable=False),
        sa.Column("quarantined_by", sa.String(100), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="PENDING_REVIEW"),
        sa.Column("review_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewed_by", sa.String(100), nullable=True),
        sa.Column("disposal_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disposal_method", sa.String(100), nullable=True),
        sa.Column("disposal_certificate", sa.String(255), nullable=True),
        sa.Column("return_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("return_reference", sa.String(100), nullable=True),
        sa.Column("estimated_loss", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_quarantine_cases_batch_id", "quarantine_cases", ["batch_id"])
    op.create_index("ix_quarantine_cases_status", "quarantine_cases", ["status"])

    # Append-only audit trail
    op.create_table(
        "quarantine_action_logs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("case_id", UUID(as_uuid=True), sa.ForeignKey("quarantine_cases.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("performed_by", sa.String(100), nullable=False),
        sa.Column("performed_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("previous_status", sa.String(30), nullable=True),
        sa.Column("new_status", sa.String(30), nullable=False),
        sa.Column("comments", sa.Text(), nullable=True),
    )
    op.create_index("ix_quarantine_action_logs_case_id", "quarantine_action_logs", ["case_id"])

    # Application role: full DML except on the audit trail, which is insert/select only.
    # Alerts, runs and cases are never deleted either.
    op.execute(f"""
        DO $$ BEGIN
            IF EXISTS (SELECT 1 FROM pg_roles WHERE rolname = '{APP_ROLE}') THEN
                GRANT SELECT, INSERT, UPDATE ON products, product_batches, expiry_alerts,
                    expiry_check_runs, quarantine_cases TO {APP_ROLE};
                GRANT SELECT, INSERT, UPDATE, DELETE ON expiry_alert_configs TO {APP_ROLE};
                GRANT SELECT, INSERT ON quarantine_action_logs TO {APP_ROLE};
                REVOKE UPDATE, DELETE ON quarantine_action_logs FROM {APP_ROLE};
            END IF;
        END $$;
    """)


def downgrade() -> None:
    op.drop_table("quarantine_action_logs")
    op.drop_table("quarantine_cases")
    op.drop_index("uq_expiry_alerts_open_batch_config", table_name="expiry_alerts")
    op.drop_table("expiry_alerts")
    op.drop_index("uq_expiry_check_runs_single_running", table_name="expiry_check_runs")
    op.drop_table("expiry_check_runs")
    op.drop_index("uq_expiry_alert_configs_active_days", table_name="expiry_alert_configs")
    op.drop_table("expiry_alert_configs")
    op.drop_table("product_batches")
    op.drop_table("products")
