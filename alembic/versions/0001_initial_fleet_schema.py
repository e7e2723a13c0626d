"""initial fleet schema: devices, telemetry, alerts, control and status

Revision ID: 0001_initial_fleet_schema
Revises: None
Create Date: 2026-10-19 00:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_initial_fleet_schema"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "orgs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=256), nullable=False),
        _ts("created_at"),
    )

    op.create_table(
        "sites",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("org_id", sa.String(length=36), sa.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("external_id", sa.String(length=128), nullable=True),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.UniqueConstraint("external_id", name="uq_sites_external_id"),
    )
    op.create_index("ix_sites_org_id", "sites", ["org_id"], unique=False)

    op.create_table(
        "devices",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("site_id", sa.String(length=36), sa.ForeignKey("sites.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("external_id", sa.String(length=128), nullable=True),
        sa.Column("mac", sa.String(length=32), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="unknown"),
        _ts("last_seen_at", nullable=True),
        sa.Column("min_setpoint", sa.Float(), nullable=True),
        sa.Column("max_setpoint", sa.Float(), nullable=True),
        sa.Column("allowed_modes_json", sa.Text(), nullable=True),
        sa.Column("supports_heating", sa.Boolean(), nullable=True),
        sa.Column("supports_cooling", sa.Boolean(), nullable=True),
        sa.Column("supports_auto", sa.Boolean(), nullable=True),
        _ts("created_at"),
        sa.UniqueConstraint("external_id", name="uq_devices_external_id"),
    )
    op.create_index("ix_devices_site_id", "devices", ["site_id"], unique=False)

    op.create_table(
        "telemetry_points",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("device_id", sa.String(length=36), sa.ForeignKey("devices.id", ondelete="CASCADE"), nullable=False),
        sa.Column("metric", sa.String(length=64), nullable=False),
        _ts("ts"),
        sa.Column("value", sa.Float(), nullable=False),
        sa.Column("quality", sa.String(length=16), nullable=False, server_default="good"),
    )
    op.create_index(
        "idx_telemetry_device_metric_ts",
        "telemetry_points",
        ["device_id", "metric", "ts"],
        unique=False,
    )

    op.create_table(
        "device_snapshots",
        sa.Column(
            "device_id",
            sa.String(length=36),
            sa.ForeignKey("devices.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        _ts("last_seen_at"),
        sa.Column("data_json", sa.Text(), nullable=False),
        _ts("updated_at"),
    )

    op.create_table(
        "alert_rules",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("org_id", sa.String(length=36), sa.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("site_id", sa.String(length=36), sa.ForeignKey("sites.id", ondelete="CASCADE"), nullable=True),
        sa.Column("device_id", sa.String(length=36), sa.ForeignKey("devices.id", ondelete="CASCADE"), nullable=True),
        sa.Column("name", sa.String(length=256), nullable=True),
        sa.Column("metric", sa.String(length=64), nullable=False),
        sa.Column("rule_type", sa.String(length=32), nullable=False),
        sa.Column("threshold", sa.Float(), nullable=True),
        sa.Column("roc_window_sec", sa.Integer(), nullable=True),
        sa.Column("offline_grace_sec", sa.Integer(), nullable=True),
        sa.Column("severity", sa.String(length=16), nullable=False, server_default="warning"),
        sa.Column("snooze_default_sec", sa.Integer(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
    )
    op.create_index("ix_alert_rules_org_id", "alert_rules", ["org_id"], unique=False)

    op.create_table(
        "alerts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("site_id", sa.String(length=36), sa.ForeignKey("sites.id", ondelete="SET NULL"), nullable=True),
        sa.Column("device_id", sa.String(length=36), sa.ForeignKey("devices.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column(
            "rule_id",
            sa.String(length=36),
            sa.ForeignKey("alert_rules.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _ts("first_seen_at"),
        _ts("last_seen_at"),
        sa.Column("acknowledged_by", sa.String(length=36), nullable=True),
        _ts("acknowledged_at", nullable=True),
        _ts("muted_until", nullable=True),
    )
    op.create_index("idx_alerts_device_type_status", "alerts", ["device_id", "type", "status"], unique=False)
    op.create_index(
        "uq_alerts_one_active",
        "alerts",
        ["device_id", "type", sa.text("coalesce(rule_id, '')")],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "control_commands",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("device_id", sa.String(length=36), sa.ForeignKey("devices.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("command_type", sa.String(length=16), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("requested_value", sa.Float(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        _ts("requested_at"),
        _ts("completed_at", nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.String(length=64), nullable=True),
        sa.Column("source", sa.String(length=16), nullable=False, server_default="api"),
    )
    op.create_index("ix_control_commands_device_id", "control_commands", ["device_id"], unique=False)
    op.create_index(
        "idx_control_commands_device_requested",
        "control_commands",
        ["device_id", "requested_at"],
        unique=False,
    )

    op.create_table(
        "system_status",
        sa.Column("key", sa.String(length=64), primary_key=True),
        _ts("last_success_at", nullable=True),
        _ts("last_error_at", nullable=True),
        sa.Column("last_error", sa.String(length=256), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        _ts("updated_at"),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("org_id", sa.String(length=36), sa.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("email", sa.String(length=256), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False, server_default=""),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="contractor"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )
    op.create_index("ix_users_org_id", "users", ["org_id"], unique=False)

    op.create_table(
        "push_tokens",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("org_id", sa.String(length=36), sa.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=True),
        sa.Column("token", sa.String(length=256), nullable=False),
        sa.Column("platform", sa.String(length=16), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("last_used_at", nullable=True),
        _ts("created_at"),
        sa.UniqueConstraint("token", name="uq_push_tokens_token"),
    )
    op.create_index("ix_push_tokens_user_id", "push_tokens", ["user_id"], unique=False)

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("org_id", sa.String(length=36), nullable=True),
        sa.Column("user_id", sa.String(length=36), nullable=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=True),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=False, server_default="{}"),
        _ts("created_at"),
    )
    op.create_index("ix_audit_events_org_id", "audit_events", ["org_id"], unique=False)
    op.create_index("ix_audit_events_action", "audit_events", ["action"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_events_action", table_name="audit_events")
    op.drop_index("ix_audit_events_org_id", table_name="audit_events")
    op.drop_table("audit_events")

    op.drop_index("ix_push_tokens_user_id", table_name="push_tokens")
    op.drop_table("push_tokens")

    op.drop_index("ix_users_org_id", table_name="users")
    op.drop_table("users")

    op.drop_table("system_status")

    op.drop_index("idx_control_commands_device_requested", table_name="control_commands")
    op.drop_index("ix_control_commands_device_id", table_name="control_commands")
    op.drop_table("control_commands")

    op.drop_index("uq_alerts_one_active", table_name="alerts")
    op.drop_index("idx_alerts_device_type_status", table_name="alerts")
    op.drop_table("alerts")

    op.drop_index("ix_alert_rules_org_id", table_name="alert_rules")
    op.drop_table("alert_rules")

    op.drop_table("device_snapshots")

    op.drop_index("idx_telemetry_device_metric_ts", table_name="telemetry_points")
    op.drop_table("telemetry_points")

    op.drop_index("ix_devices_site_id", table_name="devices")
    op.drop_table("devices")

    op.drop_index("ix_sites_org_id", table_name="sites")
    op.drop_table("sites")

    op.drop_table("orgs")
