"""Create on-call schedule, escalation and delivery tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

SEVERITIES = ("LOW", "MEDIUM", "HIGH", "CRITICAL")
ALERT_TYPES = (
    "JOB_FAILURE_SPIKE",
    "WEBHOOK_FAILURE_SPIKE",
    "APP_COMMAND_FAILURE_SPIKE",
    "OAUTH_REFRESH_FAILURE",
)


def _enum(*values: str, name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*values, name=name, create_type=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    postgresql.ENUM("DAILY", "WEEKLY", name="handoffinterval").create(bind)
    postgresql.ENUM("PRIMARY", "SECONDARY", name="oncalltier").create(bind)
    postgresql.ENUM(*SEVERITIES, name="alertseverity").create(bind)
    postgresql.ENUM(*ALERT_TYPES, name="alerttype").create(bind)
    postgresql.ENUM("WEBHOOK", "EMAIL", "SLACK", name="channeltype").create(bind)

    op.create_table(
        "organizations",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("organization_id", sa.UUID(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("display_name", sa.String(length=100), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default="true", nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_organization_id", "users", ["organization_id"])
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "on_call_schedules",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("organization_id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("timezone", sa.String(length=64), server_default="UTC", nullable=False),
        sa.Column(
            "handoff_interval",
            _enum("DAILY", "WEEKLY", name="handoffinterval"),
            server_default="WEEKLY",
            nullable=False,
        ),
        sa.Column("handoff_hour", sa.Integer(), server_default="10", nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "coverage_enabled", sa.Boolean(), server_default="false", nullable=False
        ),
        sa.Column(
            "coverage_days",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column("coverage_start", sa.String(length=5), nullable=True),
        sa.Column("coverage_end", sa.String(length=5), nullable=True),
        sa.Column("fallback_schedule_id", sa.UUID(), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), server_default="true", nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["fallback_schedule_id"], ["on_call_schedules.id"], ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_on_call_schedules_organization_id", "on_call_schedules", ["organization_id"]
    )
    op.create_index(
        "ix_on_call_schedules_org_created",
        "on_call_schedules",
        ["organization_id", "created_at"],
    )

    op.create_table(
        "on_call_rotation_members",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("schedule_id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column(
            "tier",
            _enum("PRIMARY", "SECONDARY", name="oncalltier"),
            server_default="PRIMARY",
            nullable=False,
        ),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default="true", nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["schedule_id"], ["on_call_schedules.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "schedule_id",
            "tier",
            "order",
            name="uq_on_call_rotation_members_schedule_tier_order",
        ),
    )
    op.create_index(
        "ix_on_call_rotation_members_schedule_id",
        "on_call_rotation_members",
        ["schedule_id"],
    )

    op.create_table(
        "on_call_overrides",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("schedule_id", sa.UUID(), nullable=False),
        sa.Column(
            "tier",
            _enum("PRIMARY", "SECONDARY", name="oncalltier"),
            server_default="PRIMARY",
            nullable=False,
        ),
        sa.Column("from_user_id", sa.UUID(), nullable=True),
        sa.Column("to_user_id", sa.UUID(), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["schedule_id"], ["on_call_schedules.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["from_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["to_user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("end_at > start_at", name="ck_on_call_overrides_window"),
    )
    op.create_index(
        "ix_on_call_overrides_schedule_window",
        "on_call_overrides",
        ["schedule_id", "start_at", "end_at"],
    )

    op.create_table(
        "holiday_calendars",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("organization_id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("timezone", sa.String(length=64), server_default="UTC", nullable=False),
        sa.Column("is_enabled", sa.Boolean(), server_default="true", nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_holiday_calendars_organization_id", "holiday_calendars", ["organization_id"]
    )

    op.create_table(
        "holiday_entries",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("calendar_id", sa.UUID(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["calendar_id"], ["holiday_calendars.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "end_date IS NULL OR end_date >= start_date",
            name="ck_holiday_entries_range",
        ),
    )
    op.create_index("ix_holiday_entries_calendar_id", "holiday_entries", ["calendar_id"])

    op.create_table(
        "on_call_schedule_calendars",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("schedule_id", sa.UUID(), nullable=False),
        sa.Column("calendar_id", sa.UUID(), nullable=False),
        sa.ForeignKeyConstraint(
            ["schedule_id"], ["on_call_schedules.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["calendar_id"], ["holiday_calendars.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "schedule_id",
            "calendar_id",
            name="uq_on_call_schedule_calendars_schedule_calendar",
        ),
    )
    op.create_index(
        "ix_on_call_schedule_calendars_schedule_id",
        "on_call_schedule_calendars",
        ["schedule_id"],
    )
    op.create_index(
        "ix_on_call_schedule_calendars_calendar_id",
        "on_call_schedule_calendars",
        ["calendar_id"],
    )

    op.create_table(
        "alert_rules",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("organization_id", sa.UUID(), nullable=False),
        sa.Column("type", _enum(*ALERT_TYPES, name="alerttype"), nullable=False),
        sa.Column("threshold_count", sa.Integer(), nullable=False),
        sa.Column("window_minutes", sa.Integer(), nullable=False),
        sa.Column("severity", _enum(*SEVERITIES, name="alertseverity"), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), server_default="true", nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("organization_id", "type", name="uq_alert_rules_org_type"),
    )
    op.create_index("ix_alert_rules_organization_id", "alert_rules", ["organization_id"])

    op.create_table(
        "alert_events",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("organization_id", sa.UUID(), nullable=False),
        sa.Column("rule_id", sa.UUID(), nullable=True),
        sa.Column("type", _enum(*ALERT_TYPES, name="alerttype"), nullable=False),
        sa.Column("severity", _enum(*SEVERITIES, name="alertseverity"), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("acknowledged", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_by_user_id", sa.UUID(), nullable=True),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["rule_id"], ["alert_rules.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(
            ["acknowledged_by_user_id"], ["users.id"], ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_alert_events_org_ack_created",
        "alert_events",
        ["organization_id", "acknowledged", "created_at"],
    )

    op.create_table(
        "escalation_policies",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("organization_id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=200), server_default="Default", nullable=False),
        sa.Column("is_enabled", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("timezone", sa.String(length=64), server_default="UTC", nullable=False),
        sa.Column(
            "quiet_hours_enabled", sa.Boolean(), server_default="false", nullable=False
        ),
        sa.Column("quiet_hours_start", sa.String(length=5), nullable=True),
        sa.Column("quiet_hours_end", sa.String(length=5), nullable=True),
        sa.Column(
            "business_days_only", sa.Boolean(), server_default="false", nullable=False
        ),
        sa.Column("sla_critical", sa.Integer(), server_default="10", nullable=False),
        sa.Column("sla_high", sa.Integer(), server_default="30", nullable=False),
        sa.Column("sla_medium", sa.Integer(), server_default="180", nullable=False),
        sa.Column("sla_low", sa.Integer(), server_default="1440", nullable=False),
        sa.Column(
            "steps",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("organization_id"),
    )

    op.create_table(
        "alert_escalations",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("organization_id", sa.UUID(), nullable=False),
        sa.Column("alert_event_id", sa.UUID(), nullable=False),
        sa.Column("step_number", sa.Integer(), nullable=False),
        sa.Column(
            "attempted_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "routed_to",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column("suppressed", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("reason", sa.String(length=50), nullable=True),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["alert_event_id"], ["alert_events.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_alert_escalations_organization_id",
        "alert_escalations",
        ["organization_id"],
    )
    op.create_index(
        "ix_alert_escalations_event_attempted",
        "alert_escalations",
        ["alert_event_id", "attempted_at"],
    )
    # At most one fired row per (event, step); suppressed rows may repeat
    op.create_index(
        "uq_alert_escalations_event_step_fired",
        "alert_escalations",
        ["alert_event_id", "step_number"],
        unique=True,
        postgresql_where=sa.text("suppressed = false"),
    )

    op.create_table(
        "alert_channels",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("organization_id", sa.UUID(), nullable=False),
        sa.Column(
            "type", _enum("WEBHOOK", "EMAIL", "SLACK", name="channeltype"), nullable=False
        ),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column(
            "min_severity",
            _enum(*SEVERITIES, name="alertseverity"),
            server_default="LOW",
            nullable=False,
        ),
        sa.Column("config_encrypted", sa.Text(), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), server_default="true", nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_alert_channels_organization_id", "alert_channels", ["organization_id"]
    )

    op.create_table(
        "alert_deliveries",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("organization_id", sa.UUID(), nullable=False),
        sa.Column("alert_event_id", sa.UUID(), nullable=False),
        sa.Column("channel_id", sa.UUID(), nullable=False),
        sa.Column("success", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("attempt", sa.Integer(), server_default="1", nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("error", sa.String(length=100), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["alert_event_id"], ["alert_events.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["channel_id"], ["alert_channels.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_alert_deliveries_org_created",
        "alert_deliveries",
        ["organization_id", "created_at"],
    )
    # One successful row per (event, channel); failed attempts may repeat
    op.create_index(
        "uq_alert_deliveries_event_channel_success",
        "alert_deliveries",
        ["alert_event_id", "channel_id"],
        unique=True,
        postgresql_where=sa.text("success = true"),
    )


def downgrade() -> None:
    op.drop_table("alert_deliveries")
    op.drop_table("alert_channels")
    op.drop_table("alert_escalations")
    op.drop_table("escalation_policies")
    op.drop_table("alert_events")
    op.drop_table("alert_rules")
    op.drop_table("on_call_schedule_calendars")
    op.drop_table("holiday_entries")
    op.drop_table("holiday_calendars")
    op.drop_table("on_call_overrides")
    op.drop_table("on_call_rotation_members")
    op.drop_table("on_call_schedules")
    op.drop_table("users")
    op.drop_table("organizations")

    bind = op.get_bind()
    for name in (
        "channeltype",
        "alerttype",
        "alertseverity",
        "oncalltier",
        "handoffinterval",
    ):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
