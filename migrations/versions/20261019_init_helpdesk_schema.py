"""init help desk schema

Revision ID: 20261019_init_helpdesk
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_init_helpdesk"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(255), unique=True),
        sa.Column("name", sa.String(255)),
        sa.Column("phone", sa.String(32)),
        sa.Column("sms_consent", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("stripe_customer_id", sa.String(255)),
        sa.Column("stripe_subscription_id", sa.String(255)),
        sa.Column("stripe_usage_id", sa.String(255)),
        sa.Column("plan_type", sa.String(32)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_users_stripe_customer_id", "users", ["stripe_customer_id"])

    op.create_table(
        "help_sessions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=False, server_default=""),
        sa.Column("type", sa.String(32), nullable=False, server_default="general"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("completed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("last_message", sa.Text),
        sa.Column("session_recap", sa.Text),
        sa.Column("priority", sa.String(16), nullable=False, server_default="medium"),
        sa.Column("usage_reported", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('pending', 'active', 'completed')",
            name="ck_help_sessions_status",
        ),
    )
    op.create_index(
        "ix_help_sessions_user_updated", "help_sessions", ["user_id", "updated_at"]
    )
    # at most one non-completed session per user
    op.create_index(
        "uq_help_sessions_user_open",
        "help_sessions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("completed = false"),
        sqlite_where=sa.text("completed = 0"),
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "help_session_id",
            sa.String(36),
            sa.ForeignKey("help_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("content", sa.Text, nullable=False, server_default=""),
        sa.Column("content_kind", sa.String(8), nullable=False, server_default="text"),
        sa.Column("image_url", sa.Text),
        sa.Column("is_admin", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("read", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("client_message_id", sa.String(64)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "content_kind IN ('text', 'image')", name="ck_messages_content_kind"
        ),
    )
    op.create_index(
        "ix_messages_session_created", "messages", ["help_session_id", "created_at"]
    )
    op.create_index("ix_messages_session_read", "messages", ["help_session_id", "read"])

    op.create_table(
        "stripe_subscriptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=False, unique=True),
        sa.Column("stripe_customer_id", sa.String(255)),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("plan_type", sa.String(32), nullable=False),
        sa.Column("price_id", sa.String(255)),
        sa.Column("current_period_start", sa.DateTime(timezone=True)),
        sa.Column("current_period_end", sa.DateTime(timezone=True)),
        sa.Column("cancel_at_period_end", sa.Boolean, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_stripe_subscriptions_user_id", "stripe_subscriptions", ["user_id"]
    )

    op.create_table(
        "events",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("event", sa.String, nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_events_user_id", "events", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_events_user_id", table_name="events")
    op.drop_table("events")
    op.drop_index("ix_stripe_subscriptions_user_id", table_name="stripe_subscriptions")
    op.drop_table("stripe_subscriptions")
    op.drop_index("ix_messages_session_read", table_name="messages")
    op.drop_index("ix_messages_session_created", table_name="messages")
    op.drop_table("messages")
    op.drop_index("uq_help_sessions_user_open", table_name="help_sessions")
    op.drop_index("ix_help_sessions_user_updated", table_name="help_sessions")
    op.drop_table("help_sessions")
    op.drop_index("ix_users_stripe_customer_id", table_name="users")
    op.drop_table("users")
