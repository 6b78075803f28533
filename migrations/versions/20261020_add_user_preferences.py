"""add user preferences and tech usages

Revision ID: 20261020_user_preferences
Revises: 20261019_init_helpdesk
Create Date: 2026-10-20 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261020_user_preferences"
down_revision = "20261019_init_helpdesk"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("users") as batch_op:
        batch_op.add_column(sa.Column("description", sa.Text, nullable=True))
        batch_op.add_column(sa.Column("age", sa.Integer, nullable=True))
        batch_op.add_column(sa.Column("accessibility_needs", sa.Text, nullable=True))
        batch_op.add_column(
            sa.Column("preferred_contact_method", sa.String(32), nullable=True)
        )
        batch_op.add_column(sa.Column("experience_level", sa.String(32), nullable=True))
        batch_op.add_column(
            sa.Column("email_list", sa.Boolean, nullable=False, server_default=sa.false())
        )

    op.create_table(
        "tech_usages",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(64),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("device_type", sa.String(64), nullable=False),
        sa.Column("device_name", sa.String(255)),
        sa.Column("skill_level", sa.String(32)),
        sa.Column("usage_frequency", sa.String(32)),
        sa.Column("notes", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_tech_usages_user_id", "tech_usages", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_tech_usages_user_id", table_name="tech_usages")
    op.drop_table("tech_usages")
    with op.batch_alter_table("users") as batch_op:
        batch_op.drop_column("email_list")
        batch_op.drop_column("experience_level")
        batch_op.drop_column("preferred_contact_method")
        batch_op.drop_column("accessibility_needs")
        batch_op.drop_column("age")
        batch_op.drop_column("description")
