"""initial schema: messages, conditions, deliveries, reminders, audit log

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '20261018_01'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TSTZ = sa.TIMESTAMP(timezone=True)


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("last_name", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("created_at", TSTZ, server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_profiles_phone", "profiles", ["phone"])

    op.create_table(
        "messages",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("message_type", sa.String(), nullable=False, server_default="text"),
        sa.Column("attachments", sa.JSON(), nullable=True),
        sa.Column("share_location", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("location_latitude", sa.Float(), nullable=True),
        sa.Column("location_longitude", sa.Float(), nullable=True),
        sa.Column("location_name", sa.String(), nullable=True),
        sa.Column("created_at", TSTZ, server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", TSTZ, server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_messages_user_id", "messages", ["user_id"])

    op.create_table(
        "message_conditions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "message_id", sa.String(),
            sa.ForeignKey("messages.id", ondelete="CASCADE"),
            nullable=False, unique=True,
        ),
        sa.Column("condition_type", sa.String(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("hours_threshold", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("minutes_threshold", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_checked", TSTZ, nullable=True),
        sa.Column("next_check", TSTZ, nullable=True),
        sa.Column("trigger_date", TSTZ, nullable=True),
        sa.Column("recurring_pattern", sa.JSON(), nullable=True),
        sa.Column("reminder_hours", sa.JSON(), nullable=True),
        sa.Column("panic_config", sa.JSON(), nullable=True),
        sa.Column("confirmation_required", sa.Integer(), nullable=True),
        sa.Column("recipients", sa.JSON(), nullable=False),
        sa.Column("pin_code", sa.String(), nullable=True),
        sa.Column("unlock_delay_hours", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expiry_hours", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", TSTZ, server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", TSTZ, server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_message_conditions_active", "message_conditions", ["active"])

    op.create_table(
        "delivered_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("condition_id", sa.String(), nullable=True),
        sa.Column("recipient_id", sa.String(), nullable=True),
        sa.Column("delivery_id", sa.String(), nullable=False, unique=True),
        sa.Column("delivered_at", TSTZ, server_default=sa.func.now(), nullable=False),
        sa.Column("viewed_at", TSTZ, nullable=True),
        sa.Column("viewed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("device_info", sa.String(), nullable=True),
    )
    op.create_index("ix_delivered_messages_message_id", "delivered_messages", ["message_id"])

    op.create_table(
        "sent_reminders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("condition_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("deadline", TSTZ, nullable=False),
        sa.Column("offset_minutes", sa.Integer(), nullable=False),
        sa.Column("sent_at", TSTZ, server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("condition_id", "deadline", "offset_minutes"),
    )
    op.create_index("ix_sent_reminders_condition_id", "sent_reminders", ["condition_id"])

    op.create_table(
        "message_delivery_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("condition_id", sa.String(), nullable=True),
        sa.Column("recipient", sa.String(), nullable=True),
        sa.Column("delivery_id", sa.String(), nullable=True),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", TSTZ, server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_message_delivery_log_message_id", "message_delivery_log", ["message_id"])


def downgrade() -> None:
    op.drop_table("message_delivery_log")
    op.drop_table("sent_reminders")
    op.drop_table("delivered_messages")
    op.drop_table("message_conditions")
    op.drop_table("messages")
    op.drop_table("profiles")
