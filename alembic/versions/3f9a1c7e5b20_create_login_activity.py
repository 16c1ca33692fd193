"""Create login_activity table

Revision ID: 3f9a1c7e5b20
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9a1c7e5b20"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "login_activity",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
        # Null for failures against unknown users
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("session_id", sa.String(length=128), nullable=True),
        sa.Column("auth_method", sa.String(length=32), nullable=False),
        sa.Column("two_factor_used", sa.Boolean(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=False),
        sa.Column("user_agent_raw", sa.Text(), nullable=False),
        sa.Column("device_type", sa.String(length=16), nullable=False),
        sa.Column("browser", sa.String(length=64), nullable=False),
        sa.Column("os", sa.String(length=64), nullable=False),
        sa.Column("country", sa.String(length=64), nullable=False),
        sa.Column("city", sa.String(length=128), nullable=False),
        sa.Column("is_suspicious", sa.Boolean(), nullable=False),
        sa.Column("suspicious_reasons", sa.JSON(), nullable=False),
    )
    op.create_index("ix_login_activity_id", "login_activity", ["id"])
    op.create_index("ix_login_activity_user_id", "login_activity", ["user_id"])
    op.create_index("ix_login_activity_status", "login_activity", ["status"])
    op.create_index(
        "ix_login_activity_user_created", "login_activity", ["user_id", "created_at"]
    )
    op.create_index(
        "ix_login_activity_user_status_created",
        "login_activity",
        ["user_id", "status", "created_at"],
    )
    op.create_index("ix_login_activity_session", "login_activity", ["session_id"])


def downgrade() -> None:
    op.drop_index("ix_login_activity_session", table_name="login_activity")
    op.drop_index("ix_login_activity_user_status_created", table_name="login_activity")
    op.drop_index("ix_login_activity_user_created", table_name="login_activity")
    op.drop_index("ix_login_activity_status", table_name="login_activity")
    op.drop_index("ix_login_activity_user_id", table_name="login_activity")
    op.drop_index("ix_login_activity_id", table_name="login_activity")
    op.drop_table("login_activity")
