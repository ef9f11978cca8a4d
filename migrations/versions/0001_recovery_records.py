"""Create recovery_records table"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_recovery_records"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "recovery_records",
        sa.Column("namespace", sa.String(length=32), nullable=False),
        sa.Column("key", sa.String(length=128), nullable=False),
        sa.Column("owner", sa.String(length=320), nullable=True),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            server_onupdate=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("namespace", "key", name="pk_recovery_records"),
    )
    op.create_index("ix_recovery_records_owner", "recovery_records", ["owner"])
    op.create_index("ix_recovery_records_expires_at", "recovery_records", ["expires_at"])


def downgrade() -> None:
    op.drop_index("ix_recovery_records_expires_at", table_name="recovery_records")
    op.drop_index("ix_recovery_records_owner", table_name="recovery_records")
    op.drop_table("recovery_records")
