"""Create orders and import_runs tables.

Revision ID: 20261018_000001
Revises: 
Create Date: 2026-10-18 00:00:01.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261018_000001"
down_revision = None
branch_labels = None
depends_on = None


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("orders"):
        op.create_table(
            "orders",
            sa.Column("owner_id", sa.String(), primary_key=True),
            sa.Column("order_id", sa.String(), primary_key=True),
            sa.Column("category", sa.String(), nullable=False, server_default="AUTO"),
            sa.Column("latest_dispute_status", sa.String(), nullable=False, server_default="none"),
            sa.Column("latest_risk_label", sa.String(), nullable=True),
            sa.Column("sources", _json(), nullable=False),
            sa.Column("data", _json(), nullable=False),
            sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        )
        op.create_index("ix_orders_owner_category", "orders", ["owner_id", "category"])
        op.create_index("ix_orders_owner_updated", "orders", ["owner_id", "updated_at"])

    if not inspector.has_table("import_runs"):
        op.create_table(
            "import_runs",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("owner_id", sa.String(), nullable=False),
            sa.Column("source", sa.String(), nullable=False),
            sa.Column("filename", sa.Text(), nullable=True),
            sa.Column("category", sa.String(), nullable=False, server_default="AUTO"),
            sa.Column("status", sa.String(), nullable=False, server_default="processing"),
            sa.Column("total_rows", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("processed_orders", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("quarantined_orders", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("skipped_rows", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
            sa.CheckConstraint(
                "status IN ('processing','completed','failed')",
                name="ck_import_runs_status",
            ),
            sa.CheckConstraint(
                "source IN ('csv','feed','manual','revalidate')",
                name="ck_import_runs_source",
            ),
        )
        op.create_index("ix_import_runs_owner_id", "import_runs", ["owner_id"])
        op.create_index("ix_import_runs_owner_created", "import_runs", ["owner_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_import_runs_owner_created", table_name="import_runs")
    op.drop_index("ix_import_runs_owner_id", table_name="import_runs")
    op.drop_table("import_runs")
    op.drop_index("ix_orders_owner_updated", table_name="orders")
    op.drop_index("ix_orders_owner_category", table_name="orders")
    op.drop_table("orders")
