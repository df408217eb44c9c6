"""super categories and installment series ends

Revision ID: 202610191200
Revises: 202610011200
Create Date: 2026-10-19 12:00:00.000000

"""

from datetime import datetime

from alembic import op
import sqlalchemy as sa


revision = "202610191200"
down_revision = "202610011200"
branch_labels = None
depends_on = None


SYSTEM_SUPER_CATEGORIES = [
    ("Housing", "housing", "#4f46e5", "home", 10),
    ("Essentials", "essentials", "#f59e0b", "cart", 20),
    ("Mobility", "mobility", "#0891b2", "car", 30),
    ("Finance", "finance", "#7c3aed", "wallet", 40),
    ("Lifestyle", "lifestyle", "#10b981", "sparkles", 50),
    ("Other", "other", "#64748b", "dots", 60),
]


def upgrade():
    super_categories = op.create_table(
        "super_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("slug", sa.String(length=48), nullable=False, unique=True),
        sa.Column("color", sa.String(length=20), nullable=False),
        sa.Column("icon", sa.String(length=40)),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        sa.Column("is_system", sa.Boolean(), nullable=False),
        sa.Column("archived_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_super_categories_listing",
        "super_categories",
        ["archived_at", "sort_order", "name"],
    )

    with op.batch_alter_table("categories") as batch_op:
        batch_op.add_column(sa.Column("super_category_id", sa.Integer()))
        batch_op.create_foreign_key(
            "fk_categories_super_category_id",
            "super_categories",
            ["super_category_id"],
            ["id"],
            ondelete="SET NULL",
        )
        batch_op.create_index(
            "ix_categories_super_category_id", ["super_category_id"]
        )

    op.create_table(
        "installment_series_ends",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("series_id", sa.String(length=40), nullable=False, unique=True),
        sa.Column("last_month", sa.String(length=7), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    now = datetime.utcnow()
    op.bulk_insert(
        super_categories,
        [
            {
                "name": name,
                "slug": slug,
                "color": color,
                "icon": icon,
                "sort_order": sort_order,
                "is_system": True,
                "created_at": now,
                "updated_at": now,
            }
            for name, slug, color, icon, sort_order in SYSTEM_SUPER_CATEGORIES
        ],
    )


def downgrade():
    op.drop_table("installment_series_ends")
    with op.batch_alter_table("categories") as batch_op:
        batch_op.drop_index("ix_categories_super_category_id")
        batch_op.drop_constraint("fk_categories_super_category_id", type_="foreignkey")
        batch_op.drop_column("super_category_id")
    op.drop_index("ix_super_categories_listing", table_name="super_categories")
    op.drop_table("super_categories")
