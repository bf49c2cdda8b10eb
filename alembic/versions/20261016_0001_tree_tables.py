"""tree node types and tree nodes

Revision ID: 20261016_0001
Revises:
Create Date: 2026-10-16 00:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "20261016_0001"
down_revision = None
branch_labels = None
depends_on = None


def _path_type() -> sa.types.TypeEngine:
    # Prefix range scans compare paths byte-wise.
    return sa.String(length=900).with_variant(sa.String(length=900, collation="C"), "postgresql")


def upgrade() -> None:
    op.create_table(
        "tree_node_types",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("max_children", sa.Integer(), nullable=True),
        sa.Column("max_depth", sa.Integer(), nullable=True),
        sa.Column("allowed_parent_type_ids", sa.JSON(), nullable=True),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("modified_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_tree_node_types_name", "tree_node_types", ["name"], unique=True)
    op.create_index("ix_tree_node_types_is_system", "tree_node_types", ["is_system"], unique=False)
    op.create_index("ix_tree_node_types_is_active", "tree_node_types", ["is_active"], unique=False)

    op.create_table(
        "tree_nodes",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("code", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(length=1000), nullable=True),
        sa.Column(
            "type_id", sa.Integer(), sa.ForeignKey("tree_node_types.id"), nullable=False
        ),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("tree_nodes.id"), nullable=True),
        sa.Column("order_index", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("path", _path_type(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("modified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("modified_by", sa.String(length=64), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by", sa.String(length=64), nullable=True),
    )
    op.create_index("ix_tree_nodes_code", "tree_nodes", ["code"], unique=False)
    op.create_index("ix_tree_nodes_type_id", "tree_nodes", ["type_id"], unique=False)
    op.create_index("ix_tree_nodes_parent_id", "tree_nodes", ["parent_id"], unique=False)
    op.create_index("ix_tree_nodes_path", "tree_nodes", ["path"], unique=False)
    op.create_index("ix_tree_nodes_is_active", "tree_nodes", ["is_active"], unique=False)
    op.create_index("ix_tree_nodes_is_deleted", "tree_nodes", ["is_deleted"], unique=False)

    # Uniqueness only binds live rows; soft-deleted nodes keep their code and slot.
    op.create_index(
        "uq_tree_nodes_code_active",
        "tree_nodes",
        ["code"],
        unique=True,
        sqlite_where=sa.text("is_deleted = 0"),
        postgresql_where=sa.text("NOT is_deleted"),
    )
    op.create_index(
        "uq_tree_nodes_parent_order_active",
        "tree_nodes",
        ["parent_id", "order_index"],
        unique=True,
        sqlite_where=sa.text("is_deleted = 0"),
        postgresql_where=sa.text("NOT is_deleted"),
    )


def downgrade() -> None:
    op.drop_index("uq_tree_nodes_parent_order_active", table_name="tree_nodes")
    op.drop_index("uq_tree_nodes_code_active", table_name="tree_nodes")
    op.drop_index("ix_tree_nodes_is_deleted", table_name="tree_nodes")
    op.drop_index("ix_tree_nodes_is_active", table_name="tree_nodes")
    op.drop_index("ix_tree_nodes_path", table_name="tree_nodes")
    op.drop_index("ix_tree_nodes_parent_id", table_name="tree_nodes")
    op.drop_index("ix_tree_nodes_type_id", table_name="tree_nodes")
    op.drop_index("ix_tree_nodes_code", table_name="tree_nodes")
    op.drop_table("tree_nodes")

    op.drop_index("ix_tree_node_types_is_active", table_name="tree_node_types")
    op.drop_index("ix_tree_node_types_is_system", table_name="tree_node_types")
    op.drop_index("ix_tree_node_types_name", table_name="tree_node_types")
    op.drop_table("tree_node_types")
