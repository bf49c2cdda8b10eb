# basedpyright: reportAssignmentType=false
# basedpyright: reportIncompatibleVariableOverride=false

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Column, Index, String, text
from sqlalchemy.types import JSON as SAJSON
from sqlmodel import Field, SQLModel

from content_tree.domain.tree_types import Lifecycle, Limit, limit_from_column


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Paths are compared byte-wise in prefix range scans; PostgreSQL needs the C collation.
PathType = String(length=900).with_variant(String(length=900, collation="C"), "postgresql")


class NodeType(SQLModel, table=True):
    __tablename__ = "tree_node_types"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)

    # NULL = unbounded; read through children_limit/depth_limit, never directly.
    max_children: Optional[int] = Field(default=None, ge=0)
    max_depth: Optional[int] = Field(default=None, ge=0)

    # NULL = may be placed anywhere (including as a root).
    allowed_parent_type_ids: Optional[list[int]] = Field(
        default=None, sa_column=Column(SAJSON, nullable=True)
    )

    is_system: bool = Field(default=False, index=True)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utc_now)
    modified_at: Optional[datetime] = Field(default=None)

    @property
    def children_limit(self) -> Limit:
        return limit_from_column(self.max_children)

    @property
    def depth_limit(self) -> Limit:
        return limit_from_column(self.max_depth)


class TreeNode(SQLModel, table=True):
    __tablename__ = "tree_nodes"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]
    __table_args__ = (
        Index(
            "uq_tree_nodes_code_active",
            "code",
            unique=True,
            sqlite_where=text("is_deleted = 0"),
            postgresql_where=text("NOT is_deleted"),
        ),
        Index(
            "uq_tree_nodes_parent_order_active",
            "parent_id",
            "order_index",
            unique=True,
            sqlite_where=text("is_deleted = 0"),
            postgresql_where=text("NOT is_deleted"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(min_length=1, max_length=200)
    code: str = Field(index=True, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=1000)

    type_id: int = Field(index=True, foreign_key="tree_node_types.id")
    # Roots have NULL parent_id and a single-segment path.
    parent_id: Optional[int] = Field(default=None, index=True, foreign_key="tree_nodes.id")
    order_index: int = Field(default=0)

    # Empty only between insert and the id-dependent path write in the same transaction.
    path: str = Field(default="", sa_column=Column(PathType, nullable=False, index=True))

    is_active: bool = Field(default=True, index=True)
    version: int = Field(default=1)

    created_at: datetime = Field(default_factory=utc_now)
    created_by: Optional[str] = Field(default=None, max_length=64)
    modified_at: Optional[datetime] = Field(default=None)
    modified_by: Optional[str] = Field(default=None, max_length=64)
    is_deleted: bool = Field(default=False, index=True)
    deleted_at: Optional[datetime] = Field(default=None)
    deleted_by: Optional[str] = Field(default=None, max_length=64)

    @property
    def lifecycle(self) -> Lifecycle:
        return Lifecycle(
            created_at=self.created_at,
            created_by=self.created_by,
            modified_at=self.modified_at,
            modified_by=self.modified_by,
            is_deleted=self.is_deleted,
            deleted_at=self.deleted_at,
            deleted_by=self.deleted_by,
        )


def node_snapshot(node: TreeNode) -> dict[str, Any]:
    return {
        "id": node.id,
        "name": node.name,
        "code": node.code,
        "description": node.description,
        "type_id": node.type_id,
        "parent_id": node.parent_id,
        "order_index": node.order_index,
        "path": node.path,
        "is_active": node.is_active,
        "version": node.version,
        "is_deleted": node.is_deleted,
    }


def node_type_snapshot(node_type: NodeType) -> dict[str, Any]:
    return {
        "id": node_type.id,
        "name": node_type.name,
        "description": node_type.description,
        "max_children": node_type.max_children,
        "max_depth": node_type.max_depth,
        "allowed_parent_type_ids": node_type.allowed_parent_type_ids,
        "is_system": node_type.is_system,
        "is_active": node_type.is_active,
    }
