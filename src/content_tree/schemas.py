from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from content_tree.models import NodeType, TreeNode
from content_tree.services.tree_query import SubtreeNode, TreeStatistics


class ErrorResponse(BaseModel):
    """Error body shared by every endpoint: {error, message, request_id, details}."""

    error: str
    message: str
    request_id: str | None = None
    details: object | None = None


class OkResponse(BaseModel):
    ok: bool = True


class NodeTypeCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    max_children: int | None = Field(default=None, ge=0)
    max_depth: int | None = Field(default=None, ge=0)
    allowed_parent_type_ids: list[int] | None = None
    is_system: bool = False


class NodeTypePatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    max_children: int | None = Field(default=None, ge=0)
    max_depth: int | None = Field(default=None, ge=0)
    allowed_parent_type_ids: list[int] | None = None
    is_active: bool | None = None

    @model_validator(mode="after")
    def _ensure_any_field_present(self) -> "NodeTypePatchRequest":
        if not self.model_fields_set:
            raise ValueError("at least one field must be provided")
        if "name" in self.model_fields_set and self.name is None:
            raise ValueError("name cannot be null")
        if "is_active" in self.model_fields_set and self.is_active is None:
            raise ValueError("is_active cannot be null")
        return self


class NodeTypeOut(BaseModel):
    id: int
    name: str
    description: str | None = None
    max_children: int | None = None
    max_depth: int | None = None
    allowed_parent_type_ids: list[int] | None = None
    is_system: bool
    is_active: bool
    created_at: datetime
    modified_at: datetime | None = None

    @classmethod
    def from_model(cls, node_type: NodeType) -> "NodeTypeOut":
        if node_type.id is None:
            raise ValueError("node type has not been persisted")
        return cls(
            id=node_type.id,
            name=node_type.name,
            description=node_type.description,
            max_children=node_type.max_children,
            max_depth=node_type.max_depth,
            allowed_parent_type_ids=node_type.allowed_parent_type_ids,
            is_system=node_type.is_system,
            is_active=node_type.is_active,
            created_at=node_type.created_at,
            modified_at=node_type.modified_at,
        )


class TypeUsageOut(BaseModel):
    type_id: int
    total_nodes: int
    active_nodes: int


class NodeCreateRequest(BaseModel):
    parent_id: int | None = Field(default=None, ge=1)
    type_id: int = Field(ge=1)
    code: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=1000)
    order_index: int | None = Field(default=None, ge=0)
    is_active: bool = True


class NodePatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    code: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=1000)
    type_id: int | None = Field(default=None, ge=1)
    is_active: bool | None = None
    expected_version: int = Field(ge=1)

    @model_validator(mode="after")
    def _ensure_any_field_present(self) -> "NodePatchRequest":
        changed = set(self.model_fields_set) - {"expected_version"}
        if not changed:
            raise ValueError("at least one field must be provided")
        for key in ("name", "code", "type_id", "is_active"):
            if key in changed and getattr(self, key) is None:
                raise ValueError(f"{key} cannot be null")
        return self

    def changed_fields(self) -> dict[str, object]:
        changed = set(self.model_fields_set) - {"expected_version"}
        return {k: getattr(self, k) for k in sorted(changed)}


class NodeMoveRequest(BaseModel):
    # null moves the node to the root level.
    new_parent_id: int | None = Field(ge=1)
    expected_version: int | None = Field(default=None, ge=1)


class ReorderRequest(BaseModel):
    order: dict[int, int] = Field(min_length=1)


class NodeOut(BaseModel):
    id: int
    name: str
    code: str
    description: str | None = None
    type_id: int
    parent_id: int | None = None
    order_index: int
    path: str
    is_active: bool
    version: int
    created_at: datetime
    created_by: str | None = None
    modified_at: datetime | None = None
    modified_by: str | None = None
    is_deleted: bool = False
    deleted_at: datetime | None = None

    @classmethod
    def from_model(cls, node: TreeNode) -> "NodeOut":
        if node.id is None:
            raise ValueError("node has not been persisted")
        return cls(
            id=node.id,
            name=node.name,
            code=node.code,
            description=node.description,
            type_id=node.type_id,
            parent_id=node.parent_id,
            order_index=node.order_index,
            path=node.path,
            is_active=node.is_active,
            version=node.version,
            created_at=node.created_at,
            created_by=node.created_by,
            modified_at=node.modified_at,
            modified_by=node.modified_by,
            is_deleted=node.is_deleted,
            deleted_at=node.deleted_at,
        )


class NodeList(BaseModel):
    items: list[NodeOut] = Field(default_factory=list)
    total: int


class SubtreeOut(BaseModel):
    node: NodeOut
    children: list["SubtreeOut"] = Field(default_factory=list)

    @classmethod
    def from_subtree(cls, subtree: SubtreeNode) -> "SubtreeOut":
        return cls(
            node=NodeOut.from_model(subtree.node),
            children=[cls.from_subtree(c) for c in subtree.children],
        )


class StatisticsOut(BaseModel):
    node_id: int
    direct_children: int
    total_descendants: int
    max_depth_below: int
    depth: int

    @classmethod
    def from_stats(cls, stats: TreeStatistics) -> "StatisticsOut":
        return cls(
            node_id=stats.node_id,
            direct_children=stats.direct_children,
            total_descendants=stats.total_descendants,
            max_depth_below=stats.max_depth_below,
            depth=stats.depth,
        )


def node_list(nodes: list[TreeNode]) -> NodeList:
    return NodeList(items=[NodeOut.from_model(n) for n in nodes], total=len(nodes))
