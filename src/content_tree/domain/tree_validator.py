from __future__ import annotations

from collections.abc import Mapping, Sequence

from content_tree.domain import path_codec
from content_tree.domain.tree_types import UNBOUNDED, Bounded, Limit, tightest
from content_tree.errors import (
    ConstraintViolation,
    CycleDetected,
    DuplicateCode,
    HasChildren,
    NotASibling,
    NotFound,
)
from content_tree.models import NodeType, TreeNode


class TreeValidator:
    """Pure structural checks run before any write.

    - No DB access: every input is fetched by the caller.
    - Each method returns None or raises a typed ``TreeError``.
    """

    def __init__(self, *, max_depth: Limit = UNBOUNDED) -> None:
        # Global cap applied on top of every NodeType.max_depth.
        self.max_depth: Limit = max_depth

    def _check_depth(self, node_type: NodeType, new_depth: int, *, code: str | None = None) -> None:
        limit = tightest(node_type.depth_limit, self.max_depth)
        if isinstance(limit, Bounded) and not limit.allows(new_depth):
            raise ConstraintViolation(
                f"depth {new_depth} exceeds max depth {limit.value} for type {node_type.name!r}",
                details={
                    "type_id": node_type.id,
                    "depth": new_depth,
                    "max_depth": limit.value,
                    "code": code,
                },
            )

    def _check_parent_type(self, node_type: NodeType, parent_type: NodeType | None) -> None:
        allowed = node_type.allowed_parent_type_ids
        if allowed is None:
            return
        if parent_type is None:
            raise ConstraintViolation(
                f"type {node_type.name!r} cannot be a root",
                details={"type_id": node_type.id},
            )
        if parent_type.id not in allowed:
            raise ConstraintViolation(
                f"type {node_type.name!r} is not allowed under {parent_type.name!r}",
                details={"type_id": node_type.id, "parent_type_id": parent_type.id},
            )

    @staticmethod
    def _check_children(parent_type: NodeType | None, sibling_count: int) -> None:
        if parent_type is None:
            return
        # sibling_count is the number of children before the new one arrives.
        if not parent_type.children_limit.allows(sibling_count + 1):
            raise ConstraintViolation(
                f"type {parent_type.name!r} allows at most {parent_type.max_children} children",
                details={
                    "parent_type_id": parent_type.id,
                    "max_children": parent_type.max_children,
                },
            )

    @staticmethod
    def _check_live_parent(parent: TreeNode | None) -> None:
        if parent is not None and parent.is_deleted:
            raise NotFound("parent node not found", details={"parent_id": parent.id})

    def validate_create(
        self,
        parent: TreeNode | None,
        parent_type: NodeType | None,
        node_type: NodeType,
        sibling_count: int,
    ) -> None:
        self._check_live_parent(parent)
        if not node_type.is_active:
            raise ConstraintViolation(
                f"type {node_type.name!r} is inactive", details={"type_id": node_type.id}
            )
        new_depth = 0 if parent is None else path_codec.depth(parent.path) + 1
        self._check_depth(node_type, new_depth)
        self._check_parent_type(node_type, parent_type)
        self._check_children(parent_type, sibling_count)

    def validate_type_change(
        self,
        node: TreeNode,
        new_type: NodeType,
        parent_type: NodeType | None,
        child_count: int,
    ) -> None:
        if not new_type.is_active:
            raise ConstraintViolation(
                f"type {new_type.name!r} is inactive", details={"type_id": new_type.id}
            )
        self._check_depth(new_type, path_codec.depth(node.path), code=node.code)
        self._check_parent_type(new_type, parent_type)
        # The node keeps its children; the new type must be able to hold them.
        if not new_type.children_limit.allows(child_count):
            raise ConstraintViolation(
                f"type {new_type.name!r} allows at most {new_type.max_children} children",
                details={"type_id": new_type.id, "child_count": child_count},
            )

    def validate_move(
        self,
        node: TreeNode,
        node_type: NodeType,
        new_parent: TreeNode | None,
        parent_type: NodeType | None,
        sibling_count: int,
        descendants: Sequence[TreeNode] = (),
        types: Mapping[int, NodeType] | None = None,
    ) -> None:
        if new_parent is not None:
            self._check_live_parent(new_parent)
            if new_parent.id == node.id or path_codec.is_descendant_path(
                new_parent.path, node.path
            ):
                raise CycleDetected(
                    "cannot move a node under itself or its descendant",
                    details={"node_id": node.id, "new_parent_id": new_parent.id},
                )

        new_depth = 0 if new_parent is None else path_codec.depth(new_parent.path) + 1
        shift = new_depth - path_codec.depth(node.path)

        self._check_depth(node_type, new_depth, code=node.code)
        self._check_parent_type(node_type, parent_type)
        self._check_children(parent_type, sibling_count)

        if shift <= 0:
            return
        types = types or {}
        for d in descendants:
            d_type = types.get(d.type_id)
            if d_type is None:
                raise NotFound("node type not found", details={"type_id": d.type_id})
            self._check_depth(d_type, path_codec.depth(d.path) + shift, code=d.code)

    @staticmethod
    def validate_delete(node: TreeNode, node_type: NodeType, child_count: int) -> None:
        if child_count > 0:
            raise HasChildren(
                f"node {node.id} has {child_count} active children",
                details={"node_id": node.id, "child_count": child_count},
            )
        if node_type.is_system:
            raise ConstraintViolation(
                f"nodes of system type {node_type.name!r} cannot be deleted",
                details={"node_id": node.id, "type_id": node_type.id},
            )

    @staticmethod
    def validate_code_unique(code: str, exclude_id: int | None, existing: TreeNode | None) -> None:
        if existing is None or existing.is_deleted:
            return
        if exclude_id is not None and existing.id == exclude_id:
            return
        raise DuplicateCode(
            f"code {code!r} already exists", details={"code": code, "existing_id": existing.id}
        )

    @staticmethod
    def validate_order_slot(order_index: int, siblings: Sequence[TreeNode]) -> None:
        if order_index < 0:
            raise ConstraintViolation("order index must be >= 0")
        for s in siblings:
            if not s.is_deleted and s.order_index == order_index:
                raise ConstraintViolation(
                    f"order index {order_index} is taken by node {s.id}",
                    details={"order_index": order_index, "node_id": s.id},
                )

    @staticmethod
    def validate_reorder(
        parent_id: int | None,
        order_map: Mapping[int, int],
        siblings: Sequence[TreeNode],
    ) -> None:
        by_id = {s.id: s for s in siblings if not s.is_deleted}
        strangers = sorted(x for x in order_map if x not in by_id)
        if strangers:
            raise NotASibling(
                f"nodes {strangers} are not children of {parent_id}",
                details={"parent_id": parent_id, "node_ids": strangers},
            )

        negative = sorted(k for k, v in order_map.items() if v < 0)
        if negative:
            raise ConstraintViolation(
                "order index must be >= 0", details={"node_ids": negative}
            )

        final = {sid: order_map.get(sid, s.order_index) for sid, s in by_id.items()}
        seen: dict[int, int] = {}
        for sid, idx in final.items():
            if idx in seen:
                raise ConstraintViolation(
                    f"order index {idx} would be shared by nodes {seen[idx]} and {sid}",
                    details={"order_index": idx, "node_ids": sorted([seen[idx], sid])},
                )
            seen[idx] = sid
