from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field

from sqlmodel.ext.asyncio.session import AsyncSession

from content_tree.domain import path_codec
from content_tree.errors import ConstraintViolation, NotFound
from content_tree.models import TreeNode
from content_tree.repositories.node_store import NodeStore


@dataclass
class SubtreeNode:
    node: TreeNode
    children: list["SubtreeNode"] = field(default_factory=list)


@dataclass(frozen=True)
class TreeStatistics:
    node_id: int
    direct_children: int
    total_descendants: int
    # Levels below the node; 0 for a leaf.
    max_depth_below: int
    depth: int


def _assemble(
    root: TreeNode, descendants: list[TreeNode], *, max_depth: int | None
) -> SubtreeNode:
    base_depth = path_codec.depth(root.path)
    by_parent: dict[int, list[TreeNode]] = defaultdict(list)
    for d in descendants:
        if max_depth is not None and path_codec.depth(d.path) - base_depth > max_depth:
            continue
        if d.parent_id is not None:
            by_parent[d.parent_id].append(d)

    def _build(node: TreeNode) -> SubtreeNode:
        # Ids are positive, so 0 never matches a parent.
        kids = sorted(by_parent.get(node.id or 0, []), key=lambda n: (n.order_index, n.id or 0))
        return SubtreeNode(node=node, children=[_build(k) for k in kids])

    return _build(root)


def _visible(root: TreeNode, rows: list[TreeNode]) -> list[TreeNode]:
    # An inactive node hides everything below it. Rows are in path order,
    # so a parent is always seen before its children.
    kept: set[int | None] = {root.id}
    out: list[TreeNode] = []
    for r in rows:
        if r.id != root.id and r.parent_id in kept:
            kept.add(r.id)
            out.append(r)
    return out


class TreeQuery:
    """Read-only views over the tree.

    Reads may run outside any write transaction and can observe the state
    from just before a concurrent move commits.
    """

    def __init__(self, store: NodeStore) -> None:
        self._store: NodeStore = store

    async def get_node(self, session: AsyncSession, node_id: int) -> TreeNode:
        node = await self._store.get_by_id(session, node_id)
        if node is None:
            raise NotFound("node not found", details={"node_id": node_id})
        return node

    async def get_by_code(self, session: AsyncSession, code: str) -> TreeNode:
        node = await self._store.get_by_code(session, code)
        if node is None:
            raise NotFound("node not found", details={"code": code})
        return node

    async def exists(self, session: AsyncSession, node_id: int) -> bool:
        return await self._store.exists(session, node_id)

    async def get_children(
        self, session: AsyncSession, parent_id: int | None, *, active_only: bool = False
    ) -> list[TreeNode]:
        if parent_id is not None:
            await self.get_node(session, parent_id)
        return await self._store.get_children(session, parent_id, active_only=active_only)

    async def get_roots(self, session: AsyncSession) -> list[TreeNode]:
        return await self._store.get_roots(session)

    async def get_ancestors(self, session: AsyncSession, node_id: int) -> list[TreeNode]:
        node = await self.get_node(session, node_id)
        ids = path_codec.ancestor_ids(node.path)
        by_id = {a.id: a for a in await self._store.get_by_ids(session, ids)}
        return [by_id[i] for i in ids if i in by_id]

    async def get_breadcrumb(self, session: AsyncSession, node_id: int) -> list[TreeNode]:
        node = await self.get_node(session, node_id)
        return [*(await self.get_ancestors(session, node_id)), node]

    async def get_descendants(
        self, session: AsyncSession, node_id: int, *, active_only: bool = False
    ) -> list[TreeNode]:
        node = await self.get_node(session, node_id)
        rows = await self._store.get_by_path_prefix(session, node.path, active_only=active_only)
        if active_only:
            return _visible(node, rows)
        return [r for r in rows if r.id != node.id]

    async def get_subtree(
        self,
        session: AsyncSession,
        node_id: int,
        max_depth: int | None = None,
        *,
        active_only: bool = False,
    ) -> SubtreeNode:
        """Nest the node's descendants under it.

        ``max_depth`` counts levels below the node: 0 returns the node alone,
        ``None`` returns everything. With ``active_only`` an inactive node is
        left out together with its whole subtree.
        """
        node = await self.get_node(session, node_id)
        if max_depth is not None and max_depth <= 0:
            return SubtreeNode(node=node)
        descendants = await self.get_descendants(session, node_id, active_only=active_only)
        return _assemble(node, descendants, max_depth=max_depth)

    async def get_forest(
        self, session: AsyncSession, max_depth: int | None = None, *, active_only: bool = False
    ) -> list[SubtreeNode]:
        roots = await self._store.get_children(session, None, active_only=active_only)
        return [
            await self.get_subtree(session, int(root.id), max_depth, active_only=active_only)
            for root in roots
            if root.id is not None
        ]

    async def get_nodes_at_depth(
        self, session: AsyncSession, depth: int, *, active_only: bool = False
    ) -> list[TreeNode]:
        if depth < 0:
            raise ConstraintViolation("depth must be >= 0", details={"depth": depth})
        return await self._store.get_by_depth(session, depth, active_only=active_only)

    async def get_statistics(self, session: AsyncSession, node_id: int) -> TreeStatistics:
        node = await self.get_node(session, node_id)
        depth = path_codec.depth(node.path)
        descendants = await self.get_descendants(session, node_id)
        max_below = max((path_codec.depth(d.path) - depth for d in descendants), default=0)
        direct = sum(1 for d in descendants if d.parent_id == node.id)
        return TreeStatistics(
            node_id=node_id,
            direct_children=direct,
            total_descendants=len(descendants),
            max_depth_below=max_below,
            depth=depth,
        )

    async def search(
        self, session: AsyncSession, term: str, *, limit: int = 100
    ) -> list[TreeNode]:
        if not term.strip():
            return []
        return await self._store.search(session, term, limit=limit)

    async def get_by_type(self, session: AsyncSession, type_id: int) -> list[TreeNode]:
        return await self._store.get_by_type(session, type_id)
