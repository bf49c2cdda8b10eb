from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, Protocol, cast

import sqlalchemy as sa
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession as SAAsyncSession
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from content_tree.domain import path_codec
from content_tree.errors import DuplicateCode, NotFound, PathIntegrityError, VersionConflict
from content_tree.models import NodeType, TreeNode, node_snapshot, utc_now


logger = logging.getLogger(__name__)


def _col(attr: object) -> ColumnElement[Any]:
    return cast(ColumnElement[Any], attr)


def translate_integrity_error(exc: IntegrityError) -> Exception:
    # Races that slipped past the pre-write checks surface as index violations.
    msg = str(exc.orig).lower()
    if "code" in msg:
        return DuplicateCode("code already exists", details={"reason": "unique_index"})
    return VersionConflict(
        "concurrent modification of sibling order", details={"reason": "unique_index"}
    )


class NodeStore(Protocol):
    """Persistence seam of the tree.

    Every method runs inside the caller's transaction; implementations never
    begin, commit or roll back on their own.
    """

    async def get_by_id(
        self,
        session: AsyncSession,
        node_id: int,
        *,
        include_deleted: bool = False,
        for_update: bool = False,
    ) -> TreeNode | None: ...

    async def get_by_ids(self, session: AsyncSession, node_ids: Iterable[int]) -> list[TreeNode]: ...

    async def get_by_code(self, session: AsyncSession, code: str) -> TreeNode | None: ...

    async def get_children(
        self, session: AsyncSession, parent_id: int | None, *, active_only: bool = False
    ) -> list[TreeNode]: ...

    async def count_children(self, session: AsyncSession, parent_id: int | None) -> int: ...

    async def get_by_path_prefix(
        self, session: AsyncSession, prefix: str, *, active_only: bool = False
    ) -> list[TreeNode]: ...

    async def get_by_depth(
        self, session: AsyncSession, depth: int, *, active_only: bool = False
    ) -> list[TreeNode]: ...

    async def exists(self, session: AsyncSession, node_id: int) -> bool: ...

    async def get_max_order_index(self, session: AsyncSession, parent_id: int | None) -> int: ...

    async def get_roots(self, session: AsyncSession) -> list[TreeNode]: ...

    async def search(self, session: AsyncSession, term: str, *, limit: int = 100) -> list[TreeNode]: ...

    async def get_by_type(self, session: AsyncSession, type_id: int) -> list[TreeNode]: ...

    async def insert(
        self, session: AsyncSession, node: TreeNode, *, parent_path: str | None
    ) -> TreeNode: ...

    async def update_fields(
        self,
        session: AsyncSession,
        node_id: int,
        fields: Mapping[str, object],
        expected_version: int,
    ) -> TreeNode: ...

    async def lock_lineage(
        self, session: AsyncSession, node_id: int, path: str, expected_version: int
    ) -> None: ...

    async def bulk_rewrite_paths(
        self, session: AsyncSession, old_prefix: str, new_prefix: str
    ) -> int: ...

    async def set_order_indexes(
        self,
        session: AsyncSession,
        parent_id: int | None,
        order_map: Mapping[int, int],
        *,
        actor_id: str,
    ) -> None: ...

    async def soft_delete(
        self, session: AsyncSession, node_id: int, expected_version: int, *, actor_id: str
    ) -> TreeNode: ...

    async def get_type(self, session: AsyncSession, type_id: int) -> NodeType | None: ...

    async def get_types(
        self, session: AsyncSession, type_ids: Iterable[int]
    ) -> dict[int, NodeType]: ...

    async def get_type_by_name(self, session: AsyncSession, name: str) -> NodeType | None: ...

    async def list_types(self, session: AsyncSession) -> list[NodeType]: ...

    async def insert_type(self, session: AsyncSession, node_type: NodeType) -> NodeType: ...

    async def update_type(
        self, session: AsyncSession, node_type: NodeType, fields: Mapping[str, object]
    ) -> NodeType: ...

    async def delete_type(self, session: AsyncSession, node_type: NodeType) -> None: ...

    async def count_nodes_by_type(
        self, session: AsyncSession, type_id: int, *, active_only: bool = False
    ) -> int: ...


class SqlNodeStore:
    """NodeStore over SQLModel/SQLAlchemy (SQLite and PostgreSQL)."""

    # Nodes

    async def get_by_id(
        self,
        session: AsyncSession,
        node_id: int,
        *,
        include_deleted: bool = False,
        for_update: bool = False,
    ) -> TreeNode | None:
        stmt = select(TreeNode).where(TreeNode.id == node_id)
        if not include_deleted:
            stmt = stmt.where(_col(TreeNode.is_deleted).is_(False))
        if for_update:
            # Row lock on PostgreSQL; SQLite ignores it and serializes writers instead.
            stmt = stmt.with_for_update()
        stmt = stmt.execution_options(populate_existing=True)
        return (await session.exec(stmt)).first()

    async def get_by_ids(self, session: AsyncSession, node_ids: Iterable[int]) -> list[TreeNode]:
        ids = list(dict.fromkeys(node_ids))
        if not ids:
            return []
        stmt = (
            select(TreeNode)
            .where(_col(TreeNode.id).in_(ids))
            .where(_col(TreeNode.is_deleted).is_(False))
            .execution_options(populate_existing=True)
        )
        return list((await session.exec(stmt)).all())

    async def get_by_code(self, session: AsyncSession, code: str) -> TreeNode | None:
        stmt = (
            select(TreeNode)
            .where(TreeNode.code == code)
            .where(_col(TreeNode.is_deleted).is_(False))
            .execution_options(populate_existing=True)
        )
        return (await session.exec(stmt)).first()

    @staticmethod
    def _parent_filter(parent_id: int | None) -> ColumnElement[bool]:
        if parent_id is None:
            return _col(TreeNode.parent_id).is_(None)
        return _col(TreeNode.parent_id) == parent_id

    @staticmethod
    def _live(stmt: Any, *, active_only: bool = False) -> Any:
        stmt = stmt.where(_col(TreeNode.is_deleted).is_(False))
        if active_only:
            stmt = stmt.where(_col(TreeNode.is_active).is_(True))
        return stmt

    async def get_children(
        self, session: AsyncSession, parent_id: int | None, *, active_only: bool = False
    ) -> list[TreeNode]:
        stmt = self._live(
            select(TreeNode).where(self._parent_filter(parent_id)), active_only=active_only
        ).order_by(_col(TreeNode.order_index).asc(), _col(TreeNode.id).asc())
        stmt = stmt.execution_options(populate_existing=True)
        return list((await session.exec(stmt)).all())

    async def count_children(self, session: AsyncSession, parent_id: int | None) -> int:
        stmt = (
            select(sa.func.count())
            .select_from(TreeNode)
            .where(self._parent_filter(parent_id))
            .where(_col(TreeNode.is_deleted).is_(False))
        )
        return int((await session.exec(stmt)).one() or 0)

    async def get_by_path_prefix(
        self, session: AsyncSession, prefix: str, *, active_only: bool = False
    ) -> list[TreeNode]:
        # Range scan on the path index: prefix <= path < upper.
        upper = path_codec.prefix_upper_bound(prefix)
        stmt = self._live(
            select(TreeNode)
            .where(_col(TreeNode.path) >= prefix)
            .where(_col(TreeNode.path) < upper),
            active_only=active_only,
        ).order_by(_col(TreeNode.path).asc(), _col(TreeNode.order_index).asc())
        stmt = stmt.execution_options(populate_existing=True)
        return list((await session.exec(stmt)).all())

    async def get_by_depth(
        self, session: AsyncSession, depth: int, *, active_only: bool = False
    ) -> list[TreeNode]:
        # A path at depth d holds d + 2 delimiters.
        path = _col(TreeNode.path)
        delimiters = sa.func.length(path) - sa.func.length(
            sa.func.replace(path, path_codec.PATH_DELIMITER, "")
        )
        stmt = self._live(
            select(TreeNode).where(delimiters == depth + 2), active_only=active_only
        ).order_by(path.asc())
        return list((await session.exec(stmt)).all())

    async def exists(self, session: AsyncSession, node_id: int) -> bool:
        stmt = self._live(
            select(sa.func.count()).select_from(TreeNode).where(TreeNode.id == node_id)
        )
        return int((await session.exec(stmt)).one() or 0) > 0

    async def get_max_order_index(self, session: AsyncSession, parent_id: int | None) -> int:
        stmt = (
            select(sa.func.max(_col(TreeNode.order_index)))
            .where(self._parent_filter(parent_id))
            .where(_col(TreeNode.is_deleted).is_(False))
        )
        value = (await session.exec(stmt)).one()
        return int(value or 0)

    async def get_roots(self, session: AsyncSession) -> list[TreeNode]:
        return await self.get_children(session, None)

    async def search(self, session: AsyncSession, term: str, *, limit: int = 100) -> list[TreeNode]:
        # User input is matched literally; only the outer % are wildcards.
        escaped = term.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        stmt = (
            select(TreeNode)
            .where(_col(TreeNode.is_deleted).is_(False))
            .where(
                sa.or_(
                    _col(TreeNode.name).ilike(pattern, escape="\\"),
                    _col(TreeNode.code).ilike(pattern, escape="\\"),
                    _col(TreeNode.description).ilike(pattern, escape="\\"),
                )
            )
            .order_by(_col(TreeNode.path).asc())
            .limit(limit)
        )
        return list((await session.exec(stmt)).all())

    async def get_by_type(self, session: AsyncSession, type_id: int) -> list[TreeNode]:
        stmt = (
            select(TreeNode)
            .where(TreeNode.type_id == type_id)
            .where(_col(TreeNode.is_deleted).is_(False))
            .order_by(_col(TreeNode.path).asc())
        )
        return list((await session.exec(stmt)).all())

    async def insert(
        self, session: AsyncSession, node: TreeNode, *, parent_path: str | None
    ) -> TreeNode:
        # The id comes from the first flush; the path depends on it.
        node.path = ""
        session.add(node)
        try:
            await session.flush()
            if node.id is None:
                raise PathIntegrityError("insert did not allocate a node id")
            node.path = path_codec.child_path(parent_path, node.id)
            session.add(node)
            await session.flush()
        except IntegrityError as exc:
            raise translate_integrity_error(exc) from exc
        return node

    async def _execute(self, session: AsyncSession, stmt: sa.Update) -> int:
        sa_session = cast(SAAsyncSession, session)
        try:
            result = await sa_session.execute(stmt)
        except IntegrityError as exc:
            raise translate_integrity_error(exc) from exc
        return int(cast(CursorResult[Any], result).rowcount or 0)

    async def update_fields(
        self,
        session: AsyncSession,
        node_id: int,
        fields: Mapping[str, object],
        expected_version: int,
    ) -> TreeNode:
        values: dict[str, Any] = dict(fields)
        values.setdefault("modified_at", utc_now())
        values["version"] = _col(TreeNode.version) + 1
        stmt = (
            sa.update(TreeNode)
            .where(_col(TreeNode.id) == node_id)
            .where(_col(TreeNode.version) == expected_version)
            .where(_col(TreeNode.is_deleted).is_(False))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if await self._execute(session, stmt) == 0:
            raise VersionConflict(
                f"node {node_id} changed since version {expected_version}",
                details={"node_id": node_id, "expected_version": expected_version},
            )
        node = await self.get_by_id(session, node_id, include_deleted=True)
        if node is None:
            raise NotFound("node not found", details={"node_id": node_id})
        return node

    async def lock_lineage(
        self, session: AsyncSession, node_id: int, path: str, expected_version: int
    ) -> None:
        """Hold a node and its ancestors until the transaction ends.

        Callers derive a new path from ``path``. Any move or rewrite of the
        lineage bumps the node's version, so a stale read fails here with
        ``VersionConflict`` instead of committing a path built on it.
        """
        ids = path_codec.decode(path)
        # Row locks on PostgreSQL, taken in id order; a no-op on SQLite.
        lineage = (
            select(_col(TreeNode.id))
            .where(_col(TreeNode.id).in_(ids))
            .order_by(_col(TreeNode.id).asc())
            .with_for_update()
        )
        _ = (await session.exec(lineage)).all()
        # A no-op write: it takes the SQLite write lock and re-checks the version.
        stmt = (
            sa.update(TreeNode)
            .where(_col(TreeNode.id) == node_id)
            .where(_col(TreeNode.version) == expected_version)
            .where(_col(TreeNode.path) == path)
            .where(_col(TreeNode.is_deleted).is_(False))
            .values(version=_col(TreeNode.version))
            .execution_options(synchronize_session=False)
        )
        if await self._execute(session, stmt) == 0:
            current = await self.get_by_id(session, node_id, include_deleted=True)
            raise VersionConflict(
                f"node {node_id} changed since version {expected_version}",
                details={
                    "node_id": node_id,
                    "expected_version": expected_version,
                    "server_snapshot": None if current is None else node_snapshot(current),
                },
            )

    async def bulk_rewrite_paths(
        self, session: AsyncSession, old_prefix: str, new_prefix: str
    ) -> int:
        # One statement for the whole subtree; soft-deleted rows follow their parents too.
        path_codec.validate(old_prefix)
        path_codec.validate(new_prefix)
        upper = path_codec.prefix_upper_bound(old_prefix)
        new_path = sa.literal(new_prefix, type_=sa.String()) + sa.func.substr(
            _col(TreeNode.path), len(old_prefix) + 1, type_=sa.String()
        )
        stmt = (
            sa.update(TreeNode)
            .where(_col(TreeNode.path) >= old_prefix)
            .where(_col(TreeNode.path) < upper)
            .values(
                path=new_path,
                version=_col(TreeNode.version) + 1,
                modified_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        rows = await self._execute(session, stmt)
        logger.debug("rewrote paths %s -> %s rows=%s", old_prefix, new_prefix, rows)
        return rows

    async def set_order_indexes(
        self,
        session: AsyncSession,
        parent_id: int | None,
        order_map: Mapping[int, int],
        *,
        actor_id: str,
    ) -> None:
        if not order_map:
            return
        ids = list(order_map)
        scope = (
            sa.update(TreeNode)
            .where(_col(TreeNode.id).in_(ids))
            .where(self._parent_filter(parent_id))
            .where(_col(TreeNode.is_deleted).is_(False))
            .execution_options(synchronize_session=False)
        )
        # Park every row at -(index + 1) first: indexes are >= 0, so the
        # negative range is free and the unique sibling index never collides.
        parked = sa.case({k: -(v + 1) for k, v in order_map.items()}, value=_col(TreeNode.id))
        await self._execute(session, scope.values(order_index=parked))
        await self._execute(
            session,
            scope.values(
                order_index=-_col(TreeNode.order_index) - 1,
                version=_col(TreeNode.version) + 1,
                modified_at=utc_now(),
                modified_by=actor_id,
            ),
        )

    async def soft_delete(
        self, session: AsyncSession, node_id: int, expected_version: int, *, actor_id: str
    ) -> TreeNode:
        now = utc_now()
        return await self.update_fields(
            session,
            node_id,
            {
                "is_deleted": True,
                "deleted_at": now,
                "deleted_by": actor_id,
                "modified_at": now,
                "modified_by": actor_id,
            },
            expected_version,
        )

    # Node types

    async def get_type(self, session: AsyncSession, type_id: int) -> NodeType | None:
        return await session.get(NodeType, type_id)

    async def get_types(
        self, session: AsyncSession, type_ids: Iterable[int]
    ) -> dict[int, NodeType]:
        ids = list(set(type_ids))
        if not ids:
            return {}
        rows = (await session.exec(select(NodeType).where(_col(NodeType.id).in_(ids)))).all()
        return {int(t.id): t for t in rows if t.id is not None}

    async def get_type_by_name(self, session: AsyncSession, name: str) -> NodeType | None:
        return (await session.exec(select(NodeType).where(NodeType.name == name))).first()

    async def list_types(self, session: AsyncSession) -> list[NodeType]:
        stmt = select(NodeType).order_by(_col(NodeType.name).asc())
        return list((await session.exec(stmt)).all())

    async def insert_type(self, session: AsyncSession, node_type: NodeType) -> NodeType:
        session.add(node_type)
        try:
            await session.flush()
        except IntegrityError as exc:
            raise DuplicateCode(
                f"node type {node_type.name!r} already exists", details={"name": node_type.name}
            ) from exc
        return node_type

    async def update_type(
        self, session: AsyncSession, node_type: NodeType, fields: Mapping[str, object]
    ) -> NodeType:
        for key, value in fields.items():
            setattr(node_type, key, value)
        node_type.modified_at = utc_now()
        session.add(node_type)
        try:
            await session.flush()
        except IntegrityError as exc:
            raise DuplicateCode(
                f"node type {node_type.name!r} already exists", details={"name": node_type.name}
            ) from exc
        return node_type

    async def delete_type(self, session: AsyncSession, node_type: NodeType) -> None:
        await session.delete(node_type)
        await session.flush()

    async def count_nodes_by_type(
        self, session: AsyncSession, type_id: int, *, active_only: bool = False
    ) -> int:
        stmt = select(sa.func.count()).select_from(TreeNode).where(TreeNode.type_id == type_id)
        if active_only:
            stmt = stmt.where(_col(TreeNode.is_deleted).is_(False)).where(
                _col(TreeNode.is_active).is_(True)
            )
        return int((await session.exec(stmt)).one() or 0)
